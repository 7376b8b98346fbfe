from __future__ import annotations

import time
from typing import Any

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TaskID, TextColumn
from rich.text import Text

from config import settings
from models import RunProgress


class RichProgressDisplay:
    """Progress sink that renders run snapshots in a Rich live panel."""

    def __init__(
        self,
        provider: Any | None = None,
        *,
        enabled: bool | None = None,
        console: Console | None = None,
    ) -> None:
        self.provider = provider
        self.live: Live | None = None
        self.last_snapshot: RunProgress | None = None
        self.snapshots_seen = 0
        self.run_start_time: float = 0.0
        self.status_text_section: Text = Text("Section: N/A")
        self.status_text_message: Text = Text("Status: Initializing...")
        self.status_text_retry: Text = Text("")
        self.status_text_results: Text = Text("Completed: 0 | Fallbacks: 0")
        self.status_text_rate: Text = Text("Requests/Min: 0.0")
        self.progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
        )
        self._task_id: TaskID | None = None

        if settings.ENABLE_RICH_PROGRESS if enabled is None else enabled:
            self.live = Live(
                Panel(
                    Group(
                        self.progress,
                        self.status_text_section,
                        self.status_text_message,
                        self.status_text_retry,
                        self.status_text_results,
                        self.status_text_rate,
                    ),
                    title="Marginalia Feedback Progress",
                    border_style="blue",
                    expand=True,
                ),
                console=console,
                refresh_per_second=4,
                transient=False,
                redirect_stdout=False,
                redirect_stderr=False,
            )

    def start(self) -> None:
        self.run_start_time = time.time()
        if self.live:
            self.live.start()

    def stop(self) -> None:
        if self.live and self.live.is_started:
            self.live.stop()

    def __enter__(self) -> RichProgressDisplay:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def __call__(self, snapshot: RunProgress) -> None:
        self.update(snapshot)

    def update(self, snapshot: RunProgress) -> None:
        self.last_snapshot = snapshot
        self.snapshots_seen += 1

        if self._task_id is None:
            self._task_id = self.progress.add_task(
                snapshot.mode.value.capitalize(), total=100
            )
        self.progress.update(self._task_id, completed=snapshot.percent)

        self.status_text_section.plain = (
            f"Section {snapshot.current_index}/{snapshot.total_items}: "
            f"{snapshot.current_title or 'N/A'}"
        )
        self.status_text_message.plain = f"Status: {snapshot.message}"
        if snapshot.is_retrying:
            wait = (
                f", next attempt in {snapshot.next_retry_in_ms / 1000:.1f}s"
                if snapshot.next_retry_in_ms is not None
                else ""
            )
            self.status_text_retry.plain = f"Retry {snapshot.retry_count}{wait}"
        else:
            self.status_text_retry.plain = ""
        blend = (
            f" | Blending: {', '.join(snapshot.blending_perspectives)}"
            if snapshot.blending_perspectives
            else ""
        )
        self.status_text_results.plain = (
            f"Completed: {len(snapshot.completed_results)} | "
            f"Fallbacks: {len(snapshot.failed_item_ids)}{blend}"
        )

        elapsed_seconds = time.time() - (self.run_start_time or time.time())
        request_count = getattr(self.provider, "request_count", 0)
        requests_per_minute = (
            request_count / (elapsed_seconds / 60) if elapsed_seconds > 0 else 0.0
        )
        self.status_text_rate.plain = (
            f"Requests/Min: {requests_per_minute:.2f} | Elapsed: "
            f"{time.strftime('%H:%M:%S', time.gmtime(elapsed_seconds))}"
        )
