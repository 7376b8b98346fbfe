# orchestration/cli_runner.py
"""Command-line runner for the progressive feedback engine."""

from __future__ import annotations

import asyncio
import signal
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from rich.console import Console

from core.llm_interface import LLMService, llm_service
from models import ProcessingMode, RunOutcome
from orchestration.run_input import RunInput, RunInputError, load_run_input
from perspectives import get_perspective
from processing.cancellation import CancellationToken
from processing.engine import EngineOptions, ProgressiveFeedbackEngine
from processing.errors import EngineUsageError
from ui.rich_display import RichProgressDisplay
from utils.logging import setup_logging_marginalia

logger = structlog.get_logger(__name__)


@contextmanager
def cancel_on_interrupt(token: CancellationToken) -> Iterator[CancellationToken]:
    """Cancel ``token`` on the first SIGINT/SIGTERM.

    A second Ctrl-C raises KeyboardInterrupt as usual. Outside the main
    thread no handlers are installed.
    """
    if threading.current_thread() is not threading.main_thread():
        yield token
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, frame: Any) -> None:
        token.cancel(f"Interrupted by signal {signal.Signals(signum).name}")
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    try:
        yield token
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


async def _run(
    run_input: RunInput,
    mode: ProcessingMode,
    options: EngineOptions,
    provider: LLMService,
) -> RunOutcome:
    engine = ProgressiveFeedbackEngine(provider, options)
    # stdout is reserved for the outcome JSON
    display = RichProgressDisplay(provider, console=Console(stderr=True))
    token = CancellationToken()
    try:
        with cancel_on_interrupt(token), display:
            return await engine.run(
                run_input.items,
                mode,
                run_input.participants,
                display,
                perspectives=run_input.perspectives,
                cancel_token=token,
            )
    finally:
        await provider.aclose()


def _write_outcome(outcome: RunOutcome, output: str | None) -> None:
    payload = outcome.model_dump_json(indent=2)
    if output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(payload + "\n")
        logger.info("Wrote run outcome.", path=output)
    else:
        sys.stdout.write(payload + "\n")


def run(
    input_path: str,
    *,
    mode: str | None = None,
    perspective_ids: list[str] | None = None,
    output: str | None = None,
    max_concurrent: int | None = None,
    retry_attempts: int | None = None,
    base_delay: float | None = None,
    no_summary: bool = False,
) -> int:
    """Load the input, run the engine, and write the outcome. Returns an exit code."""
    setup_logging_marginalia()
    try:
        run_input = load_run_input(input_path)
        if perspective_ids:
            run_input.perspectives = [get_perspective(pid) for pid in perspective_ids]
        if not run_input.perspectives:
            run_input.perspectives = [get_perspective("story-engineer")]
        chosen_mode = ProcessingMode(mode or run_input.mode or ProcessingMode.CHUNKED)

        overrides: dict[str, Any] = {}
        if max_concurrent is not None:
            overrides["max_concurrent"] = max_concurrent
        if retry_attempts is not None:
            overrides["retry_attempts"] = retry_attempts
        if base_delay is not None:
            overrides["base_delay"] = base_delay
        if no_summary:
            overrides["synthesize_summary"] = False
        options = EngineOptions(**overrides)

        outcome = asyncio.run(_run(run_input, chosen_mode, options, llm_service))
    except (RunInputError, EngineUsageError, KeyError) as err:
        logger.error("Cannot start run: %s", err)
        return 2
    except KeyboardInterrupt:
        logger.info("Run aborted by second interrupt.")
        return 130

    _write_outcome(outcome, output)
    if outcome.cancelled:
        logger.info(
            "Run stopped early.",
            completed=len(outcome.results),
            interrupted=outcome.processing_stats.interrupted_items,
            skipped=outcome.processing_stats.skipped_items,
        )
        return 130
    return 0
