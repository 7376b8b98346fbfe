# processing/engine.py
"""Progressive feedback engine loop."""

from __future__ import annotations

import asyncio
import random
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from config import settings
from models import (
    FailureClassification,
    FallbackResult,
    ItemResult,
    Participant,
    Perspective,
    ProcessingMode,
    ProcessingStats,
    RunOutcome,
    RunProgress,
    SuccessResult,
    WorkItem,
)
from processing import progress_messages
from processing.cancellation import CancellationToken
from processing.errors import EngineUsageError
from processing.item_processor import ItemProcessor
from processing.retry_controller import ItemEvent, ItemOutcome, RetryController
from processing.summary import ResultAggregator

if TYPE_CHECKING:  # pragma: no cover - type hint import
    from core.llm_interface import AnalysisProvider

logger = structlog.get_logger(__name__)

ProgressSink = Callable[[RunProgress], None]


@dataclass
class EngineOptions:
    """Per-run knobs. Defaults come from ``settings``."""

    max_concurrent: int = field(default_factory=lambda: settings.ENGINE_MAX_CONCURRENT)
    retry_attempts: int = field(default_factory=lambda: settings.ENGINE_RETRY_ATTEMPTS)
    base_delay: float = field(
        default_factory=lambda: settings.ENGINE_BASE_DELAY_SECONDS
    )
    exponential_backoff: bool = field(
        default_factory=lambda: settings.ENGINE_EXPONENTIAL_BACKOFF
    )
    # Seconds between items; ``None`` means ``base_delay``.
    inter_item_delay: float | None = None
    synthesize_summary: bool = field(
        default_factory=lambda: settings.ENABLE_SYNTHESIZED_SUMMARY
    )

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise EngineUsageError("max_concurrent must be at least 1")
        if self.retry_attempts < 0:
            raise EngineUsageError("retry_attempts cannot be negative")
        if self.base_delay < 0:
            raise EngineUsageError("base_delay cannot be negative")
        if self.inter_item_delay is not None and self.inter_item_delay < 0:
            raise EngineUsageError("inter_item_delay cannot be negative")

    def delay_after(self, mode: ProcessingMode, retries: int) -> float:
        """Pause before the next item, given how many retries the last one used."""
        base = self.base_delay if self.inter_item_delay is None else self.inter_item_delay
        if mode is ProcessingMode.BLENDED:
            base *= settings.BLENDED_DELAY_MULTIPLIER
        return base + retries * settings.INTER_ITEM_RETRY_PENALTY_SECONDS


class _ProgressTracker:
    """Builds and emits :class:`RunProgress` snapshots for one run.

    Completed results are released in original item order: a result that
    finishes early is held until every item before it has a result.
    """

    def __init__(
        self,
        items: Sequence[WorkItem],
        mode: ProcessingMode,
        perspective_names: tuple[str, ...],
        sink: ProgressSink | None,
    ) -> None:
        self.items = items
        self.total = len(items)
        self.mode = mode
        self.perspective_names = perspective_names
        self.sink = sink
        self.positions = {item.id: position for position, item in enumerate(items)}
        self.current_index = 0
        self.current_title = ""
        self.finished: dict[int, ItemResult] = {}
        self.released: list[ItemResult] = []
        self.failed_ids: list[str] = []

    def _percent(self) -> int:
        return min(100, round(len(self.released) / self.total * 100))

    def _send(self, snapshot: RunProgress) -> None:
        if self.sink is None:
            return
        try:
            self.sink(snapshot)
        except Exception:
            logger.error("Progress sink raised; ignoring.", exc_info=True)

    def emit(
        self,
        message: str,
        *,
        is_retrying: bool = False,
        retry_count: int = 0,
        next_retry_in_ms: int | None = None,
        percent: int | None = None,
    ) -> None:
        blended = self.mode is ProcessingMode.BLENDED
        self._send(
            RunProgress(
                current_index=self.current_index,
                total_items=self.total,
                current_title=self.current_title,
                percent=self._percent() if percent is None else percent,
                message=message,
                is_retrying=is_retrying,
                retry_count=retry_count,
                next_retry_in_ms=next_retry_in_ms,
                completed_results=tuple(self.released),
                failed_item_ids=tuple(self.failed_ids),
                mode=self.mode,
                perspective_count=len(self.perspective_names) if blended else None,
                blending_perspectives=self.perspective_names if blended else None,
            )
        )

    def _focus(self, item: WorkItem) -> None:
        position = self.positions[item.id]
        if position + 1 >= self.current_index:
            self.current_index = position + 1
            self.current_title = item.title

    def on_item_event(self, event: ItemEvent) -> None:
        self._focus(event.item)
        self.emit(
            event.message,
            is_retrying=event.is_retrying,
            retry_count=event.retry_count,
            next_retry_in_ms=event.next_retry_in_ms,
        )

    def complete(self, item: WorkItem, result: ItemResult) -> None:
        self.finished[self.positions[item.id]] = result
        while len(self.released) in self.finished:
            position = len(self.released)
            released = self.finished[position]
            self.released.append(released)
            if isinstance(released, FallbackResult):
                self.failed_ids.append(released.item_id)
            self._focus(self.items[position])
            self.emit(
                progress_messages.completion_message(
                    self.items[position], isinstance(released, SuccessResult)
                ),
                retry_count=released.retry_count,
            )

    def ordered_results(self) -> list[ItemResult]:
        return [self.finished[position] for position in sorted(self.finished)]


class ProgressiveFeedbackEngine:
    """Runs an ordered list of work items through the analysis provider.

    Every item ends with exactly one result (success or fallback) unless the
    run is cancelled first. Cancellation ends the run normally with a
    partial :class:`RunOutcome`.
    """

    def __init__(
        self,
        provider: AnalysisProvider,
        options: EngineOptions | None = None,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self.provider = provider
        self.options = options or EngineOptions()
        self.rng = rng

    @staticmethod
    def _validate(
        items: Sequence[WorkItem],
        mode: ProcessingMode,
        perspectives: Sequence[Perspective],
    ) -> None:
        if not items:
            raise EngineUsageError("At least one work item is required.")
        seen: set[str] = set()
        for item in items:
            if item.id in seen:
                raise EngineUsageError(f"Duplicate work item id: '{item.id}'")
            seen.add(item.id)
        if not perspectives:
            raise EngineUsageError("At least one perspective is required.")
        if mode is not ProcessingMode.BLENDED and len(perspectives) > 1:
            logger.warning(
                "Several perspectives given for a non-blended run; using the first.",
                mode=mode.value,
                used=perspectives[0].name,
            )

    async def run(
        self,
        items: Sequence[WorkItem],
        mode: ProcessingMode | str,
        participant_data: Mapping[str, Participant] | None,
        on_progress: ProgressSink | None,
        *,
        perspectives: Sequence[Perspective],
        cancel_token: CancellationToken | None = None,
    ) -> RunOutcome:
        items = list(items)
        try:
            mode = ProcessingMode(mode)
        except ValueError:
            raise EngineUsageError(f"Unknown processing mode: '{mode}'") from None
        perspectives = list(perspectives)
        self._validate(items, mode, perspectives)
        token = cancel_token or CancellationToken()
        token.claim()
        participants = dict(participant_data or {})

        run_id = f"progressive_feedback_{uuid.uuid4().hex[:12]}"
        log = logger.bind(run_id=run_id, mode=mode.value)
        processor = ItemProcessor(self.provider, perspectives)
        names = processor.perspective_names(mode)
        tracker = _ProgressTracker(items, mode, names, on_progress)
        controller = RetryController(
            processor,
            retry_attempts=self.options.retry_attempts,
            base_delay=self.options.base_delay,
            exponential_backoff=self.options.exponential_backoff,
            on_event=tracker.on_item_event,
            rng=self.rng,
        )
        usage = getattr(self.provider, "usage", None)
        usage_baseline = usage.snapshot() if usage is not None else None

        log.info(
            "Starting progressive feedback run.",
            items=len(items),
            perspectives=list(names),
            max_concurrent=self.options.max_concurrent,
        )

        if self.options.max_concurrent == 1:
            outcomes = await self._run_sequential(
                items, mode, participants, token, controller, tracker
            )
        else:
            outcomes = await self._run_pooled(
                items, mode, participants, token, controller, tracker
            )

        results = tracker.ordered_results()
        cancelled = token.is_cancelled and len(results) < len(items)
        attempted = sum(1 for outcome in outcomes if outcome.attempts > 0)
        unattempted = len(items) - attempted
        interrupted = attempted - len(results)

        aggregator = ResultAggregator(
            self.provider, synthesize=self.options.synthesize_summary
        )
        summary = await aggregator.summarize(
            results,
            total_items=len(items),
            mode=mode,
            perspectives=processor.perspectives_for(mode),
            partial=cancelled,
            unattempted=unattempted,
            interrupted=interrupted,
            cancel_token=None if cancelled else token,
        )

        stats = self._stats(items, mode, names, results, outcomes, attempted)
        if usage is not None and usage_baseline is not None:
            stats = stats.model_copy(
                update={"token_usage": usage.since(usage_baseline)}
            )

        if cancelled:
            tracker.current_title = "Stopped"
            tracker.emit(
                progress_messages.stopped_message(
                    len(results), unattempted, len(items), interrupted
                )
            )
        else:
            tracker.current_index = len(items)
            tracker.current_title = "Complete"
            tracker.emit(
                progress_messages.final_message(
                    mode,
                    stats.successful_chunks,
                    len(items),
                    stats.rate_limited_chunks,
                    len(names),
                ),
                percent=100,
            )

        log.info(
            "Progressive feedback run finished.",
            cancelled=cancelled,
            results=len(results),
            successes=stats.successful_chunks,
            fallbacks=stats.permanently_failed_chunks,
            retries=stats.total_retry_attempts,
            summary_origin=summary.origin,
        )
        return RunOutcome(
            run_id=run_id,
            results=results,
            summary=summary,
            processing_stats=stats,
            partial=cancelled,
            cancelled=cancelled,
        )

    async def _run_sequential(
        self,
        items: list[WorkItem],
        mode: ProcessingMode,
        participants: dict[str, Participant],
        token: CancellationToken,
        controller: RetryController,
        tracker: _ProgressTracker,
    ) -> list[ItemOutcome]:
        outcomes: list[ItemOutcome] = []
        for position, item in enumerate(items):
            if token.is_cancelled:
                break
            outcome = await controller.run(item, mode, participants, token)
            outcomes.append(outcome)
            if outcome.result is None:
                break
            tracker.complete(item, outcome.result)
            if position < len(items) - 1:
                delay = self.options.delay_after(mode, outcome.retries)
                if not await token.sleep(delay):
                    logger.info(
                        "Cancelled during inter-item delay.", after_item=item.id
                    )
                    break
        return outcomes

    async def _run_pooled(
        self,
        items: list[WorkItem],
        mode: ProcessingMode,
        participants: dict[str, Participant],
        token: CancellationToken,
        controller: RetryController,
        tracker: _ProgressTracker,
    ) -> list[ItemOutcome]:
        semaphore = asyncio.Semaphore(self.options.max_concurrent)
        last = len(items) - 1

        async def _worker(position: int, item: WorkItem) -> ItemOutcome | None:
            async with semaphore:
                if token.is_cancelled:
                    return None
                outcome = await controller.run(item, mode, participants, token)
                if outcome.result is None:
                    return outcome
                tracker.complete(item, outcome.result)
                if position < last:
                    await token.sleep(self.options.delay_after(mode, outcome.retries))
                return outcome

        gathered = await asyncio.gather(
            *(_worker(position, item) for position, item in enumerate(items))
        )
        return [outcome for outcome in gathered if outcome is not None]

    @staticmethod
    def _stats(
        items: Sequence[WorkItem],
        mode: ProcessingMode,
        names: tuple[str, ...],
        results: Sequence[ItemResult],
        outcomes: Sequence[ItemOutcome],
        attempted: int,
    ) -> ProcessingStats:
        fallbacks = [r for r in results if isinstance(r, FallbackResult)]
        rate_limited = sum(
            1 for r in fallbacks if r.classification is FailureClassification.RATE_LIMITED
        )
        return ProcessingStats(
            total_items=len(items),
            attempted_items=attempted,
            skipped_items=len(items) - attempted,
            interrupted_items=attempted - len(results),
            successful_chunks=sum(1 for r in results if isinstance(r, SuccessResult)),
            rate_limited_chunks=rate_limited,
            other_failed_chunks=len(fallbacks) - rate_limited,
            permanently_failed_chunks=len(fallbacks),
            total_retry_attempts=sum(outcome.retries for outcome in outcomes),
            processing_type=mode,
            perspective_count=len(names),
        )
