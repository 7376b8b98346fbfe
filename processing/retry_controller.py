# processing/retry_controller.py
"""Per-item retry state machine.

State diagram::

    PENDING -> ATTEMPTING -> SUCCEEDED
                   |   \\-> FAILED
                   v
               RETRYING -> ATTEMPTING
    CANCELLED (from any non-terminal state)
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum

import structlog

from models import ItemResult, Participant, ProcessingMode, WorkItem
from processing import progress_messages
from processing.backoff import ErrorClassification, classify_error, compute_retry_delay
from processing.cancellation import CancellationToken
from processing.errors import InvalidTransitionError, OperationCancelledError
from processing.fallbacks import build_fallback
from processing.item_processor import ItemProcessor

logger = structlog.get_logger(__name__)


class ItemState(str, Enum):
    PENDING = "pending"
    ATTEMPTING = "attempting"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ItemStateMachine:
    """Tracks one work item's state and rejects illegal transitions."""

    TRANSITIONS: dict[ItemState, set[ItemState]] = {
        ItemState.PENDING: {ItemState.ATTEMPTING, ItemState.CANCELLED},
        ItemState.ATTEMPTING: {
            ItemState.SUCCEEDED,
            ItemState.RETRYING,
            ItemState.FAILED,
            ItemState.CANCELLED,
        },
        ItemState.RETRYING: {ItemState.ATTEMPTING, ItemState.CANCELLED},
        ItemState.SUCCEEDED: set(),  # Terminal state
        ItemState.FAILED: set(),  # Terminal state
        ItemState.CANCELLED: set(),  # Terminal state
    }

    TERMINAL_STATES = {ItemState.SUCCEEDED, ItemState.FAILED, ItemState.CANCELLED}

    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        self.state = ItemState.PENDING
        self.history: list[ItemState] = [ItemState.PENDING]

    @classmethod
    def can_transition(cls, from_state: ItemState, to_state: ItemState) -> bool:
        return to_state in cls.TRANSITIONS.get(from_state, set())

    def transition(self, to_state: ItemState) -> None:
        if not self.can_transition(self.state, to_state):
            raise InvalidTransitionError(
                f"Invalid state transition for item '{self.item_id}': "
                f"{self.state.value} -> {to_state.value}"
            )
        self.state = to_state
        self.history.append(to_state)

    @property
    def is_terminal(self) -> bool:
        return self.state in self.TERMINAL_STATES


@dataclass(frozen=True)
class ItemEvent:
    """A progress-worthy moment in one item's lifecycle."""

    item: WorkItem
    message: str
    is_retrying: bool = False
    retry_count: int = 0
    next_retry_in_ms: int | None = None


@dataclass
class ItemOutcome:
    """What the controller produced for one item.

    ``result`` is ``None`` only when the item was cancelled.
    """

    item: WorkItem
    state: ItemState
    result: ItemResult | None = None
    attempts: int = 0
    retries: int = 0
    errors: list[ErrorClassification] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.state is ItemState.CANCELLED


class RetryController:
    """Drive one work item through the processor with bounded retries."""

    def __init__(
        self,
        processor: ItemProcessor,
        *,
        retry_attempts: int,
        base_delay: float,
        exponential_backoff: bool = True,
        on_event: Callable[[ItemEvent], None] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.processor = processor
        self.retry_attempts = retry_attempts
        self.base_delay = base_delay
        self.exponential_backoff = exponential_backoff
        self.on_event = on_event
        self.rng = rng

    def _emit(self, event: ItemEvent) -> None:
        if self.on_event is not None:
            self.on_event(event)

    def _cancelled(
        self, machine: ItemStateMachine, outcome: ItemOutcome
    ) -> ItemOutcome:
        machine.transition(ItemState.CANCELLED)
        outcome.state = machine.state
        logger.info(
            "Item cancelled.",
            item_id=outcome.item.id,
            attempts=outcome.attempts,
            retries=outcome.retries,
        )
        return outcome

    async def run(
        self,
        item: WorkItem,
        mode: ProcessingMode,
        participant_data: Mapping[str, Participant],
        cancel_token: CancellationToken,
    ) -> ItemOutcome:
        machine = ItemStateMachine(item.id)
        outcome = ItemOutcome(item=item, state=machine.state)
        names = self.processor.perspective_names(mode)

        while True:
            if cancel_token.is_cancelled:
                return self._cancelled(machine, outcome)

            machine.transition(ItemState.ATTEMPTING)
            outcome.attempts += 1
            self._emit(
                ItemEvent(
                    item=item,
                    message=progress_messages.attempt_message(
                        item, mode, names, outcome.retries
                    ),
                    is_retrying=outcome.retries > 0,
                    retry_count=outcome.retries,
                )
            )

            try:
                result = await self.processor.process(
                    item,
                    mode,
                    participant_data,
                    retry_count=outcome.retries,
                    cancel_token=cancel_token,
                )
            except OperationCancelledError:
                return self._cancelled(machine, outcome)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                classification = classify_error(exc)
                outcome.errors.append(classification)
                if cancel_token.is_cancelled:
                    return self._cancelled(machine, outcome)

                if classification.retryable and outcome.retries < self.retry_attempts:
                    machine.transition(ItemState.RETRYING)
                    outcome.retries += 1
                    delay = compute_retry_delay(
                        outcome.retries,
                        classification,
                        self.base_delay,
                        self.exponential_backoff,
                        rng=self.rng,
                    )
                    logger.warning(
                        "Provider call failed; retrying.",
                        item_id=item.id,
                        classification=classification.kind.value,
                        retry=outcome.retries,
                        max_retries=self.retry_attempts,
                        delay_seconds=round(delay, 2),
                        error=classification.message,
                    )
                    self._emit(
                        ItemEvent(
                            item=item,
                            message=progress_messages.retry_message(
                                progress_messages.retry_reason(
                                    classification.kind.value
                                ),
                                delay,
                            ),
                            is_retrying=True,
                            retry_count=outcome.retries,
                            next_retry_in_ms=round(delay * 1000),
                        )
                    )
                    if not await cancel_token.sleep(delay):
                        return self._cancelled(machine, outcome)
                    continue

                machine.transition(ItemState.FAILED)
                logger.error(
                    "Item permanently failed.",
                    item_id=item.id,
                    classification=classification.kind.value,
                    retries=outcome.retries,
                    error=classification.message,
                )
                outcome.state = machine.state
                outcome.result = build_fallback(
                    item,
                    mode,
                    self.processor.perspectives_for(mode),
                    classification,
                    outcome.retries,
                )
                return outcome

            machine.transition(ItemState.SUCCEEDED)
            outcome.state = machine.state
            outcome.result = result
            logger.info(
                "Item succeeded.",
                item_id=item.id,
                attempts=outcome.attempts,
                retries=outcome.retries,
            )
            return outcome
