# processing/item_processor.py
"""Single provider-facing processor for single, chunked and blended items."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

import structlog

from config import settings
from models import (
    FEEDBACK_CATEGORIES,
    GenerationDescriptor,
    Participant,
    Perspective,
    ProcessingMode,
    ResponseShape,
    SuccessResult,
    WorkItem,
)
from processing.errors import EngineUsageError, ProviderError
from prompt_renderer import render_prompt

if TYPE_CHECKING:  # pragma: no cover - type hint import
    from core.llm_interface import AnalysisProvider
    from processing.cancellation import CancellationToken

logger = structlog.get_logger(__name__)

ANALYZED = "Analyzed"
REVIEW_NEEDED = "Review needed"
BLENDED_ANALYSIS = "Blended analysis"


def select_participants(
    item: WorkItem, participant_data: Mapping[str, Participant]
) -> dict[str, Participant]:
    """Return the participants this item names, in the item's order."""
    return {
        name: participant_data[name]
        for name in item.participants
        if name in participant_data
    }


def build_participant_context(
    item: WorkItem, participant_data: Mapping[str, Participant]
) -> str:
    """Plain-text character block for the provider payload."""
    known = select_participants(item, participant_data)
    lines: list[str] = []
    for name in item.participants:
        participant = known.get(name)
        if participant and participant.notes:
            lines.append(f"- {name}: {'; '.join(participant.notes)}")
        else:
            lines.append(f"- {name}")
    return "\n".join(lines) if lines else "- No named characters"


def blend_influences(perspectives: Sequence[Perspective]) -> list[dict[str, Any]]:
    """Each perspective with its weight expressed as a whole percentage."""
    total = sum(p.weight for p in perspectives)
    return [
        {"perspective": p, "influence": round(p.weight / total * 100)}
        for p in perspectives
    ]


def extract_categories(structured: str, mode: ProcessingMode) -> dict[str, str]:
    """Mark each feedback category covered when the text has a heading for it."""
    found = ANALYZED if mode is not ProcessingMode.BLENDED else BLENDED_ANALYSIS
    categories: dict[str, str] = {}
    for category in FEEDBACK_CATEGORIES:
        pattern = rf"\b{category}\b"
        if re.search(pattern, structured, flags=re.IGNORECASE):
            categories[category] = found
        else:
            categories[category] = REVIEW_NEEDED
    return categories


class ItemProcessor:
    """Turn one work item into a :class:`SuccessResult` via the provider.

    The mode decides what is asked of the provider. Provider failures are
    re-raised untouched so the retry controller can classify them.
    """

    def __init__(
        self,
        provider: AnalysisProvider,
        perspectives: Sequence[Perspective],
    ) -> None:
        if not perspectives:
            raise EngineUsageError("At least one perspective is required.")
        self.provider = provider
        self.perspectives = tuple(perspectives)

    def perspectives_for(self, mode: ProcessingMode) -> tuple[Perspective, ...]:
        if mode is ProcessingMode.BLENDED:
            return self.perspectives
        return self.perspectives[:1]

    def perspective_names(self, mode: ProcessingMode) -> tuple[str, ...]:
        return tuple(p.name for p in self.perspectives_for(mode))

    def _render(
        self,
        item: WorkItem,
        mode: ProcessingMode,
        shape: ResponseShape,
        participant_context: str,
    ) -> str:
        if mode is ProcessingMode.BLENDED:
            return render_prompt(
                "blended_feedback.j2",
                {
                    "blend": blend_influences(self.perspectives),
                    "item": item,
                    "participant_context": participant_context,
                    "response_shape": shape.value,
                },
            )
        return render_prompt(
            "item_feedback.j2",
            {
                "perspective": self.perspectives[0],
                "mode": mode.value,
                "item": item,
                "participant_context": participant_context,
                "response_shape": shape.value,
            },
        )

    def _temperature(self, mode: ProcessingMode) -> float:
        chosen = self.perspectives_for(mode)
        temps = [p.temperature for p in chosen if p.temperature is not None]
        if not temps:
            return settings.TEMPERATURE_FEEDBACK
        return sum(temps) / len(temps)

    async def _generate(
        self,
        payload: str,
        descriptor: GenerationDescriptor,
        cancel_token: CancellationToken | None,
    ) -> str:
        if cancel_token is None:
            text = await self.provider.generate(payload, descriptor, None)
        else:
            cancel_token.raise_if_cancelled()
            text = await cancel_token.race(
                self.provider.generate(payload, descriptor, cancel_token)
            )
        if not text or not text.strip():
            raise ProviderError(
                f"Empty response from provider for {descriptor.response_shape.value} feedback"
            )
        return text.strip()

    async def process(
        self,
        item: WorkItem,
        mode: ProcessingMode,
        participant_data: Mapping[str, Participant],
        *,
        retry_count: int = 0,
        cancel_token: CancellationToken | None = None,
    ) -> SuccessResult:
        """Request structured and freeform renderings for ``item``."""
        names = self.perspective_names(mode)
        participant_context = build_participant_context(item, participant_data)
        temperature = self._temperature(mode)
        shapes = (ResponseShape.STRUCTURED, ResponseShape.FREEFORM)

        logger.debug(
            "Processing item.",
            item_id=item.id,
            mode=mode.value,
            attempt=retry_count + 1,
            perspectives=list(names),
        )

        tasks = [
            asyncio.ensure_future(
                self._generate(
                    self._render(item, mode, shape, participant_context),
                    GenerationDescriptor(
                        mode=mode,
                        perspectives=names,
                        response_shape=shape,
                        temperature=temperature,
                    ),
                    cancel_token,
                )
            )
            for shape in shapes
        ]
        try:
            structured, freeform = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        return SuccessResult(
            item_id=item.id,
            item_title=item.title,
            source=mode,
            perspectives=names,
            retry_count=retry_count,
            categories=extract_categories(structured, mode),
            structured=structured,
            freeform=freeform,
        )
