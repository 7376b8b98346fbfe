# processing/fallbacks.py
"""Informative placeholder results for items that permanently failed."""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from config import settings
from core.llm_interface import count_tokens
from models import (
    FEEDBACK_CATEGORIES,
    FailureClassification,
    FallbackResult,
    Perspective,
    ProcessingMode,
    WorkItem,
)
from processing.backoff import ErrorClassification, ErrorKind

logger = structlog.get_logger(__name__)

_ERROR_LABELS = {
    FailureClassification.RATE_LIMITED: "rate limit",
    FailureClassification.CONTENT_TOO_LARGE: "token limit",
    FailureClassification.BLEND_FAILED: "blending failed",
    FailureClassification.OTHER: "processing error",
}

_NEXT_STEPS = {
    FailureClassification.RATE_LIMITED: (
        "Retry processing during off-peak hours when API limits are less restrictive"
    ),
    FailureClassification.CONTENT_TOO_LARGE: (
        "Consider splitting this section into smaller parts"
    ),
    FailureClassification.BLEND_FAILED: (
        "Try individual perspectives on this section instead of a blend"
    ),
    FailureClassification.OTHER: "Manual review recommended for this section",
}

BLEND_MANTRA = "Multiple perspectives reveal the full picture."


def failure_classification(
    classification: ErrorClassification | None, mode: ProcessingMode
) -> FailureClassification:
    """Map the last provider error of an item onto its fallback classification."""
    kind = classification.kind if classification else ErrorKind.OTHER
    if kind is ErrorKind.RATE_LIMIT:
        return FailureClassification.RATE_LIMITED
    if kind is ErrorKind.CONTENT_TOO_LARGE:
        return FailureClassification.CONTENT_TOO_LARGE
    if mode is ProcessingMode.BLENDED:
        return FailureClassification.BLEND_FAILED
    return FailureClassification.OTHER


def _size_facts(item: WorkItem) -> list[str]:
    length = len(item.content)
    minutes = round(length / settings.CHARS_PER_SCREEN_MINUTE)
    tokens = count_tokens(item.content, settings.FEEDBACK_MODEL)
    shape = (
        "substantial and complex"
        if length > settings.COMPLEX_SECTION_CHARS
        else "focused and concise"
    )
    scope = (
        "major sequence" if length > settings.MAJOR_SEQUENCE_CHARS else "story beat"
    )
    cast = ", ".join(item.participants) if item.participants else "none identified"
    return [
        f"Section contains {minutes} estimated minutes of content (~{tokens} tokens)",
        f"Characters present: {cast}",
        f"{len(item.participants)} characters interact in this section",
        f"Content appears {shape}",
        f"Section is part of a larger {scope}",
    ]


def _bullets(lines: Sequence[str]) -> str:
    return "\n".join(f"• {line}" for line in lines)


def build_fallback(
    item: WorkItem,
    mode: ProcessingMode,
    perspectives: Sequence[Perspective],
    classification: ErrorClassification | None,
    retry_count: int,
) -> FallbackResult:
    """Build the :class:`FallbackResult` shown in place of analysis for ``item``.

    The text is meant to be displayed to an end user as-is, so it explains
    what went wrong, what is known about the section, and what to do next.
    """
    failure = failure_classification(classification, mode)
    label = _ERROR_LABELS[failure]
    detail = classification.message if classification else "Unknown error occurred"
    facts = _size_facts(item)
    next_step = _NEXT_STEPS[failure]
    names = tuple(p.name for p in perspectives)

    if mode is ProcessingMode.BLENDED:
        voice = "Blended Analysis"
        notes_voice = "Blended Notes"
        mantra = BLEND_MANTRA
        issue = [f"Failed to blend insights from: {', '.join(names)}", detail]
    else:
        lead = perspectives[0] if perspectives else None
        voice = f"{lead.name} Analysis" if lead else "Analysis"
        notes_voice = f"{lead.name} Notes" if lead else "Notes"
        mantra = (lead.mantra if lead else None) or settings.DEFAULT_MANTRA
        issue = [detail]

    placeholder = (
        f"## {voice} - {item.title}\n\n"
        f"### Processing Issue ({label})\n{_bullets(issue)}\n\n"
        f"### What We Know\n{_bullets(facts)}\n\n"
        f"### Recommendation\n{_bullets([next_step])}\n\n"
        f'"{mantra}"'
    )
    freeform = (
        f"## {notes_voice} - {item.title}\n\n"
        f"### Processing Issue\n{_bullets(issue)}\n\n"
        f"### Next Steps\n{_bullets([next_step, 'Section merits a detailed read by hand'])}\n\n"
        f'"{mantra}"'
    )

    logger.info(
        "Synthesized fallback result.",
        item_id=item.id,
        classification=failure.value,
        retries=retry_count,
    )
    return FallbackResult(
        item_id=item.id,
        item_title=item.title,
        source=mode,
        perspectives=names,
        retry_count=retry_count,
        categories={
            category: f"{label} - manual review needed"
            for category in FEEDBACK_CATEGORIES
        },
        placeholder=placeholder,
        freeform_placeholder=freeform,
        classification=failure,
        detail=detail,
    )
