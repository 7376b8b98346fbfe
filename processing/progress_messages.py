# processing/progress_messages.py
"""Human-readable status lines for each progress emission, keyed by mode."""

from __future__ import annotations

from collections.abc import Sequence

from models import ProcessingMode, WorkItem


def attempt_message(
    item: WorkItem,
    mode: ProcessingMode,
    perspective_names: Sequence[str],
    retry_count: int,
) -> str:
    retry_text = f" (retry {retry_count})" if retry_count > 0 else ""
    lead = perspective_names[0] if perspective_names else "mentor"

    if mode is ProcessingMode.SINGLE:
        if retry_count:
            return f"Retrying {lead} analysis for scene{retry_text}"
        return f"Analyzing scene with {lead}'s expertise"
    if mode is ProcessingMode.BLENDED:
        if retry_count:
            return f"Retrying blended analysis for {item.title}{retry_text}"
        return f"Blending insights from {len(perspective_names)} perspectives for {item.title}"
    if retry_count:
        return f"Retrying {lead} analysis for {item.title}{retry_text}"
    return f"Analyzing {item.title} with {lead}"


def retry_message(reason: str, delay_seconds: float) -> str:
    return f"{reason} - retrying in {round(delay_seconds)}s..."


def retry_reason(kind_value: str) -> str:
    if kind_value == "rate_limit":
        return "Rate limit hit"
    return "Provider error"


def completion_message(item: WorkItem, succeeded: bool) -> str:
    if succeeded:
        return f"Finished {item.title}"
    return f"{item.title} could not be analyzed - fallback notes added"


def final_message(
    mode: ProcessingMode,
    successful: int,
    total: int,
    rate_limited: int,
    perspective_count: int = 1,
) -> str:
    """Status line for the last snapshot of a completed run."""
    rate_text = (
        f", {rate_limited} used fallback due to rate limits" if rate_limited else ""
    )
    if mode is ProcessingMode.BLENDED:
        return (
            f"Blended analysis complete! {successful}/{total} sections analyzed "
            f"from {perspective_count} perspectives{rate_text}"
        )
    base = f"Analysis complete! {successful}/{total}"
    if mode is ProcessingMode.SINGLE:
        return f"{base} scene analyzed with AI feedback{rate_text}"
    return f"{base} chunks with AI feedback{rate_text}"


def stopped_message(
    completed: int, unattempted: int, total: int, interrupted: int = 0
) -> str:
    """Status line for the last snapshot of a cancelled run."""
    text = f"Analysis stopped. {completed}/{total} sections completed, "
    if interrupted:
        text += f"{interrupted} interrupted, "
    return text + f"{unattempted} never attempted"
