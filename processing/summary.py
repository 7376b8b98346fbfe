# processing/summary.py
"""Run-level summary built from accumulated item results."""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import structlog

from config import settings
from core.llm_interface import truncate_text_by_tokens
from models import (
    FailureClassification,
    FallbackResult,
    GenerationDescriptor,
    ItemResult,
    Perspective,
    ProcessingMode,
    ResponseShape,
    SuccessResult,
    Summary,
)
from processing.errors import EngineUsageError
from prompt_renderer import render_prompt

if TYPE_CHECKING:  # pragma: no cover - type hint import
    from core.llm_interface import AnalysisProvider
    from processing.cancellation import CancellationToken

logger = structlog.get_logger(__name__)

MAX_LIST_ENTRIES = 5
_JSON_BLOCK_RE = re.compile(r"\{.*\}", re.DOTALL)


def _type_label(mode: ProcessingMode) -> str:
    if mode is ProcessingMode.SINGLE:
        return "scene"
    if mode is ProcessingMode.BLENDED:
        return "blended sections"
    return "sections"


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ValueError(f"Expected a list of strings, got {type(value).__name__}")
    return [str(v).strip() for v in value if str(v).strip()][:MAX_LIST_ENTRIES]


def parse_summary_payload(text: str) -> dict[str, Any]:
    """Parse the provider's overview response, tolerating surrounding prose."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_BLOCK_RE.search(text or "")
        if not match:
            raise ValueError("No JSON object found in summary response") from None
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Unparseable summary response: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("Summary response is not a JSON object")
    return data


def summary_from_payload(data: dict[str, Any]) -> Summary:
    overall = str(data.get("overall_assessment") or "").strip()
    if not overall:
        raise ValueError("Summary response has no overall_assessment")
    return Summary(
        overall_assessment=overall,
        strengths=_string_list(data.get("strengths")),
        issues=_string_list(data.get("issues")),
        recommendations=_string_list(data.get("recommendations")),
        origin="synthesized",
    )


class ResultAggregator:
    """Produce the :class:`Summary` for a run.

    A provider-synthesized overview is tried when a provider is available,
    at least one item succeeded and the run was not stopped early. The
    template summary is used otherwise, and whenever synthesis fails.
    """

    def __init__(
        self,
        provider: AnalysisProvider | None = None,
        *,
        synthesize: bool = True,
    ) -> None:
        self.provider = provider
        self.synthesize = synthesize

    async def summarize(
        self,
        results: Sequence[ItemResult],
        *,
        total_items: int,
        mode: ProcessingMode,
        perspectives: Sequence[Perspective],
        partial: bool = False,
        unattempted: int = 0,
        interrupted: int = 0,
        cancel_token: CancellationToken | None = None,
    ) -> Summary:
        successes = [r for r in results if isinstance(r, SuccessResult)]
        if self.provider is not None and self.synthesize and successes and not partial:
            try:
                return await self.synthesized_summary(
                    successes,
                    total_items=total_items,
                    mode=mode,
                    perspectives=perspectives,
                    cancel_token=cancel_token,
                )
            except Exception as exc:
                logger.warning(
                    "Synthesized summary failed; using template summary.",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        return self.template_summary(
            results,
            total_items=total_items,
            mode=mode,
            perspectives=perspectives,
            partial=partial,
            unattempted=unattempted,
            interrupted=interrupted,
        )

    async def synthesized_summary(
        self,
        successes: Sequence[SuccessResult],
        *,
        total_items: int,
        mode: ProcessingMode,
        perspectives: Sequence[Perspective],
        cancel_token: CancellationToken | None = None,
    ) -> Summary:
        if self.provider is None:
            raise EngineUsageError("Synthesized summary requires an analysis provider")
        chosen = perspectives if mode is ProcessingMode.BLENDED else perspectives[:1]
        names = tuple(p.name for p in chosen)
        if mode is ProcessingMode.BLENDED:
            voice = f"a blended panel of screenplay mentors ({', '.join(names)})"
        else:
            voice = names[0] if names else "a screenplay mentor"

        per_section = max(settings.SUMMARY_MAX_INPUT_TOKENS // len(successes), 1)
        sections = [
            {
                "title": result.item_title,
                "feedback": truncate_text_by_tokens(
                    result.structured, settings.SUMMARY_MODEL, per_section
                ),
            }
            for result in successes
        ]
        payload = render_prompt(
            "run_overview.j2",
            {
                "voice": voice,
                "analyzed_count": len(successes),
                "total_count": total_items,
                "sections": sections,
            },
        )
        descriptor = GenerationDescriptor(
            mode=mode,
            perspectives=names,
            response_shape=ResponseShape.JSON,
            temperature=settings.TEMPERATURE_SUMMARY,
        )
        call = self.provider.generate(payload, descriptor, cancel_token)
        text = await (cancel_token.race(call) if cancel_token else call)
        summary = summary_from_payload(parse_summary_payload(text))
        logger.info("Synthesized run summary.", sections=len(successes))
        return summary

    def template_summary(
        self,
        results: Sequence[ItemResult],
        *,
        total_items: int,
        mode: ProcessingMode,
        perspectives: Sequence[Perspective],
        partial: bool = False,
        unattempted: int = 0,
        interrupted: int = 0,
    ) -> Summary:
        """Deterministic summary derived from result counts."""
        label = _type_label(mode)
        successes = [r for r in results if isinstance(r, SuccessResult)]
        fallbacks = [r for r in results if isinstance(r, FallbackResult)]
        rate_limited = [
            r for r in fallbacks if r.classification is FailureClassification.RATE_LIMITED
        ]
        other_failed = [
            r for r in fallbacks if r.classification is not FailureClassification.RATE_LIMITED
        ]

        if mode is ProcessingMode.BLENDED:
            summary = self._blended(
                label, total_items, successes, fallbacks, perspectives, partial
            )
        else:
            summary = self._single_voice(
                label,
                total_items,
                mode,
                successes,
                rate_limited,
                other_failed,
                results,
                perspectives[0].name if perspectives else "the mentor",
                partial,
            )

        if not partial:
            return summary

        counts = f"{len(results)} of {total_items} {label} completed"
        if interrupted:
            counts += f", {interrupted} interrupted in progress"
        stopped = (
            f"Analysis was stopped before completion: {counts} and "
            f"{unattempted} never attempted. "
        )
        stop_issues = [
            f"{unattempted} {label} were never attempted because the run was stopped"
        ]
        if interrupted:
            stop_issues.append(
                f"{interrupted} {label} were interrupted mid-analysis and have no feedback"
            )
        return Summary(
            overall_assessment=stopped + summary.overall_assessment,
            strengths=summary.strengths,
            issues=[*stop_issues, *summary.issues],
            recommendations=[
                "Re-run the remaining sections to complete the analysis",
                *summary.recommendations,
            ],
            origin="template",
        )

    @staticmethod
    def _single_voice(
        label: str,
        total_items: int,
        mode: ProcessingMode,
        successes: Sequence[SuccessResult],
        rate_limited: Sequence[FallbackResult],
        other_failed: Sequence[FallbackResult],
        results: Sequence[ItemResult],
        lead: str,
        partial: bool = False,
    ) -> Summary:
        overall = f"{len(successes)} {label} received full feedback from {lead}"
        if not partial:
            success_rate = round(len(successes) / total_items * 100)
            overall = (
                f"Script processed in {total_items} {label} with {success_rate}% "
                f"AI analysis success rate. {overall}"
            )
        if rate_limited:
            overall += f", {len(rate_limited)} {label} hit API rate limits"
        if other_failed:
            overall += f", {len(other_failed)} {label} had processing issues"
        overall += "."

        if successes:
            strengths = [
                f"{len(successes)} {label} analyzed with AI-powered feedback from {lead}",
                f"Expertise of {lead} applied systematically",
                "Progressive processing allows for real-time review of completed sections",
            ]
        else:
            strengths = ["Partial processing completed - manual review recommended"]

        issues: list[str] = []
        if rate_limited:
            issues.append(
                f"{len(rate_limited)} {label} hit API rate limits and used fallback analysis"
            )
        if other_failed:
            issues.append(
                f"{len(other_failed)} {label} encountered processing issues and need manual review"
            )
        if results and not successes:
            issues.append(
                "All sections encountered processing issues - manual analysis recommended"
            )

        recommendations: list[str] = []
        if successes:
            recommendations.append(
                "Review completed AI analysis for specific script improvements"
            )
        if rate_limited:
            recommendations.append(
                "Retry rate-limited sections during off-peak hours for full AI analysis"
            )
        if other_failed:
            recommendations.append(
                "Manual analysis recommended for sections that encountered processing issues"
            )
        if mode is ProcessingMode.SINGLE:
            recommendations.append(
                "Consider chunking longer scripts for more detailed analysis"
            )
        else:
            recommendations.append(
                "Progressive analysis allows for iterative improvements"
            )

        return Summary(
            overall_assessment=overall,
            strengths=strengths,
            issues=issues,
            recommendations=recommendations,
            origin="template",
        )

    @staticmethod
    def _blended(
        label: str,
        total_items: int,
        successes: Sequence[SuccessResult],
        fallbacks: Sequence[FallbackResult],
        perspectives: Sequence[Perspective],
        partial: bool = False,
    ) -> Summary:
        names = ", ".join(p.name for p in perspectives)
        scope = "" if partial else f" across {total_items} {label}"
        overall = (
            f"Blended analysis from {len(perspectives)} perspectives ({names})"
            f"{scope}. {len(successes)}/{total_items} "
            "sections successfully analyzed with multi-perspective insights."
        )
        strengths = [
            f"Multi-perspective analysis combining: {names}",
            "Balanced feedback addressing multiple aspects of storytelling",
        ]
        if successes:
            strengths.append(f"{len(successes)} sections benefit from blended insights")

        issues: list[str] = []
        if fallbacks:
            issues.append(f"{len(fallbacks)} sections could not complete blended analysis")
        if fallbacks and not successes:
            issues.append(
                "All sections encountered blending issues - try individual perspectives"
            )

        recommendations = [
            "Review blended feedback for consensus recommendations",
            "Use blended insights to identify areas where perspectives agree or disagree",
        ]
        if fallbacks:
            recommendations.insert(
                1, "Consider individual perspectives for sections that failed blending"
            )

        return Summary(
            overall_assessment=overall,
            strengths=strengths,
            issues=issues,
            recommendations=recommendations,
            origin="template",
        )
