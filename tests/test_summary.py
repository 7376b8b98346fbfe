import json

import pytest
from conftest import STRUCTURED_TEXT, ScriptedProvider

from models import (
    FailureClassification,
    FallbackResult,
    ProcessingMode,
    ResponseShape,
    SuccessResult,
)
from processing.errors import EngineUsageError
from processing.summary import ResultAggregator, parse_summary_payload


def _success(n: int, mode=ProcessingMode.CHUNKED) -> SuccessResult:
    return SuccessResult(
        item_id=f"s{n}",
        item_title=f"Scene {n}",
        source=mode,
        structured=STRUCTURED_TEXT,
        freeform="notes",
    )


def _fallback(n: int, classification: FailureClassification) -> FallbackResult:
    return FallbackResult(
        item_id=f"s{n}",
        item_title=f"Scene {n}",
        source=ProcessingMode.CHUNKED,
        placeholder="placeholder",
        classification=classification,
    )


SUMMARY_JSON = json.dumps(
    {
        "overall_assessment": "A lean thriller with a soft middle.",
        "strengths": ["Tight opening", "Distinct voices"],
        "issues": ["Act two sags"],
        "recommendations": ["Merge scenes 3 and 4"],
    }
)


def test_template_summary_counts_outcomes(perspective):
    results = [
        _success(1),
        _success(2),
        _fallback(3, FailureClassification.RATE_LIMITED),
        _fallback(4, FailureClassification.CONTENT_TOO_LARGE),
    ]
    summary = ResultAggregator().template_summary(
        results, total_items=4, mode=ProcessingMode.CHUNKED, perspectives=[perspective]
    )
    assert summary.origin == "template"
    assert "4 sections with 50% AI analysis success rate" in summary.overall_assessment
    assert "1 sections hit API rate limits" in summary.overall_assessment
    assert any("rate limits" in issue for issue in summary.issues)
    assert any("manual review" in issue for issue in summary.issues)
    assert any("off-peak" in rec for rec in summary.recommendations)


def test_template_summary_for_single_scene(perspective):
    summary = ResultAggregator().template_summary(
        [_success(1, ProcessingMode.SINGLE)],
        total_items=1,
        mode=ProcessingMode.SINGLE,
        perspectives=[perspective],
    )
    assert "Script processed in 1 scene" in summary.overall_assessment
    assert summary.issues == []
    assert any("chunking longer scripts" in rec for rec in summary.recommendations)


def test_template_summary_for_blend(blend):
    summary = ResultAggregator().template_summary(
        [_success(1, ProcessingMode.BLENDED), _fallback(2, FailureClassification.BLEND_FAILED)],
        total_items=2,
        mode=ProcessingMode.BLENDED,
        perspectives=blend,
    )
    assert "2 perspectives (Mentor A, Mentor B)" in summary.overall_assessment
    assert "1/2 sections" in summary.overall_assessment
    assert summary.issues == ["1 sections could not complete blended analysis"]


def test_partial_summary_states_unattempted_count(perspective):
    summary = ResultAggregator().template_summary(
        [_success(1)],
        total_items=5,
        mode=ProcessingMode.CHUNKED,
        perspectives=[perspective],
        partial=True,
        unattempted=4,
    )
    assert "1 of 5 sections completed and 4 never attempted" in summary.overall_assessment
    assert summary.issues[0].startswith("4 sections were never attempted")
    assert "Script processed" not in summary.overall_assessment


def test_partial_summary_counts_interrupted_section(perspective):
    summary = ResultAggregator().template_summary(
        [],
        total_items=5,
        mode=ProcessingMode.CHUNKED,
        perspectives=[perspective],
        partial=True,
        unattempted=4,
        interrupted=1,
    )
    assert (
        "0 of 5 sections completed, 1 interrupted in progress and 4 never attempted"
        in summary.overall_assessment
    )
    assert summary.issues[1].startswith("1 sections were interrupted")


def test_partial_blended_summary_drops_full_scope(blend):
    summary = ResultAggregator().template_summary(
        [_success(1, ProcessingMode.BLENDED)],
        total_items=3,
        mode=ProcessingMode.BLENDED,
        perspectives=blend,
        partial=True,
        unattempted=2,
    )
    assert "across 3" not in summary.overall_assessment
    assert "1 of 3 blended sections completed" in summary.overall_assessment


def test_perspective_names_with_articles_read_naturally(perspective):
    summary = ResultAggregator().template_summary(
        [_success(1)],
        total_items=1,
        mode=ProcessingMode.CHUNKED,
        perspectives=[perspective],
    )
    assert "1 sections received full feedback from The Engineer" in summary.overall_assessment
    assert "AI-powered feedback from The Engineer" in summary.strengths[0]
    assert "full The Engineer" not in summary.overall_assessment


@pytest.mark.asyncio
async def test_synthesized_summary_requires_provider(perspective):
    with pytest.raises(EngineUsageError):
        await ResultAggregator().synthesized_summary(
            [_success(1)],
            total_items=1,
            mode=ProcessingMode.CHUNKED,
            perspectives=[perspective],
        )


def test_parse_summary_payload_tolerates_prose():
    data = parse_summary_payload(f"Sure! Here it is:\n{SUMMARY_JSON}\nEnjoy.")
    assert data["strengths"] == ["Tight opening", "Distinct voices"]


def test_parse_summary_payload_rejects_garbage():
    with pytest.raises(ValueError):
        parse_summary_payload("no json at all")


@pytest.mark.asyncio
async def test_synthesized_summary_used_when_available(perspective):
    provider = ScriptedProvider(summary_text=SUMMARY_JSON)
    summary = await ResultAggregator(provider).summarize(
        [_success(1), _fallback(2, FailureClassification.OTHER)],
        total_items=2,
        mode=ProcessingMode.CHUNKED,
        perspectives=[perspective],
    )
    assert summary.origin == "synthesized"
    assert summary.overall_assessment == "A lean thriller with a soft middle."
    payload, descriptor = provider.calls[0]
    assert descriptor.response_shape is ResponseShape.JSON
    assert "feedback already written for 1 of 2 sections" in payload


@pytest.mark.asyncio
async def test_synthesis_failure_falls_back_to_template(perspective):
    provider = ScriptedProvider(summary_text=None)
    summary = await ResultAggregator(provider).summarize(
        [_success(1)],
        total_items=1,
        mode=ProcessingMode.CHUNKED,
        perspectives=[perspective],
    )
    assert summary.origin == "template"
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_no_synthesis_for_partial_or_all_failed_runs(perspective):
    provider = ScriptedProvider(summary_text=SUMMARY_JSON)
    aggregator = ResultAggregator(provider)

    partial = await aggregator.summarize(
        [_success(1)],
        total_items=3,
        mode=ProcessingMode.CHUNKED,
        perspectives=[perspective],
        partial=True,
        unattempted=2,
    )
    failed = await aggregator.summarize(
        [_fallback(1, FailureClassification.OTHER)],
        total_items=1,
        mode=ProcessingMode.CHUNKED,
        perspectives=[perspective],
    )

    assert partial.origin == "template"
    assert failed.origin == "template"
    assert provider.calls == []
