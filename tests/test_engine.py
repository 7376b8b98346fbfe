import asyncio
import json

import pytest
from conftest import ScriptedProvider, make_items

from core.usage import TokenUsage
from models import FailureClassification, FallbackResult, ProcessingMode, SuccessResult
from processing.cancellation import CancellationToken
from processing.engine import EngineOptions, ProgressiveFeedbackEngine
from processing.errors import EngineUsageError, ProviderError


def _options(**overrides) -> EngineOptions:
    values = {
        "max_concurrent": 1,
        "retry_attempts": 3,
        "base_delay": 0.0,
        "exponential_backoff": True,
        "synthesize_summary": False,
    }
    values.update(overrides)
    return EngineOptions(**values)


@pytest.fixture
def recorded_sleeps(monkeypatch):
    """Replace token waits with an instant, recording version."""
    sleeps: list[float] = []

    async def fake_sleep(self, seconds):
        sleeps.append(seconds)
        await asyncio.sleep(0)
        return not self.is_cancelled

    monkeypatch.setattr(CancellationToken, "sleep", fake_sleep)
    return sleeps


@pytest.mark.asyncio
async def test_rate_limited_item_recovers_with_recommended_wait(
    perspective, participants, recorded_sleeps
):
    error = ProviderError(
        "Rate limit exceeded (429): Please try again in 2.0s.", status_hint=429
    )
    provider = ScriptedProvider(failures={"Scene 2": [error]})
    snapshots: list = []
    engine = ProgressiveFeedbackEngine(provider, _options(base_delay=2.0))

    outcome = await engine.run(
        make_items(3),
        ProcessingMode.CHUNKED,
        participants,
        snapshots.append,
        perspectives=[perspective],
    )

    assert [type(r) for r in outcome.results] == [SuccessResult] * 3
    assert [r.retry_count for r in outcome.results] == [0, 1, 0]
    retry_snapshots = [s for s in snapshots if s.next_retry_in_ms is not None]
    assert len(retry_snapshots) == 1
    assert retry_snapshots[0].next_retry_in_ms == pytest.approx(3000, abs=1)
    assert retry_snapshots[0].is_retrying
    assert retry_snapshots[0].retry_count == 1
    assert retry_snapshots[0].current_index == 2
    # inter-item delay, retry wait, inter-item delay with one-retry penalty
    assert recorded_sleeps == [pytest.approx(2.0), pytest.approx(3.0), pytest.approx(3.0)]
    assert outcome.processing_stats.total_retry_attempts == 1
    assert outcome.processing_stats.successful_chunks == 3
    assert not outcome.partial
    assert snapshots[-1].percent == 100
    assert snapshots[-1].message.startswith("Analysis complete! 3/3 chunks")


@pytest.mark.asyncio
async def test_content_too_large_falls_back_and_run_continues(perspective, participants):
    provider = ScriptedProvider(
        failures={"Scene 1": [ProviderError("Payload too large (413)", status_hint=413)]}
    )
    snapshots: list = []
    engine = ProgressiveFeedbackEngine(provider, _options())

    outcome = await engine.run(
        make_items(2),
        ProcessingMode.CHUNKED,
        participants,
        snapshots.append,
        perspectives=[perspective],
    )

    first, second = outcome.results
    assert isinstance(first, FallbackResult)
    assert first.classification is FailureClassification.CONTENT_TOO_LARGE
    assert first.retry_count == 0
    assert isinstance(second, SuccessResult)
    assert outcome.processing_stats.permanently_failed_chunks == 1
    assert outcome.processing_stats.other_failed_chunks == 1
    assert snapshots[-1].failed_item_ids == ("s1",)


@pytest.mark.asyncio
async def test_immediate_cancel_produces_partial_outcome(perspective, participants):
    provider = ScriptedProvider(block=True)
    token = CancellationToken()
    engine = ProgressiveFeedbackEngine(provider, _options())

    task = asyncio.create_task(
        engine.run(
            make_items(5),
            ProcessingMode.CHUNKED,
            participants,
            None,
            perspectives=[perspective],
            cancel_token=token,
        )
    )
    await asyncio.wait_for(provider.started.wait(), timeout=5)
    token.cancel("user pressed stop")
    outcome = await asyncio.wait_for(task, timeout=5)

    assert outcome.partial
    assert outcome.cancelled
    assert len(outcome.results) in (0, 1)
    stats = outcome.processing_stats
    assert stats.skipped_items == 4
    assert len(outcome.results) + stats.interrupted_items + stats.skipped_items == 5
    assert outcome.summary.origin == "template"
    if not outcome.results:
        assert stats.interrupted_items == 1
        assert "1 interrupted in progress" in outcome.summary.overall_assessment
    assert "Script processed" not in outcome.summary.overall_assessment


@pytest.mark.asyncio
async def test_cancel_during_inter_item_delay_reports_unattempted(
    perspective, participants
):
    provider = ScriptedProvider()
    token = CancellationToken()
    snapshots: list = []

    def sink(snapshot) -> None:
        snapshots.append(snapshot)
        if len(snapshot.completed_results) == 1 and not token.is_cancelled:
            asyncio.get_running_loop().call_later(0.02, token.cancel)

    engine = ProgressiveFeedbackEngine(provider, _options(base_delay=30.0))
    outcome = await asyncio.wait_for(
        engine.run(
            make_items(4),
            ProcessingMode.CHUNKED,
            participants,
            sink,
            perspectives=[perspective],
            cancel_token=token,
        ),
        timeout=5,
    )

    assert outcome.partial
    assert len(outcome.results) == 1
    assert outcome.processing_stats.attempted_items == 1
    assert outcome.processing_stats.skipped_items == 3
    assert outcome.processing_stats.interrupted_items == 0
    assert "3 never attempted" in outcome.summary.overall_assessment
    assert "interrupted" not in outcome.summary.overall_assessment
    assert snapshots[-1].message.startswith("Analysis stopped")


@pytest.mark.asyncio
async def test_snapshots_are_ordered_and_prefix_consistent(
    perspective, participants, recorded_sleeps
):
    provider = ScriptedProvider(
        failures={"Scene 2": [RuntimeError("flaky upstream")]},
    )
    snapshots: list = []
    engine = ProgressiveFeedbackEngine(provider, _options())

    outcome = await engine.run(
        make_items(3),
        ProcessingMode.CHUNKED,
        participants,
        snapshots.append,
        perspectives=[perspective],
    )

    final_ids = [r.item_id for r in outcome.results]
    indexes = [s.current_index for s in snapshots]
    assert indexes == sorted(indexes)
    for snapshot in snapshots:
        ids = [r.item_id for r in snapshot.completed_results]
        assert ids == final_ids[: len(ids)]
        assert len(snapshot.completed_results) <= snapshot.total_items
    # attempt, completion per item plus one retry for item 2 and the final snapshot
    assert len(snapshots) == 3 * 2 + 2 + 1


@pytest.mark.asyncio
async def test_pooled_run_reports_in_original_order(perspective, participants):
    provider = ScriptedProvider(delays={"Scene 1": 0.05, "Scene 2": 0.02})
    snapshots: list = []
    engine = ProgressiveFeedbackEngine(provider, _options(max_concurrent=3))

    outcome = await engine.run(
        make_items(4),
        ProcessingMode.CHUNKED,
        participants,
        snapshots.append,
        perspectives=[perspective],
    )

    assert [r.item_id for r in outcome.results] == ["s1", "s2", "s3", "s4"]
    indexes = [s.current_index for s in snapshots]
    assert indexes == sorted(indexes)
    for snapshot in snapshots:
        ids = [r.item_id for r in snapshot.completed_results]
        assert ids == ["s1", "s2", "s3", "s4"][: len(ids)]


@pytest.mark.asyncio
async def test_blended_run_tags_snapshots_and_results(blend, participants):
    snapshots: list = []
    engine = ProgressiveFeedbackEngine(ScriptedProvider(), _options())

    outcome = await engine.run(
        make_items(2),
        "blended",
        participants,
        snapshots.append,
        perspectives=blend,
    )

    assert all(r.source is ProcessingMode.BLENDED for r in outcome.results)
    assert all(s.perspective_count == 2 for s in snapshots)
    assert snapshots[0].blending_perspectives == ("Mentor A", "Mentor B")
    assert outcome.processing_stats.perspective_count == 2
    assert "from 2 perspectives" in snapshots[-1].message


@pytest.mark.asyncio
async def test_failing_sink_does_not_break_run(perspective, participants):
    def sink(snapshot) -> None:
        raise RuntimeError("display crashed")

    engine = ProgressiveFeedbackEngine(ScriptedProvider(), _options())
    outcome = await engine.run(
        make_items(2),
        ProcessingMode.CHUNKED,
        participants,
        sink,
        perspectives=[perspective],
    )
    assert len(outcome.results) == 2


@pytest.mark.asyncio
async def test_synthesized_summary_and_token_usage(perspective, participants):
    class MeteredProvider(ScriptedProvider):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            self.usage = TokenUsage()

        async def generate(self, payload, descriptor, cancel_token=None):
            self.usage.add({"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15})
            return await super().generate(payload, descriptor, cancel_token)

    summary_text = json.dumps(
        {
            "overall_assessment": "Strong bones.",
            "strengths": ["Voice"],
            "issues": [],
            "recommendations": ["Tighten act two"],
        }
    )
    provider = MeteredProvider(summary_text=summary_text)
    engine = ProgressiveFeedbackEngine(provider, _options(synthesize_summary=True))

    outcome = await engine.run(
        make_items(2),
        ProcessingMode.CHUNKED,
        participants,
        None,
        perspectives=[perspective],
    )

    assert outcome.summary.origin == "synthesized"
    assert outcome.summary.overall_assessment == "Strong bones."
    # two items x two renderings, plus the overview call
    assert outcome.processing_stats.token_usage == {
        "prompt_tokens": 50,
        "completion_tokens": 25,
        "total_tokens": 75,
    }


@pytest.mark.asyncio
async def test_usage_errors_raise_before_work(perspective, participants):
    provider = ScriptedProvider()
    engine = ProgressiveFeedbackEngine(provider, _options())

    with pytest.raises(EngineUsageError):
        await engine.run([], "chunked", participants, None, perspectives=[perspective])
    duplicated = make_items(1) * 2
    with pytest.raises(EngineUsageError):
        await engine.run(duplicated, "chunked", participants, None, perspectives=[perspective])
    with pytest.raises(EngineUsageError):
        await engine.run(make_items(1), "chunked", participants, None, perspectives=[])
    with pytest.raises(EngineUsageError):
        await engine.run(make_items(1), "sideways", participants, None, perspectives=[perspective])
    assert provider.calls == []


@pytest.mark.asyncio
async def test_token_cannot_be_reused_across_runs(perspective, participants):
    engine = ProgressiveFeedbackEngine(ScriptedProvider(), _options())
    token = CancellationToken()
    await engine.run(
        make_items(1), "single", participants, None, perspectives=[perspective], cancel_token=token
    )
    with pytest.raises(EngineUsageError):
        await engine.run(
            make_items(1), "single", participants, None, perspectives=[perspective], cancel_token=token
        )


def test_engine_options_validate_limits():
    with pytest.raises(EngineUsageError):
        EngineOptions(max_concurrent=0)
    with pytest.raises(EngineUsageError):
        EngineOptions(retry_attempts=-1)


def test_inter_item_delay_scales_for_blends():
    options = _options(base_delay=2.0)
    assert options.delay_after(ProcessingMode.CHUNKED, 0) == pytest.approx(2.0)
    assert options.delay_after(ProcessingMode.CHUNKED, 2) == pytest.approx(4.0)
    assert options.delay_after(ProcessingMode.BLENDED, 0) == pytest.approx(3.0)
