import pytest
from conftest import ScriptedProvider, make_items

from models import ProcessingMode, ResponseShape
from processing.backoff import ErrorKind, classify_error
from processing.cancellation import CancellationToken
from processing.errors import EngineUsageError, OperationCancelledError, ProviderError
from processing.item_processor import (
    ItemProcessor,
    blend_influences,
    build_participant_context,
    extract_categories,
)


class EmptyStructuredProvider(ScriptedProvider):
    async def generate(self, payload, descriptor, cancel_token=None):
        text = await super().generate(payload, descriptor, cancel_token)
        if descriptor.response_shape is ResponseShape.STRUCTURED:
            return "   "
        return text


@pytest.mark.asyncio
async def test_single_mode_requests_both_renderings(perspective, participants):
    provider = ScriptedProvider()
    processor = ItemProcessor(provider, [perspective])
    item = make_items(1)[0]

    result = await processor.process(item, ProcessingMode.SINGLE, participants)

    shapes = sorted(d.response_shape.value for _, d in provider.calls)
    assert shapes == ["freeform", "structured"]
    assert result.source is ProcessingMode.SINGLE
    assert result.perspectives == ("The Engineer",)
    assert result.retry_count == 0
    assert result.freeform == "Margin notes for Scene 1"
    assert set(result.categories.values()) == {"Analyzed"}


@pytest.mark.asyncio
async def test_payload_includes_participant_notes(perspective, participants):
    provider = ScriptedProvider()
    processor = ItemProcessor(provider, [perspective])
    await processor.process(make_items(1)[0], ProcessingMode.CHUNKED, participants)
    payload, descriptor = provider.calls_for(ResponseShape.STRUCTURED)[0]
    assert "MAYA: Line cook; Owes money" in payload
    assert "The Engineer" in payload
    assert descriptor.mode is ProcessingMode.CHUNKED


@pytest.mark.asyncio
async def test_blended_mode_tags_source_and_perspectives(blend, participants):
    provider = ScriptedProvider()
    processor = ItemProcessor(provider, blend)

    result = await processor.process(
        make_items(1)[0], ProcessingMode.BLENDED, participants, retry_count=2
    )

    assert result.source is ProcessingMode.BLENDED
    assert result.perspectives == ("Mentor A", "Mentor B")
    assert result.retry_count == 2
    assert set(result.categories.values()) == {"Blended analysis"}
    payload, descriptor = provider.calls_for(ResponseShape.STRUCTURED)[0]
    assert "Mentor A (25% influence)" in payload
    assert "Mentor B (75% influence)" in payload
    assert descriptor.perspectives == ("Mentor A", "Mentor B")


@pytest.mark.asyncio
async def test_non_blended_mode_uses_first_perspective_only(blend, participants):
    provider = ScriptedProvider()
    processor = ItemProcessor(provider, blend)
    result = await processor.process(make_items(1)[0], ProcessingMode.SINGLE, participants)
    assert result.perspectives == ("Mentor A",)


@pytest.mark.asyncio
async def test_provider_errors_propagate_unchanged(perspective, participants):
    error = ProviderError("Rate limit exceeded (429): slow down", status_hint=429)
    provider = ScriptedProvider(failures={"Scene 1": [error]})
    processor = ItemProcessor(provider, [perspective])

    with pytest.raises(ProviderError) as excinfo:
        await processor.process(make_items(1)[0], ProcessingMode.CHUNKED, participants)
    assert excinfo.value is error


@pytest.mark.asyncio
async def test_empty_response_is_malformed(perspective, participants):
    processor = ItemProcessor(EmptyStructuredProvider(), [perspective])
    with pytest.raises(ProviderError) as excinfo:
        await processor.process(make_items(1)[0], ProcessingMode.SINGLE, participants)
    assert classify_error(excinfo.value).kind is ErrorKind.MALFORMED_RESPONSE


@pytest.mark.asyncio
async def test_cancelled_token_prevents_provider_calls(perspective, participants):
    provider = ScriptedProvider()
    processor = ItemProcessor(provider, [perspective])
    token = CancellationToken()
    token.cancel()
    with pytest.raises(OperationCancelledError):
        await processor.process(
            make_items(1)[0], ProcessingMode.SINGLE, participants, cancel_token=token
        )
    assert provider.calls == []


def test_processor_requires_perspectives():
    with pytest.raises(EngineUsageError):
        ItemProcessor(ScriptedProvider(), [])


def test_participant_context_lists_unknown_names(participants):
    item = make_items(1)[0].model_copy(update={"participants": ("MAYA", "GHOST")})
    context = build_participant_context(item, participants)
    assert context.splitlines() == ["- MAYA: Line cook; Owes money", "- GHOST"]


def test_extract_categories_marks_missing_headings():
    categories = extract_categories("## Structure\nok\n## Theme\nok", ProcessingMode.SINGLE)
    assert categories == {
        "structure": "Analyzed",
        "dialogue": "Review needed",
        "pacing": "Review needed",
        "theme": "Analyzed",
    }


def test_blend_influences_are_percentages(blend):
    assert [entry["influence"] for entry in blend_influences(blend)] == [25, 75]
