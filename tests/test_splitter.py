"""Tests for the reasoning/answer splitter."""

from __future__ import annotations

import pytest

from streamrelay.orchestration.cancellation import CancellationToken
from streamrelay.orchestration.errors import CancellationError
from streamrelay.orchestration.events import EventRecorder, EventType
from streamrelay.orchestration.metrics import MetricsTracker
from streamrelay.orchestration.splitter import ReasoningSplitter
from streamrelay.orchestration.types import (
    KnowledgeReference,
    OrchestratorState,
    Phase,
    SearchPayload,
    SearchSource,
    StreamChunk,
    Usage,
)
from tests.helpers import SteppingClock


async def _stream(chunks):
    for chunk in chunks:
        yield chunk


def _splitter(recorder: EventRecorder, clock: SteppingClock | None = None, **kwargs):
    state = OrchestratorState()
    metrics = MetricsTracker(clock or SteppingClock())
    metrics.start()
    return ReasoningSplitter(state, metrics, recorder, **kwargs), state, metrics


@pytest.mark.asyncio
async def test_reasoning_then_answer(recorder: EventRecorder) -> None:
    splitter, state, metrics = _splitter(recorder)
    chunks = [
        StreamChunk(reasoning="think1"),
        StreamChunk(reasoning="think2"),
        StreamChunk(content="Answer", finish_reason="stop", usage=Usage(5, 7, 12)),
    ]

    await splitter.consume(_stream(chunks), CancellationToken())

    assert recorder.types == [
        EventType.THINKING_DELTA,
        EventType.THINKING_DELTA,
        EventType.THINKING_COMPLETE,
        EventType.TEXT_DELTA,
        EventType.TEXT_COMPLETE,
    ]
    complete = recorder.of_type(EventType.THINKING_COMPLETE)[0]
    assert complete.text == "think1think2"
    assert complete.thinking_ms == pytest.approx(20.0)
    assert [event.thinking_ms for event in recorder.of_type(EventType.THINKING_DELTA)] == [0.0, 10.0]
    assert recorder.of_type(EventType.TEXT_COMPLETE)[0].text == "Answer"
    assert state.phase is Phase.DONE
    assert state.final_reasoning == "think1think2"

    snapshot = metrics.snapshot()
    assert snapshot.time_first_token_ms == pytest.approx(10.0)
    assert snapshot.time_first_content_ms == pytest.approx(30.0)
    assert snapshot.time_completion_ms == pytest.approx(30.0)
    assert snapshot.time_thinking_ms == pytest.approx(20.0)
    assert snapshot.total_tokens == 12


@pytest.mark.asyncio
async def test_text_complete_matches_concatenated_deltas(recorder: EventRecorder) -> None:
    splitter, _, _ = _splitter(recorder)
    chunks = [StreamChunk(content=piece) for piece in ("Hel", "lo, ", "world")]
    chunks.append(StreamChunk(finish_reason="stop"))

    await splitter.consume(_stream(chunks), CancellationToken())

    deltas = "".join(event.text or "" for event in recorder.of_type(EventType.TEXT_DELTA))
    assert recorder.of_type(EventType.TEXT_COMPLETE)[0].text == deltas == "Hello, world"
    assert not recorder.of_type(EventType.THINKING_DELTA, EventType.THINKING_COMPLETE)


@pytest.mark.asyncio
async def test_reasoning_after_answer_is_dropped(recorder: EventRecorder) -> None:
    splitter, _, _ = _splitter(recorder)
    chunks = [
        StreamChunk(content="A"),
        StreamChunk(reasoning="late"),
        StreamChunk(content="B", finish_reason="stop"),
    ]

    await splitter.consume(_stream(chunks), CancellationToken())

    assert recorder.types == [EventType.TEXT_DELTA, EventType.TEXT_DELTA, EventType.TEXT_COMPLETE]
    assert recorder.events[-1].text == "AB"


@pytest.mark.asyncio
async def test_close_marker_ends_reasoning_without_text(recorder: EventRecorder) -> None:
    splitter, _, _ = _splitter(recorder)
    chunks = [
        StreamChunk(reasoning="weighing options"),
        StreamChunk(content="</think>"),
        StreamChunk(content="Done", finish_reason="stop"),
    ]

    await splitter.consume(_stream(chunks), CancellationToken())

    assert recorder.types == [
        EventType.THINKING_DELTA,
        EventType.THINKING_COMPLETE,
        EventType.TEXT_DELTA,
        EventType.TEXT_COMPLETE,
    ]
    assert [event.text for event in recorder.of_type(EventType.TEXT_DELTA)] == ["Done"]


@pytest.mark.asyncio
async def test_inline_think_tags_split_across_chunks(recorder: EventRecorder) -> None:
    splitter, _, _ = _splitter(recorder)
    chunks = [
        StreamChunk(content="<think>Let me "),
        StreamChunk(content="think</th"),
        StreamChunk(content="ink>Answer", finish_reason="stop"),
    ]

    await splitter.consume(_stream(chunks), CancellationToken())

    thinking = recorder.of_type(EventType.THINKING_DELTA)
    assert [event.text for event in thinking] == ["Let me ", "think"]
    assert recorder.of_type(EventType.THINKING_COMPLETE)[0].text == "Let me think"
    assert recorder.of_type(EventType.TEXT_COMPLETE)[0].text == "Answer"
    assert all("<" not in (event.text or "") for event in recorder.of_type(EventType.TEXT_DELTA))


@pytest.mark.asyncio
async def test_heading_sections_route_reasoning(recorder: EventRecorder) -> None:
    splitter, _, _ = _splitter(recorder)
    chunks = [
        StreamChunk(content="###Thinking\nplan the reply"),
        StreamChunk(content="###Response\nHello"),
        StreamChunk(finish_reason="stop"),
    ]

    await splitter.consume(_stream(chunks), CancellationToken())

    assert recorder.of_type(EventType.THINKING_COMPLETE)[0].text.strip() == "plan the reply"
    assert recorder.of_type(EventType.TEXT_COMPLETE)[0].text == "Hello"


@pytest.mark.asyncio
async def test_response_sentinel_on_content_channel_closes_reasoning(recorder: EventRecorder) -> None:
    splitter, _, _ = _splitter(recorder)
    chunks = [
        StreamChunk(reasoning="draft"),
        StreamChunk(content="###Response Final", finish_reason="stop"),
    ]

    await splitter.consume(_stream(chunks), CancellationToken())

    assert recorder.of_type(EventType.THINKING_COMPLETE)[0].text == "draft"
    assert recorder.of_type(EventType.TEXT_COMPLETE)[0].text == "Final"


@pytest.mark.asyncio
async def test_response_sentinel_split_across_chunks_is_stripped(recorder: EventRecorder) -> None:
    splitter, state, _ = _splitter(recorder)
    chunks = [
        StreamChunk(reasoning="draft"),
        StreamChunk(content="###Res"),
        StreamChunk(content="ponse\nAnswer", finish_reason="stop"),
    ]

    await splitter.consume(_stream(chunks), CancellationToken())

    assert recorder.of_type(EventType.THINKING_COMPLETE)[0].text == "draft"
    assert [event.text for event in recorder.of_type(EventType.TEXT_DELTA)] == ["Answer"]
    assert state.final_text == "Answer"


@pytest.mark.asyncio
async def test_held_sentinel_prefix_is_released_when_not_confirmed(recorder: EventRecorder) -> None:
    splitter, state, _ = _splitter(recorder)
    chunks = [
        StreamChunk(reasoning="draft"),
        StreamChunk(content="Use ##"),
        StreamChunk(content="# headings", finish_reason="stop"),
    ]

    await splitter.consume(_stream(chunks), CancellationToken())

    assert state.final_text == "Use ### headings"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("pieces", "reasoning", "answer"),
    [
        (("<thi", "nk>secret", "</think>Answer"), "secret", "Answer"),
        (("###Thin", "king\nplan", "###Response\nHello"), "plan", "Hello"),
    ],
)
async def test_opening_marker_split_across_chunks_routes_reasoning(
    recorder: EventRecorder, pieces: tuple[str, ...], reasoning: str, answer: str
) -> None:
    splitter, state, _ = _splitter(recorder)
    chunks = [StreamChunk(content=piece) for piece in pieces]
    chunks.append(StreamChunk(finish_reason="stop"))

    await splitter.consume(_stream(chunks), CancellationToken())

    assert recorder.types == [
        EventType.THINKING_DELTA,
        EventType.THINKING_COMPLETE,
        EventType.TEXT_DELTA,
        EventType.TEXT_COMPLETE,
    ]
    assert recorder.of_type(EventType.THINKING_COMPLETE)[0].text.strip() == reasoning
    assert state.final_text == answer


@pytest.mark.asyncio
async def test_rejected_opening_prefix_becomes_answer_text(recorder: EventRecorder) -> None:
    splitter, state, _ = _splitter(recorder)
    chunks = [StreamChunk(content="<th"), StreamChunk(content="ead> tag"), StreamChunk(finish_reason="stop")]

    await splitter.consume(_stream(chunks), CancellationToken())

    assert recorder.of_type(EventType.THINKING_DELTA) == []
    assert state.final_text == "<thead> tag"


@pytest.mark.asyncio
async def test_stream_without_finish_signal_still_completes(recorder: EventRecorder) -> None:
    splitter, state, _ = _splitter(recorder)

    await splitter.consume(_stream([StreamChunk(reasoning="r"), StreamChunk(content="Hi")]), CancellationToken())

    assert recorder.types[-1] is EventType.TEXT_COMPLETE
    assert recorder.events[-1].text == "Hi"
    assert state.phase is Phase.DONE


@pytest.mark.asyncio
async def test_reasoning_only_stream_closes_reasoning(recorder: EventRecorder) -> None:
    splitter, state, _ = _splitter(recorder)

    await splitter.consume(_stream([StreamChunk(reasoning="only thoughts", finish_reason="stop")]), CancellationToken())

    assert recorder.types == [EventType.THINKING_DELTA, EventType.THINKING_COMPLETE, EventType.TEXT_COMPLETE]
    assert recorder.events[-1].text == ""
    assert state.final_reasoning == "only thoughts"


@pytest.mark.asyncio
async def test_usage_after_finish_is_recorded(recorder: EventRecorder) -> None:
    splitter, state, metrics = _splitter(recorder)
    chunks = [
        StreamChunk(content="Hi", finish_reason="stop"),
        StreamChunk(usage=Usage(prompt_tokens=3, completion_tokens=1, total_tokens=4)),
    ]

    await splitter.consume(_stream(chunks), CancellationToken())

    assert recorder.types.count(EventType.TEXT_COMPLETE) == 1
    assert state.usage == Usage(3, 1, 4)
    assert metrics.usage == Usage(3, 1, 4)


@pytest.mark.asyncio
async def test_search_payloads_emit_web_search_event(recorder: EventRecorder) -> None:
    knowledge = (KnowledgeReference(source_url="kb://handbook", content="policy"),)
    splitter, state, _ = _splitter(recorder, knowledge=knowledge)
    payload = SearchPayload(SearchSource.PERPLEXITY, ["https://a.com/x", "https://b.com/y"])
    chunks = [
        StreamChunk(content="See sources", search=payload),
        StreamChunk(finish_reason="stop"),
    ]

    await splitter.consume(_stream(chunks), CancellationToken())

    assert recorder.types[-1] is EventType.WEB_SEARCH_COMPLETE
    event = recorder.events[-1]
    assert event.search is payload
    assert [citation.url for citation in event.citations] == ["https://a.com/x", "https://b.com/y", "kb://handbook"]
    assert state.search_payloads == [payload]


@pytest.mark.asyncio
async def test_paused_token_finalizes_without_reading(recorder: EventRecorder) -> None:
    splitter, state, _ = _splitter(recorder)
    token = CancellationToken()
    token.pause()

    await splitter.consume(_stream([StreamChunk(content="never")]), token)

    assert state.paused is True
    assert recorder.types == [EventType.TEXT_COMPLETE]
    assert recorder.events[0].text == ""


@pytest.mark.asyncio
async def test_pause_mid_stream_keeps_partial_answer(recorder: EventRecorder) -> None:
    token = CancellationToken()

    def _sink(event):
        recorder(event)
        if event.type is EventType.TEXT_DELTA:
            token.pause()

    state = OrchestratorState()
    metrics = MetricsTracker(SteppingClock())
    splitter = ReasoningSplitter(state, metrics, _sink)

    closed: list[bool] = []

    async def _tracked():
        try:
            yield StreamChunk(content="partial")
            yield StreamChunk(content=" more")
        finally:
            closed.append(True)

    await splitter.consume(_tracked(), token)

    assert state.paused is True
    assert recorder.of_type(EventType.TEXT_COMPLETE)[0].text == "partial"
    assert closed == []


@pytest.mark.asyncio
async def test_cancel_between_chunks_closes_stream(recorder: EventRecorder) -> None:
    token = CancellationToken()

    def _sink(event):
        recorder(event)
        if event.type is EventType.TEXT_DELTA:
            token.cancel("user stop")

    splitter = ReasoningSplitter(OrchestratorState(), MetricsTracker(SteppingClock()), _sink)
    closed: list[bool] = []

    async def _tracked():
        try:
            yield StreamChunk(content="partial")
            yield StreamChunk(content=" more")
        finally:
            closed.append(True)

    with pytest.raises(CancellationError):
        await splitter.consume(_tracked(), token)

    assert recorder.types == [EventType.TEXT_DELTA]
    assert closed == [True]
