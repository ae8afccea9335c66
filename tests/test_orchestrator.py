"""End-to-end tests for the completion orchestrator."""

from __future__ import annotations

import asyncio

import pytest

from streamrelay.orchestration import (
    CancellationError,
    CompletionMessage,
    CompletionOrchestrator,
    ErrorCode,
    EventRecorder,
    EventType,
    GenerationSettings,
    KnowledgeReference,
    Message,
    ModelProfile,
    OrchestratorContext,
    RegistryToolExecutor,
    SearchPayload,
    SearchSource,
    StreamChunk,
    ToolCallResult,
    ToolLoopExhaustedError,
    ToolRegistry,
    ToolSpec,
    TransportError,
    Usage,
)
from streamrelay.orchestration.tool_call_parser import format_tool_call
from tests.helpers import BlockingModelClient, ScriptedModelClient, ScriptedToolExecutor, SteppingClock


def _context(profile: ModelProfile, recorder: EventRecorder, **kwargs) -> OrchestratorContext:
    kwargs.setdefault("clock", SteppingClock())
    return OrchestratorContext(profile=profile, sink=recorder, **kwargs)


def _lookup_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(
        ToolSpec(
            name="lookup",
            description="Look up a fact.",
            parameters={"type": "object", "properties": {"q": {"type": "string"}}, "required": ["q"]},
        ),
        lambda arguments: {"answer": 42, "q": arguments["q"]},
    )
    return registry


@pytest.mark.asyncio
async def test_reasoning_stream_event_order(plain_profile: ModelProfile, recorder: EventRecorder) -> None:
    client = ScriptedModelClient(
        [
            [
                StreamChunk(reasoning="think1"),
                StreamChunk(reasoning="think2"),
                StreamChunk(content="Answer", finish_reason="stop", usage=Usage(4, 2, 6)),
            ]
        ]
    )
    orchestrator = CompletionOrchestrator(client)

    result = await orchestrator.complete([Message.text("user", "Hi")], _context(plain_profile, recorder))

    assert recorder.types == [
        EventType.RESPONSE_CREATED,
        EventType.THINKING_DELTA,
        EventType.THINKING_DELTA,
        EventType.THINKING_COMPLETE,
        EventType.TEXT_DELTA,
        EventType.TEXT_COMPLETE,
        EventType.BLOCK_COMPLETE,
    ]
    assert recorder.of_type(EventType.THINKING_COMPLETE)[0].text == "think1think2"
    assert result.text == "Answer"
    assert result.reasoning == "think1think2"
    assert result.rounds == 1
    assert result.metrics.total_tokens == 6
    assert recorder.events[-1].metrics == result.metrics

    params = client.calls[0]
    assert params["messages"] == [{"role": "user", "content": "Hi"}]
    assert params["stream"] is True
    assert params["model"] == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_non_streaming_response_is_replayed(plain_profile: ModelProfile, recorder: EventRecorder) -> None:
    client = ScriptedModelClient(messages=[CompletionMessage(content="Hello", reasoning="because")])
    orchestrator = CompletionOrchestrator(client)
    context = _context(plain_profile, recorder, settings=GenerationSettings(stream=False))

    result = await orchestrator.complete([Message.text("user", "Hi")], context)

    assert recorder.types == [
        EventType.RESPONSE_CREATED,
        EventType.THINKING_DELTA,
        EventType.THINKING_COMPLETE,
        EventType.TEXT_DELTA,
        EventType.TEXT_COMPLETE,
        EventType.BLOCK_COMPLETE,
    ]
    assert result.text == "Hello"
    assert result.reasoning == "because"
    assert client.calls[0]["stream"] is False


@pytest.mark.asyncio
async def test_system_prompt_is_sent_first(plain_profile: ModelProfile, recorder: EventRecorder) -> None:
    client = ScriptedModelClient([[StreamChunk(content="ok", finish_reason="stop")]])
    orchestrator = CompletionOrchestrator(client)

    await orchestrator.complete(
        [Message.text("user", "Hi")],
        _context(plain_profile, recorder, system_prompt="Be terse"),
    )

    assert client.calls[0]["messages"][0] == {"role": "system", "content": "Be terse"}


@pytest.mark.asyncio
async def test_context_window_limits_history(plain_profile: ModelProfile, recorder: EventRecorder) -> None:
    client = ScriptedModelClient([[StreamChunk(content="ok", finish_reason="stop")]])
    orchestrator = CompletionOrchestrator(client)
    history = [
        Message.text("user", "q1"),
        Message.text("assistant", "a1"),
        Message.text("user", "q2"),
        Message.text("assistant", "a2"),
        Message.text("user", "q3"),
    ]
    context = _context(plain_profile, recorder, settings=GenerationSettings(context_count=2))

    await orchestrator.complete(history, context, apply_context_window=True)

    assert [message["content"] for message in client.calls[0]["messages"]] == ["q2", "a2", "q3"]


@pytest.mark.asyncio
async def test_tool_calls_trigger_another_round(plain_profile: ModelProfile, recorder: EventRecorder) -> None:
    call_text = format_tool_call("lookup", {"q": "meaning"})
    client = ScriptedModelClient(
        [
            [StreamChunk(content=call_text, finish_reason="stop")],
            [StreamChunk(content="It is 42.", finish_reason="stop")],
        ]
    )
    orchestrator = CompletionOrchestrator(client, executor=RegistryToolExecutor(_lookup_registry()))

    result = await orchestrator.complete([Message.text("user", "What is it?")], _context(plain_profile, recorder))

    assert result.text == "It is 42."
    assert result.rounds == 2
    assert [response.source_call_id for response in result.tool_responses] == ["call_0_0_lookup"]
    assert recorder.types.count(EventType.TEXT_COMPLETE) == 2
    assert recorder.types.count(EventType.BLOCK_COMPLETE) == 1
    assert recorder.types[-1] is EventType.BLOCK_COMPLETE
    assert [event.round_index for event in recorder.of_type(EventType.TEXT_COMPLETE)] == [0, 1]

    second_round = client.calls[1]["messages"]
    assert second_round[0] == {"role": "user", "content": "What is it?"}
    assert second_round[1] == {"role": "assistant", "content": call_text}
    assert second_round[2]["role"] == "user"
    assert '"answer": 42' in second_round[2]["content"]

    assert result.metrics.time_first_token_ms == pytest.approx(10.0)
    assert result.metrics.time_first_content_ms == pytest.approx(10.0)
    assert result.metrics.time_completion_ms == pytest.approx(20.0)


@pytest.mark.asyncio
async def test_tool_loop_exhaustion_surfaces_error(plain_profile: ModelProfile, recorder: EventRecorder) -> None:
    client = ScriptedModelClient([[StreamChunk(content="calling again", finish_reason="stop")]])
    executor = ScriptedToolExecutor([[ToolCallResult("c", "more")]], repeat=True)
    orchestrator = CompletionOrchestrator(client, executor=executor)
    context = _context(plain_profile, recorder, settings=GenerationSettings(max_tool_rounds=2))

    with pytest.raises(ToolLoopExhaustedError):
        await orchestrator.complete([Message.text("user", "loop")], context)

    assert len(client.calls) == 2
    errors = recorder.of_type(EventType.ERROR)
    assert len(errors) == 1
    assert errors[0].error["error"] == ErrorCode.TOOL_LOOP_EXHAUSTED
    assert EventType.BLOCK_COMPLETE not in recorder.types


@pytest.mark.asyncio
async def test_transport_error_emits_error_event(plain_profile: ModelProfile, recorder: EventRecorder) -> None:
    client = ScriptedModelClient(
        [[StreamChunk(content="par"), StreamChunk(content="tial")]],
        fail_after=1,
        error=TransportError(message="connection reset"),
    )
    orchestrator = CompletionOrchestrator(client)

    with pytest.raises(TransportError):
        await orchestrator.complete([Message.text("user", "Hi")], _context(plain_profile, recorder))

    assert recorder.types == [EventType.RESPONSE_CREATED, EventType.TEXT_DELTA, EventType.ERROR]
    assert recorder.events[-1].error == {"error": ErrorCode.TRANSPORT, "message": "connection reset"}


@pytest.mark.asyncio
async def test_unexpected_failure_reports_internal_error(plain_profile: ModelProfile, recorder: EventRecorder) -> None:
    client = ScriptedModelClient([[StreamChunk(content="x")]], fail_after=0, error=RuntimeError("kaboom"))
    orchestrator = CompletionOrchestrator(client)

    with pytest.raises(RuntimeError):
        await orchestrator.complete([Message.text("user", "Hi")], _context(plain_profile, recorder))

    assert recorder.events[-1].error == {"error": ErrorCode.INTERNAL_ERROR, "message": "kaboom"}


@pytest.mark.asyncio
async def test_cancellation_stops_without_completion_events(plain_profile: ModelProfile, recorder: EventRecorder) -> None:
    client = BlockingModelClient([StreamChunk(content="Hel")])
    orchestrator = CompletionOrchestrator(client)
    context = _context(plain_profile, recorder)

    task = asyncio.create_task(orchestrator.complete([Message.text("user", "Hi")], context))
    await asyncio.wait_for(client.reached_block.wait(), timeout=1.0)
    context.cancel.cancel("user stopped")

    with pytest.raises(CancellationError):
        await asyncio.wait_for(task, timeout=1.0)

    assert recorder.types == [EventType.RESPONSE_CREATED, EventType.TEXT_DELTA]


@pytest.mark.asyncio
async def test_cancel_before_start_raises_immediately(plain_profile: ModelProfile, recorder: EventRecorder) -> None:
    client = ScriptedModelClient([[StreamChunk(content="never", finish_reason="stop")]])
    orchestrator = CompletionOrchestrator(client)
    context = _context(plain_profile, recorder)
    context.cancel.cancel()

    with pytest.raises(CancellationError):
        await orchestrator.complete([Message.text("user", "Hi")], context)

    assert client.calls == []
    assert EventType.ERROR not in recorder.types


@pytest.mark.asyncio
async def test_pause_finalizes_with_partial_answer(plain_profile: ModelProfile) -> None:
    events = EventRecorder()
    context_holder: dict[str, OrchestratorContext] = {}

    def _sink(event) -> None:
        events(event)
        if event.type is EventType.TEXT_DELTA:
            context_holder["context"].cancel.pause()

    client = ScriptedModelClient(
        [[StreamChunk(content="partial"), StreamChunk(content=" rest"), StreamChunk(finish_reason="stop")]]
    )
    executor = ScriptedToolExecutor([[]])
    orchestrator = CompletionOrchestrator(client, executor=executor)
    context = OrchestratorContext(profile=plain_profile, sink=_sink, clock=SteppingClock())
    context_holder["context"] = context

    result = await orchestrator.complete([Message.text("user", "Hi")], context)

    assert result.paused is True
    assert result.text == "partial"
    assert executor.calls == []
    assert events.types[-2:] == [EventType.TEXT_COMPLETE, EventType.BLOCK_COMPLETE]


@pytest.mark.asyncio
async def test_block_citations_are_deduplicated(plain_profile: ModelProfile, recorder: EventRecorder) -> None:
    payload = SearchPayload(SearchSource.PERPLEXITY, ["https://a.com", "https://b.com", "https://a.com"])
    client = ScriptedModelClient([[StreamChunk(content="Sources", finish_reason="stop", search=payload)]])
    orchestrator = CompletionOrchestrator(client)
    knowledge = (KnowledgeReference(source_url="kb://guide", content="guide text"),)

    result = await orchestrator.complete(
        [Message.text("user", "Hi")],
        _context(plain_profile, recorder, knowledge=knowledge),
    )

    assert recorder.types[-2:] == [EventType.WEB_SEARCH_COMPLETE, EventType.BLOCK_COMPLETE]
    assert [citation.url for citation in result.citations] == ["https://a.com", "https://b.com", "kb://guide"]
    assert [citation.number for citation in result.citations] == [1, 2, 3]
    assert result.citations[-1].type == "knowledge"
    assert recorder.events[-1].citations == result.citations


@pytest.mark.asyncio
async def test_image_generation_event_order(plain_profile: ModelProfile, recorder: EventRecorder) -> None:
    client = ScriptedModelClient(images=["https://img.example.com/1.png"])
    orchestrator = CompletionOrchestrator(client)

    result = await orchestrator.generate_images("a lighthouse", _context(plain_profile, recorder))

    assert recorder.types == [
        EventType.RESPONSE_CREATED,
        EventType.IMAGE_CREATED,
        EventType.IMAGE_COMPLETE,
        EventType.BLOCK_COMPLETE,
    ]
    assert recorder.of_type(EventType.IMAGE_COMPLETE)[0].images == ("https://img.example.com/1.png",)
    assert result.images == ("https://img.example.com/1.png",)
    assert client.calls[0]["prompt"] == "a lighthouse"


@pytest.mark.asyncio
async def test_image_generation_failure(plain_profile: ModelProfile, recorder: EventRecorder) -> None:
    client = ScriptedModelClient(error=TransportError(message="quota exceeded"))
    orchestrator = CompletionOrchestrator(client)

    with pytest.raises(TransportError):
        await orchestrator.generate_images("a lighthouse", _context(plain_profile, recorder))

    assert recorder.types == [EventType.RESPONSE_CREATED, EventType.IMAGE_CREATED, EventType.ERROR]
