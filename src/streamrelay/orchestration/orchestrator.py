"""Top-level streaming completion orchestrator.

A request flows through message normalization, one or more completion
rounds (each consumed by a :class:`ReasoningSplitter`), the bounded tool
loop and citation harvesting, and ends with a single ``block.complete``
event. Every request gets its own :class:`OrchestratorContext`; nothing is
shared between concurrent requests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterable, Mapping, Protocol, Sequence, runtime_checkable

from ..utils.logging import request_scope
from .attachments import AttachmentReader, NullAttachmentReader
from .cancellation import CancellationToken
from .citations import CitationAdapter, harvest_citations
from .errors import CancellationError, ErrorCode, StreamRelayError
from .events import EventSink, EventType, OrchestratorEvent, emit
from .message_builder import normalize_messages, select_context_messages
from .metrics import Clock, MetricsTracker
from .profiles import GenerationSettings, ModelProfile, build_request_params
from .splitter import ReasoningSplitter
from .tool_loop import ToolLoopController
from .tools import ToolExecutor
from .types import (
    CompletionMessage,
    CompletionResult,
    KnowledgeReference,
    Message,
    OrchestratorState,
    SearchSource,
    StreamChunk,
)

__all__ = [
    "ModelClient",
    "OrchestratorContext",
    "CompletionOrchestrator",
]

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class ModelClient(Protocol):
    """Upstream completion endpoint, already normalized to :class:`StreamChunk`."""

    def stream(self, params: Mapping[str, Any], cancel: CancellationToken | None = None) -> AsyncIterator[StreamChunk]:
        ...

    async def complete(self, params: Mapping[str, Any]) -> CompletionMessage:
        ...

    async def generate_images(self, model: str, prompt: str, **kwargs: Any) -> list[str]:
        ...


@dataclass(slots=True)
class OrchestratorContext:
    """Everything a single request needs, constructed per request.

    Attributes:
        profile: Capability profile of the target model.
        settings: Sampling and loop settings.
        sink: Receives every event of the request.
        cancel: Request-scoped cancellation token, shared by all rounds.
        system_prompt: Optional system prompt placed before the messages.
        knowledge: Knowledge-base hits cited after web results.
        clock: Optional millisecond clock for metrics.
        request_id: Correlation id stamped on log records; allocated when unset.
    """

    profile: ModelProfile
    settings: GenerationSettings = field(default_factory=GenerationSettings)
    sink: EventSink | None = None
    cancel: CancellationToken = field(default_factory=CancellationToken)
    system_prompt: str | None = None
    knowledge: tuple[KnowledgeReference, ...] = ()
    clock: Clock | None = None
    request_id: str | None = None


async def _replay(chunks: Iterable[StreamChunk]) -> AsyncIterator[StreamChunk]:
    for chunk in chunks:
        yield chunk


class CompletionOrchestrator:
    """Composes normalization, splitting, the tool loop and citations.

    Args:
        client: Upstream completion endpoint.
        reader: Attachment collaborator used during normalization.
        executor: Tool collaborator; ``None`` disables the tool loop.
        citation_adapters: Optional override of the citation adapter table.
    """

    def __init__(
        self,
        client: ModelClient,
        *,
        reader: AttachmentReader | None = None,
        executor: ToolExecutor | None = None,
        citation_adapters: Mapping[SearchSource, CitationAdapter] | None = None,
    ) -> None:
        self._client = client
        self._reader = reader or NullAttachmentReader()
        self._executor = executor
        self._adapters = citation_adapters

    @property
    def client(self) -> ModelClient:
        return self._client

    async def complete(
        self,
        messages: Sequence[Message],
        context: OrchestratorContext,
        *,
        apply_context_window: bool = False,
    ) -> CompletionResult:
        """Run one top-level completion request.

        Raises:
            CancellationError: When the context's token is cancelled. No
                completion events are emitted for the interrupted round.
            StreamRelayError: Any other failure, after an ``error`` event.
        """
        with request_scope(context.request_id):
            return await self._complete(messages, context, apply_context_window)

    async def _complete(
        self,
        messages: Sequence[Message],
        context: OrchestratorContext,
        apply_context_window: bool,
    ) -> CompletionResult:
        settings = context.settings.clamp()
        metrics = MetricsTracker(context.clock)
        metrics.start()
        state = OrchestratorState()
        try:
            await emit(context.sink, OrchestratorEvent(type=EventType.RESPONSE_CREATED))
            selected = (
                select_context_messages(messages, settings.context_count) if apply_context_window else list(messages)
            )
            state.transcript = await context.cancel.guard(
                normalize_messages(selected, context.profile, self._reader, system_prompt=context.system_prompt)
            )
            splitter = ReasoningSplitter(
                state,
                metrics,
                context.sink,
                knowledge=context.knowledge,
                adapters=self._adapters,
            )

            async def run_round(round_state: OrchestratorState) -> None:
                params = build_request_params(context.profile, settings, round_state.transcript)
                LOGGER.debug(
                    "Round %s: requesting %s with %s message(s)",
                    round_state.round_index,
                    context.profile.model_id,
                    len(round_state.transcript),
                )
                if settings.stream:
                    stream = self._client.stream(params, context.cancel)
                else:
                    message = await context.cancel.guard(self._client.complete(params))
                    stream = _replay(message.as_chunks())
                await splitter.consume(stream, context.cancel)

            controller = ToolLoopController(
                self._executor,
                sink=context.sink,
                cancel=context.cancel,
                max_rounds=settings.max_tool_rounds,
                strict_alternation=context.profile.strict_alternation,
            )
            rounds = await controller.run(state, run_round)
        except CancellationError:
            LOGGER.info("Request for %s cancelled", context.profile.model_id)
            raise
        except StreamRelayError as exc:
            await emit(context.sink, OrchestratorEvent(type=EventType.ERROR, round_index=state.round_index, error=exc.to_dict()))
            raise
        except Exception as exc:
            LOGGER.exception("Unexpected failure while orchestrating %s", context.profile.model_id)
            error = {"error": ErrorCode.INTERNAL_ERROR, "message": str(exc) or type(exc).__name__}
            await emit(context.sink, OrchestratorEvent(type=EventType.ERROR, round_index=state.round_index, error=error))
            raise

        return await self._finalize(state, metrics, context, rounds)

    async def _finalize(
        self,
        state: OrchestratorState,
        metrics: MetricsTracker,
        context: OrchestratorContext,
        rounds: int,
    ) -> CompletionResult:
        metrics.complete()
        snapshot = metrics.snapshot()
        citations = tuple(harvest_citations(state.search_payloads, context.knowledge, adapters=self._adapters))
        await emit(
            context.sink,
            OrchestratorEvent(type=EventType.BLOCK_COMPLETE, metrics=snapshot, citations=citations),
        )
        return CompletionResult(
            text=state.final_text,
            reasoning=state.final_reasoning,
            metrics=snapshot,
            citations=citations,
            rounds=rounds,
            tool_responses=tuple(state.tool_responses),
            paused=state.paused,
        )

    async def generate_images(
        self,
        prompt: str,
        context: OrchestratorContext,
        **kwargs: Any,
    ) -> CompletionResult:
        """Image-generation variant: one request, image events, one block event."""
        with request_scope(context.request_id):
            return await self._generate_images(prompt, context, kwargs)

    async def _generate_images(
        self, prompt: str, context: OrchestratorContext, kwargs: Mapping[str, Any]
    ) -> CompletionResult:
        metrics = MetricsTracker(context.clock)
        metrics.start()
        try:
            await emit(context.sink, OrchestratorEvent(type=EventType.RESPONSE_CREATED))
            await emit(context.sink, OrchestratorEvent(type=EventType.IMAGE_CREATED))
            images = tuple(
                await context.cancel.guard(self._client.generate_images(context.profile.model_id, prompt, **kwargs))
            )
        except CancellationError:
            raise
        except StreamRelayError as exc:
            await emit(context.sink, OrchestratorEvent(type=EventType.ERROR, error=exc.to_dict()))
            raise
        metrics.mark_finish(metrics.now())
        await emit(context.sink, OrchestratorEvent(type=EventType.IMAGE_COMPLETE, images=images))
        metrics.complete()
        snapshot = metrics.snapshot()
        await emit(context.sink, OrchestratorEvent(type=EventType.BLOCK_COMPLETE, metrics=snapshot))
        return CompletionResult(text="", metrics=snapshot, images=images)
