"""Reasoning/answer splitter driven by the incoming chunk stream.

One :class:`ReasoningSplitter` consumes one round of chunks, moving the
shared :class:`OrchestratorState` through ``WAITING -> REASONING ->
ANSWERING -> DONE`` and emitting the matching events. Reasoning may arrive
on its own channel or inline in the answer channel (``<think>`` tags or
``###Thinking`` / ``###Response`` headings); inline reasoning is rerouted
before the state machine sees it.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, Mapping, Sequence

from .cancellation import CancellationToken
from .citations import CitationAdapter, harvest_citations
from .events import EventSink, EventType, OrchestratorEvent, emit
from .metrics import MetricsTracker
from .thought_processors import RESPONSE_SENTINEL, THINK_CLOSE_TAG, THINK_OPEN_TAG, THINKING_HEADING
from .types import KnowledgeReference, OrchestratorState, Phase, SearchPayload, SearchSource, StreamChunk

__all__ = ["ReasoningSplitter"]

LOGGER = logging.getLogger(__name__)

# Opening marker -> closing marker for reasoning delivered in the answer channel.
_INLINE_MARKERS: Mapping[str, str] = {
    THINK_OPEN_TAG: THINK_CLOSE_TAG,
    THINKING_HEADING: RESPONSE_SENTINEL,
}


def _held_suffix(text: str, marker: str) -> int:
    """Length of the longest suffix of *text* that starts *marker*."""
    for size in range(min(len(text), len(marker) - 1), 0, -1):
        if marker.startswith(text[-size:]):
            return size
    return 0


class ReasoningSplitter:
    """Consumes one round of a completion stream.

    Args:
        state: Request state shared by every round.
        metrics: Request-lifetime metrics tracker.
        sink: Event sink receiving the round's events.
        knowledge: Knowledge hits merged into web-search citations.
        adapters: Optional citation adapter table override.
    """

    def __init__(
        self,
        state: OrchestratorState,
        metrics: MetricsTracker,
        sink: EventSink | None,
        *,
        knowledge: Sequence[KnowledgeReference] = (),
        adapters: Mapping[SearchSource, CitationAdapter] | None = None,
    ) -> None:
        self._state = state
        self._metrics = metrics
        self._sink = sink
        self._knowledge = tuple(knowledge)
        self._adapters = adapters
        self._round_payloads: list[SearchPayload] = []

    @property
    def state(self) -> OrchestratorState:
        return self._state

    async def consume(self, stream: AsyncIterator[StreamChunk], cancel: CancellationToken) -> None:
        """Read *stream* until it ends, the request pauses or it is cancelled.

        Cancellation propagates as ``CancellationError`` without emitting the
        round's completion events and closes *stream*, as does any other
        failure. A pause stops reading without closing the stream and
        finalizes the round with what was received.
        """
        self._round_payloads = []
        try:
            if cancel.paused:
                self._state.paused = True
            else:
                async for chunk in cancel.iterate(stream):
                    await self.feed(chunk)
                    if cancel.paused and self._state.phase is not Phase.DONE:
                        LOGGER.debug("Request paused during round %s", self._state.round_index)
                        self._state.paused = True
                        break
        except Exception:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
            raise
        await self.finish()

    async def feed(self, chunk: StreamChunk) -> None:
        """Apply a single chunk to the state machine."""
        state = self._state
        at = self._metrics.now()
        if chunk.usage is not None:
            state.usage = chunk.usage
            self._metrics.record_usage(chunk.usage)
        if chunk.search is not None:
            state.search_payloads.append(chunk.search)
            self._round_payloads.append(chunk.search)
        if state.phase is Phase.DONE:
            return

        reasoning, content, closed = self._route(chunk)
        if reasoning:
            await self._on_reasoning(reasoning, at)
        if closed and state.phase is Phase.REASONING:
            await self._close_reasoning(at)
        if content:
            await self._on_content(content, at)
        if chunk.finished:
            await self._done(at)

    async def finish(self) -> None:
        """Finalize the round once the stream is exhausted."""
        if self._state.phase is not Phase.DONE:
            await self._done(self._metrics.now())
        if self._round_payloads:
            citations = harvest_citations(self._round_payloads, self._knowledge, adapters=self._adapters)
            await self._emit(
                EventType.WEB_SEARCH_COMPLETE,
                search=self._round_payloads[-1],
                citations=tuple(citations),
            )

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------
    def _route(self, chunk: StreamChunk) -> tuple[str, str, bool]:
        state = self._state
        reasoning = chunk.reasoning or ""
        content = chunk.content or ""

        if state.inline_marker is None and state.phase is Phase.WAITING and content and not reasoning:
            content = state.held_content + content
            state.held_content = ""
            stripped = content.lstrip()
            for opening, closing in _INLINE_MARKERS.items():
                if stripped.startswith(opening):
                    state.inline_marker = closing
                    content = stripped[len(opening):]
                    break
            else:
                if any(opening.startswith(stripped) for opening in _INLINE_MARKERS):
                    state.held_content = content
                    return reasoning, "", False

        if state.inline_marker is not None:
            return self._route_inline(reasoning, content)

        if state.phase is Phase.REASONING and content:
            return self._route_sentinel(reasoning, content)
        return reasoning, content, False

    def _route_sentinel(self, reasoning: str, content: str) -> tuple[str, str, bool]:
        # The previous fragment is held while it may start a closing marker.
        state = self._state
        pending = state.held_content + content
        state.held_content = ""
        stripped = pending.lstrip()
        if stripped.startswith(THINK_CLOSE_TAG):
            return reasoning, stripped[len(THINK_CLOSE_TAG):].lstrip(), True
        if RESPONSE_SENTINEL in pending:
            return reasoning, pending.split(RESPONSE_SENTINEL, 1)[1].lstrip(), True
        if _held_suffix(pending, RESPONSE_SENTINEL) or _held_suffix(pending, THINK_CLOSE_TAG):
            state.held_content = pending
            return reasoning, "", False
        return reasoning, pending, False

    def _route_inline(self, reasoning: str, content: str) -> tuple[str, str, bool]:
        state = self._state
        marker = state.inline_marker or ""
        pending = state.inline_pending + content
        index = pending.find(marker)
        if index >= 0:
            state.inline_marker = None
            state.inline_pending = ""
            return reasoning + pending[:index], pending[index + len(marker):].lstrip(), True
        held = _held_suffix(pending, marker)
        state.inline_pending = pending[len(pending) - held:] if held else ""
        return reasoning + pending[: len(pending) - held], "", False

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    async def _on_reasoning(self, text: str, at: float) -> None:
        state = self._state
        if state.phase is Phase.ANSWERING:
            LOGGER.debug("Dropping reasoning received after the answer started (round %s)", state.round_index)
            return
        state.phase = Phase.REASONING
        self._metrics.begin_thinking(at)
        state.reasoning.append(text)
        await self._emit(EventType.THINKING_DELTA, text=text, thinking_ms=self._metrics.thinking_elapsed(at))

    async def _close_reasoning(self, at: float) -> None:
        state = self._state
        elapsed = self._metrics.end_thinking(at)
        text = state.reasoning_text
        state.final_reasoning = text
        state.phase = Phase.ANSWERING
        await self._emit(EventType.THINKING_COMPLETE, text=text, thinking_ms=elapsed)
        state.reasoning = []

    async def _on_content(self, text: str, at: float) -> None:
        state = self._state
        if state.phase is Phase.REASONING:
            await self._close_reasoning(at)
        state.phase = Phase.ANSWERING
        self._metrics.mark_content(at)
        state.answer.append(text)
        await self._emit(EventType.TEXT_DELTA, text=text)

    async def _done(self, at: float) -> None:
        state = self._state
        if state.inline_pending:
            pending, state.inline_pending = state.inline_pending, ""
            await self._on_reasoning(pending, at)
        if state.held_content:
            held, state.held_content = state.held_content, ""
            await self._on_content(held, at)
        if state.phase is Phase.REASONING:
            await self._close_reasoning(at)
        self._metrics.mark_finish(at)
        state.phase = Phase.DONE
        state.final_text = state.answer_text
        await self._emit(EventType.TEXT_COMPLETE, text=state.final_text)

    async def _emit(self, event_type: EventType, **fields) -> None:
        await emit(self._sink, OrchestratorEvent(type=event_type, round_index=self._state.round_index, **fields))
