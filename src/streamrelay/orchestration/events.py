"""Consumer-facing events emitted while a request is orchestrated."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence

from .types import Citation, SearchPayload, UsageMetrics

__all__ = [
    "EventType",
    "OrchestratorEvent",
    "EventSink",
    "EventRecorder",
    "emit",
]

LOGGER = logging.getLogger(__name__)


class EventType(str, Enum):
    RESPONSE_CREATED = "response.created"
    THINKING_DELTA = "thinking.delta"
    THINKING_COMPLETE = "thinking.complete"
    TEXT_DELTA = "text.delta"
    TEXT_COMPLETE = "text.complete"
    WEB_SEARCH_COMPLETE = "web_search.complete"
    IMAGE_CREATED = "image.created"
    IMAGE_COMPLETE = "image.complete"
    ERROR = "error"
    BLOCK_COMPLETE = "block.complete"


# Event types that fire per chunk and are not logged individually.
_QUIET_EVENT_TYPES = frozenset({EventType.THINKING_DELTA, EventType.TEXT_DELTA})


@dataclass(slots=True)
class OrchestratorEvent:
    """Normalized representation of everything the sink receives.

    Attributes:
        type: Event tag.
        round_index: Tool-loop round that produced the event.
        text: Delta or completed text for thinking/text events.
        thinking_ms: Elapsed thinking time for thinking events.
        search: Raw search payload for web search events.
        citations: Harvested citations for web search and block events.
        images: Image URLs or data URLs for image events.
        metrics: Usage and latency metrics on the terminal block event.
        error: Serialized error for error events.
    """

    type: EventType
    round_index: int = 0
    text: str | None = None
    thinking_ms: float | None = None
    search: SearchPayload | None = None
    citations: tuple[Citation, ...] = ()
    images: tuple[str, ...] = ()
    metrics: UsageMetrics | None = None
    error: dict[str, Any] | None = None


EventSink = Callable[[OrchestratorEvent], Awaitable[None] | None]


async def emit(sink: EventSink | None, event: OrchestratorEvent) -> None:
    """Dispatch *event* to the sink, awaiting it when the sink is async."""
    if event.type not in _QUIET_EVENT_TYPES:
        LOGGER.debug("Emitting %s (round=%s)", event.type.value, event.round_index)
    if sink is None:
        return
    result = sink(event)
    if inspect.isawaitable(result):
        await result


@dataclass
class EventRecorder:
    """Sink that keeps every event in arrival order."""

    events: list[OrchestratorEvent] = field(default_factory=list)

    def __call__(self, event: OrchestratorEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[EventType]:
        return [event.type for event in self.events]

    def of_type(self, *types: EventType) -> Sequence[OrchestratorEvent]:
        return [event for event in self.events if event.type in types]

    def clear(self) -> None:
        self.events.clear()
