"""Core type definitions for the completion orchestrator.

Caller-owned inputs (messages, attachments) and the normalized request
messages are frozen dataclasses. ``OrchestratorState`` is the only mutable
record and is owned by the single task executing a request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping, Union

from openai.types.chat import ChatCompletionMessageParam

__all__ = [
    "MessageRole",
    "FileType",
    "AttachmentRef",
    "TextPart",
    "ImagePart",
    "FilePart",
    "MessagePart",
    "Message",
    "TextContent",
    "ImageContent",
    "RequestMessage",
    "SearchSource",
    "SearchPayload",
    "Usage",
    "StreamChunk",
    "CompletionMessage",
    "ToolCallResult",
    "Citation",
    "KnowledgeReference",
    "UsageMetrics",
    "Phase",
    "OrchestratorState",
    "CompletionResult",
]


MessageRole = Literal["system", "user", "assistant", "tool", "developer"]


class FileType(str, Enum):
    """Attachment categories relevant to message normalization."""

    TEXT = "text"
    DOCUMENT = "document"
    IMAGE = "image"
    OTHER = "other"


# -----------------------------------------------------------------------------
# Caller messages
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class AttachmentRef:
    """Reference to an attachment stored by the application.

    Attributes:
        id: Storage identifier of the file.
        ext: File extension including the leading dot.
        origin_name: Name the user attached the file under.
        type: Attachment category.
    """

    id: str
    ext: str = ""
    origin_name: str = ""
    type: FileType = FileType.OTHER

    @property
    def storage_name(self) -> str:
        return f"{self.id}{self.ext}"

    @property
    def is_textual(self) -> bool:
        return self.type in (FileType.TEXT, FileType.DOCUMENT)


@dataclass(slots=True, frozen=True)
class TextPart:
    text: str


@dataclass(slots=True, frozen=True)
class ImagePart:
    """Image attached to a message, either stored locally or already a URL."""

    file: AttachmentRef | None = None
    url: str | None = None


@dataclass(slots=True, frozen=True)
class FilePart:
    file: AttachmentRef


MessagePart = Union[TextPart, ImagePart, FilePart]


@dataclass(slots=True, frozen=True)
class Message:
    """Application-level chat message. Read-only to the orchestrator."""

    role: MessageRole
    parts: tuple[MessagePart, ...] = ()
    id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.parts, tuple):
            object.__setattr__(self, "parts", tuple(self.parts))

    @classmethod
    def text(cls, role: MessageRole, text: str, *, id: str | None = None) -> Message:
        """Create a message holding a single text part."""
        return cls(role=role, parts=(TextPart(text),), id=id)

    @property
    def main_text(self) -> str:
        return "\n".join(part.text for part in self.parts if isinstance(part, TextPart) and part.text)

    @property
    def images(self) -> tuple[ImagePart, ...]:
        return tuple(part for part in self.parts if isinstance(part, ImagePart))

    @property
    def files(self) -> tuple[FilePart, ...]:
        return tuple(part for part in self.parts if isinstance(part, FilePart))

    @property
    def is_empty(self) -> bool:
        return not self.main_text.strip() and not self.images and not self.files


# -----------------------------------------------------------------------------
# Request messages
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TextContent:
    text: str

    def to_param(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(slots=True, frozen=True)
class ImageContent:
    url: str

    def to_param(self) -> dict[str, Any]:
        return {"type": "image_url", "image_url": {"url": self.url}}


@dataclass(slots=True, frozen=True)
class RequestMessage:
    """Normalized message sent upstream. Never edited once built."""

    role: MessageRole
    content: str | tuple[TextContent | ImageContent, ...] = ""

    def __post_init__(self) -> None:
        if isinstance(self.content, list):
            object.__setattr__(self, "content", tuple(self.content))

    def to_param(self) -> ChatCompletionMessageParam:
        """Convert to OpenAI's ChatCompletionMessageParam format."""
        if isinstance(self.content, str):
            content: Any = self.content
        else:
            content = [part.to_param() for part in self.content]
        return {"role": self.role, "content": content}  # type: ignore[return-value]


# -----------------------------------------------------------------------------
# Stream chunks
# -----------------------------------------------------------------------------


class SearchSource(str, Enum):
    """Vendor tag identifying the shape of a search-result payload."""

    GEMINI = "gemini"
    OPENAI = "openai"
    OPENROUTER = "openrouter"
    PERPLEXITY = "perplexity"
    ZHIPU = "zhipu"
    HUNYUAN = "hunyuan"
    WEBSEARCH = "websearch"


@dataclass(slots=True, frozen=True)
class SearchPayload:
    """Vendor-tagged search results exactly as the vendor delivered them."""

    source: SearchSource
    results: Any


@dataclass(slots=True, frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_raw(cls, raw: Any) -> Usage | None:
        """Build from an OpenAI usage object or mapping."""
        if raw is None:
            return None

        def _read(name: str) -> int:
            value = raw.get(name) if isinstance(raw, Mapping) else getattr(raw, name, None)
            try:
                return int(value or 0)
            except (TypeError, ValueError):
                return 0

        prompt = _read("prompt_tokens")
        completion = _read("completion_tokens")
        total = _read("total_tokens") or prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


@dataclass(slots=True, frozen=True)
class StreamChunk:
    """One vendor-delivered increment, normalized at the client boundary."""

    reasoning: str | None = None
    content: str | None = None
    finish_reason: str | None = None
    usage: Usage | None = None
    search: SearchPayload | None = None

    @property
    def finished(self) -> bool:
        return bool(self.finish_reason)


@dataclass(slots=True, frozen=True)
class CompletionMessage:
    """Message returned by a non-streaming completion."""

    content: str
    reasoning: str | None = None
    finish_reason: str | None = "stop"
    usage: Usage | None = None
    search: SearchPayload | None = None

    def as_chunks(self) -> tuple[StreamChunk, ...]:
        """Express the message as the chunk sequence a stream would have produced."""
        chunks: list[StreamChunk] = []
        if self.reasoning:
            chunks.append(StreamChunk(reasoning=self.reasoning))
        chunks.append(
            StreamChunk(
                content=self.content,
                finish_reason=self.finish_reason or "stop",
                usage=self.usage,
                search=self.search,
            )
        )
        return tuple(chunks)


# -----------------------------------------------------------------------------
# Tool results and citations
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCallResult:
    """Outcome of one tool invocation found in the answer text."""

    source_call_id: str
    content: str
    name: str = ""
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_request_message(self) -> RequestMessage:
        """Render the result as the message fed back to the model."""
        label = self.name or self.source_call_id
        return RequestMessage(
            role="user",
            content=f"Here is the result of tool call `{label}` (id {self.source_call_id}):\n{self.content}",
        )


@dataclass(slots=True, frozen=True)
class Citation:
    number: int
    url: str
    title: str | None = None
    hostname: str | None = None
    content: str | None = None
    show_favicon: bool = True
    type: Literal["websearch", "knowledge"] = "websearch"


@dataclass(slots=True, frozen=True)
class KnowledgeReference:
    """Knowledge-base hit supplied by the caller alongside a request."""

    source_url: str
    content: str = ""


@dataclass(slots=True, frozen=True)
class UsageMetrics:
    """Token counts and latencies computed once per top-level request."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    time_first_token_ms: float = 0.0
    time_first_content_ms: float = 0.0
    time_completion_ms: float = 0.0
    time_thinking_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "time_first_token_ms": self.time_first_token_ms,
            "time_first_content_ms": self.time_first_content_ms,
            "time_completion_ms": self.time_completion_ms,
            "time_thinking_ms": self.time_thinking_ms,
        }


# -----------------------------------------------------------------------------
# Request state
# -----------------------------------------------------------------------------


class Phase(str, Enum):
    WAITING = "waiting"
    REASONING = "reasoning"
    ANSWERING = "answering"
    DONE = "done"


@dataclass(slots=True)
class OrchestratorState:
    """Per-request mutable state threaded through every stage.

    Attributes:
        transcript: Request messages sent on the current round (append-only).
        reasoning: Reasoning fragments of the current round.
        answer: Answer fragments of the current round.
        phase: Splitter phase for the current round.
        round_index: Tool-loop round, used to tag events.
        usage: Last usage snapshot seen on any chunk of any round.
        tool_responses: Tool results produced so far, in order.
        search_payloads: Search payloads received across rounds.
        inline_marker: Closing marker while reasoning arrives in the answer channel.
        inline_pending: Answer-channel text held back while it may begin the marker.
        held_content: Answer-channel text held back while it may start an opening
            marker or the end-of-reasoning sentinel.
        paused: Whether consumption stopped because the request was paused.
        final_text: Answer text of the last finished round.
        final_reasoning: Reasoning text of the last round that produced any.
    """

    transcript: tuple[RequestMessage, ...] = ()
    reasoning: list[str] = field(default_factory=list)
    answer: list[str] = field(default_factory=list)
    phase: Phase = Phase.WAITING
    round_index: int = 0
    usage: Usage | None = None
    tool_responses: list[ToolCallResult] = field(default_factory=list)
    search_payloads: list[SearchPayload] = field(default_factory=list)
    inline_marker: str | None = None
    inline_pending: str = ""
    held_content: str = ""
    paused: bool = False
    final_text: str = ""
    final_reasoning: str = ""

    @property
    def reasoning_text(self) -> str:
        return "".join(self.reasoning)

    @property
    def answer_text(self) -> str:
        return "".join(self.answer)

    def begin_round(self, round_index: int) -> None:
        """Reset the per-round buffers while keeping request-lifetime data."""
        self.round_index = round_index
        self.reasoning = []
        self.answer = []
        self.phase = Phase.WAITING
        self.inline_marker = None
        self.inline_pending = ""
        self.held_content = ""

    def extend_transcript(self, *messages: RequestMessage) -> None:
        self.transcript = self.transcript + tuple(messages)


@dataclass(slots=True, frozen=True)
class CompletionResult:
    """Aggregate returned to the caller once a request terminates."""

    text: str
    reasoning: str = ""
    metrics: UsageMetrics = field(default_factory=UsageMetrics)
    citations: tuple[Citation, ...] = ()
    rounds: int = 1
    tool_responses: tuple[ToolCallResult, ...] = ()
    paused: bool = False
    images: tuple[str, ...] = ()
