"""Streaming completion orchestration: normalization, splitting, tools, citations."""

from .types import (
    AttachmentRef,
    Citation,
    CompletionMessage,
    CompletionResult,
    FilePart,
    FileType,
    ImagePart,
    KnowledgeReference,
    Message,
    OrchestratorState,
    Phase,
    RequestMessage,
    SearchPayload,
    SearchSource,
    StreamChunk,
    TextPart,
    ToolCallResult,
    Usage,
    UsageMetrics,
)
from .errors import (
    AttachmentError,
    CancellationError,
    ErrorCode,
    StreamRelayError,
    ToolExecutionError,
    ToolLoopExhaustedError,
    TransportError,
    UpstreamEmptyResponseError,
)
from .attachments import AttachmentReader, NullAttachmentReader
from .cancellation import CancellationToken
from .events import EventRecorder, EventSink, EventType, OrchestratorEvent
from .metrics import MetricsTracker

# Message shaping
from .profiles import (
    GenerationSettings,
    ModelProfile,
    build_request_params,
    reasoning_controls,
    resolve_profile,
    search_source_for,
)
from .message_builder import interleave_messages, normalize_messages, select_context_messages

# Stream handling
from .citations import CITATION_ADAPTERS, harvest_citations
from .splitter import ReasoningSplitter
from .thought_processors import extract_thoughts, strip_think_tags

# Tool loop
from .tool_call_parser import ParsedToolCall, parse_embedded_tool_calls
from .tools import RegistryToolExecutor, ToolExecutor, ToolRegistry, ToolSpec, build_tool_system_prompt
from .tool_loop import ToolLoopController

# Facade
from .orchestrator import CompletionOrchestrator, ModelClient, OrchestratorContext

__all__ = [
    # Types
    "AttachmentRef",
    "Citation",
    "CompletionMessage",
    "CompletionResult",
    "FilePart",
    "FileType",
    "ImagePart",
    "KnowledgeReference",
    "Message",
    "OrchestratorState",
    "Phase",
    "RequestMessage",
    "SearchPayload",
    "SearchSource",
    "StreamChunk",
    "TextPart",
    "ToolCallResult",
    "Usage",
    "UsageMetrics",
    # Errors
    "AttachmentError",
    "CancellationError",
    "ErrorCode",
    "StreamRelayError",
    "ToolExecutionError",
    "ToolLoopExhaustedError",
    "TransportError",
    "UpstreamEmptyResponseError",
    # Collaborators
    "AttachmentReader",
    "NullAttachmentReader",
    "CancellationToken",
    "EventRecorder",
    "EventSink",
    "EventType",
    "OrchestratorEvent",
    "MetricsTracker",
    # Message shaping
    "GenerationSettings",
    "ModelProfile",
    "build_request_params",
    "reasoning_controls",
    "resolve_profile",
    "search_source_for",
    "interleave_messages",
    "normalize_messages",
    "select_context_messages",
    # Stream handling
    "CITATION_ADAPTERS",
    "harvest_citations",
    "ReasoningSplitter",
    "extract_thoughts",
    "strip_think_tags",
    # Tool loop
    "ParsedToolCall",
    "parse_embedded_tool_calls",
    "RegistryToolExecutor",
    "ToolExecutor",
    "ToolRegistry",
    "ToolSpec",
    "build_tool_system_prompt",
    "ToolLoopController",
    # Facade
    "CompletionOrchestrator",
    "ModelClient",
    "OrchestratorContext",
]
