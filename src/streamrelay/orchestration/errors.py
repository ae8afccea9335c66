"""Standardized error types for the completion orchestrator.

Every error carries a machine-readable code and serializes to the same
mapping shape so it can be attached to ``error`` events.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


class ErrorCode:
    """Constants for error codes surfaced in error events."""

    TRANSPORT = "transport_error"
    CANCELLED = "cancelled"
    TOOL_EXECUTION = "tool_execution_failed"
    TOOL_LOOP_EXHAUSTED = "tool_loop_exhausted"
    EMPTY_RESPONSE = "empty_response"
    ATTACHMENT = "attachment_unreadable"
    INTERNAL_ERROR = "internal_error"


@dataclass
class StreamRelayError(Exception):
    """Base exception for all orchestrator errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
    """

    error_code: str = ErrorCode.INTERNAL_ERROR
    message: str = "Internal error"
    details: dict[str, Any] = field(default_factory=dict)

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for error events."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


@dataclass
class TransportError(StreamRelayError):
    """Stream or network failure while talking to the upstream endpoint."""

    error_code: str = field(default=ErrorCode.TRANSPORT)
    message: str = field(default="Upstream stream failed")
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class CancellationError(StreamRelayError):
    """Raised when the request-scoped cancellation token fires."""

    error_code: str = field(default=ErrorCode.CANCELLED)
    message: str = field(default="Request was cancelled")
    details: dict[str, Any] = field(default_factory=dict)

    severity: ClassVar[str] = "info"


@dataclass
class ToolExecutionError(StreamRelayError):
    """A single tool call failed."""

    error_code: str = field(default=ErrorCode.TOOL_EXECUTION)
    message: str = field(default="Tool execution failed")
    details: dict[str, Any] = field(default_factory=dict)

    tool_name: str = ""
    call_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.tool_name:
            result["tool_name"] = self.tool_name
        if self.call_id:
            result["call_id"] = self.call_id
        return result


@dataclass
class UpstreamEmptyResponseError(StreamRelayError):
    """A non-streaming response contained no message content."""

    error_code: str = field(default=ErrorCode.EMPTY_RESPONSE)
    message: str = field(default="Empty response")
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolLoopExhaustedError(StreamRelayError):
    """The tool-call loop needed more rounds than allowed."""

    error_code: str = field(default=ErrorCode.TOOL_LOOP_EXHAUSTED)
    message: str = field(default="Tool-call loop exceeded the maximum round count")
    details: dict[str, Any] = field(default_factory=dict)

    max_rounds: int = 0

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["max_rounds"] = self.max_rounds
        return result


@dataclass
class AttachmentError(StreamRelayError):
    """Raised by attachment readers when content cannot be loaded."""

    error_code: str = field(default=ErrorCode.ATTACHMENT)
    message: str = field(default="Attachment could not be read")
    details: dict[str, Any] = field(default_factory=dict)


__all__ = [
    "ErrorCode",
    "StreamRelayError",
    "TransportError",
    "CancellationError",
    "ToolExecutionError",
    "UpstreamEmptyResponseError",
    "ToolLoopExhaustedError",
    "AttachmentError",
]
