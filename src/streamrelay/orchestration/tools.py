"""Default tool-execution collaborator backed by a registry of handlers.

The orchestrator only needs ``execute(answer_text, prior, round_index)``.
:class:`RegistryToolExecutor` implements it by parsing embedded tool-call
markers, validating arguments against each tool's JSON schema and running
the registered handler under a timeout. Per-call failures never abort the
round; they come back as errored :class:`ToolCallResult` records.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence, runtime_checkable

import jsonschema

from .errors import ToolExecutionError
from .tool_call_parser import ParsedToolCall, format_tool_call, parse_embedded_tool_calls
from .types import ToolCallResult

__all__ = [
    "ToolExecutor",
    "ToolHandler",
    "ToolSpec",
    "ToolRegistry",
    "DuplicateToolError",
    "RegistryToolExecutor",
    "build_tool_system_prompt",
]

LOGGER = logging.getLogger(__name__)

ToolHandler = Callable[[Mapping[str, Any]], Any | Awaitable[Any]]


@runtime_checkable
class ToolExecutor(Protocol):
    """Collaborator invoked once per round after the answer is complete."""

    async def execute(
        self,
        answer_text: str,
        prior: Sequence[ToolCallResult],
        round_index: int,
    ) -> Sequence[ToolCallResult]:
        ...


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------


class DuplicateToolError(Exception):
    """Raised when a tool name is registered twice."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Name, description and JSON schema of a tool's arguments."""

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def validator(self) -> jsonschema.Draft202012Validator | None:
        if not self.parameters:
            return None
        return jsonschema.Draft202012Validator(dict(self.parameters))


@dataclass(slots=True)
class _Registration:
    spec: ToolSpec
    handler: ToolHandler
    validator: jsonschema.Draft202012Validator | None
    timeout: float | None


class ToolRegistry:
    """Name-indexed collection of tool handlers."""

    def __init__(self) -> None:
        self._tools: dict[str, _Registration] = {}

    def register(
        self,
        spec: ToolSpec,
        handler: ToolHandler,
        *,
        timeout: float | None = None,
        allow_override: bool = False,
    ) -> None:
        if spec.name in self._tools and not allow_override:
            raise DuplicateToolError(spec.name)
        if spec.parameters:
            jsonschema.Draft202012Validator.check_schema(dict(spec.parameters))
        self._tools[spec.name] = _Registration(spec, handler, spec.validator(), timeout)
        LOGGER.debug("Registered tool: %s", spec.name)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> _Registration | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def specs(self) -> list[ToolSpec]:
        return [registration.spec for registration in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)


# -----------------------------------------------------------------------------
# Executor
# -----------------------------------------------------------------------------


def _render(result: Any) -> str:
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(result)


class RegistryToolExecutor:
    """Runs the tool calls embedded in an answer against a :class:`ToolRegistry`.

    Args:
        registry: Registered tools.
        default_timeout: Seconds allowed per call when the tool sets none.
        log_arguments: Whether to log call arguments at debug level.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        default_timeout: float | None = 30.0,
        log_arguments: bool = False,
    ) -> None:
        self._registry = registry
        self._default_timeout = default_timeout
        self._log_arguments = log_arguments

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def execute(
        self,
        answer_text: str,
        prior: Sequence[ToolCallResult],
        round_index: int,
    ) -> list[ToolCallResult]:
        calls = parse_embedded_tool_calls(answer_text, round_index=round_index)
        if not calls:
            return []
        LOGGER.debug("Round %s requested %s tool call(s) (%s prior)", round_index, len(calls), len(prior))
        results: list[ToolCallResult] = []
        for call in calls:
            try:
                content = await self._run(call)
            except ToolExecutionError as exc:
                results.append(ToolCallResult(call.call_id, f"Error: {exc.message}", name=call.name, error=exc))
            else:
                results.append(ToolCallResult(call.call_id, content, name=call.name))
        return results

    async def _run(self, call: ParsedToolCall) -> str:
        registration = self._registry.get(call.name)
        if registration is None:
            raise ToolExecutionError(message=f"Unknown tool '{call.name}'", tool_name=call.name, call_id=call.call_id)
        if call.arguments is None:
            raise ToolExecutionError(
                message="Arguments must be a JSON object",
                tool_name=call.name,
                call_id=call.call_id,
                details={"arguments": call.raw_arguments},
            )
        if registration.validator is not None:
            issues = sorted(registration.validator.iter_errors(dict(call.arguments)), key=lambda issue: list(issue.path))
            if issues:
                raise ToolExecutionError(
                    message=f"Invalid arguments: {issues[0].message}",
                    tool_name=call.name,
                    call_id=call.call_id,
                    details={"errors": [issue.message for issue in issues]},
                )

        if self._log_arguments:
            LOGGER.debug("Executing tool %s (call_id=%s) with arguments: %s", call.name, call.call_id, call.arguments)
        else:
            LOGGER.debug("Executing tool %s (call_id=%s)", call.name, call.call_id)

        timeout = registration.timeout if registration.timeout is not None else self._default_timeout
        started = time.perf_counter()
        try:
            outcome = registration.handler(call.arguments)
            if inspect.isawaitable(outcome):
                if timeout is not None and timeout > 0:
                    outcome = await asyncio.wait_for(outcome, timeout=timeout)
                else:
                    outcome = await outcome
        except asyncio.TimeoutError as exc:
            LOGGER.warning("Tool %s timed out after %.1fs", call.name, timeout)
            raise ToolExecutionError(
                message=f"Tool timed out after {timeout}s",
                tool_name=call.name,
                call_id=call.call_id,
            ) from exc
        except ToolExecutionError:
            raise
        except Exception as exc:
            LOGGER.warning("Tool %s failed: %s", call.name, exc)
            raise ToolExecutionError(message=str(exc) or type(exc).__name__, tool_name=call.name, call_id=call.call_id) from exc
        LOGGER.debug("Tool %s completed in %.1fms", call.name, (time.perf_counter() - started) * 1000)
        return _render(outcome)


def build_tool_system_prompt(specs: Sequence[ToolSpec]) -> str:
    """Describe *specs* and the call syntax for inclusion in the system prompt."""
    if not specs:
        return ""
    lines = [
        "You can call tools. To call one, reply with the call in exactly this format and nothing after it:",
        format_tool_call("tool_name", {"argument": "value"}),
        "Several calls may appear inside one block. Tool results are returned in the next message.",
        "",
        "Available tools:",
    ]
    for spec in specs:
        lines.append(f"- {spec.name}: {spec.description}")
        if spec.parameters:
            lines.append(f"  parameters: {json.dumps(dict(spec.parameters), ensure_ascii=False, sort_keys=True)}")
    return "\n".join(lines)
