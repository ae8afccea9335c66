"""Parsing of tool invocations embedded in answer text.

Models without native tool calling are instructed to write calls as::

    <|tool_calls_begin|>
    <|tool_call_begin|>name<|tool_sep|>{"arg": 1}<|tool_call_end|>
    <|tool_calls_end|>

Some models emit full-width or box-drawing look-alikes for the marker
glyphs, so text is folded to ASCII before matching.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Mapping

__all__ = [
    "TOOL_MARKER_TRANSLATION",
    "TOOL_CALLS_BEGIN",
    "TOOL_CALLS_END",
    "TOOL_CALL_BEGIN",
    "TOOL_CALL_END",
    "TOOL_SEP",
    "ParsedToolCall",
    "parse_embedded_tool_calls",
    "has_tool_calls",
    "format_tool_call",
    "try_parse_json_block",
]

TOOL_CALLS_BEGIN = "<|tool_calls_begin|>"
TOOL_CALLS_END = "<|tool_calls_end|>"
TOOL_CALL_BEGIN = "<|tool_call_begin|>"
TOOL_CALL_END = "<|tool_call_end|>"
TOOL_SEP = "<|tool_sep|>"

TOOL_MARKER_TRANSLATION = str.maketrans(
    {
        "\uff1c": "<",
        "\ufe64": "<",
        "\u3008": "<",
        "\uff1e": ">",
        "\ufe65": ">",
        "\u3009": ">",
        "\uff5c": "|",
        "\uffe8": "|",
        "\u2502": "|",
        "\u2581": "_",
        "\u00a0": " ",
        "\u200b": " ",
        "\u3000": " ",
        "\ufeff": " ",
    }
)

_BLOCK_RE = re.compile(
    r"<\s*\|?\s*tool[\s_]*calls[\s_]*begin\s*\|?\s*>(?P<body>.*?)<\s*\|?\s*tool[\s_]*calls[\s_]*end\s*\|?\s*>",
    re.IGNORECASE | re.DOTALL,
)
_ENTRY_RE = re.compile(
    r"<\s*\|?\s*tool[\s_]*call[\s_]*begin\s*\|?\s*>(?P<name>.*?)"
    r"<\s*\|?\s*tool[\s_]*sep\s*\|?\s*>(?P<args>.*?)"
    r"<\s*\|?\s*tool[\s_]*call[\s_]*end\s*\|?\s*>",
    re.IGNORECASE | re.DOTALL,
)
_FENCE_RE = re.compile(r"^```(?:json)?\s*(?P<inner>.*?)\s*```$", re.DOTALL)


@dataclass(slots=True, frozen=True)
class ParsedToolCall:
    """A tool invocation found in answer text.

    ``arguments`` is ``None`` when the raw argument text is not a JSON object.
    """

    call_id: str
    name: str
    raw_arguments: str
    arguments: Mapping[str, Any] | None
    index: int


def try_parse_json_block(text: str) -> dict[str, Any] | None:
    """Parse *text* as a JSON object, tolerating a surrounding code fence."""
    if not text:
        return None
    candidate = text.strip()
    fenced = _FENCE_RE.match(candidate)
    if fenced:
        candidate = fenced.group("inner")
    if not candidate:
        return {}
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def has_tool_calls(text: str) -> bool:
    return bool(text) and _BLOCK_RE.search(text.translate(TOOL_MARKER_TRANSLATION)) is not None


def parse_embedded_tool_calls(text: str, *, round_index: int = 0) -> list[ParsedToolCall]:
    """Return every call inside every tool-calls block of *text*.

    Call identifiers are derived from the round index and call position so
    the same answer always yields the same identifiers.
    """
    if not text:
        return []
    folded = text.translate(TOOL_MARKER_TRANSLATION)
    calls: list[ParsedToolCall] = []
    for block in _BLOCK_RE.finditer(folded):
        for entry in _ENTRY_RE.finditer(block.group("body") or ""):
            name = (entry.group("name") or "").strip().strip("\"'`")
            raw = (entry.group("args") or "").strip()
            index = len(calls)
            arguments = {} if not raw else try_parse_json_block(raw)
            calls.append(
                ParsedToolCall(
                    call_id=f"call_{round_index}_{index}_{name}",
                    name=name,
                    raw_arguments=raw,
                    arguments=arguments,
                    index=index,
                )
            )
    return calls


def format_tool_call(name: str, arguments: Mapping[str, Any] | None = None) -> str:
    """Render a single call in the marker syntax models are asked to use."""
    payload = json.dumps(dict(arguments or {}), ensure_ascii=False)
    return f"{TOOL_CALLS_BEGIN}{TOOL_CALL_BEGIN}{name}{TOOL_SEP}{payload}{TOOL_CALL_END}{TOOL_CALLS_END}"
