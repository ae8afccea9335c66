"""Post-hoc extraction of reasoning embedded inside answer text.

Some models deliver reasoning inline, either wrapped in ``<think>`` tags or
under ``###Thinking`` / ``###Response`` headings. The processors here split
a completed answer into ``(reasoning, content)``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Sequence

__all__ = [
    "THINK_OPEN_TAG",
    "THINK_CLOSE_TAG",
    "THINKING_HEADING",
    "RESPONSE_SENTINEL",
    "ThoughtExtraction",
    "ThoughtProcessor",
    "extract_think_tags",
    "extract_heading_sections",
    "DEFAULT_THOUGHT_PROCESSORS",
    "extract_thoughts",
    "strip_think_tags",
]

THINK_OPEN_TAG = "<think>"
THINK_CLOSE_TAG = "</think>"
THINKING_HEADING = "###Thinking"
RESPONSE_SENTINEL = "###Response"

_THINK_BLOCK_RE = re.compile(r"^\s*<think>(?P<reasoning>.*?)</think>", re.DOTALL)
_THINK_ANYWHERE_RE = re.compile(r"<think>.*?</think>", re.DOTALL)


@dataclass(slots=True, frozen=True)
class ThoughtExtraction:
    reasoning: str
    content: str


ThoughtProcessor = Callable[[str], "ThoughtExtraction | None"]


def extract_think_tags(text: str) -> ThoughtExtraction | None:
    """Split a leading ``<think>...</think>`` block from *text*."""
    if not text:
        return None
    match = _THINK_BLOCK_RE.match(text)
    if match is None:
        return None
    return ThoughtExtraction(
        reasoning=match.group("reasoning").strip(),
        content=text[match.end():].strip(),
    )


def extract_heading_sections(text: str) -> ThoughtExtraction | None:
    """Split ``###Thinking`` / ``###Response`` sections."""
    if not text or THINKING_HEADING not in text or RESPONSE_SENTINEL not in text:
        return None
    head, _, rest = text.partition(THINKING_HEADING)
    if head.strip():
        return None
    reasoning, _, content = rest.partition(RESPONSE_SENTINEL)
    return ThoughtExtraction(reasoning=reasoning.strip(), content=content.strip())


DEFAULT_THOUGHT_PROCESSORS: tuple[ThoughtProcessor, ...] = (
    extract_think_tags,
    extract_heading_sections,
)


def extract_thoughts(
    text: str,
    processors: Sequence[ThoughtProcessor] = DEFAULT_THOUGHT_PROCESSORS,
) -> ThoughtExtraction:
    """Apply the first processor that recognizes *text*."""
    for processor in processors:
        extracted = processor(text)
        if extracted is not None:
            return extracted
    return ThoughtExtraction(reasoning="", content=text)


def strip_think_tags(text: str) -> str:
    return _THINK_ANYWHERE_RE.sub("", text or "").strip()
