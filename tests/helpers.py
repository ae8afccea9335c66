"""Shared test helpers and stub collaborators.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
from typing import Any, Iterable, Mapping, Sequence

from streamrelay.orchestration.cancellation import CancellationToken
from streamrelay.orchestration.errors import AttachmentError
from streamrelay.orchestration.types import AttachmentRef, CompletionMessage, StreamChunk, ToolCallResult


class ScriptedModelClient:
    """Model client replaying one scripted chunk list per request.

    The last script is reused once the list is exhausted, which makes it easy
    to simulate a model that keeps asking for tools.
    """

    def __init__(
        self,
        rounds: Iterable[Sequence[StreamChunk]] = (),
        *,
        messages: Iterable[CompletionMessage] = (),
        images: Sequence[str] = (),
        fail_after: int | None = None,
        error: Exception | None = None,
    ) -> None:
        self.rounds = [list(chunks) for chunks in rounds]
        self.messages = list(messages)
        self.images = list(images)
        self.fail_after = fail_after
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def stream(self, params: Mapping[str, Any], cancel: CancellationToken | None = None):
        index = len(self.calls)
        self.calls.append(dict(params))
        chunks = self.rounds[min(index, len(self.rounds) - 1)]
        for position, chunk in enumerate(chunks):
            if self.fail_after is not None and position == self.fail_after:
                raise self.error or RuntimeError("stream failed")
            yield chunk

    async def complete(self, params: Mapping[str, Any]) -> CompletionMessage:
        index = len(self.calls)
        self.calls.append(dict(params))
        if self.error is not None:
            raise self.error
        return self.messages[min(index, len(self.messages) - 1)]

    async def generate_images(self, model: str, prompt: str, **kwargs: Any) -> list[str]:
        self.calls.append({"model": model, "prompt": prompt, **kwargs})
        if self.error is not None:
            raise self.error
        return list(self.images)


class BlockingModelClient(ScriptedModelClient):
    """Yields its script, then waits forever for the next chunk."""

    def __init__(self, chunks: Sequence[StreamChunk]) -> None:
        super().__init__([chunks])
        self.reached_block = asyncio.Event()

    async def stream(self, params: Mapping[str, Any], cancel: CancellationToken | None = None):
        self.calls.append(dict(params))
        for chunk in self.rounds[0]:
            yield chunk
        self.reached_block.set()
        await asyncio.Event().wait()


class StaticAttachmentReader:
    """Attachment reader serving content from a mapping keyed by attachment id."""

    def __init__(self, files: Mapping[str, bytes | str] | None = None, images: Mapping[str, str] | None = None) -> None:
        self.files = dict(files or {})
        self.images = dict(images or {})
        self.reads: list[str] = []

    async def read(self, ref: AttachmentRef) -> bytes | str:
        self.reads.append(ref.id)
        if ref.id not in self.files:
            raise AttachmentError(message=f"missing {ref.id}")
        return self.files[ref.id]

    async def base64_image(self, ref: AttachmentRef) -> str:
        self.reads.append(ref.id)
        if ref.id not in self.images:
            raise OSError(f"missing image {ref.id}")
        return self.images[ref.id]


class ScriptedToolExecutor:
    """Tool executor returning scripted results per round, optionally repeating the last."""

    def __init__(self, rounds: Sequence[Sequence[ToolCallResult]] = (), *, repeat: bool = False) -> None:
        self.rounds = [list(results) for results in rounds]
        self.repeat = repeat
        self.calls: list[tuple[str, tuple[ToolCallResult, ...], int]] = []

    async def execute(self, answer_text: str, prior: Sequence[ToolCallResult], round_index: int) -> list[ToolCallResult]:
        self.calls.append((answer_text, tuple(prior), round_index))
        if round_index < len(self.rounds):
            return list(self.rounds[round_index])
        if self.repeat and self.rounds:
            return list(self.rounds[-1])
        return []


class SteppingClock:
    """Millisecond clock advancing by ``step`` on every read."""

    def __init__(self, start: float = 1_000.0, step: float = 10.0) -> None:
        self.value = start - step
        self.step = step

    def __call__(self) -> float:
        self.value += self.step
        return self.value
