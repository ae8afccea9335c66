"""Attachment I/O collaborator contract used by message normalization."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .errors import AttachmentError
from .types import AttachmentRef

__all__ = ["AttachmentReader", "NullAttachmentReader", "decode_text"]


@runtime_checkable
class AttachmentReader(Protocol):
    """Reads attachment content on behalf of the orchestrator.

    Failures raise ``AttachmentError`` or ``OSError``; the orchestrator
    never retries them.
    """

    async def read(self, ref: AttachmentRef) -> bytes | str:
        """Return the raw content of a text or document attachment."""
        ...

    async def base64_image(self, ref: AttachmentRef) -> str:
        """Return the image as a ``data:`` URL."""
        ...


class NullAttachmentReader:
    """Reader used when the application supplies none; every read fails."""

    async def read(self, ref: AttachmentRef) -> bytes | str:
        raise AttachmentError(message=f"No attachment reader configured for {ref.storage_name}")

    async def base64_image(self, ref: AttachmentRef) -> str:
        raise AttachmentError(message=f"No attachment reader configured for {ref.storage_name}")


def decode_text(payload: bytes | str) -> str:
    if isinstance(payload, bytes):
        return payload.decode("utf-8", errors="replace")
    return payload
