"""Normalization of application messages into upstream request messages."""

from __future__ import annotations

import logging
from typing import Sequence

from .attachments import AttachmentReader, decode_text
from .errors import AttachmentError
from .profiles import ModelProfile
from .types import (
    AttachmentRef,
    ImageContent,
    Message,
    MessageRole,
    RequestMessage,
    TextContent,
)

__all__ = [
    "DEVELOPER_FORMATTING_PREFIX",
    "FILE_DIVIDER",
    "normalize_messages",
    "normalize_message",
    "interleave_messages",
    "select_context_messages",
]

LOGGER = logging.getLogger(__name__)

# OpenAI reasoning models disable markdown unless the developer message opts back in.
DEVELOPER_FORMATTING_PREFIX = "Formatting re-enabled"
FILE_DIVIDER = "\n\n---\n\n"

_ALTERNATING_ROLES: frozenset[str] = frozenset({"user", "assistant"})


async def _read_text(reader: AttachmentReader, ref: AttachmentRef) -> str:
    try:
        return decode_text(await reader.read(ref))
    except (AttachmentError, OSError) as exc:
        LOGGER.warning("Attachment %s could not be read: %s", ref.storage_name, exc)
        return ""


async def _read_image(reader: AttachmentReader, ref: AttachmentRef) -> str | None:
    try:
        return await reader.base64_image(ref)
    except (AttachmentError, OSError) as exc:
        LOGGER.warning("Image %s could not be read and was skipped: %s", ref.storage_name, exc)
        return None


def _system_role(profile: ModelProfile) -> MessageRole:
    return "developer" if profile.developer_role else "user"


async def _flatten(message: Message, role: MessageRole, reader: AttachmentReader) -> RequestMessage:
    text = message.main_text
    textual = [part.file for part in message.files if part.file.is_textual]
    if not textual:
        return RequestMessage(role=role, content=text)
    text += FILE_DIVIDER
    for ref in textual:
        content = await _read_text(reader, ref)
        text += f"file: {ref.origin_name}\n\n{content}{FILE_DIVIDER}"
    return RequestMessage(role=role, content=text)


async def normalize_message(
    message: Message,
    profile: ModelProfile,
    reader: AttachmentReader,
) -> RequestMessage:
    """Convert one application message into the upstream shape."""
    role: MessageRole = message.role
    if role == "system":
        role = _system_role(profile)

    if not message.images and not message.files:
        return RequestMessage(role=role, content=message.main_text)

    if not profile.array_content:
        return await _flatten(message, role, reader)

    parts: list[TextContent | ImageContent] = []
    text = message.main_text
    if text:
        parts.append(TextContent(text))

    if profile.vision:
        for image in message.images:
            if image.url:
                parts.append(ImageContent(image.url))
            elif image.file is not None:
                data_url = await _read_image(reader, image.file)
                if data_url:
                    parts.append(ImageContent(data_url))

    for file_part in message.files:
        ref = file_part.file
        if not ref.is_textual:
            continue
        content = await _read_text(reader, ref)
        parts.append(TextContent(f"{ref.origin_name}\n{content.strip()}"))

    return RequestMessage(role=role, content=tuple(parts))


def _system_prompt_message(system_prompt: str | None, profile: ModelProfile) -> RequestMessage | None:
    if not system_prompt:
        return None
    if profile.developer_role:
        return RequestMessage(role="developer", content=f"{DEVELOPER_FORMATTING_PREFIX}\n{system_prompt}")
    return RequestMessage(role="system", content=system_prompt)


async def normalize_messages(
    messages: Sequence[Message],
    profile: ModelProfile,
    reader: AttachmentReader,
    *,
    system_prompt: str | None = None,
) -> tuple[RequestMessage, ...]:
    """Produce the request message list for *profile*.

    The result depends only on the inputs and the reader's content. Strict
    alternation is applied last when the profile requires it.
    """
    normalized: list[RequestMessage] = []
    system_message = _system_prompt_message(system_prompt, profile)
    if system_message is not None:
        normalized.append(system_message)
    for message in messages:
        normalized.append(await normalize_message(message, profile, reader))
    if profile.strict_alternation:
        return interleave_messages(normalized)
    return tuple(normalized)


def interleave_messages(messages: Sequence[RequestMessage]) -> tuple[RequestMessage, ...]:
    """Insert empty opposite-role messages between repeated user/assistant turns.

    Only ``user`` and ``assistant`` pairs are considered. ``[u1, u2, a1, a2]``
    becomes ``[u1, a'', u2, a1, u'', a2]``.
    """
    result: list[RequestMessage] = []
    for message in messages:
        if result:
            previous = result[-1]
            if previous.role == message.role and message.role in _ALTERNATING_ROLES:
                filler: MessageRole = "assistant" if message.role == "user" else "user"
                result.append(RequestMessage(role=filler, content=""))
        result.append(message)
    return tuple(result)


def select_context_messages(messages: Sequence[Message], context_count: int) -> list[Message]:
    """Pick the messages sent upstream for a conversation turn.

    Keeps the last ``context_count + 1`` messages, drops messages with no
    content and any leading messages that do not come from the user.
    """
    window = list(messages)[-(max(context_count, 0) + 1):]
    window = [message for message in window if not message.is_empty]
    while window and window[0].role != "user":
        window.pop(0)
    return window
