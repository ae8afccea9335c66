"""Async client for OpenAI-compatible completion endpoints.

Raw SDK chunks are normalized into :class:`StreamChunk` records here, so
nothing past this module knows which vendor produced a response. Opening a
request is retried with tenacity; a stream that has started delivering
chunks is never retried.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, List, Mapping

import httpx
from openai import APIConnectionError, APIError, APIStatusError, AsyncOpenAI, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .orchestration.cancellation import CancellationToken
from .orchestration.errors import TransportError, UpstreamEmptyResponseError
from .orchestration.profiles import search_source_for
from .orchestration.thought_processors import extract_thoughts
from .orchestration.types import CompletionMessage, SearchPayload, SearchSource, StreamChunk, Usage

__all__ = [
    "ClientSettings",
    "ModelCheck",
    "AIClient",
    "SEARCH_EXTRACTORS",
    "extract_search_payload",
    "normalize_chunk",
]

LOGGER = logging.getLogger(__name__)

_CHECK_PROMPT = "hi"


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    provider: str = "openai"
    search_source: SearchSource | None = None
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True, frozen=True)
class ModelCheck:
    """Outcome of probing a model with a one-word prompt."""

    valid: bool
    error: str | None = None


# -----------------------------------------------------------------------------
# Chunk normalization
# -----------------------------------------------------------------------------


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _first_choice(raw: Any) -> Any:
    choices = _field(raw, "choices")
    if not choices:
        return None
    return choices[0]


def _openai_annotations(raw: Any, body: Any) -> SearchPayload | None:
    annotations = _field(body, "annotations")
    if not annotations:
        return None
    return SearchPayload(SearchSource.OPENAI, list(annotations))


def _url_list(source: SearchSource) -> Callable[[Any, Any], SearchPayload | None]:
    def _extract(raw: Any, body: Any) -> SearchPayload | None:
        citations = _field(raw, "citations")
        if not citations:
            return None
        return SearchPayload(source, list(citations))

    return _extract


def _zhipu_web_search(raw: Any, body: Any) -> SearchPayload | None:
    results = _field(raw, "web_search")
    if not results:
        return None
    return SearchPayload(SearchSource.ZHIPU, list(results))


def _hunyuan_search_info(raw: Any, body: Any) -> SearchPayload | None:
    results = _field(_field(raw, "search_info"), "search_results")
    if not results:
        return None
    return SearchPayload(SearchSource.HUNYUAN, list(results))


def _gemini_grounding(raw: Any, body: Any) -> SearchPayload | None:
    metadata = None
    for holder in (body, _first_choice(raw), raw):
        metadata = _field(holder, "grounding_metadata") or _field(holder, "groundingMetadata")
        if metadata:
            break
    if not metadata:
        return None
    return SearchPayload(SearchSource.GEMINI, metadata)


# Search source -> extractor reading search results off a raw chunk or response.
SEARCH_EXTRACTORS: dict[SearchSource, Callable[[Any, Any], SearchPayload | None]] = {
    SearchSource.GEMINI: _gemini_grounding,
    SearchSource.OPENAI: _openai_annotations,
    SearchSource.OPENROUTER: _url_list(SearchSource.OPENROUTER),
    SearchSource.PERPLEXITY: _url_list(SearchSource.PERPLEXITY),
    SearchSource.ZHIPU: _zhipu_web_search,
    SearchSource.HUNYUAN: _hunyuan_search_info,
}


def extract_search_payload(raw: Any, body: Any, source: SearchSource | None) -> SearchPayload | None:
    extractor = SEARCH_EXTRACTORS.get(source) if source is not None else None
    if extractor is None:
        return None
    return extractor(raw, body)


def _reasoning_text(body: Any) -> str | None:
    for name in ("reasoning_content", "reasoning"):
        value = _field(body, name)
        if isinstance(value, str) and value:
            return value
    return None


def normalize_chunk(raw: Any, source: SearchSource | None = SearchSource.OPENAI) -> StreamChunk | None:
    """Convert one SDK chunk into a :class:`StreamChunk`; ``None`` when empty."""
    choice = _first_choice(raw)
    delta = _field(choice, "delta")
    content = _field(delta, "content")
    chunk = StreamChunk(
        reasoning=_reasoning_text(delta),
        content=content if isinstance(content, str) and content else None,
        finish_reason=_field(choice, "finish_reason"),
        usage=Usage.from_raw(_field(raw, "usage")),
        search=extract_search_payload(raw, delta, source),
    )
    if not (chunk.reasoning or chunk.content or chunk.finish_reason or chunk.usage or chunk.search):
        return None
    return chunk


# -----------------------------------------------------------------------------
# Client
# -----------------------------------------------------------------------------


class AIClient:
    """Async client exposing normalized streaming and one-shot completions."""

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def provider(self) -> str:
        return (self._settings.provider or "openai").lower()

    @property
    def search_source(self) -> SearchSource | None:
        return self._settings.search_source or search_source_for(self.provider)

    async def stream(
        self,
        params: Mapping[str, Any],
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Yield normalized chunks for a streaming completion request.

        Raises:
            TransportError: When the request cannot be opened after retries or
                the stream fails midway.
        """
        payload = dict(params)
        payload["stream"] = True
        LOGGER.debug(
            "Starting streamed completion via %s with %s message(s)",
            payload.get("model"),
            len(payload.get("messages") or ()),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)
        if cancel is not None:
            cancel.raise_if_cancelled()

        response = await self._create(payload)
        try:
            async with response:
                async for raw in response:
                    chunk = normalize_chunk(raw, self.search_source)
                    if chunk is not None:
                        yield chunk
        except (APIError, httpx.HTTPError) as exc:
            LOGGER.warning("Stream from %s failed: %s", payload.get("model"), exc)
            raise TransportError(message=str(exc) or "Upstream stream failed", details={"model": payload.get("model")}) from exc

    async def complete(self, params: Mapping[str, Any]) -> CompletionMessage:
        """Run a non-streaming completion.

        Raises:
            UpstreamEmptyResponseError: When the response carries no message content.
            TransportError: When the request fails after retries.
        """
        payload = dict(params)
        payload["stream"] = False
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)
        response = await self._create(payload)
        choice = _first_choice(response)
        message = _field(choice, "message")
        content = _field(message, "content")
        reasoning = _reasoning_text(message)
        if message is None or (not content and not reasoning):
            raise UpstreamEmptyResponseError(details={"model": payload.get("model")})

        text = content if isinstance(content, str) else ""
        if not reasoning:
            extracted = extract_thoughts(text)
            reasoning, text = extracted.reasoning or None, extracted.content
        return CompletionMessage(
            content=text,
            reasoning=reasoning,
            finish_reason=_field(choice, "finish_reason") or "stop",
            usage=Usage.from_raw(_field(response, "usage")),
            search=extract_search_payload(response, message, self.search_source),
        )

    async def check_model(self, model_id: str, *, stream: bool = False) -> ModelCheck:
        """Probe *model_id* with a one-word prompt."""
        params = {"model": model_id, "messages": [{"role": "user", "content": _CHECK_PROMPT}]}
        try:
            if not stream:
                await self.complete(params)
                return ModelCheck(valid=True)
            received = False
            async for chunk in self.stream(params):
                if chunk.content or chunk.reasoning:
                    received = True
            if not received:
                return ModelCheck(valid=False, error="Empty streaming response")
            return ModelCheck(valid=True)
        except UpstreamEmptyResponseError as exc:
            return ModelCheck(valid=False, error=exc.message)
        except TransportError as exc:
            LOGGER.info("Model check for %s failed: %s", model_id, exc.message)
            return ModelCheck(valid=False, error=exc.message)

    async def generate_text(self, model: str, prompt: str, content: str) -> str:
        """One-shot helper returning answer text with any reasoning removed."""
        message = await self.complete(
            {
                "model": model,
                "messages": [
                    {"role": "system", "content": prompt},
                    {"role": "user", "content": content},
                ],
            }
        )
        return message.content

    async def generate_images(
        self,
        model: str,
        prompt: str,
        *,
        n: int = 1,
        size: str = "1024x1024",
        **kwargs: Any,
    ) -> list[str]:
        """Generate images and return their URLs (or ``data:`` URLs)."""
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.images.generate(model=model, prompt=prompt, n=n, size=size, **kwargs)
        except (APIError, httpx.HTTPError) as exc:
            raise TransportError(message=str(exc) or "Image generation failed", details={"model": model}) from exc
        images: list[str] = []
        for item in _field(response, "data") or ():
            url = _field(item, "url")
            encoded = _field(item, "b64_json")
            if url:
                images.append(url)
            elif encoded:
                images.append(f"data:image/png;base64,{encoded}")
        return images

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return the model identifiers served by the endpoint."""
        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)
            try:
                response = await self._client.models.list()
            except (APIError, httpx.HTTPError) as exc:
                raise TransportError(message=str(exc) or "Model listing failed") from exc
            models = [item.id.strip() for item in response.data if getattr(item, "id", None)]
            self._models_cache = models
            return list(models)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""
        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _create(self, payload: Mapping[str, Any]) -> Any:
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.chat.completions.create(**payload)
        except (APIError, httpx.HTTPError) as exc:
            LOGGER.warning("Completion request to %s failed: %s", payload.get("model"), exc)
            raise TransportError(message=str(exc) or "Upstream request failed", details={"model": payload.get("model")}) from exc
        return response

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(
                (
                    APIError,
                    APIStatusError,
                    APIConnectionError,
                    RateLimitError,
                    httpx.TimeoutException,
                )
            ),
        )

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("Prompt payload:\n%s", serialized)
