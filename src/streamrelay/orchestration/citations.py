"""Normalize vendor search results into a deduplicated citation list.

Each vendor tag maps to one adapter in ``CITATION_ADAPTERS``. Adding a
vendor means registering an adapter; the harvester itself never branches
on vendor shape.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable, Iterable, Mapping, Sequence
from urllib.parse import urlsplit

from .types import Citation, KnowledgeReference, SearchPayload, SearchSource

__all__ = [
    "CitationAdapter",
    "CITATION_ADAPTERS",
    "harvest_citations",
    "hostname_for",
]

LOGGER = logging.getLogger(__name__)

CitationAdapter = Callable[[Any], list[Citation]]


def _field(obj: Any, name: str) -> Any:
    """Read *name* from a mapping or an SDK object."""
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _items(results: Any) -> Sequence[Any]:
    if results is None or isinstance(results, (str, bytes)):
        return ()
    if isinstance(results, Sequence):
        return results
    if isinstance(results, Iterable):
        return list(results)
    return ()


def hostname_for(url: str) -> str:
    """Return the URL's hostname, or the raw URL when it cannot be parsed."""
    try:
        hostname = urlsplit(url).hostname
    except ValueError:
        return url
    return hostname or url


def _web(index: int, url: Any, **fields: Any) -> Citation:
    return Citation(number=index + 1, url=str(url or ""), type="websearch", **fields)


def _from_gemini(results: Any) -> list[Citation]:
    chunks = _items(_field(results, "groundingChunks") or _field(results, "grounding_chunks"))
    citations = []
    for index, chunk in enumerate(chunks):
        web = _field(chunk, "web")
        citations.append(_web(index, _field(web, "uri"), title=_field(web, "title"), show_favicon=False))
    return citations


def _from_openai(results: Any) -> list[Citation]:
    citations = []
    for index, annotation in enumerate(_items(results)):
        url_citation = _field(annotation, "url_citation") or {}
        url = str(_field(url_citation, "url") or "")
        title = _field(url_citation, "title")
        citations.append(_web(index, url, title=title, hostname=None if title else hostname_for(url)))
    return citations


def _from_url_list(results: Any) -> list[Citation]:
    return [_web(index, url, hostname=hostname_for(str(url))) for index, url in enumerate(_items(results))]


def _from_link_results(results: Any) -> list[Citation]:
    citations = []
    for index, result in enumerate(_items(results)):
        url = _field(result, "link") or _field(result, "url")
        citations.append(_web(index, url, title=_field(result, "title")))
    return citations


def _from_websearch(results: Any) -> list[Citation]:
    citations = []
    for index, result in enumerate(_items(_field(results, "results"))):
        citations.append(
            _web(
                index,
                _field(result, "url"),
                title=_field(result, "title"),
                content=_field(result, "content"),
            )
        )
    return citations


CITATION_ADAPTERS: dict[SearchSource, CitationAdapter] = {
    SearchSource.GEMINI: _from_gemini,
    SearchSource.OPENAI: _from_openai,
    SearchSource.OPENROUTER: _from_url_list,
    SearchSource.PERPLEXITY: _from_url_list,
    SearchSource.ZHIPU: _from_link_results,
    SearchSource.HUNYUAN: _from_link_results,
    SearchSource.WEBSEARCH: _from_websearch,
}


def _from_knowledge(references: Sequence[KnowledgeReference]) -> list[Citation]:
    return [
        Citation(
            number=index + 1,
            url=reference.source_url,
            title=reference.source_url,
            content=reference.content,
            show_favicon=True,
            type="knowledge",
        )
        for index, reference in enumerate(references)
    ]


def harvest_citations(
    payloads: Sequence[SearchPayload] | SearchPayload | None,
    knowledge: Sequence[KnowledgeReference] = (),
    *,
    adapters: Mapping[SearchSource, CitationAdapter] | None = None,
) -> list[Citation]:
    """Build the final citation list for a response.

    Web citations come first in payload order, knowledge citations after
    them. Entries are deduplicated by URL (first occurrence wins, empty
    URLs dropped) and renumbered 1..N in final order.
    """
    table = adapters if adapters is not None else CITATION_ADAPTERS
    if payloads is None:
        payload_list: Sequence[SearchPayload] = ()
    elif isinstance(payloads, SearchPayload):
        payload_list = (payloads,)
    else:
        payload_list = payloads

    collected: list[Citation] = []
    for payload in payload_list:
        adapter = table.get(payload.source)
        if adapter is None:
            LOGGER.debug("No citation adapter registered for %s", payload.source)
            continue
        collected.extend(adapter(payload.results))
    collected.extend(_from_knowledge(knowledge))

    seen: set[str] = set()
    harvested: list[Citation] = []
    for citation in collected:
        if not citation.url or citation.url in seen:
            continue
        seen.add(citation.url)
        harvested.append(dataclasses.replace(citation, number=len(harvested) + 1))
    return harvested
