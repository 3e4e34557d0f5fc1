from __future__ import annotations

import time
from typing import Any

import httpx
from loguru import logger

from retrieval_engine.config import settings
from retrieval_engine.models.sources import (
    Citation,
    SourceKind,
    SourceResult,
    WebSearchItem,
    WebSearchPayload,
)
from retrieval_engine.services.logger import log_source_fetch
from retrieval_engine.tools import tavily_search
from retrieval_engine.tools.web_utils import error_message, is_valid_url

EXA_SEARCH_URL = "https://api.exa.ai/search"
NUM_RESULTS = 10
SNIPPET_CHARS = 200


def _parse_exa_results(payload: dict[str, Any]) -> list[WebSearchItem]:
    results = payload.get("results")
    if not isinstance(results, list):
        raise ValueError("Exa response has no results list")

    items: list[WebSearchItem] = []
    for raw in results:
        if not isinstance(raw, dict):
            continue
        url = str(raw.get("url") or "")
        if not is_valid_url(url):
            continue
        highlights = [h for h in raw.get("highlights") or [] if isinstance(h, str) and h.strip()]
        items.append(
            WebSearchItem(
                title=str(raw.get("title") or url),
                url=url,
                text=str(raw.get("text") or ""),
                highlights=highlights,
                published_date=raw.get("publishedDate") or raw.get("published_date"),
                score=float(raw.get("score") or 0.0),
            )
        )
    return items


def citations_for(items: list[WebSearchItem]) -> list[Citation]:
    return [
        Citation(
            url=item.url,
            title=item.title,
            snippet=item.highlights[0] if item.highlights else item.text[:SNIPPET_CHARS],
        )
        for item in items
    ]


async def search_exa(query: str, *, timeout: float, num_results: int = NUM_RESULTS) -> list[WebSearchItem]:
    """Run one Exa search. Raises on missing credentials or transport errors."""
    if not settings.exa_api_key:
        raise ValueError("EXA_API_KEY not configured")

    async with httpx.AsyncClient() as client:
        response = await client.post(
            EXA_SEARCH_URL,
            headers={"x-api-key": settings.exa_api_key, "Content-Type": "application/json"},
            json={
                "query": query,
                "type": "auto",
                "numResults": num_results,
                "useAutoprompt": True,
                "contents": {"text": True, "highlights": True},
            },
            timeout=timeout,
        )
        response.raise_for_status()
        return _parse_exa_results(response.json())


async def _tavily_items(query: str) -> list[WebSearchItem]:
    results = await tavily_search.search(query, max_results=NUM_RESULTS)
    return [
        WebSearchItem(title=r.title or r.url, url=r.url, text=r.content, score=r.score)
        for r in results
        if is_valid_url(r.url)
    ]


async def fetch(query: str, *, timeout: float | None = None) -> SourceResult:
    """Search the web with Exa, falling back to Tavily when enabled."""
    started = time.perf_counter()
    timeout = timeout or settings.provider_timeout_seconds
    provider = "exa"
    fallback_reason: str | None = None
    error: str | None = None

    try:
        items = await search_exa(query, timeout=timeout)
    except Exception as exc:
        items = []
        error = f"exa failed: {error_message(exc)}"

    if not items and settings.web_search_fallback_to_tavily and settings.tavily_api_key:
        reason = error or "exa returned no results"
        try:
            items = await _tavily_items(query)
        except Exception as exc:
            if error:
                error = f"{error}; tavily failed: {error_message(exc)}"
            else:
                logger.warning(f"Tavily fallback failed after empty Exa result: {exc}")
        else:
            provider = "tavily"
            fallback_reason = reason
            error = None

    elapsed_ms = int((time.perf_counter() - started) * 1000)
    if error:
        log_source_fetch("exa", "failed", elapsed_ms, error=error)
        return SourceResult.failure(SourceKind.EXA, error, elapsed_ms)

    citations = citations_for(items)
    log_source_fetch(provider, "success", elapsed_ms, citations=len(citations))
    return SourceResult(
        source=SourceKind.EXA,
        data=WebSearchPayload(items=items, provider=provider, fallback_reason=fallback_reason),
        citations=citations,
        elapsed_ms=elapsed_ms,
    )
