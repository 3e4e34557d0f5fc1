from __future__ import annotations

import asyncio
import time
from typing import Any
from urllib.parse import quote

import httpx
from loguru import logger

from retrieval_engine.config import settings
from retrieval_engine.models.sources import (
    Citation,
    EncyclopediaArticle,
    EncyclopediaPayload,
    SourceKind,
    SourceResult,
)
from retrieval_engine.services.logger import log_source_fetch
from retrieval_engine.tools.web_utils import error_message

MAX_TITLES = 3
USER_AGENT = "retrieval-engine/0.1 (knowledge lookup)"


def _base_url() -> str:
    return f"https://{settings.wikipedia_language}.wikipedia.org"


def _parse_summary(payload: dict[str, Any], title: str) -> EncyclopediaArticle | None:
    extract = str(payload.get("extract") or "").strip()
    if not extract:
        return None
    url = ((payload.get("content_urls") or {}).get("desktop") or {}).get("page") or (
        f"{_base_url()}/wiki/{quote(title.replace(' ', '_'))}"
    )
    return EncyclopediaArticle(
        title=str(payload.get("title") or title),
        extract=extract,
        url=url,
        thumbnail=(payload.get("thumbnail") or {}).get("source"),
    )


async def _fetch_summary(client: httpx.AsyncClient, title: str, timeout: float) -> EncyclopediaArticle | None:
    try:
        response = await client.get(
            f"{_base_url()}/api/rest_v1/page/summary/{quote(title.strip(), safe='')}",
            headers={"User-Agent": USER_AGENT},
            timeout=timeout,
            follow_redirects=True,
        )
        response.raise_for_status()
        return _parse_summary(response.json(), title)
    except Exception as exc:
        logger.warning(f"Wikipedia summary failed for {title!r}: {error_message(exc)}")
        return None


async def fetch(titles: tuple[str, ...] | list[str], *, timeout: float | None = None) -> SourceResult:
    """Fetch up to three article summaries in parallel; failed titles are dropped."""
    started = time.perf_counter()
    wanted = [t for t in titles if t and t.strip()][:MAX_TITLES]
    try:
        async with httpx.AsyncClient() as client:
            articles = await asyncio.gather(
                *(_fetch_summary(client, title, timeout or settings.provider_timeout_seconds) for title in wanted)
            )
    except Exception as exc:
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        message = f"wikipedia failed: {error_message(exc)}"
        log_source_fetch("wikipedia", "failed", elapsed_ms, error=message)
        return SourceResult.failure(SourceKind.WIKIPEDIA, message, elapsed_ms)

    found = [a for a in articles if a is not None]
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    citations = [Citation(url=a.url, title=a.title, snippet=a.extract) for a in found]
    log_source_fetch("wikipedia", "success", elapsed_ms, citations=len(citations))
    return SourceResult(
        source=SourceKind.WIKIPEDIA,
        data=EncyclopediaPayload(articles=found),
        citations=citations,
        elapsed_ms=elapsed_ms,
    )


async def search_titles(query: str, *, limit: int = MAX_TITLES, timeout: float | None = None) -> list[str]:
    """Turn free text into article titles via the MediaWiki search API."""
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(
                f"{_base_url()}/w/api.php",
                params={
                    "action": "query",
                    "list": "search",
                    "srsearch": query,
                    "srlimit": limit,
                    "format": "json",
                },
                headers={"User-Agent": USER_AGENT},
                timeout=timeout or settings.provider_timeout_seconds,
            )
            response.raise_for_status()
            hits = (response.json().get("query") or {}).get("search") or []
    except Exception as exc:
        logger.warning(f"Wikipedia title search failed: {error_message(exc)}")
        return []
    return [str(hit["title"]) for hit in hits if isinstance(hit, dict) and hit.get("title")][:limit]
