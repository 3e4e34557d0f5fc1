from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from tavily import AsyncTavilyClient

from retrieval_engine.config import settings


@dataclass
class SearchResult:
    title: str
    url: str
    content: str
    score: float


async def search(
    query: str,
    *,
    search_depth: str = "basic",
    max_results: int = 10,
    topic: str = "general",
    time_range: str | None = None,
) -> list[SearchResult]:
    """Execute a Tavily web search; used when Exa is down or comes back empty."""
    if not settings.tavily_api_key:
        raise ValueError("TAVILY_API_KEY not configured")
    client = AsyncTavilyClient(api_key=settings.tavily_api_key)

    kwargs: dict[str, Any] = {
        "query": query,
        "search_depth": search_depth,
        "max_results": max_results,
        "topic": topic,
    }
    if time_range:
        kwargs["time_range"] = time_range

    response = await client.search(**kwargs)

    return [
        SearchResult(
            title=r.get("title", ""),
            url=r.get("url", ""),
            content=r.get("content", ""),
            score=r.get("score", 0.0),
        )
        for r in response.get("results", [])
    ]
