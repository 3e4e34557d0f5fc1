from __future__ import annotations

import time
from typing import Any

import httpx

from retrieval_engine.config import settings
from retrieval_engine.models.sources import AnswerPayload, Citation, SourceKind, SourceResult
from retrieval_engine.services.logger import log_source_fetch
from retrieval_engine.tools.web_utils import error_message, is_valid_url

PERPLEXITY_URL = "https://api.perplexity.ai/chat/completions"
RECENCY_FILTERS = ("day", "week", "month", "year")


def _parse_answer(payload: dict[str, Any]) -> tuple[str, list[Citation], str]:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        raise ValueError("Perplexity response has no choices")
    answer = ((choices[0] or {}).get("message") or {}).get("content") or ""

    citations: list[Citation] = []
    for index, url in enumerate(payload.get("citations") or []):
        if isinstance(url, str) and is_valid_url(url):
            citations.append(Citation(url=url, title=f"Source {index + 1}"))
    return str(answer), citations, str(payload.get("model") or settings.perplexity_model)


async def fetch(
    question: str,
    *,
    timeout: float | None = None,
    recency: str | None = None,
) -> SourceResult:
    """Ask Perplexity for a cited answer."""
    started = time.perf_counter()
    try:
        if not settings.perplexity_api_key:
            raise ValueError("PERPLEXITY_API_KEY not configured")

        body: dict[str, Any] = {
            "model": settings.perplexity_model,
            "messages": [{"role": "user", "content": question}],
            "temperature": 0.5,
            "max_tokens": 1000,
            "return_citations": True,
        }
        if recency in RECENCY_FILTERS:
            body["search_recency_filter"] = recency

        async with httpx.AsyncClient() as client:
            response = await client.post(
                PERPLEXITY_URL,
                headers={
                    "Authorization": f"Bearer {settings.perplexity_api_key}",
                    "Content-Type": "application/json",
                },
                json=body,
                timeout=timeout or settings.provider_timeout_seconds,
            )
            response.raise_for_status()
            answer, citations, model = _parse_answer(response.json())
    except Exception as exc:
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        message = f"perplexity failed: {error_message(exc)}"
        log_source_fetch("perplexity", "failed", elapsed_ms, error=message)
        return SourceResult.failure(SourceKind.PERPLEXITY, message, elapsed_ms)

    elapsed_ms = int((time.perf_counter() - started) * 1000)
    log_source_fetch("perplexity", "success", elapsed_ms, citations=len(citations))
    return SourceResult(
        source=SourceKind.PERPLEXITY,
        data=AnswerPayload(answer=answer, model=model),
        citations=citations,
        elapsed_ms=elapsed_ms,
    )
