"""Turn gathered source results into one cited answer."""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Sequence

from loguru import logger

from retrieval_engine.config import settings
from retrieval_engine.errors import AllSourcesFailedError, SynthesisError
from retrieval_engine.llm_client import get_model, send_message
from retrieval_engine.models.knowledge import KnowledgeContext
from retrieval_engine.models.sources import (
    AnswerPayload,
    CryptoPrice,
    EncyclopediaPayload,
    ExpectedAnswerShape,
    MarketDataPayload,
    NumberedCitation,
    SourceResult,
    StockQuote,
    WebSearchPayload,
)
from retrieval_engine.services.logger import log_llm_call
from retrieval_engine.services.prompt_store import render_prompt
from retrieval_engine.tools.web_utils import truncate

WEB_ITEMS = 5
WEB_ITEM_CHARS = 500
ANSWER_CHARS = 2000
ARTICLE_CHARS = 1200
KNOWLEDGE_CHUNK_CHARS = 800
MEMORY_CHARS = 400

SOURCE_LABELS = {
    "exa": "Web search",
    "perplexity": "Answer engine",
    "wikipedia": "Encyclopedia",
    "financial": "Market data",
}


@dataclass(slots=True)
class SynthesisResult:
    content: str
    citations: list[NumberedCitation] = field(default_factory=list)
    sources_used: list[str] = field(default_factory=list)
    no_results: bool = False


def append_with_budget(parts: list[str], section: str, budget: int) -> bool:
    """Append `section` if the running total stays within `budget`; truncate the last one that fits partially."""
    used = sum(len(p) for p in parts) + 2 * len(parts)
    remaining = budget - used
    if remaining <= 0:
        return False
    parts.append(section if len(section) <= remaining else truncate(section, max(remaining - 3, 0)))
    return len(section) <= remaining


def number_citations(results: Sequence[SourceResult]) -> list[NumberedCitation]:
    """Flatten citations in source order, dedupe by URL, number from 1."""
    numbered: list[NumberedCitation] = []
    seen: set[str] = set()
    for result in results:
        for citation in result.citations:
            if not citation.url or citation.url in seen:
                continue
            seen.add(citation.url)
            numbered.append(
                NumberedCitation(
                    number=len(numbered) + 1,
                    url=citation.url,
                    title=citation.title,
                    source=result.source.value,
                    snippet=citation.snippet,
                )
            )
    return numbered


def _format_quote(quote: StockQuote | CryptoPrice) -> str:
    if isinstance(quote, StockQuote):
        name = f" {quote.name}" if quote.name else ""
        return (
            f"- {quote.symbol}{name}: {quote.price:.2f} ({quote.change:+.2f}, {quote.change_percent:+.2f}%), "
            f"day range {quote.low:.2f}-{quote.high:.2f}, previous close {quote.previous_close:.2f}, "
            f"volume {quote.volume:,.0f}, as of {quote.timestamp}"
        )
    return (
        f"- {quote.name} ({quote.symbol.upper()}): ${quote.price:,.2f} "
        f"({quote.price_change_percent_24h:+.2f}% 24h), 24h range ${quote.low_24h:,.2f}-${quote.high_24h:,.2f}, "
        f"market cap ${quote.market_cap:,.0f}, as of {quote.last_updated}"
    )


def excerpt(result: SourceResult) -> str:
    """Bounded text excerpt of one successful source payload."""
    data = result.data
    if isinstance(data, WebSearchPayload):
        lines = []
        for item in data.items[:WEB_ITEMS]:
            body = item.highlights[0] if item.highlights else item.text[:WEB_ITEM_CHARS]
            lines.append(f"- {item.title} ({item.url}): {body.strip()}")
        return "\n".join(lines)
    if isinstance(data, AnswerPayload):
        return data.answer[:ANSWER_CHARS]
    if isinstance(data, EncyclopediaPayload):
        return "\n\n".join(f"{a.title}: {a.extract[:ARTICLE_CHARS]}" for a in data.articles)
    if isinstance(data, MarketDataPayload):
        lines = [_format_quote(q) for q in data.quotes]
        if data.missing:
            lines.append(f"- No data for: {', '.join(data.missing)}")
        return "\n".join(lines)
    return ""


def knowledge_excerpt(knowledge: KnowledgeContext) -> str:
    lines = [f"- {hit.chunk.content[:KNOWLEDGE_CHUNK_CHARS]}" for hit in knowledge.chunks]
    lines.extend(f"- ({hit.entry.role}) {hit.entry.content[:MEMORY_CHARS]}" for hit in knowledge.memories)
    return "\n".join(lines)


def _history_messages(history: Sequence[dict[str, str]]) -> list[dict[str, Any]]:
    turns = list(history)[-settings.synthesis_history_turns :] if settings.synthesis_history_turns > 0 else []
    return [
        {"role": t.get("role", "user"), "content": t.get("content", "")}
        for t in turns
        if t.get("role") in ("user", "assistant") and t.get("content")
    ]


class ResponseSynthesizer:
    def __init__(self, model: str | None = None):
        self.model = model

    def build_context(
        self, results: Sequence[SourceResult], knowledge: KnowledgeContext | None = None
    ) -> str:
        parts: list[str] = []
        budget = settings.synthesis_context_char_budget
        for result in results:
            text = excerpt(result)
            if not text:
                continue
            label = SOURCE_LABELS.get(result.source.value, result.source.value)
            if not append_with_budget(parts, f"### {label} ({result.source.value})\n{text}", budget):
                break
        if knowledge is not None and not knowledge.is_empty:
            append_with_budget(parts, f"### Knowledge base\n{knowledge_excerpt(knowledge)}", budget)
        return "\n\n".join(parts)

    async def _complete(self, caller: str, system: str, messages: list[dict[str, Any]]) -> str:
        model = self.model or get_model()
        started = time.perf_counter()

        async def collect() -> str:
            chunks: list[str] = []
            async for text in send_message(
                messages, system=system, model=model, max_tokens=settings.synthesis_max_tokens
            ):
                chunks.append(text)
            return "".join(chunks)

        try:
            content = await asyncio.wait_for(collect(), timeout=settings.synthesis_timeout_seconds)
        except asyncio.TimeoutError as exc:
            elapsed = int((time.perf_counter() - started) * 1000)
            log_llm_call(model, caller, duration_ms=elapsed, error="timeout")
            raise SynthesisError(
                f"Synthesis timed out after {settings.synthesis_timeout_seconds:g}s"
            ) from exc
        except Exception as exc:
            elapsed = int((time.perf_counter() - started) * 1000)
            log_llm_call(model, caller, duration_ms=elapsed, error=str(exc) or type(exc).__name__)
            raise SynthesisError(f"Synthesis failed: {exc}") from exc

        log_llm_call(model, caller, duration_ms=int((time.perf_counter() - started) * 1000))
        if not content.strip():
            raise SynthesisError("Synthesis returned an empty answer")
        return content.strip()

    async def synthesize(
        self,
        query: str,
        results: Sequence[SourceResult],
        history: Sequence[dict[str, str]] = (),
        knowledge: KnowledgeContext | None = None,
        *,
        shape: ExpectedAnswerShape = ExpectedAnswerShape.DEEP_RESEARCH,
    ) -> SynthesisResult:
        successful = [r for r in results if r.ok]
        if not successful:
            raise AllSourcesFailedError({r.source.value: r.error or "no data" for r in results})

        sources_used = [r.source.value for r in successful]
        has_knowledge = knowledge is not None and not knowledge.is_empty
        if all(r.data.is_empty for r in successful) and not has_knowledge:
            logger.info(f"Sources {sources_used} returned no content; skipping model call")
            return SynthesisResult(
                content=render_prompt("synthesizer.no_results"),
                sources_used=sources_used,
                no_results=True,
            )

        citations = number_citations(successful)
        citation_list = "\n".join(f"[{c.number}] {c.title} - {c.url}" for c in citations) or "(none)"
        system = render_prompt(
            "synthesizer.system", shape_hint=render_prompt(f"synthesizer.shape_hints.{shape.value}")
        )
        user = render_prompt(
            "synthesizer.user",
            query=query,
            citations=citation_list,
            context=self.build_context(successful, knowledge),
        )
        content = await self._complete(
            "synthesizer", system, [*_history_messages(history), {"role": "user", "content": user}]
        )
        return SynthesisResult(content=content, citations=citations, sources_used=sources_used)

    async def compose_direct(
        self,
        query: str,
        history: Sequence[dict[str, str]] = (),
        knowledge: KnowledgeContext | None = None,
    ) -> SynthesisResult:
        """Answer without external sources, optionally grounded in stored knowledge."""
        hint = ""
        if knowledge is not None and not knowledge.is_empty:
            hint = "Relevant notes from earlier conversations and uploaded documents:\n" + knowledge_excerpt(knowledge)
        system = render_prompt("synthesizer.direct_system", knowledge_hint=hint)
        content = await self._complete(
            "synthesizer.direct", system, [*_history_messages(history), {"role": "user", "content": query}]
        )
        return SynthesisResult(content=content)

