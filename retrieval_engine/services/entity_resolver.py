"""Resolve finance mentions ("netflix", "bitcoin") to concrete tickers or coin ids.

Search-first: candidate assets come from the Yahoo and CoinGecko catalogs,
and the model only picks among real matches when scores are ambiguous.
"""
from __future__ import annotations

import asyncio
import json
import re
import time
from typing import Any, Awaitable, Callable

from loguru import logger

from retrieval_engine.config import settings
from retrieval_engine.llm_client import client, extract_json_object, get_selection_model, is_configured
from retrieval_engine.models.resolution import (
    AssetCandidate,
    EntityResolution,
    FinanceCheck,
    ResolutionOutcome,
    SelectionMethod,
)
from retrieval_engine.services.logger import log_llm_call
from retrieval_engine.services.prompt_store import escape_delimiters, render_prompt
from retrieval_engine.services.rate_limiter import RateLimiter
from retrieval_engine.tools import market_data

FINANCE_SIGNALS = (
    "stock", "share", "price", "market", "invest", "crypto", "bitcoin", "ethereum",
    "analyse", "analyze", "trading", "buy", "sell", "nasdaq", "dow", "s&p",
    "portfolio", "dividend", "earnings", "etf", "index", "ticker",
)
CRYPTO_SIGNALS = ("bitcoin", "ethereum", "crypto", "btc", "eth", "solana", "doge", "coin")
INDEX_SIGNALS = ("s&p", "dow", "nasdaq", "index", "sp500")

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "were", "and", "or", "but", "in", "on",
        "at", "to", "for", "of", "with", "by", "from", "as", "into", "through",
        "stock", "share", "price", "market", "analyse", "analyze", "analysis",
        "show", "tell", "give", "what", "how", "why", "when", "where", "which",
        "me", "i", "you", "we", "they", "it", "about", "please", "want", "need",
        "today", "now", "current", "doing", "does", "do", "s",
    }
)

MAX_SEARCH_TERMS = 5
CANDIDATES_PER_TERM = 3
MODEL_OPTIONS = 5
DIRECT_MIN_SCORE = 0.9
DIRECT_MARGIN = 0.2
EXACT_SCORE = 1.0
STOCK_SCORE = 0.7
CRYPTO_SCORE = 0.6


def _has_signal(text: str, signals: tuple[str, ...]) -> bool:
    return any(re.search(rf"(?<![\w]){re.escape(s)}", text) for s in signals)


def extract_keywords(query: str) -> list[str]:
    """Likely asset names or tickers: short all-caps words keep their case."""
    words = re.sub(r"[^\w\s&$-]", " ", query).split()
    keywords: list[str] = []
    for word in words:
        if len(word) <= 1 or word.lower() in STOP_WORDS:
            continue
        keywords.append(word if word.isupper() and len(word) <= 5 else word.lower())
    return list(dict.fromkeys(keywords))[:MAX_SEARCH_TERMS]


def keyword_finance_check(query: str) -> FinanceCheck:
    lowered = query.lower()
    is_finance = _has_signal(lowered, FINANCE_SIGNALS) or _has_signal(lowered, CRYPTO_SIGNALS)
    if _has_signal(lowered, CRYPTO_SIGNALS):
        category = "crypto"
    elif _has_signal(lowered, INDEX_SIGNALS):
        category = "index"
    elif is_finance:
        category = "stock"
    else:
        category = "general"
    return FinanceCheck(is_finance=is_finance, category=category, search_terms=extract_keywords(query))


def _is_exact(term: str, *names: str) -> bool:
    term = term.strip().lower()
    return any(term == (n or "").strip().lower() for n in names)


class EntityResolver:
    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        *,
        search_stocks: Callable[[str], Awaitable[list[dict[str, Any]]]] | None = None,
        search_coins: Callable[[str], Awaitable[list[dict[str, Any]]]] | None = None,
    ):
        self.rate_limiter = rate_limiter
        self._search_stocks = search_stocks or market_data.search_symbol
        self._search_coins = search_coins or market_data.search_crypto

    async def _model_allowed(self) -> bool:
        if not is_configured():
            return False
        if self.rate_limiter is None:
            return True
        decision = await self.rate_limiter.acquire("resolver")
        if not decision.allowed:
            logger.warning("Entity resolver throttled; using deterministic path")
        return decision.allowed

    async def _complete_json(self, caller: str, prompt: str, max_tokens: int) -> dict[str, Any]:
        model = get_selection_model()
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                client().messages.create(
                    model=model,
                    max_tokens=max_tokens,
                    system="",
                    messages=[{"role": "user", "content": prompt}],
                    temperature=0,
                    json_mode=True,
                ),
                timeout=settings.planner_timeout_seconds,
            )
        except Exception as exc:
            log_llm_call(model, caller, duration_ms=int((time.perf_counter() - started) * 1000), error=str(exc))
            raise
        log_llm_call(
            model,
            caller,
            response.usage.input_tokens,
            response.usage.output_tokens,
            int((time.perf_counter() - started) * 1000),
        )
        return extract_json_object(response.text)

    async def quick_check(self, query: str) -> FinanceCheck:
        if not await self._model_allowed():
            return keyword_finance_check(query)
        try:
            data = await self._complete_json(
                "resolver.quick_check",
                render_prompt("resolver.quick_check", query=escape_delimiters(query)),
                max_tokens=150,
            )
        except Exception as exc:
            logger.warning(f"Finance quick check failed, using keywords: {exc}")
            return keyword_finance_check(query)

        category = data.get("category")
        terms = data.get("search_terms")
        if not isinstance(terms, list) or not all(isinstance(t, str) for t in terms):
            terms = extract_keywords(query)
        return FinanceCheck(
            is_finance=bool(data.get("is_finance", False)),
            category=category if category in ("stock", "crypto", "index", "general") else "general",
            search_terms=[t.strip() for t in terms if t.strip()][:MAX_SEARCH_TERMS],
        )

    async def _stock_candidates(self, term: str) -> list[AssetCandidate]:
        results = await self._search_stocks(term)
        return [
            AssetCandidate(
                symbol=r["symbol"],
                name=r.get("name") or r["symbol"],
                type="stock",
                score=EXACT_SCORE if _is_exact(term, r["symbol"], r.get("name", "")) else STOCK_SCORE,
                exchange=r.get("exchange") or None,
            )
            for r in results[:CANDIDATES_PER_TERM]
        ]

    async def _coin_candidates(self, term: str) -> list[AssetCandidate]:
        results = await self._search_coins(term)
        return [
            AssetCandidate(
                symbol=r["id"],
                name=r.get("name") or r["id"],
                type="crypto",
                score=EXACT_SCORE if _is_exact(term, r.get("symbol", ""), r.get("name", ""), r["id"]) else CRYPTO_SCORE,
            )
            for r in results[:CANDIDATES_PER_TERM]
        ]

    async def search_assets(self, terms: list[str], category: str) -> list[AssetCandidate]:
        """Catalog candidates for every term, deduped by (type, symbol) and sorted best first."""
        lookups: list[Awaitable[list[AssetCandidate]]] = []
        for term in terms:
            if category != "crypto":
                lookups.append(self._stock_candidates(term))
            if category in ("crypto", "general"):
                lookups.append(self._coin_candidates(term))

        gathered = await asyncio.gather(*lookups, return_exceptions=True)
        candidates: list[AssetCandidate] = []
        for result in gathered:
            if isinstance(result, BaseException):
                logger.warning(f"Asset catalog lookup failed: {result}")
                continue
            candidates.extend(result)

        candidates.sort(key=lambda c: -c.score)
        seen: set[str] = set()
        unique: list[AssetCandidate] = []
        for candidate in candidates:
            key = f"{candidate.type}:{candidate.symbol.lower()}"
            if key in seen:
                continue
            seen.add(key)
            unique.append(candidate)
        return unique

    async def select(self, query: str, candidates: list[AssetCandidate]) -> tuple[AssetCandidate, SelectionMethod]:
        top = candidates[0]
        runner_up = candidates[1].score if len(candidates) > 1 else 0.0
        if len(candidates) == 1 or (top.score >= DIRECT_MIN_SCORE and top.score > runner_up + DIRECT_MARGIN):
            return top, SelectionMethod.DIRECT

        options = candidates[:MODEL_OPTIONS]
        if await self._model_allowed():
            listing = "\n".join(f"{i + 1}. {c.symbol} - {c.name} ({c.type})" for i, c in enumerate(options))
            try:
                data = await self._complete_json(
                    "resolver.selection",
                    render_prompt("resolver.selection", query=escape_delimiters(query), options=listing),
                    max_tokens=50,
                )
                choice = int(data["choice"])
                if 1 <= choice <= len(options):
                    return options[choice - 1], SelectionMethod.MODEL
                logger.warning(f"Model picked out-of-range option {choice}")
            except (KeyError, TypeError, ValueError, json.JSONDecodeError) as exc:
                logger.warning(f"Unparseable asset selection: {exc}")
            except Exception as exc:
                logger.warning(f"Asset selection call failed: {exc}")
        return top, SelectionMethod.SCORE_FALLBACK

    async def resolve(self, query: str) -> EntityResolution:
        check = await self.quick_check(query)
        if not check.is_finance:
            return EntityResolution(
                outcome=ResolutionOutcome.NOT_FINANCE,
                searched_terms=check.search_terms,
                failure_reason="Query does not appear to be finance-related",
            )
        if not check.search_terms:
            return EntityResolution(
                outcome=ResolutionOutcome.NOT_FOUND,
                failure_reason="Could not extract search terms from query",
            )

        candidates = await self.search_assets(check.search_terms, check.category)
        if not candidates:
            logger.info(f"No assets matched {check.search_terms}")
            return EntityResolution(
                outcome=ResolutionOutcome.NOT_FOUND,
                searched_terms=check.search_terms,
                failure_reason=f"No matching assets found for: {', '.join(check.search_terms)}",
            )

        selected, method = await self.select(query, candidates)
        logger.info(f"Resolved {check.search_terms} to {selected.symbol} ({selected.type}) via {method.value}")
        return EntityResolution(
            outcome=ResolutionOutcome.RESOLVED,
            selected=selected,
            method=method,
            matches=[c for c in candidates if c is not selected][:3],
            searched_terms=check.search_terms,
        )
