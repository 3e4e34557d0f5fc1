"""Decide which external sources a query needs and what to ask each one."""
from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence

from loguru import logger

from retrieval_engine.config import settings
from retrieval_engine.llm_client import client, get_planner_model, is_configured
from retrieval_engine.models.resolution import EntityResolution, ResolutionOutcome
from retrieval_engine.models.sources import (
    ClassificationOutcome,
    ExpectedAnswerShape,
    MarketQuery,
    QuerySpec,
    RoutingPlan,
    SourceKind,
)
from retrieval_engine.services.entity_resolver import CRYPTO_SIGNALS, FINANCE_SIGNALS, EntityResolver
from retrieval_engine.services.logger import log_llm_call
from retrieval_engine.services.prompt_store import escape_delimiters, render_prompt
from retrieval_engine.services.rate_limiter import RateLimiter
from retrieval_engine.tools import wikipedia_search

PLAN_RESEARCH_TOOL: dict[str, Any] = {
    "name": "plan_research",
    "description": "Analyze the query and choose the external sources needed to answer it",
    "input_schema": {
        "type": "object",
        "properties": {
            "category": {
                "type": "string",
                "enum": ["current_events", "factual", "technical", "conversational", "complex", "financial"],
            },
            "needs_web_search": {
                "type": "boolean",
                "description": "Whether outside information is needed at all",
            },
            "confidence": {"type": "number", "description": "Confidence score (0-1)"},
            "sources": {
                "type": "array",
                "items": {"type": "string", "enum": [kind.value for kind in SourceKind]},
            },
            "reasoning": {"type": "string", "description": "One sentence explaining the plan"},
            "search_queries": {
                "type": "object",
                "properties": {
                    "exa": {"type": "string"},
                    "perplexity": {"type": "string"},
                    "wikipedia": {"type": "array", "items": {"type": "string"}},
                    "financial": {
                        "type": "object",
                        "properties": {
                            "asset_type": {"type": "string", "enum": ["stock", "crypto"]},
                            "symbols": {"type": "array", "items": {"type": "string"}},
                        },
                    },
                },
            },
            "expected_type": {"type": "string", "enum": [shape.value for shape in ExpectedAnswerShape]},
        },
        "required": ["category", "needs_web_search", "sources", "reasoning", "search_queries", "expected_type"],
    },
}

CURRENT_EVENT_SIGNALS = (
    "today", "latest", "news", "current", "recent", "recently", "this week", "yesterday",
    "breaking", "right now", "this year", "update", "announced", "election",
)
COMPARISON_SIGNALS = (" vs ", " vs. ", "versus", "compare", "comparison", "difference between")
DEFINITION_PATTERN = re.compile(
    r"^\s*(?:what|who|where)\s+(?:is|was|are|were)\s+(?:a\s+|an\s+|the\s+)?(?P<subject>[^?]+?)\s*\??\s*$"
    r"|^\s*(?:define|tell me about|history of|explain)\s+(?:a\s+|an\s+|the\s+)?(?P<subject2>[^?]+?)\s*\??\s*$",
    re.IGNORECASE,
)
SMALL_TALK_PATTERN = re.compile(
    r"^\s*(?:hi|hello|hey|yo|thanks|thank you|thx|ok|okay|cool|great|bye|goodbye"
    r"|good (?:morning|afternoon|evening|night)|how are you(?: doing)?|who are you)\b[\s!.?]*$",
    re.IGNORECASE,
)
HISTORY_TURNS = 3


@dataclass(slots=True)
class PlanningResult:
    plan: RoutingPlan
    resolution: EntityResolution | None = None


def _contains(text: str, signals: Sequence[str]) -> bool:
    return any(re.search(rf"(?<![\w]){re.escape(s.strip())}(?![\w])", text) for s in signals)


def _format_history(history: Sequence[dict[str, str]]) -> str:
    recent = list(history)[-HISTORY_TURNS:]
    if not recent:
        return "(none)"
    return "\n".join(f"{turn.get('role', 'user')}: {turn.get('content', '')[:500]}" for turn in recent)


class QueryPlanner:
    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        resolver: EntityResolver | None = None,
        *,
        title_search: Callable[[str], Awaitable[list[str]]] | None = None,
    ):
        self.rate_limiter = rate_limiter
        self.resolver = resolver or EntityResolver(rate_limiter)
        self._title_search = title_search or wikipedia_search.search_titles

    async def plan(self, query: str, history: Sequence[dict[str, str]] = ()) -> RoutingPlan:
        """Stage one: fast classification into a routing plan. Never raises for model failures."""
        if not is_configured():
            return await self.keyword_plan(query, ClassificationOutcome.KEYWORD_FALLBACK)
        if self.rate_limiter is not None:
            decision = await self.rate_limiter.acquire("planner")
            if not decision.allowed:
                logger.warning(f"Planner throttled until {decision.reset_at:.0f}; using keyword plan")
                return await self.keyword_plan(query, ClassificationOutcome.RATE_LIMITED)

        model = get_planner_model()
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                client().messages.create(
                    model=model,
                    max_tokens=1000,
                    system=render_prompt("planner.system"),
                    messages=[
                        {
                            "role": "user",
                            "content": render_prompt(
                                "planner.user",
                                history=_format_history(history),
                                query=escape_delimiters(query),
                            ),
                        }
                    ],
                    tools=[PLAN_RESEARCH_TOOL],
                    tool_choice="required",
                    temperature=0,
                ),
                timeout=settings.planner_timeout_seconds,
            )
        except Exception as exc:
            elapsed = int((time.perf_counter() - started) * 1000)
            log_llm_call(model, "planner", duration_ms=elapsed, error=str(exc) or type(exc).__name__)
            return RoutingPlan(reasoning="Classification failed", outcome=ClassificationOutcome.CLASSIFICATION_FAILED)

        log_llm_call(
            model,
            "planner",
            response.usage.input_tokens,
            response.usage.output_tokens,
            int((time.perf_counter() - started) * 1000),
        )
        call = response.tool_call("plan_research")
        if call is None or not call.input:
            logger.warning("Planner returned no usable tool call")
            return RoutingPlan(reasoning="Classification failed", outcome=ClassificationOutcome.CLASSIFICATION_FAILED)
        return await self._plan_from_tool_args(query, call.input)

    async def _plan_from_tool_args(self, query: str, args: dict[str, Any]) -> RoutingPlan:
        reasoning = str(args.get("reasoning") or "")
        shape = self._shape(args.get("expected_type"))
        if args.get("needs_web_search") is False:
            return RoutingPlan(
                reasoning=reasoning or "No external knowledge needed",
                expected_shape=shape,
                outcome=ClassificationOutcome.NO_KNOWLEDGE_NEEDED,
            )

        raw_sources = args.get("sources")
        sources: set[SourceKind] = set()
        for value in raw_sources if isinstance(raw_sources, list) else []:
            try:
                sources.add(SourceKind(value))
            except ValueError:
                logger.debug(f"Planner named unknown source {value!r}")
        if not sources:
            return RoutingPlan(reasoning="Classification failed", outcome=ClassificationOutcome.CLASSIFICATION_FAILED)

        raw_queries = args.get("search_queries") if isinstance(args.get("search_queries"), dict) else {}
        queries: dict[SourceKind, QuerySpec] = {}
        for kind in (SourceKind.EXA, SourceKind.PERPLEXITY):
            if kind in sources:
                value = raw_queries.get(kind.value)
                queries[kind] = value.strip() if isinstance(value, str) and value.strip() else query
        if SourceKind.WIKIPEDIA in sources:
            titles = raw_queries.get("wikipedia")
            titles = [t.strip() for t in titles if isinstance(t, str) and t.strip()] if isinstance(titles, list) else []
            queries[SourceKind.WIKIPEDIA] = tuple(titles[:3] or await self._title_search(query))
        if SourceKind.FINANCIAL in sources:
            raw = raw_queries.get("financial") if isinstance(raw_queries.get("financial"), dict) else {}
            symbols = tuple(s.strip() for s in raw.get("symbols") or [] if isinstance(s, str) and s.strip())
            asset_type = "crypto" if raw.get("asset_type") == "crypto" else "stock"
            queries[SourceKind.FINANCIAL] = MarketQuery(asset_type=asset_type, symbols=symbols)

        return RoutingPlan(
            sources=frozenset(sources),
            reasoning=reasoning,
            search_queries=queries,
            expected_shape=shape,
            outcome=ClassificationOutcome.MODEL,
        )

    @staticmethod
    def _shape(value: Any) -> ExpectedAnswerShape:
        try:
            return ExpectedAnswerShape(value)
        except ValueError:
            return ExpectedAnswerShape.DEEP_RESEARCH

    async def keyword_plan(self, query: str, outcome: ClassificationOutcome) -> RoutingPlan:
        """Deterministic plan from keyword signals, used without a model or when throttled."""
        text = f" {query.lower().strip()} "
        if not query.strip() or SMALL_TALK_PATTERN.match(query):
            return RoutingPlan(reasoning="Small talk; no sources needed", outcome=outcome)

        if _contains(text, FINANCE_SIGNALS) or _contains(text, CRYPTO_SIGNALS):
            asset_type = "crypto" if _contains(text, CRYPTO_SIGNALS) else "stock"
            return RoutingPlan(
                sources=frozenset({SourceKind.FINANCIAL, SourceKind.PERPLEXITY}),
                reasoning="Finance keywords detected",
                search_queries={
                    SourceKind.FINANCIAL: MarketQuery(asset_type=asset_type),
                    SourceKind.PERPLEXITY: query,
                },
                expected_shape=ExpectedAnswerShape.MARKET_DATA,
                outcome=outcome,
            )

        if _contains(text, CURRENT_EVENT_SIGNALS):
            return RoutingPlan(
                sources=frozenset({SourceKind.PERPLEXITY, SourceKind.EXA}),
                reasoning="Current-event keywords detected",
                search_queries={SourceKind.PERPLEXITY: query, SourceKind.EXA: query},
                expected_shape=ExpectedAnswerShape.CURRENT_EVENT,
                outcome=outcome,
            )

        match = DEFINITION_PATTERN.match(query)
        if match:
            subject = (match.group("subject") or match.group("subject2") or query).strip()
            titles = await self._title_search(subject) or [subject]
            return RoutingPlan(
                sources=frozenset({SourceKind.WIKIPEDIA, SourceKind.PERPLEXITY}),
                reasoning="Definitional question",
                search_queries={SourceKind.WIKIPEDIA: tuple(titles[:3]), SourceKind.PERPLEXITY: query},
                expected_shape=ExpectedAnswerShape.QUICK_FACT,
                outcome=outcome,
            )

        shape = ExpectedAnswerShape.COMPARISON if _contains(text, COMPARISON_SIGNALS) else ExpectedAnswerShape.DEEP_RESEARCH
        return RoutingPlan(
            sources=frozenset({SourceKind.PERPLEXITY}),
            reasoning="General question",
            search_queries={SourceKind.PERPLEXITY: query},
            expected_shape=shape,
            outcome=outcome,
        )

    async def resolve_entities(self, plan: RoutingPlan, query: str) -> PlanningResult:
        """Stage two: pin financial plans to concrete symbols, or drop the financial source."""
        spec = plan.search_queries.get(SourceKind.FINANCIAL)
        if SourceKind.FINANCIAL not in plan.sources or (isinstance(spec, MarketQuery) and spec.symbols):
            return PlanningResult(plan=plan)

        resolution = await self.resolver.resolve(query)
        if resolution.outcome == ResolutionOutcome.RESOLVED and resolution.selected is not None:
            selected = resolution.selected
            queries = dict(plan.search_queries)
            queries[SourceKind.FINANCIAL] = MarketQuery(asset_type=selected.type, symbols=(selected.symbol,))
            return PlanningResult(plan=plan.model_copy(update={"search_queries": queries}), resolution=resolution)

        queries = {k: v for k, v in plan.search_queries.items() if k != SourceKind.FINANCIAL}
        trimmed = plan.model_copy(
            update={"sources": plan.sources - {SourceKind.FINANCIAL}, "search_queries": queries}
        )
        return PlanningResult(plan=trimmed, resolution=resolution)

    async def build(self, query: str, history: Sequence[dict[str, str]] = ()) -> PlanningResult:
        plan = await self.plan(query, history)
        return await self.resolve_entities(plan, query)
