from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class SourceKind(str, Enum):
    EXA = "exa"
    PERPLEXITY = "perplexity"
    WIKIPEDIA = "wikipedia"
    FINANCIAL = "financial"


class ExpectedAnswerShape(str, Enum):
    QUICK_FACT = "quick_fact"
    DEEP_RESEARCH = "deep_research"
    CURRENT_EVENT = "current_event"
    COMPARISON = "comparison"
    MARKET_DATA = "market_data"


class ClassificationOutcome(str, Enum):
    """Which path produced a routing plan."""

    MODEL = "model"
    NO_KNOWLEDGE_NEEDED = "no_knowledge_needed"
    KEYWORD_FALLBACK = "keyword_fallback"
    RATE_LIMITED = "rate_limited"
    CLASSIFICATION_FAILED = "classification_failed"


# --- Query specs ---


class MarketQuery(BaseModel):
    model_config = ConfigDict(frozen=True)

    asset_type: Literal["stock", "crypto"] = "stock"
    symbols: tuple[str, ...] = ()


QuerySpec = Union[str, tuple[str, ...], MarketQuery]


class RoutingPlan(BaseModel):
    """Which sources to consult for one query, and with what sub-queries."""

    model_config = ConfigDict(frozen=True)

    sources: frozenset[SourceKind] = frozenset()
    reasoning: str = ""
    search_queries: dict[SourceKind, QuerySpec] = Field(default_factory=dict)
    expected_shape: ExpectedAnswerShape = ExpectedAnswerShape.DEEP_RESEARCH
    outcome: ClassificationOutcome = ClassificationOutcome.MODEL

    @property
    def needs_sources(self) -> bool:
        return bool(self.executable_sources())

    def executable_sources(self) -> list[SourceKind]:
        """Sources that are both requested and carry a query spec, in enum order."""
        return [
            kind
            for kind in SourceKind
            if kind in self.sources and self.search_queries.get(kind) not in (None, "", ())
        ]


# --- Citations ---


@dataclass(slots=True)
class Citation:
    url: str
    title: str
    snippet: str | None = None


@dataclass(slots=True)
class NumberedCitation:
    number: int
    url: str
    title: str
    source: str
    snippet: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "number": self.number,
            "url": self.url,
            "title": self.title,
            "source": self.source,
            "snippet": self.snippet,
        }


# --- Provider payloads ---


@dataclass(slots=True)
class WebSearchItem:
    title: str
    url: str
    text: str = ""
    highlights: list[str] = field(default_factory=list)
    published_date: str | None = None
    score: float = 0.0


@dataclass(slots=True)
class WebSearchPayload:
    kind: Literal["web_search"] = "web_search"
    items: list[WebSearchItem] = field(default_factory=list)
    provider: str = "exa"
    fallback_reason: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.items


@dataclass(slots=True)
class AnswerPayload:
    kind: Literal["answer"] = "answer"
    answer: str = ""
    model: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.answer.strip()


@dataclass(slots=True)
class EncyclopediaArticle:
    title: str
    extract: str
    url: str
    thumbnail: str | None = None


@dataclass(slots=True)
class EncyclopediaPayload:
    kind: Literal["encyclopedia"] = "encyclopedia"
    articles: list[EncyclopediaArticle] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.articles


@dataclass(slots=True)
class StockQuote:
    symbol: str
    price: float
    change: float
    change_percent: float
    high: float
    low: float
    volume: float
    previous_close: float
    timestamp: str
    name: str | None = None
    market_cap: float | None = None


@dataclass(slots=True)
class CryptoPrice:
    id: str
    symbol: str
    name: str
    price: float
    price_change_24h: float
    price_change_percent_24h: float
    market_cap: float
    volume_24h: float
    high_24h: float
    low_24h: float
    last_updated: str


@dataclass(slots=True)
class MarketDataPayload:
    kind: Literal["market_data"] = "market_data"
    asset_type: Literal["stock", "crypto"] = "stock"
    quotes: list[StockQuote | CryptoPrice] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.quotes


SourcePayload = Union[WebSearchPayload, AnswerPayload, EncyclopediaPayload, MarketDataPayload]


@dataclass(slots=True)
class SourceResult:
    source: SourceKind
    data: SourcePayload | None = None
    citations: list[Citation] = field(default_factory=list)
    error: str | None = None
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and self.data is not None

    @classmethod
    def failure(cls, source: SourceKind, error: str, elapsed_ms: int = 0) -> "SourceResult":
        return cls(source=source, data=None, citations=[], error=error, elapsed_ms=elapsed_ms)
