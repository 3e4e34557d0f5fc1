from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

AssetType = Literal["stock", "crypto"]


class ResolutionOutcome(str, Enum):
    RESOLVED = "resolved"
    NOT_FOUND = "not_found"
    NOT_FINANCE = "not_finance"


class SelectionMethod(str, Enum):
    DIRECT = "direct"
    MODEL = "model"
    SCORE_FALLBACK = "score_fallback"


@dataclass(slots=True)
class FinanceCheck:
    is_finance: bool
    category: Literal["stock", "crypto", "index", "general"] = "general"
    search_terms: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AssetCandidate:
    symbol: str
    name: str
    type: AssetType
    score: float
    exchange: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "name": self.name,
            "type": self.type,
            "score": self.score,
            "exchange": self.exchange,
        }


@dataclass(slots=True)
class EntityResolution:
    outcome: ResolutionOutcome
    selected: AssetCandidate | None = None
    method: SelectionMethod | None = None
    matches: list[AssetCandidate] = field(default_factory=list)
    searched_terms: list[str] = field(default_factory=list)
    failure_reason: str | None = None

    def disambiguation(self) -> dict[str, Any]:
        """Payload shown to the user when no asset could be pinned down."""
        return {
            "searched_terms": list(self.searched_terms),
            "reason": self.failure_reason or "No matching asset found",
            "suggestions": [m.to_dict() for m in self.matches[:5]],
        }
