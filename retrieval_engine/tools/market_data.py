"""Stock and crypto market data from Yahoo Finance and CoinGecko.

Every lookup goes through the result cache. Individual lookups return
``None`` / ``[]`` on failure; ``fetch`` turns those into a SourceResult.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx
from loguru import logger

from retrieval_engine.config import settings
from retrieval_engine.models.sources import (
    Citation,
    CryptoPrice,
    MarketDataPayload,
    MarketQuery,
    SourceKind,
    SourceResult,
    StockQuote,
)
from retrieval_engine.services.logger import log_source_fetch
from retrieval_engine.services.result_cache import DataKind, cache_or_fetch, get_result_cache
from retrieval_engine.tools.web_utils import error_message

YAHOO_BASE_URL = "https://query1.finance.yahoo.com"
COINGECKO_BASE_URL = "https://api.coingecko.com/api/v3"
YAHOO_HEADERS = {"User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"}

STOCK_RANGES: dict[str, tuple[str, DataKind]] = {
    "1d": ("5m", DataKind.HISTORY_1D),
    "5d": ("15m", DataKind.HISTORY_5D),
    "1mo": ("1d", DataKind.HISTORY_1MO),
    "1y": ("1wk", DataKind.HISTORY_1Y),
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _last(values: Any) -> Any:
    if isinstance(values, list):
        for value in reversed(values):
            if value is not None:
                return value
    return None


def _at(values: Any, index: int) -> float:
    if isinstance(values, list) and index < len(values) and isinstance(values[index], (int, float)):
        return values[index]
    return 0


def _first_number(*values: Any, default: float = 0.0) -> float:
    for value in values:
        if isinstance(value, (int, float)):
            return float(value)
    return default


async def _get_json(
    url: str,
    *,
    params: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    timeout: float | None = None,
) -> Any:
    async with httpx.AsyncClient() as client:
        response = await client.get(
            url,
            params=params,
            headers=headers,
            timeout=timeout or settings.provider_timeout_seconds,
        )
        response.raise_for_status()
        return response.json()


def _parse_stock_quote(symbol: str, payload: dict[str, Any]) -> dict[str, Any] | None:
    result = _last((payload.get("chart") or {}).get("result") or [])
    if not isinstance(result, dict) or not isinstance(result.get("meta"), dict):
        return None
    meta = result["meta"]
    bars = ((result.get("indicators") or {}).get("quote") or [{}])[0] or {}

    raw_price = meta.get("regularMarketPrice")
    if not isinstance(raw_price, (int, float)):
        raw_price = _last(bars.get("close"))
    if not isinstance(raw_price, (int, float)):
        return None
    price = float(raw_price)
    previous_close = _first_number(
        meta.get("chartPreviousClose"), meta.get("previousClose"), _last(bars.get("open")), default=price
    )
    change = price - previous_close
    quote_ = StockQuote(
        symbol=symbol.upper(),
        name=meta.get("shortName") or meta.get("longName") or symbol.upper(),
        price=price,
        change=change,
        change_percent=(change / previous_close * 100) if previous_close else 0.0,
        high=_first_number(meta.get("regularMarketDayHigh"), _last(bars.get("high")), default=price),
        low=_first_number(meta.get("regularMarketDayLow"), _last(bars.get("low")), default=price),
        volume=_first_number(meta.get("regularMarketVolume"), _last(bars.get("volume"))),
        previous_close=previous_close,
        timestamp=_now_iso(),
        market_cap=meta.get("marketCap"),
    )
    return asdict(quote_)


async def fetch_stock_quote(
    symbol: str, *, use_cache: bool = True, timeout: float | None = None
) -> StockQuote | None:
    async def _fetch() -> dict[str, Any] | None:
        payload = await _get_json(
            f"{YAHOO_BASE_URL}/v8/finance/chart/{quote(symbol, safe='')}",
            params={"interval": "1d", "range": "1d"},
            headers=YAHOO_HEADERS,
            timeout=timeout,
        )
        return _parse_stock_quote(symbol, payload)

    try:
        raw = await cache_or_fetch(
            get_result_cache() if use_cache else None, "yahoo", symbol, DataKind.QUOTE, _fetch
        )
    except Exception as exc:
        logger.warning(f"Yahoo quote failed for {symbol}: {error_message(exc)}")
        return None
    return StockQuote(**raw) if raw else None


async def fetch_stock_history(symbol: str, range_: str = "1mo", *, use_cache: bool = True) -> list[dict[str, Any]]:
    interval, kind = STOCK_RANGES.get(range_, STOCK_RANGES["1mo"])
    range_ = range_ if range_ in STOCK_RANGES else "1mo"

    async def _fetch() -> list[dict[str, Any]] | None:
        payload = await _get_json(
            f"{YAHOO_BASE_URL}/v8/finance/chart/{quote(symbol, safe='')}",
            params={"interval": interval, "range": range_},
            headers=YAHOO_HEADERS,
        )
        result = _last((payload.get("chart") or {}).get("result") or [])
        if not isinstance(result, dict) or not result.get("timestamp"):
            return None
        bars = ((result.get("indicators") or {}).get("quote") or [{}])[0] or {}
        history = []
        for i, ts in enumerate(result["timestamp"]):
            closes = bars.get("close") or []
            if i >= len(closes) or closes[i] is None:
                continue
            history.append(
                {
                    "date": datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(),
                    "open": _at(bars.get("open"), i),
                    "high": _at(bars.get("high"), i),
                    "low": _at(bars.get("low"), i),
                    "close": closes[i],
                    "volume": _at(bars.get("volume"), i),
                }
            )
        return history or None

    try:
        history = await cache_or_fetch(get_result_cache() if use_cache else None, "yahoo", symbol, kind, _fetch)
    except Exception as exc:
        logger.warning(f"Yahoo history failed for {symbol}: {error_message(exc)}")
        return []
    return history or []


async def search_symbol(query_text: str, *, use_cache: bool = True) -> list[dict[str, Any]]:
    """Equity/ETF symbol search. Failures yield no candidates."""

    async def _fetch() -> list[dict[str, Any]]:
        payload = await _get_json(
            f"{YAHOO_BASE_URL}/v1/finance/search",
            params={"q": query_text, "quotesCount": 8, "newsCount": 0, "enableFuzzyQuery": "false"},
            headers=YAHOO_HEADERS,
        )
        return [
            {
                "symbol": q["symbol"],
                "name": q.get("shortname") or q.get("longname") or q["symbol"],
                "type": (q.get("quoteType") or "stock").lower(),
                "exchange": q.get("exchange") or "",
            }
            for q in payload.get("quotes") or []
            if isinstance(q, dict) and q.get("symbol") and q.get("quoteType") in ("EQUITY", "ETF")
        ]

    try:
        return await cache_or_fetch(
            get_result_cache() if use_cache else None, "yahoo", query_text, DataKind.SEARCH, _fetch
        ) or []
    except Exception as exc:
        logger.warning(f"Yahoo symbol search failed for {query_text!r}: {error_message(exc)}")
        return []


def _parse_crypto(coin_id: str, data: dict[str, Any]) -> dict[str, Any] | None:
    market = data.get("market_data")
    if not isinstance(market, dict):
        return None

    def usd(field: str) -> float:
        return _first_number((market.get(field) or {}).get("usd"))

    return asdict(
        CryptoPrice(
            id=data.get("id") or coin_id,
            symbol=(data.get("symbol") or coin_id).upper(),
            name=data.get("name") or coin_id,
            price=usd("current_price"),
            price_change_24h=_first_number(market.get("price_change_24h")),
            price_change_percent_24h=_first_number(market.get("price_change_percentage_24h")),
            market_cap=usd("market_cap"),
            volume_24h=usd("total_volume"),
            high_24h=usd("high_24h"),
            low_24h=usd("low_24h"),
            last_updated=market.get("last_updated") or _now_iso(),
        )
    )


async def fetch_crypto_price(
    coin_id: str, *, use_cache: bool = True, timeout: float | None = None
) -> CryptoPrice | None:
    async def _fetch() -> dict[str, Any] | None:
        data = await _get_json(
            f"{COINGECKO_BASE_URL}/coins/{quote(coin_id, safe='')}",
            params={
                "localization": "false",
                "tickers": "false",
                "market_data": "true",
                "community_data": "false",
                "developer_data": "false",
            },
            timeout=timeout,
        )
        return _parse_crypto(coin_id, data)

    try:
        raw = await cache_or_fetch(
            get_result_cache() if use_cache else None, "coingecko", coin_id, DataKind.QUOTE, _fetch
        )
    except Exception as exc:
        logger.warning(f"CoinGecko price failed for {coin_id}: {error_message(exc)}")
        return None
    return CryptoPrice(**raw) if raw else None


async def fetch_crypto_history(coin_id: str, days: int = 30, *, use_cache: bool = True) -> list[dict[str, Any]]:
    kind = DataKind.HISTORY_1D if days <= 1 else DataKind.HISTORY_5D if days <= 7 else DataKind.HISTORY_1MO

    async def _fetch() -> list[dict[str, Any]] | None:
        data = await _get_json(
            f"{COINGECKO_BASE_URL}/coins/{quote(coin_id, safe='')}/market_chart",
            params={"vs_currency": "usd", "days": days},
        )
        history = [
            {"date": datetime.fromtimestamp(ts / 1000, tz=timezone.utc).isoformat(), "price": price}
            for ts, price in data.get("prices") or []
        ]
        return history or None

    try:
        history = await cache_or_fetch(
            get_result_cache() if use_cache else None, "coingecko", coin_id, kind, _fetch
        )
    except Exception as exc:
        logger.warning(f"CoinGecko history failed for {coin_id}: {error_message(exc)}")
        return []
    return history or []


async def search_crypto(query_text: str, *, use_cache: bool = True) -> list[dict[str, Any]]:
    """CoinGecko coin search, top 10. Failures yield no candidates."""

    async def _fetch() -> list[dict[str, Any]]:
        data = await _get_json(f"{COINGECKO_BASE_URL}/search", params={"query": query_text})
        return [
            {
                "id": coin["id"],
                "symbol": (coin.get("symbol") or "").upper(),
                "name": coin.get("name") or coin["id"],
                "market_cap_rank": coin.get("market_cap_rank"),
            }
            for coin in (data.get("coins") or [])[:10]
            if isinstance(coin, dict) and coin.get("id")
        ]

    try:
        return await cache_or_fetch(
            get_result_cache() if use_cache else None, "coingecko", query_text, DataKind.SEARCH, _fetch
        ) or []
    except Exception as exc:
        logger.warning(f"CoinGecko search failed for {query_text!r}: {error_message(exc)}")
        return []


async def get_top_cryptos(limit: int = 10, *, use_cache: bool = True) -> list[CryptoPrice]:
    async def _fetch() -> list[dict[str, Any]] | None:
        data = await _get_json(
            f"{COINGECKO_BASE_URL}/coins/markets",
            params={
                "vs_currency": "usd",
                "order": "market_cap_desc",
                "per_page": limit,
                "page": 1,
                "sparkline": "false",
            },
        )
        coins = [
            asdict(
                CryptoPrice(
                    id=coin["id"],
                    symbol=(coin.get("symbol") or "").upper(),
                    name=coin.get("name") or coin["id"],
                    price=_first_number(coin.get("current_price")),
                    price_change_24h=_first_number(coin.get("price_change_24h")),
                    price_change_percent_24h=_first_number(coin.get("price_change_percentage_24h")),
                    market_cap=_first_number(coin.get("market_cap")),
                    volume_24h=_first_number(coin.get("total_volume")),
                    high_24h=_first_number(coin.get("high_24h")),
                    low_24h=_first_number(coin.get("low_24h")),
                    last_updated=coin.get("last_updated") or _now_iso(),
                )
            )
            for coin in data or []
            if isinstance(coin, dict) and coin.get("id")
        ]
        return coins or None

    try:
        raw = await cache_or_fetch(
            get_result_cache() if use_cache else None, "coingecko", f"top_{limit}", DataKind.QUOTE, _fetch
        )
    except Exception as exc:
        logger.warning(f"CoinGecko top coins failed: {error_message(exc)}")
        return []
    return [CryptoPrice(**item) for item in raw or []]


def _citation(quote_: StockQuote | CryptoPrice) -> Citation:
    if isinstance(quote_, StockQuote):
        return Citation(
            url=f"https://finance.yahoo.com/quote/{quote(quote_.symbol, safe='')}",
            title=f"{quote_.name or quote_.symbol} ({quote_.symbol}) quote",
            snippet=f"{quote_.price:.2f} ({quote_.change_percent:+.2f}%)",
        )
    return Citation(
        url=f"https://www.coingecko.com/en/coins/{quote(quote_.id, safe='')}",
        title=f"{quote_.name} ({quote_.symbol}) price",
        snippet=f"${quote_.price:,.2f} ({quote_.price_change_percent_24h:+.2f}% 24h)",
    )


async def fetch(spec: MarketQuery, *, timeout: float | None = None) -> SourceResult:
    """One quote per requested symbol; error only when every symbol is missing."""
    started = time.perf_counter()
    symbols = [s.strip() for s in spec.symbols if s and s.strip()]
    lookup = fetch_crypto_price if spec.asset_type == "crypto" else fetch_stock_quote

    quotes_ = await asyncio.gather(*(lookup(symbol, timeout=timeout) for symbol in symbols))
    found = [q for q in quotes_ if q is not None]
    missing = [symbol for symbol, q in zip(symbols, quotes_) if q is None]
    elapsed_ms = int((time.perf_counter() - started) * 1000)

    if not found:
        message = f"financial failed: no market data for {', '.join(symbols) or 'empty symbol list'}"
        log_source_fetch("financial", "failed", elapsed_ms, error=message)
        return SourceResult.failure(SourceKind.FINANCIAL, message, elapsed_ms)

    citations = [_citation(q) for q in found]
    log_source_fetch("financial", "success", elapsed_ms, citations=len(citations))
    return SourceResult(
        source=SourceKind.FINANCIAL,
        data=MarketDataPayload(asset_type=spec.asset_type, quotes=found, missing=missing),
        citations=citations,
        elapsed_ms=elapsed_ms,
    )
