from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from retrieval_engine.config import settings
from retrieval_engine.models.sources import MarketQuery, SourceKind
from retrieval_engine.services.result_cache import reset_result_cache
from retrieval_engine.tools import exa_search, market_data, perplexity_search, wikipedia_search
from retrieval_engine.tools.tavily_search import SearchResult


def _response(url: str, payload: dict | list | None = None, status_code: int = 200, method: str = "GET") -> httpx.Response:
    return httpx.Response(status_code, json=payload if payload is not None else {}, request=httpx.Request(method, url))


@pytest.fixture
def memory_cache(monkeypatch):
    monkeypatch.setattr(settings, "result_cache_backend", "memory")
    reset_result_cache()
    yield
    reset_result_cache()


# --- Exa ---


EXA_PAYLOAD = {
    "results": [
        {
            "title": "Fusion milestone",
            "url": "https://news.example.com/fusion",
            "text": "Scientists reported net energy gain...",
            "highlights": ["net energy gain was confirmed"],
            "publishedDate": "2026-02-01",
            "score": 0.91,
        },
        {"title": "Fusion explainer", "url": "https://blog.example.com/explainer", "text": "x" * 300},
        {"title": "Broken", "url": "not-a-url"},
    ]
}


@pytest.mark.asyncio
async def test_exa_maps_results_and_citations(monkeypatch):
    monkeypatch.setattr(settings, "exa_api_key", "exa-key")
    captured: dict = {}

    async def fake_post(self, url: str, **kwargs):  # noqa: ARG001
        captured.update(kwargs)
        return _response(url, EXA_PAYLOAD, method="POST")

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

    result = await exa_search.fetch("fusion news")

    assert result.ok
    assert result.source == SourceKind.EXA
    assert result.data.provider == "exa"
    assert [i.url for i in result.data.items] == ["https://news.example.com/fusion", "https://blog.example.com/explainer"]
    assert result.citations[0].snippet == "net energy gain was confirmed"
    assert result.citations[1].snippet == "x" * 200
    assert captured["headers"]["x-api-key"] == "exa-key"
    assert captured["json"]["type"] == "auto"
    assert captured["json"]["numResults"] == 10


@pytest.mark.asyncio
async def test_exa_without_key_or_fallback_is_error(monkeypatch):
    monkeypatch.setattr(settings, "exa_api_key", "")
    monkeypatch.setattr(settings, "tavily_api_key", "")

    result = await exa_search.fetch("anything")

    assert result.ok is False
    assert result.error == "exa failed: ValueError: EXA_API_KEY not configured"


@pytest.mark.asyncio
async def test_exa_http_error_falls_back_to_tavily(monkeypatch):
    monkeypatch.setattr(settings, "exa_api_key", "exa-key")
    monkeypatch.setattr(settings, "tavily_api_key", "tvly-key")
    monkeypatch.setattr(settings, "web_search_fallback_to_tavily", True)

    async def fake_post(self, url: str, **kwargs):  # noqa: ARG001
        return _response(url, {"error": "boom"}, status_code=500, method="POST")

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)
    tavily = AsyncMock(return_value=[SearchResult(title="T", url="https://t.example.com", content="tavily text", score=0.5)])

    with patch("retrieval_engine.tools.exa_search.tavily_search.search", new=tavily):
        result = await exa_search.fetch("fusion news")

    assert result.ok
    assert result.data.provider == "tavily"
    assert result.data.fallback_reason == "exa failed: HTTP 500"
    assert result.citations[0].url == "https://t.example.com"


@pytest.mark.asyncio
async def test_exa_empty_result_with_failed_fallback_stays_empty_success(monkeypatch):
    monkeypatch.setattr(settings, "exa_api_key", "exa-key")
    monkeypatch.setattr(settings, "tavily_api_key", "tvly-key")
    monkeypatch.setattr(settings, "web_search_fallback_to_tavily", True)

    async def fake_post(self, url: str, **kwargs):  # noqa: ARG001
        return _response(url, {"results": []}, method="POST")

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

    with patch(
        "retrieval_engine.tools.exa_search.tavily_search.search", new=AsyncMock(side_effect=RuntimeError("quota"))
    ):
        result = await exa_search.fetch("obscure query")

    assert result.ok
    assert result.data.is_empty
    assert result.citations == []


# --- Perplexity ---


@pytest.mark.asyncio
async def test_perplexity_answer_with_numbered_sources(monkeypatch):
    monkeypatch.setattr(settings, "perplexity_api_key", "pplx-key")
    captured: dict = {}

    async def fake_post(self, url: str, **kwargs):  # noqa: ARG001
        captured.update(kwargs)
        return _response(
            url,
            {
                "model": "sonar",
                "choices": [{"message": {"content": "Paris is the capital [1]."}}],
                "citations": ["https://a.example.com", "https://b.example.com"],
            },
            method="POST",
        )

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

    result = await perplexity_search.fetch("capital of France?", recency="week")

    assert result.ok
    assert result.data.answer == "Paris is the capital [1]."
    assert [c.title for c in result.citations] == ["Source 1", "Source 2"]
    assert captured["json"]["model"] == "sonar"
    assert captured["json"]["temperature"] == 0.5
    assert captured["json"]["max_tokens"] == 1000
    assert captured["json"]["search_recency_filter"] == "week"
    assert captured["headers"]["Authorization"] == "Bearer pplx-key"


@pytest.mark.asyncio
async def test_perplexity_malformed_payload_is_error(monkeypatch):
    monkeypatch.setattr(settings, "perplexity_api_key", "pplx-key")

    async def fake_post(self, url: str, **kwargs):  # noqa: ARG001
        return _response(url, {"unexpected": True}, method="POST")

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

    result = await perplexity_search.fetch("q")

    assert result.ok is False
    assert result.error.startswith("perplexity failed: ValueError")


# --- Wikipedia ---


@pytest.mark.asyncio
async def test_wikipedia_fetches_three_titles_and_drops_failures(monkeypatch):
    requested: list[str] = []

    async def fake_get(self, url: str, **kwargs):  # noqa: ARG001
        requested.append(url)
        if url.endswith("/Missing_page"):
            return _response(url, {"title": "Not found"}, status_code=404)
        title = url.rsplit("/", 1)[-1]
        return _response(
            url,
            {
                "title": title,
                "extract": f"{title} summary.",
                "content_urls": {"desktop": {"page": f"https://en.wikipedia.org/wiki/{title}"}},
            },
        )

    monkeypatch.setattr(httpx.AsyncClient, "get", fake_get)

    result = await wikipedia_search.fetch(("Photosynthesis", "Missing_page", "Chlorophyll", "Fourth"))

    assert result.ok
    assert len(requested) == 3
    assert [a.title for a in result.data.articles] == ["Photosynthesis", "Chlorophyll"]
    assert [c.url for c in result.citations] == [
        "https://en.wikipedia.org/wiki/Photosynthesis",
        "https://en.wikipedia.org/wiki/Chlorophyll",
    ]


@pytest.mark.asyncio
async def test_wikipedia_no_titles_is_empty_success():
    result = await wikipedia_search.fetch(())
    assert result.ok
    assert result.data.is_empty


@pytest.mark.asyncio
async def test_wikipedia_title_search(monkeypatch):
    async def fake_get(self, url: str, **kwargs):  # noqa: ARG001
        assert kwargs["params"]["srsearch"] == "ada lovelace"
        return _response(url, {"query": {"search": [{"title": "Ada Lovelace"}, {"title": "Analytical Engine"}]}})

    monkeypatch.setattr(httpx.AsyncClient, "get", fake_get)

    assert await wikipedia_search.search_titles("ada lovelace") == ["Ada Lovelace", "Analytical Engine"]


# --- Market data ---


YAHOO_CHART = {
    "chart": {
        "result": [
            {
                "meta": {
                    "regularMarketPrice": 600.5,
                    "chartPreviousClose": 590.0,
                    "shortName": "Netflix, Inc.",
                    "regularMarketDayHigh": 605.0,
                    "regularMarketDayLow": 588.0,
                    "regularMarketVolume": 1200000,
                },
                "indicators": {"quote": [{}]},
            }
        ]
    }
}


@pytest.mark.asyncio
async def test_stock_fetch_lists_missing_symbols_and_uses_cache(monkeypatch, memory_cache):
    calls: list[str] = []

    async def fake_get(self, url: str, **kwargs):  # noqa: ARG001
        calls.append(url)
        if url.endswith("/chart/NFLX"):
            return _response(url, YAHOO_CHART)
        return _response(url, {"chart": {"result": None}}, status_code=404)

    monkeypatch.setattr(httpx.AsyncClient, "get", fake_get)

    first = await market_data.fetch(MarketQuery(asset_type="stock", symbols=("NFLX", "ZZZZ")))
    second = await market_data.fetch(MarketQuery(asset_type="stock", symbols=("nflx",)))

    assert first.ok
    assert first.data.missing == ["ZZZZ"]
    quote = first.data.quotes[0]
    assert quote.symbol == "NFLX"
    assert quote.change == pytest.approx(10.5)
    assert first.citations[0].url == "https://finance.yahoo.com/quote/NFLX"
    assert second.ok
    assert sum(1 for url in calls if url.endswith("/chart/NFLX")) == 1


@pytest.mark.asyncio
async def test_market_fetch_all_missing_is_error(monkeypatch, memory_cache):
    async def fake_get(self, url: str, **kwargs):  # noqa: ARG001
        raise httpx.ConnectError("unreachable")

    monkeypatch.setattr(httpx.AsyncClient, "get", fake_get)

    result = await market_data.fetch(MarketQuery(asset_type="stock", symbols=("AAPL",)))

    assert result.ok is False
    assert "AAPL" in result.error


@pytest.mark.asyncio
async def test_market_fetch_passes_timeout_to_requests(monkeypatch, memory_cache):
    timeouts: list[float] = []

    async def fake_get(self, url: str, **kwargs):  # noqa: ARG001
        timeouts.append(kwargs["timeout"])
        raise httpx.ConnectError("unreachable")

    monkeypatch.setattr(httpx.AsyncClient, "get", fake_get)

    await market_data.fetch(MarketQuery(asset_type="stock", symbols=("AAPL",)), timeout=2.5)
    await market_data.fetch(MarketQuery(asset_type="crypto", symbols=("bitcoin",)), timeout=4.0)

    assert timeouts == [2.5, 4.0]


@pytest.mark.asyncio
async def test_crypto_price_parsing(monkeypatch, memory_cache):
    async def fake_get(self, url: str, **kwargs):  # noqa: ARG001
        return _response(
            url,
            {
                "id": "bitcoin",
                "symbol": "btc",
                "name": "Bitcoin",
                "market_data": {
                    "current_price": {"usd": 65000},
                    "price_change_24h": 500,
                    "price_change_percentage_24h": 0.77,
                    "market_cap": {"usd": 1.28e12},
                    "total_volume": {"usd": 3.1e10},
                    "high_24h": {"usd": 66000},
                    "low_24h": {"usd": 64000},
                    "last_updated": "2026-03-01T00:00:00Z",
                },
            },
        )

    monkeypatch.setattr(httpx.AsyncClient, "get", fake_get)

    result = await market_data.fetch(MarketQuery(asset_type="crypto", symbols=("bitcoin",)))

    price = result.data.quotes[0]
    assert price.symbol == "BTC"
    assert price.price == 65000
    assert result.citations[0].url == "https://www.coingecko.com/en/coins/bitcoin"


@pytest.mark.asyncio
async def test_symbol_search_filters_to_equities(monkeypatch, memory_cache):
    async def fake_get(self, url: str, **kwargs):  # noqa: ARG001
        return _response(
            url,
            {
                "quotes": [
                    {"symbol": "NFLX", "shortname": "Netflix, Inc.", "quoteType": "EQUITY", "exchange": "NMS"},
                    {"symbol": "NFLX240621C", "quoteType": "OPTION"},
                ]
            },
        )

    monkeypatch.setattr(httpx.AsyncClient, "get", fake_get)

    results = await market_data.search_symbol("netflix")

    assert results == [{"symbol": "NFLX", "name": "Netflix, Inc.", "type": "equity", "exchange": "NMS"}]


@pytest.mark.asyncio
async def test_stock_history_skips_empty_bars(monkeypatch, memory_cache):
    async def fake_get(self, url: str, **kwargs):  # noqa: ARG001
        assert kwargs["params"] == {"interval": "1wk", "range": "1y"}
        return _response(
            url,
            {
                "chart": {
                    "result": [
                        {
                            "timestamp": [1767225600, 1767830400, 1768435200],
                            "indicators": {
                                "quote": [
                                    {
                                        "open": [10, 11, 12],
                                        "high": [11, 12, 13],
                                        "low": [9, 10, 11],
                                        "close": [10.5, None, 12.5],
                                        "volume": [100, 200, 300],
                                    }
                                ]
                            },
                        }
                    ]
                }
            },
        )

    monkeypatch.setattr(httpx.AsyncClient, "get", fake_get)

    history = await market_data.fetch_stock_history("MSFT", "1y")

    assert [bar["close"] for bar in history] == [10.5, 12.5]
    assert history[1]["volume"] == 300


@pytest.mark.asyncio
async def test_crypto_history_and_top_coins(monkeypatch, memory_cache):
    async def fake_get(self, url: str, **kwargs):  # noqa: ARG001
        if url.endswith("/market_chart"):
            return _response(url, {"prices": [[1767225600000, 64000.0], [1767312000000, 65000.0]]})
        return _response(
            url,
            [
                {"id": "bitcoin", "symbol": "btc", "name": "Bitcoin", "current_price": 65000},
                {"id": "ethereum", "symbol": "eth", "name": "Ethereum", "current_price": 3200},
            ],
        )

    monkeypatch.setattr(httpx.AsyncClient, "get", fake_get)

    history = await market_data.fetch_crypto_history("bitcoin", days=7)
    top = await market_data.get_top_cryptos(2)

    assert [point["price"] for point in history] == [64000.0, 65000.0]
    assert [coin.symbol for coin in top] == ["BTC", "ETH"]
