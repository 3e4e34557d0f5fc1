from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from retrieval_engine.llm_client import MessageResponse, TextBlock, Usage
from retrieval_engine.models.resolution import ResolutionOutcome, SelectionMethod
from retrieval_engine.services.entity_resolver import EntityResolver, extract_keywords, keyword_finance_check
from retrieval_engine.services.rate_limiter import InMemoryRateLimiter


def _reply(text: str) -> MessageResponse:
    return MessageResponse(content=[TextBlock(type="text", text=text)], usage=Usage(10, 5))


def _fake_client(*replies: MessageResponse):
    create = AsyncMock(side_effect=list(replies))
    return SimpleNamespace(messages=SimpleNamespace(create=create)), create


def _no_client():
    raise AssertionError("model must not be called")


async def _netflix_stocks(term: str):
    return [
        {"symbol": "NFLX", "name": "Netflix", "type": "equity", "exchange": "NMS"},
        {"symbol": "NFLX.MX", "name": "Netflix Inc MX", "type": "equity", "exchange": "MEX"},
    ]


async def _no_coins(term: str):
    return []


@pytest.fixture
def no_llm(monkeypatch):
    from retrieval_engine.config import settings

    monkeypatch.setattr(settings, "openrouter_api_key", "")


@pytest.fixture
def with_llm(monkeypatch):
    from retrieval_engine.config import settings

    monkeypatch.setattr(settings, "openrouter_api_key", "sk-or-test")


def test_extract_keywords_drops_stop_words_and_keeps_tickers():
    assert extract_keywords("What is the NVDA stock price today?") == ["NVDA"]
    assert extract_keywords("analyze netflix shares") == ["netflix", "shares"]


def test_keyword_finance_check_categories():
    assert keyword_finance_check("bitcoin price").category == "crypto"
    assert keyword_finance_check("how is the nasdaq index doing").category == "index"
    assert keyword_finance_check("netflix stock").category == "stock"
    assert keyword_finance_check("best pasta recipe").is_finance is False


@pytest.mark.asyncio
async def test_netflix_resolves_directly_without_model(no_llm):
    resolver = EntityResolver(search_stocks=_netflix_stocks, search_coins=_no_coins)

    with patch("retrieval_engine.services.entity_resolver.client", side_effect=_no_client):
        resolution = await resolver.resolve("netflix stock price")

    assert resolution.outcome == ResolutionOutcome.RESOLVED
    assert resolution.selected.symbol == "NFLX"
    assert resolution.selected.type == "stock"
    assert resolution.method == SelectionMethod.DIRECT
    assert [m.symbol for m in resolution.matches] == ["NFLX.MX"]


@pytest.mark.asyncio
async def test_ambiguous_candidates_go_to_model(with_llm):
    async def stocks(term):
        return [
            {"symbol": "AAPL", "name": "Apple Inc.", "exchange": "NMS"},
            {"symbol": "APLE", "name": "Apple Hospitality REIT", "exchange": "NYQ"},
        ]

    fake, create = _fake_client(
        _reply('{"is_finance": true, "category": "stock", "search_terms": ["apple"]}'),
        _reply('{"choice": 2}'),
    )
    resolver = EntityResolver(search_stocks=stocks, search_coins=_no_coins)
    with patch("retrieval_engine.services.entity_resolver.client", return_value=fake):
        resolution = await resolver.resolve("apple shares")

    assert resolution.selected.symbol == "APLE"
    assert resolution.method == SelectionMethod.MODEL
    assert create.await_count == 2
    assert create.await_args.kwargs["json_mode"] is True


@pytest.mark.asyncio
async def test_unparseable_choice_falls_back_to_best_score(with_llm):
    async def stocks(term):
        return [
            {"symbol": "AAPL", "name": "Apple Inc.", "exchange": "NMS"},
            {"symbol": "APLE", "name": "Apple Hospitality REIT", "exchange": "NYQ"},
        ]

    fake, _ = _fake_client(
        _reply('{"is_finance": true, "category": "stock", "search_terms": ["apple"]}'),
        _reply("I think the first one"),
    )
    resolver = EntityResolver(search_stocks=stocks, search_coins=_no_coins)
    with patch("retrieval_engine.services.entity_resolver.client", return_value=fake):
        resolution = await resolver.resolve("apple shares")

    assert resolution.selected.symbol == "AAPL"
    assert resolution.method == SelectionMethod.SCORE_FALLBACK


@pytest.mark.asyncio
async def test_crypto_uses_coin_id_and_exact_match(no_llm):
    async def stocks(term):
        raise AssertionError("crypto queries skip the stock catalog")

    async def coins(term):
        return [
            {"id": "bitcoin", "symbol": "BTC", "name": "Bitcoin"},
            {"id": "bitcoin-cash", "symbol": "BCH", "name": "Bitcoin Cash"},
        ]

    resolution = await EntityResolver(search_stocks=stocks, search_coins=coins).resolve("bitcoin price")

    assert resolution.selected.symbol == "bitcoin"
    assert resolution.selected.type == "crypto"
    assert resolution.method == SelectionMethod.DIRECT


@pytest.mark.asyncio
async def test_no_candidates_is_not_found_with_terms(no_llm):
    async def empty(term):
        return []

    resolution = await EntityResolver(search_stocks=empty, search_coins=empty).resolve("zzqx stock")

    assert resolution.outcome == ResolutionOutcome.NOT_FOUND
    assert resolution.searched_terms == ["zzqx"]
    assert "zzqx" in resolution.failure_reason
    assert resolution.disambiguation()["searched_terms"] == ["zzqx"]


@pytest.mark.asyncio
async def test_catalog_failure_contributes_no_candidates(with_llm):
    async def broken(term):
        raise RuntimeError("yahoo down")

    async def coins(term):
        return [{"id": "tesla-token", "symbol": "TSLAX", "name": "Tesla Token"}]

    fake, _ = _fake_client(_reply('{"is_finance": true, "category": "general", "search_terms": ["tesla"]}'))
    resolver = EntityResolver(search_stocks=broken, search_coins=coins)
    with patch("retrieval_engine.services.entity_resolver.client", return_value=fake):
        resolution = await resolver.resolve("tesla market")

    assert resolution.outcome == ResolutionOutcome.RESOLVED
    assert resolution.selected.symbol == "tesla-token"
    assert resolution.method == SelectionMethod.DIRECT


@pytest.mark.asyncio
async def test_non_finance_query(no_llm):
    resolution = await EntityResolver(search_stocks=_netflix_stocks, search_coins=_no_coins).resolve(
        "history of the roman empire"
    )
    assert resolution.outcome == ResolutionOutcome.NOT_FINANCE


@pytest.mark.asyncio
async def test_throttled_resolver_uses_keywords(with_llm):
    resolver = EntityResolver(
        InMemoryRateLimiter(limit=0, window_seconds=60),
        search_stocks=_netflix_stocks,
        search_coins=_no_coins,
    )
    with patch("retrieval_engine.services.entity_resolver.client", side_effect=_no_client):
        resolution = await resolver.resolve("netflix stock price")

    assert resolution.selected.symbol == "NFLX"
