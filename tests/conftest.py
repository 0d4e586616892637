"""
Shared fixtures for market data tests.

Fake providers implement the adapter hooks in memory and count calls, so
orchestration tests can assert exactly how often each upstream was hit.
"""

import asyncio
from typing import Optional

import pytest

from market_data.base import BaseMarketProvider
from market_data.models import (
    Capability,
    MarketSummary,
    MarketTokenPair,
    MarketType,
    NormalizedToken,
    PairPrice,
    PairQuery,
)


def make_token(
    chain_id: int,
    index: int,
    provider: str = "fake",
    **fields,
) -> NormalizedToken:
    values = {
        "chain_id": chain_id,
        "address": f"0x{chain_id:04x}{index:036x}",
        "symbol": f"TK{chain_id}_{index}",
        "name": f"Token {chain_id}/{index}",
        "price_usd": 1.0 + index,
        "volume_24h": 1000.0 - index,
        "providers": frozenset({provider}),
    }
    values.update(fields)
    return NormalizedToken(**values)


def make_pair(chain_id: int, index: int, **fields) -> MarketTokenPair:
    base = make_token(chain_id, index)
    quote = make_token(chain_id, 999, symbol="USDT", name="Tether")
    values = {
        "chain_id": chain_id,
        "pool_address": f"0xpool{chain_id}_{index}",
        "pool_name": f"{base.symbol} / USDT",
        "base_token": base,
        "quote_token": quote,
        "volume_24h": 1000.0 - index,
        "price_change_24h": float(index),
        "providers": frozenset({"fake"}),
    }
    values.update(fields)
    return MarketTokenPair(**values)


def make_market(
    index: int,
    market_type: MarketType = MarketType.SPOT,
    provider: str = "fake",
    **fields,
) -> MarketSummary:
    values = {
        "id": f"{provider}-{market_type.value}-{index}",
        "symbol": f"MK{index}",
        "name": f"Market {index}",
        "price": 10.0 + index,
        "market_type": market_type,
        "provider": provider,
        "volume_24h": 1000.0 - index,
    }
    values.update(fields)
    return MarketSummary(**values)


class FakeProvider(BaseMarketProvider):
    """In-memory provider with call counters."""
    
    def __init__(
        self,
        name: str = "fake",
        capabilities: frozenset = frozenset({Capability.CATEGORY, Capability.SYMBOL_OR_ADDRESS}),
        chains: tuple = (1, 56),
        tokens: Optional[dict] = None,
        pairs: Optional[dict] = None,
        prices: Optional[dict] = None,
        markets: Optional[list] = None,
        market_type: Optional[MarketType] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ) -> None:
        super().__init__()
        self._name = name
        self.capabilities = capabilities
        self._supported_chains = set(chains)
        self._tokens = tokens or {}
        self._pairs = pairs or {}
        self._prices = prices or {}
        self._markets = markets or []
        self.market_type = market_type
        self._delay = delay
        self._error = error
        self.calls: list[tuple] = []
    
    @property
    def name(self) -> str:
        return self._name
    
    def supports_chain(self, chain_id: int) -> bool:
        return chain_id in self._supported_chains
    
    async def _maybe_fail(self) -> None:
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
    
    async def _fetch_by_category(self, chain_id, category, limit, page):
        self.calls.append(("category", chain_id, category, limit))
        await self._maybe_fail()
        return list(self._tokens.get(chain_id, []))[:limit]
    
    async def _fetch_by_symbol_or_address(self, chain_id, query, limit):
        self.calls.append(("search", chain_id, query, limit))
        await self._maybe_fail()
        return list(self._tokens.get(chain_id, []))[:limit]
    
    async def _fetch_market_pairs(self, chain_id, category, limit, page):
        self.calls.append(("pairs", chain_id, category, limit, page))
        await self._maybe_fail()
        return list(self._pairs.get(chain_id, []))
    
    async def _fetch_pair(self, pair: PairQuery) -> Optional[PairPrice]:
        self.calls.append(("pair", pair.name))
        await self._maybe_fail()
        return self._prices.get(pair.name)
    
    async def _fetch_market_list(self, limit):
        self.calls.append(("markets", limit))
        await self._maybe_fail()
        return list(self._markets)[:limit]


@pytest.fixture
def token_factory():
    return make_token


@pytest.fixture
def pair_factory():
    return make_pair


@pytest.fixture
def market_factory():
    return make_market


@pytest.fixture
def provider_factory():
    return FakeProvider
