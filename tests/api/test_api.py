"""
Market Data API Tests.

============================================================
PURPOSE
============================================================
HTTP surface: status codes, camelCase bodies, cache headers and the
uniform error shape. The service runs on in-memory providers.
============================================================
"""

from typing import Optional

import pytest
from fastapi.testclient import TestClient

from aggregation.cascade import AdapterPairTier, PairPriceTier
from aggregation.config import AggregatorConfig
from aggregation.service import AggregationService
from api.app import create_app, list_key_for
from market_data.chains import DEFAULT_CHAINS
from market_data.exceptions import ProviderExhaustedError, UpstreamTransientError
from market_data.models import CEX_CHAIN_ID, Capability, MarketType, PairPrice, PairQuery
from market_data.registry import ProviderRegistry


class FailingTier(PairPriceTier):
    def __init__(self, error: Exception):
        self._error = error
    
    @property
    def name(self) -> str:
        return "failing"
    
    async def try_fetch(self, query: PairQuery) -> Optional[PairPrice]:
        raise self._error


def make_client(providers, tiers=()):
    registry = ProviderRegistry()
    for provider in providers:
        registry.register(provider)
    config = AggregatorConfig(default_chain_ids=[1, 56], adapter_timeout_seconds=1.0)
    service = AggregationService(registry, list(tiers), config=config)
    return TestClient(create_app(service=service))


@pytest.fixture
def client(provider_factory, token_factory, pair_factory):
    listings = provider_factory(
        name="listings",
        tokens={
            1: [token_factory(1, i, "listings", logo_uri=f"https://img/{i}.png") for i in range(5)],
            56: [token_factory(56, i, "listings") for i in range(5)],
        },
    )
    pools = provider_factory(
        name="pools",
        capabilities=frozenset({Capability.MARKET_PAIRS}),
        pairs={56: [pair_factory(56, i) for i in range(4)]},
    )
    ticker = provider_factory(
        name="binance",
        capabilities=frozenset({Capability.PAIR}),
        prices={
            "WBNB-USDT": PairPrice(
                pair="WBNB-USDT",
                base="WBNB",
                quote="USDT",
                price=600.12,
                source="binance",
                chain_id=CEX_CHAIN_ID,
                address="WBNBUSDT",
                price_change_24h=2.5,
            ),
        },
    )
    return make_client([listings, pools, ticker], tiers=[AdapterPairTier(ticker)])


def assert_error_shape(response, status_code, list_key):
    assert response.status_code == status_code
    body = response.json()
    assert set(body) == {"error", list_key, "total"}
    assert body[list_key] == []
    assert body["total"] == 0
    assert body["error"]
    assert response.headers["cache-control"] == "no-store"


# ============================================================
# TOKENS
# ============================================================

class TestTokensEndpoint:
    """Tests for GET /api/v1/tokens."""
    
    def test_listing(self, client):
        """Test mixed listing with camelCase fields and cache hint."""
        response = client.get("/api/v1/tokens", params={"chains": "1,56", "limit": 4})
        
        assert response.status_code == 200
        assert response.headers["cache-control"] == "public, s-maxage=60, stale-while-revalidate=120"
        body = response.json()
        assert body["total"] == 4
        assert body["chainIds"] == [1, 56]
        assert [t["chainId"] for t in body["tokens"]] == [1, 56, 1, 56]
        first = body["tokens"][0]
        assert first["priceUSD"] == 1.0
        assert first["volume24h"] == 1000.0
        assert first["logoURI"] == "https://img/0.png"
        assert first["providers"] == ["listings"]
    
    def test_chain_slug(self, client):
        """Test chains accept provider slugs."""
        response = client.get("/api/v1/tokens", params={"chains": "bsc", "limit": 2})
        
        assert response.json()["chainIds"] == [56]
    
    def test_search(self, client):
        """Test q switches to search."""
        response = client.get("/api/v1/tokens", params={"chains": "1", "q": "TK1_2"})
        
        body = response.json()
        assert body["query"] == "TK1_2"
        assert [t["symbol"] for t in body["tokens"]] == ["TK1_2"]
    
    @pytest.mark.parametrize("params", [
        {"chains": "narnia"},
        {"limit": 0},
        {"limit": 500},
        {"limit": "ten"},
        {"category": "trending"},
        {"q": "x" * 101},
    ])
    def test_invalid_input(self, client, params):
        """Test bad parameters return 400 with the tokens error shape."""
        response = client.get("/api/v1/tokens", params=params)
        
        assert_error_shape(response, 400, "tokens")


# ============================================================
# MARKET PAIRS
# ============================================================

class TestMarketPairsEndpoint:
    """Tests for GET /api/v1/market-pairs."""
    
    def test_listing(self, client):
        """Test pools on one network with nested tokens."""
        response = client.get(
            "/api/v1/market-pairs",
            params={"category": "gainers", "network": "bsc", "limit": 10},
        )
        
        assert response.status_code == 200
        assert response.headers["cache-control"] == "public, s-maxage=30, stale-while-revalidate=60"
        body = response.json()
        assert body["category"] == "gainers"
        assert body["network"] == "bsc"
        assert [p["priceChange24h"] for p in body["pairs"]] == [3.0, 2.0, 1.0]
        assert body["pairs"][0]["baseToken"]["symbol"] == "TK56_3"
        assert body["pairs"][0]["poolAddress"] == "0xpool56_3"
    
    @pytest.mark.parametrize("params", [
        {"category": "bogus"},
        {"network": "narnia"},
        {"page": 0},
    ])
    def test_invalid_input(self, client, params):
        """Test bad parameters return 400 with the pairs error shape."""
        response = client.get("/api/v1/market-pairs", params=params)
        
        assert_error_shape(response, 400, "pairs")


# ============================================================
# MARKET LIST
# ============================================================

class TestMarketListEndpoint:
    """Tests for GET /api/v1/market/list."""
    
    @pytest.fixture
    def market_client(self, provider_factory, market_factory):
        spot = provider_factory(
            name="binance",
            capabilities=frozenset({Capability.MARKET_LIST}),
            market_type=MarketType.SPOT,
            markets=[market_factory(i, provider="binance", volume_24h=v) for i, v in enumerate([900.0, 100.0])],
        )
        perp = provider_factory(
            name="dydx",
            capabilities=frozenset({Capability.MARKET_LIST}),
            market_type=MarketType.PERP,
            markets=[market_factory(0, MarketType.PERP, provider="dydx", volume_24h=500.0, funding_rate=0.0001)],
        )
        return make_client([spot, perp])
    
    def test_listing(self, market_client):
        """Test markets sorted by volume with camelCase fields and cache hint."""
        response = market_client.get("/api/v1/market/list")
        
        assert response.status_code == 200
        assert response.headers["cache-control"] == "public, s-maxage=30, stale-while-revalidate=60"
        body = response.json()
        assert body["total"] == 3
        assert body["marketType"] == "all"
        assert body["limit"] == 500
        assert [m["volume24h"] for m in body["markets"]] == [900.0, 500.0, 100.0]
        perp = body["markets"][1]
        assert perp["marketType"] == "perp"
        assert perp["fundingRate"] == 0.0001
        assert perp["chainId"] == CEX_CHAIN_ID
    
    def test_market_type_filter(self, market_client):
        """Test marketType selects one kind of market."""
        response = market_client.get("/api/v1/market/list", params={"marketType": "spot", "limit": 1})
        
        body = response.json()
        assert body["marketType"] == "spot"
        assert [m["provider"] for m in body["markets"]] == ["binance"]
    
    def test_list_is_not_a_pair(self, market_client):
        """Test the list path is never parsed as a BASE-QUOTE pair."""
        response = market_client.get("/api/v1/market/list")
        
        assert "pair" not in response.json()
    
    @pytest.mark.parametrize("params", [
        {"marketType": "futures"},
        {"limit": 0},
        {"limit": 5000},
    ])
    def test_invalid_input(self, market_client, params):
        """Test bad parameters are 400 with the markets error shape."""
        assert_error_shape(market_client.get("/api/v1/market/list", params=params), 400, "markets")


# ============================================================
# PAIR PRICE
# ============================================================

class TestPairPriceEndpoint:
    """Tests for GET /api/v1/market/{pair}."""
    
    def test_price(self, client):
        """Test a CEX-priced pair."""
        response = client.get("/api/v1/market/WBNB-USDT")
        
        assert response.status_code == 200
        assert response.headers["cache-control"] == "public, s-maxage=15, stale-while-revalidate=30"
        pair = response.json()["pair"]
        assert pair["price"] == 600.12
        assert pair["priceChange24h"] == 2.5
        assert pair["high24h"] is None
        assert pair["source"] == "binance"
        assert pair["chainId"] == CEX_CHAIN_ID
    
    def test_not_found(self, client):
        """Test an unknown pair is 404 Market not found."""
        response = client.get("/api/v1/market/NOPE-USDT")
        
        assert_error_shape(response, 404, "markets")
        assert response.json()["error"] == "Market not found"
    
    def test_malformed_pair(self, client):
        """Test a pair without a quote is 400."""
        assert_error_shape(client.get("/api/v1/market/WBNB"), 400, "markets")
    
    def test_unknown_chain(self, client):
        """Test an unknown chainId is 400."""
        response = client.get("/api/v1/market/WBNB-USDT", params={"chainId": 424242})
        
        assert_error_shape(response, 400, "markets")
    
    def test_upstream_failure(self):
        """Test every tier failing is a 502."""
        client = make_client([], tiers=[FailingTier(UpstreamTransientError("HTTP 503"))])
        
        assert_error_shape(client.get("/api/v1/market/ETH-USD"), 502, "markets")
    
    def test_exhausted_keys(self):
        """Test a drained key pool is a 500."""
        client = make_client([], tiers=[FailingTier(ProviderExhaustedError("no keys"))])
        
        assert_error_shape(client.get("/api/v1/market/ETH-USD"), 500, "markets")


# ============================================================
# CHAINS / HEALTH
# ============================================================

class TestMetaEndpoints:
    """Tests for chains, health and stats."""
    
    def test_chains(self, client):
        """Test the chain table is exposed with badges."""
        response = client.get("/api/v1/chains")
        
        body = response.json()
        assert body["total"] == len(DEFAULT_CHAINS)
        bsc = next(c for c in body["chains"] if c["id"] == 56)
        assert bsc["nativeCurrencySymbol"] == "BNB"
        assert bsc["badge"] == "evm-bnb-chain"
        assert bsc["providerIds"]["dexscreener"] == "bsc"
    
    def test_health(self, client):
        """Test health lists every registered provider."""
        response = client.get("/health")
        
        assert response.status_code == 200
        assert set(response.json()["providers"]) == {"listings", "pools", "binance"}
    
    def test_stats(self, client):
        """Test stats expose cache counters."""
        client.get("/api/v1/tokens", params={"chains": "1"})
        
        assert client.get("/stats").json()["cache"]["loads"] == 1
    
    @pytest.mark.parametrize("path,key", [
        ("/api/v1/tokens", "tokens"),
        ("/api/v1/market-pairs", "pairs"),
        ("/api/v1/market/ETH-USD", "markets"),
        ("/other", "data"),
    ])
    def test_list_key_for(self, path, key):
        """Test error list keys follow the endpoint."""
        assert list_key_for(path) == key
