"""
Aggregation Service Tests.

============================================================
PURPOSE
============================================================
Fan-out, merge, mixing, caching and partial-failure behavior of
token and pool listings, driven by in-memory providers.
============================================================
"""

import asyncio

import pytest

from aggregation.config import AggregatorConfig
from aggregation.service import AggregationService
from market_data.exceptions import InvalidInputError, UpstreamTransientError
from market_data.models import Capability, MarketType
from market_data.registry import ProviderRegistry


def build_service(*providers, config=None, enricher=None):
    registry = ProviderRegistry()
    for provider in providers:
        registry.register(provider)
    config = config or AggregatorConfig(default_chain_ids=[1, 56], adapter_timeout_seconds=0.2)
    return AggregationService(registry, [], config=config, enricher=enricher)


@pytest.fixture
def seeded_provider(provider_factory, token_factory):
    tokens = {
        1: [token_factory(1, i) for i in range(7)],
        56: [token_factory(56, i) for i in range(7)],
    }
    return provider_factory(name="seeded", tokens=tokens)


# ============================================================
# TOKEN LISTING TESTS
# ============================================================

class TestGetTokens:
    """Tests for get_tokens."""
    
    @pytest.mark.asyncio
    async def test_hot_two_chains_mixed(self, seeded_provider):
        """Test 7+7 hot tokens with limit 10 alternate chains 5 and 5."""
        service = build_service(seeded_provider)
        
        listing = await service.get_tokens(chain_ids=[1, 56], category="hot", limit=10)
        
        assert listing.total == 10
        assert [t.chain_id for t in listing.tokens] == [1, 56] * 5
        assert [t.symbol for t in listing.tokens[:2]] == ["TK1_0", "TK56_0"]
        assert listing.category == "hot"
        assert listing.providers == ["seeded"]
    
    @pytest.mark.asyncio
    async def test_default_category_and_chains(self, seeded_provider):
        """Test no query and no category means hot on default chains."""
        service = build_service(seeded_provider)
        
        listing = await service.get_tokens()
        
        assert listing.category == "hot"
        assert listing.chain_ids == [1, 56]
        assert {call[0] for call in seeded_provider.calls} == {"category"}
    
    @pytest.mark.asyncio
    async def test_repeat_served_from_cache(self, seeded_provider):
        """Test identical requests within TTL hit providers once."""
        service = build_service(seeded_provider)
        
        first = await service.get_tokens(chain_ids=[1, 56], limit=10)
        second = await service.get_tokens(chain_ids=[56, 1], limit=10)
        
        assert first == second
        assert len(seeded_provider.calls) == 2
    
    @pytest.mark.asyncio
    async def test_concurrent_requests_coalesce(self, provider_factory, token_factory):
        """Test concurrent identical requests share one fan-out."""
        provider = provider_factory(tokens={1: [token_factory(1, 0)]}, delay=0.05)
        service = build_service(provider)
        
        results = await asyncio.gather(*[
            service.get_tokens(chain_ids=[1], limit=5) for _ in range(5)
        ])
        
        assert len(provider.calls) == 1
        assert all(r.total == 1 for r in results)
    
    @pytest.mark.asyncio
    async def test_failed_adapter_dropped(self, seeded_provider, provider_factory):
        """Test a failing adapter does not fail the listing."""
        broken = provider_factory(name="broken", error=UpstreamTransientError("HTTP 503"))
        service = build_service(broken, seeded_provider)
        
        listing = await service.get_tokens(chain_ids=[1, 56], limit=10)
        
        assert listing.total == 10
        assert listing.providers == ["seeded"]
    
    @pytest.mark.asyncio
    async def test_slow_adapter_times_out(self, seeded_provider, provider_factory):
        """Test an adapter past its timeout is dropped."""
        slow = provider_factory(name="slow", delay=5.0)
        service = build_service(seeded_provider, slow)
        
        listing = await asyncio.wait_for(service.get_tokens(chain_ids=[1], limit=3), timeout=2)
        
        assert listing.total == 3
        assert listing.providers == ["seeded"]
    
    @pytest.mark.asyncio
    async def test_all_adapters_fail_yields_empty(self, provider_factory):
        """Test total failure gives an empty listing rather than an error."""
        broken = provider_factory(name="broken", error=UpstreamTransientError("HTTP 503"))
        service = build_service(broken)
        
        listing = await service.get_tokens(chain_ids=[1])
        
        assert listing.total == 0
        assert listing.tokens == []
    
    @pytest.mark.asyncio
    async def test_same_token_merged_across_providers(self, provider_factory, token_factory):
        """Test one token from two providers is merged by chain and address."""
        dex = provider_factory(name="dex", tokens={1: [token_factory(1, 0, provider="dex")]})
        meta_token = token_factory(
            1, 0, provider="meta",
            address=token_factory(1, 0).address.upper().replace("0X", "0x"),
            market_cap_rank=12,
        )
        meta = provider_factory(name="meta", tokens={1: [meta_token]})
        service = build_service(dex, meta)
        
        listing = await service.get_tokens(chain_ids=[1])
        
        assert listing.total == 1
        token = listing.tokens[0]
        assert token.market_cap_rank == 12
        assert token.providers == {"dex", "meta"}
    
    @pytest.mark.asyncio
    async def test_query_takes_precedence(self, seeded_provider):
        """Test a search query wins over a category."""
        service = build_service(seeded_provider)
        
        listing = await service.get_tokens(chain_ids=[1], query="TK1_3", category="gainers")
        
        assert [t.symbol for t in listing.tokens] == ["TK1_3"]
        assert listing.category is None
        assert listing.query == "TK1_3"
        assert seeded_provider.calls[0][0] == "search"
    
    @pytest.mark.asyncio
    async def test_adapter_without_chain_skipped(self, seeded_provider, provider_factory):
        """Test adapters are only asked about chains they support."""
        solana_only = provider_factory(name="sol", chains=(7565164,))
        service = build_service(seeded_provider, solana_only)
        
        await service.get_tokens(chain_ids=[1, 56])
        
        assert solana_only.calls == []
    
    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"limit": 0},
        {"limit": 101},
        {"chain_ids": [424242]},
        {"category": "trending"},
    ])
    async def test_invalid_input(self, seeded_provider, kwargs):
        """Test invalid arguments raise before any adapter call."""
        service = build_service(seeded_provider)
        
        with pytest.raises(InvalidInputError):
            await service.get_tokens(**kwargs)
        
        assert seeded_provider.calls == []


# ============================================================
# MARKET PAIR TESTS
# ============================================================

class TestGetMarketPairs:
    """Tests for get_market_pairs_by_category."""
    
    @pytest.fixture
    def pool_provider(self, provider_factory, pair_factory):
        pairs = {
            1: [pair_factory(1, i) for i in range(5)],
            56: [pair_factory(56, i) for i in range(5)],
        }
        return provider_factory(
            name="pools",
            capabilities=frozenset({Capability.MARKET_PAIRS}),
            pairs=pairs,
        )
    
    @pytest.mark.asyncio
    async def test_gainers_ranked_and_mixed(self, pool_provider):
        """Test gainers keep positive movers, ranked per chain then mixed."""
        service = build_service(pool_provider)
        
        listing = await service.get_market_pairs_by_category("gainers", limit=6)
        
        assert [p.chain_id for p in listing.pairs] == [1, 56, 1, 56, 1, 56]
        assert [p.price_change_24h for p in listing.pairs] == [4.0, 4.0, 3.0, 3.0, 2.0, 2.0]
        assert listing.total == 6
    
    @pytest.mark.asyncio
    async def test_network_slug(self, pool_provider):
        """Test a network restricts the listing to one chain."""
        service = build_service(pool_provider)
        
        listing = await service.get_market_pairs_by_category("hot", network="bsc", limit=3)
        
        assert {p.chain_id for p in listing.pairs} == {56}
        assert listing.network == "bsc"
        assert listing.chain_ids == [56]
    
    @pytest.mark.asyncio
    async def test_top_alias(self, pool_provider):
        """Test 'top' is accepted as hot."""
        service = build_service(pool_provider)
        
        listing = await service.get_market_pairs_by_category("top", network="56")
        
        assert listing.category == "hot"
    
    @pytest.mark.asyncio
    async def test_duplicate_pools_collapsed(self, pool_provider, provider_factory, pair_factory):
        """Test the same pool from two providers appears once."""
        mirror = provider_factory(
            name="mirror",
            capabilities=frozenset({Capability.MARKET_PAIRS}),
            pairs={56: [pair_factory(56, i) for i in range(5)]},
        )
        service = build_service(pool_provider, mirror)
        
        listing = await service.get_market_pairs_by_category("hot", network="bsc", limit=20)
        
        assert listing.total == 5
    
    @pytest.mark.asyncio
    async def test_page_forwarded(self, pool_provider):
        """Test the page number reaches the adapter."""
        service = build_service(pool_provider)
        
        await service.get_market_pairs_by_category("new", network="bsc", page=3)
        
        assert pool_provider.calls[0][-1] == 3
    
    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"category": "bogus"},
        {"category": "hot", "network": "narnia"},
        {"category": "hot", "page": 0},
        {"category": "hot", "limit": 1000},
    ])
    async def test_invalid_input(self, pool_provider, kwargs):
        """Test invalid arguments raise InvalidInputError."""
        service = build_service(pool_provider)
        
        with pytest.raises(InvalidInputError):
            await service.get_market_pairs_by_category(**kwargs)


# ============================================================
# MARKET LIST TESTS
# ============================================================

class TestGetMarketList:
    """Tests for get_market_list."""
    
    @pytest.fixture
    def spot_provider(self, provider_factory, market_factory):
        return provider_factory(
            name="spot",
            capabilities=frozenset({Capability.MARKET_LIST}),
            market_type=MarketType.SPOT,
            markets=[
                market_factory(i, provider="spot", volume_24h=v)
                for i, v in enumerate([900.0, 500.0, 100.0])
            ],
        )
    
    @pytest.fixture
    def perp_provider(self, provider_factory, market_factory):
        return provider_factory(
            name="perp",
            capabilities=frozenset({Capability.MARKET_LIST}),
            market_type=MarketType.PERP,
            markets=[
                market_factory(i, MarketType.PERP, provider="perp", funding_rate=0.0001, volume_24h=v)
                for i, v in enumerate([700.0, 300.0])
            ],
        )
    
    @pytest.mark.asyncio
    async def test_all_sorted_by_volume(self, spot_provider, perp_provider):
        """Test spot and perp markets interleave by 24h volume."""
        service = build_service(spot_provider, perp_provider)
        
        market_list = await service.get_market_list()
        
        assert [m.volume_24h for m in market_list.markets] == [900.0, 700.0, 500.0, 300.0, 100.0]
        assert market_list.market_type == "all"
        assert market_list.limit == 500
        assert market_list.providers == ["spot", "perp"]
    
    @pytest.mark.asyncio
    async def test_perp_only(self, spot_provider, perp_provider):
        """Test marketType perp skips spot adapters entirely."""
        service = build_service(spot_provider, perp_provider)
        
        market_list = await service.get_market_list(market_type="PERP")
        
        assert {m.market_type for m in market_list.markets} == {MarketType.PERP}
        assert market_list.total == 2
        assert spot_provider.calls == []
    
    @pytest.mark.asyncio
    async def test_spot_only(self, spot_provider, perp_provider):
        """Test marketType spot returns only spot markets."""
        service = build_service(spot_provider, perp_provider)
        
        market_list = await service.get_market_list(market_type="spot")
        
        assert [m.provider for m in market_list.markets] == ["spot"] * 3
        assert perp_provider.calls == []
    
    @pytest.mark.asyncio
    async def test_limit_applies_to_combined_list(self, spot_provider, perp_provider):
        """Test the limit truncates after merging and sorting."""
        service = build_service(spot_provider, perp_provider)
        
        market_list = await service.get_market_list(limit=2)
        
        assert [m.volume_24h for m in market_list.markets] == [900.0, 700.0]
        assert ("markets", 2) in spot_provider.calls
    
    @pytest.mark.asyncio
    async def test_failed_provider_dropped(self, spot_provider, provider_factory):
        """Test a failing adapter leaves the others' markets."""
        broken = provider_factory(
            name="broken",
            capabilities=frozenset({Capability.MARKET_LIST}),
            market_type=MarketType.PERP,
            error=UpstreamTransientError(message="down", source_name="broken"),
        )
        service = build_service(spot_provider, broken)
        
        market_list = await service.get_market_list()
        
        assert market_list.total == 3
        assert market_list.providers == ["spot"]
    
    @pytest.mark.asyncio
    async def test_repeat_served_from_cache(self, spot_provider):
        """Test identical requests within TTL hit the adapter once."""
        service = build_service(spot_provider)
        
        first = await service.get_market_list(market_type="spot", limit=10)
        second = await service.get_market_list(market_type="spot", limit=10)
        
        assert first == second
        assert len(spot_provider.calls) == 1
    
    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"market_type": "futures"},
        {"limit": 0},
        {"limit": 1001},
    ])
    async def test_invalid_input(self, spot_provider, kwargs):
        """Test invalid arguments raise InvalidInputError."""
        service = build_service(spot_provider)
        
        with pytest.raises(InvalidInputError):
            await service.get_market_list(**kwargs)


class TestIntrospection:
    """Tests for stats and lifecycle."""
    
    @pytest.mark.asyncio
    async def test_stats(self, seeded_provider):
        """Test stats expose cache and registry state."""
        service = build_service(seeded_provider)
        await service.get_tokens(chain_ids=[1])
        
        stats = service.get_stats()
        
        assert stats["cache"]["loads"] == 1
        assert stats["pair_tiers"] == []
    
    @pytest.mark.asyncio
    async def test_context_manager_closes(self, seeded_provider):
        """Test the service closes adapters on exit."""
        async with build_service(seeded_provider) as service:
            assert service.registry.get("seeded") is seeded_provider
