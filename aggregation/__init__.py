"""
Aggregation Package - Request orchestration over market data providers.

Quick Start:
    from aggregation import build_default_service
    
    async def main():
        async with build_default_service() as service:
            listing = await service.get_tokens(chain_ids=[1, 56], category="hot", limit=10)
            pairs = await service.get_market_pairs_by_category("gainers", network="bsc")
            price = await service.get_price_for_pair("BTC-USDT")
"""

from aggregation.cascade import (
    AdapterPairTier,
    OnchainPairTier,
    PairPriceTier,
    parse_pair,
    summarize_bars,
)
from aggregation.config import AggregatorConfig, setup_logging
from aggregation.enrichment import EnrichmentPolicy, TokenEnricher
from aggregation.models import PairListing, TokenListing
from aggregation.service import AggregationService, build_default_service


__all__ = [
    # Service
    "AggregationService",
    "build_default_service",
    
    # Cascade
    "PairPriceTier",
    "AdapterPairTier",
    "OnchainPairTier",
    "parse_pair",
    "summarize_bars",
    
    # Enrichment
    "EnrichmentPolicy",
    "TokenEnricher",
    
    # Config
    "AggregatorConfig",
    "setup_logging",
    
    # Models
    "TokenListing",
    "PairListing",
]
