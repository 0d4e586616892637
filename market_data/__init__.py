"""
Market Data Package - Provider adapters and shared building blocks.

Provides the pieces the aggregation service is assembled from:
- Chain registry translating canonical chain ids to provider ids
- Rotating API key pool for quota-bound providers
- TTL cache with in-flight request de-duplication
- Round-robin token mixer
- Provider adapters behind one capability interface

Quick Start:
    from market_data import (
        ChainRegistry,
        ProviderRegistry,
        DexScreenerProvider,
        CoinGeckoProvider,
        Capability,
    )
    
    async def search(query: str):
        chains = ChainRegistry.default()
        registry = ProviderRegistry()
        registry.register(CoinGeckoProvider(chains))
        registry.register(DexScreenerProvider(chains))
        
        for provider in registry.capable(Capability.SYMBOL_OR_ADDRESS, chain_id=56):
            result = await provider.fetch_by_symbol_or_address(56, query)
            if result.ok:
                for token in result.data:
                    print(f"{token.symbol}: {token.price_usd}")

Adding New Providers:
    1. Create class extending BaseMarketProvider
    2. Declare `capabilities` and implement the matching `_fetch_*` hooks
    3. Add the provider's chain ids as a column in the chain table
    4. Register with ProviderRegistry
"""

from market_data.base import BaseMarketProvider
from market_data.cache import (
    LISTING_TTL,
    METADATA_TTL,
    PAIR_LISTING_TTL,
    PAIR_PRICE_TTL,
    CachedLoader,
    TTLCache,
    request_signature,
)
from market_data.chains import DEFAULT_CHAINS, ChainRegistry
from market_data.exceptions import (
    ConfigurationError,
    FetchError,
    InvalidInputError,
    MarketDataError,
    NotFoundError,
    ProviderExhaustedError,
    RateLimitError,
    UpstreamPermanentError,
    UpstreamTransientError,
)
from market_data.key_manager import KeyRecoveryPolicy, KeyRotationManager
from market_data.mixer import mix, mix_tokens
from market_data.models import (
    CEX_CHAIN_ID,
    CanonicalChain,
    Capability,
    ChainType,
    FetchResult,
    FetchStatus,
    MarketCategory,
    MarketTokenPair,
    NormalizedToken,
    PairPrice,
    PairQuery,
    PriceBar,
    ProviderHealth,
    ProviderStatus,
)
from market_data.providers import (
    BinanceTickerProvider,
    CoinGeckoProvider,
    DexScreenerProvider,
    DydxPerpsProvider,
    MoralisProvider,
)
from market_data.registry import ProviderRegistry


__version__ = "1.0.0"

__all__ = [
    # Base
    "BaseMarketProvider",
    
    # Registry
    "ProviderRegistry",
    "ChainRegistry",
    "DEFAULT_CHAINS",
    
    # Providers
    "BinanceTickerProvider",
    "CoinGeckoProvider",
    "DexScreenerProvider",
    "DydxPerpsProvider",
    "MoralisProvider",
    
    # Keys
    "KeyRecoveryPolicy",
    "KeyRotationManager",
    
    # Cache
    "CachedLoader",
    "TTLCache",
    "request_signature",
    "PAIR_PRICE_TTL",
    "LISTING_TTL",
    "PAIR_LISTING_TTL",
    "METADATA_TTL",
    
    # Mixer
    "mix",
    "mix_tokens",
    
    # Models
    "CEX_CHAIN_ID",
    "CanonicalChain",
    "Capability",
    "ChainType",
    "FetchResult",
    "FetchStatus",
    "MarketCategory",
    "MarketTokenPair",
    "NormalizedToken",
    "PairPrice",
    "PairQuery",
    "PriceBar",
    "ProviderHealth",
    "ProviderStatus",
    
    # Exceptions
    "MarketDataError",
    "InvalidInputError",
    "NotFoundError",
    "ConfigurationError",
    "ProviderExhaustedError",
    "FetchError",
    "RateLimitError",
    "UpstreamTransientError",
    "UpstreamPermanentError",
]
