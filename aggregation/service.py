"""
Aggregation Service - Orchestrates provider adapters into unified results.

============================================================
REQUEST SHAPES
============================================================
Listing (get_tokens, get_market_pairs_by_category):
    fan out to every capable adapter on every requested chain in
    parallel, each call bounded by its own timeout. Failed adapters are
    dropped, survivors are merged per chain, then round-robin mixed.

Market list (get_market_list):
    exchange spot tickers and perpetual markets side by side, filtered
    by market type and sorted by 24h volume.

Pair price (get_price_for_pair):
    walk the tier cascade in order, stop at the first price. Fails only
    when every tier missed or errored.

Every request runs behind the shared cache + in-flight de-dup layer.
============================================================
"""

import asyncio
import logging
from typing import Any, Awaitable, Optional, Sequence

from aggregation.cascade import (
    AdapterPairTier,
    OnchainPairTier,
    PairPriceTier,
    parse_pair,
)
from aggregation.config import AggregatorConfig
from aggregation.enrichment import EnrichmentPolicy, TokenEnricher
from aggregation.models import MarketList, PairListing, TokenListing
from market_data.base import BaseMarketProvider
from market_data.cache import CachedLoader, TTLCache, request_signature
from market_data.chains import ChainRegistry
from market_data.exceptions import (
    ConfigurationError,
    InvalidInputError,
    MarketDataError,
    NotFoundError,
    ProviderExhaustedError,
    UpstreamTransientError,
)
from market_data.key_manager import KeyRecoveryPolicy, KeyRotationManager
from market_data.mixer import mix
from market_data.models import (
    CEX_CHAIN_ID,
    CanonicalChain,
    Capability,
    FetchResult,
    FetchStatus,
    MarketCategory,
    MarketSummary,
    MarketTokenPair,
    MarketType,
    NormalizedToken,
    PairPrice,
    PairQuery,
)
from market_data.providers import (
    BinanceTickerProvider,
    CoinGeckoProvider,
    DexScreenerProvider,
    DydxPerpsProvider,
    MoralisProvider,
)
from market_data.ranking import rank_pairs, rank_search_results, rank_tokens
from market_data.registry import ProviderRegistry


logger = logging.getLogger(__name__)


class AggregationService:
    """
    Market data orchestrator.
    
    Constructed once per process and shared by every request handler.
    
    Example:
        service = build_default_service()
        listing = await service.get_tokens(chain_ids=[1, 56], category="hot", limit=10)
        price = await service.get_price_for_pair("WBNB-USDT")
    """
    
    def __init__(
        self,
        registry: ProviderRegistry,
        pair_tiers: Sequence[PairPriceTier],
        chains: Optional[ChainRegistry] = None,
        config: Optional[AggregatorConfig] = None,
        enricher: Optional[TokenEnricher] = None,
        cache: Optional[TTLCache] = None,
    ) -> None:
        self._registry = registry
        self._pair_tiers = list(pair_tiers)
        self._chains = chains if chains is not None else ChainRegistry.default()
        self._config = config or AggregatorConfig()
        self._enricher = enricher
        self._loader = CachedLoader(
            cache if cache is not None else TTLCache(max_entries=self._config.cache_max_entries, name="aggregation"),
            name="aggregation",
        )
    
    @property
    def chains(self) -> ChainRegistry:
        return self._chains
    
    @property
    def registry(self) -> ProviderRegistry:
        return self._registry
    
    @property
    def config(self) -> AggregatorConfig:
        return self._config
    
    # ─────────────────────────────────────────────────────────────
    # Tokens
    # ─────────────────────────────────────────────────────────────
    
    async def get_tokens(
        self,
        chain_ids: Optional[Sequence[int]] = None,
        query: Optional[str] = None,
        category: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> TokenListing:
        """
        Tokens by search query or listing category across chains.
        
        A query takes precedence over a category; with neither, the hot
        listing is returned.
        
        Raises:
            InvalidInputError: unknown chain, bad category, limit out of range
        """
        limit = self._validate_limit(limit, self._config.default_token_limit)
        chains = self._validate_chains(chain_ids)
        search = (query or "").strip() or None
        parsed_category = None
        if search is None:
            parsed_category = self._parse_category(category) if category else MarketCategory.HOT
        
        key = request_signature(
            "tokens",
            chains=chains,
            q=search,
            category=parsed_category,
            limit=limit,
        )
        return await self._loader.get_or_load(
            key,
            lambda: self._load_tokens(chains, search, parsed_category, limit),
            ttl=self._config.listing_ttl_seconds,
        )
    
    async def _load_tokens(
        self,
        chain_ids: list[int],
        query: Optional[str],
        category: Optional[MarketCategory],
        limit: int,
    ) -> TokenListing:
        capability = Capability.SYMBOL_OR_ADDRESS if query else Capability.CATEGORY
        per_chain_limit = limit if len(chain_ids) == 1 else limit * 2
        
        jobs: list[tuple[int, BaseMarketProvider, Awaitable[FetchResult]]] = []
        for chain_id in chain_ids:
            for provider in self._registry.capable(capability, chain_id):
                if query:
                    call = provider.fetch_by_symbol_or_address(chain_id, query, per_chain_limit)
                else:
                    call = provider.fetch_by_category(chain_id, category, per_chain_limit)
                jobs.append((chain_id, provider, call))
        
        results = await asyncio.gather(
            *(self._bounded(provider, chain_id, call) for chain_id, provider, call in jobs)
        )
        
        buckets: dict[int, dict[tuple[int, str], NormalizedToken]] = {c: {} for c in chain_ids}
        contributors: list[str] = []
        for (chain_id, provider, _), result in zip(jobs, results):
            if not result.ok:
                continue
            if provider.name not in contributors:
                contributors.append(provider.name)
            bucket = buckets[chain_id]
            for token in result.data:
                if token.chain_id != chain_id:
                    continue
                existing = bucket.get(token.key)
                bucket[token.key] = existing.merge(token) if existing else token
        
        per_chain: dict[int, list[NormalizedToken]] = {}
        for chain_id, bucket in buckets.items():
            tokens = list(bucket.values())
            if query:
                tokens = rank_search_results(tokens, query)
            else:
                tokens = rank_tokens(tokens, category)
            per_chain[chain_id] = tokens[:per_chain_limit]
        
        tokens = mix(per_chain, limit)
        if self._enricher is not None:
            tokens = await self._enricher.enrich(tokens)
        
        logger.info(
            f"get_tokens chains={chain_ids} q={query!r} category="
            f"{category.value if category else None} -> {len(tokens)} tokens "
            f"from {contributors}"
        )
        return TokenListing(
            tokens=tokens,
            chain_ids=chain_ids,
            limit=limit,
            query=query,
            category=category.value if category else None,
            providers=contributors,
        )
    
    # ─────────────────────────────────────────────────────────────
    # Market pairs
    # ─────────────────────────────────────────────────────────────
    
    async def get_market_pairs_by_category(
        self,
        category: str = "hot",
        network: Optional[str] = None,
        limit: Optional[int] = None,
        page: int = 1,
        chain_ids: Optional[Sequence[int]] = None,
    ) -> PairListing:
        """
        Liquidity pools for a category, on one network or mixed across chains.
        
        Raises:
            InvalidInputError: bad category, network, limit or page
        """
        parsed_category = self._parse_category(category)
        limit = self._validate_limit(limit, self._config.default_pair_limit)
        if page is None or page < 1:
            raise InvalidInputError("page must be >= 1", field_name="page", value=page)
        
        if network:
            chains = [self._resolve_network(network).id]
        else:
            chains = [
                c for c in self._validate_chains(chain_ids)
                if self._registry.capable(Capability.MARKET_PAIRS, c)
            ]
        
        key = request_signature(
            "market_pairs",
            category=parsed_category,
            chains=chains,
            limit=limit,
            page=page,
        )
        return await self._loader.get_or_load(
            key,
            lambda: self._load_pairs(chains, parsed_category, limit, page, network),
            ttl=self._config.pair_listing_ttl_seconds,
        )
    
    async def _load_pairs(
        self,
        chain_ids: list[int],
        category: MarketCategory,
        limit: int,
        page: int,
        network: Optional[str],
    ) -> PairListing:
        per_chain_limit = limit if len(chain_ids) == 1 else limit * 2
        
        jobs = [
            (chain_id, provider, provider.fetch_market_pairs(chain_id, category, per_chain_limit, page))
            for chain_id in chain_ids
            for provider in self._registry.capable(Capability.MARKET_PAIRS, chain_id)
        ]
        results = await asyncio.gather(
            *(self._bounded(provider, chain_id, call) for chain_id, provider, call in jobs)
        )
        
        buckets: dict[int, dict[str, MarketTokenPair]] = {c: {} for c in chain_ids}
        for (chain_id, _, _), result in zip(jobs, results):
            if not result.ok:
                continue
            bucket = buckets[chain_id]
            for pair in result.data:
                bucket.setdefault(pair.pool_address.lower(), pair)
        
        per_chain = {
            chain_id: rank_pairs(list(bucket.values()), category)[:per_chain_limit]
            for chain_id, bucket in buckets.items()
        }
        pairs = mix(per_chain, limit)
        
        logger.info(
            f"get_market_pairs category={category.value} chains={chain_ids} "
            f"page={page} -> {len(pairs)} pairs"
        )
        return PairListing(
            pairs=pairs,
            category=category.value,
            chain_ids=chain_ids,
            limit=limit,
            page=page,
            network=network,
        )
    
    # ─────────────────────────────────────────────────────────────
    # Market list
    # ─────────────────────────────────────────────────────────────
    
    async def get_market_list(
        self,
        market_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> MarketList:
        """
        Exchange spot and perpetual markets in one list, most traded first.
        
        Raises:
            InvalidInputError: bad market type or limit
        """
        parsed_type = self._parse_market_type(market_type)
        if limit is None:
            limit = self._config.default_market_list_limit
        elif not 1 <= limit <= self._config.max_market_list_limit:
            raise InvalidInputError(
                f"limit must be between 1 and {self._config.max_market_list_limit}",
                field_name="limit",
                value=limit,
            )
        
        key = request_signature("market_list", market_type=parsed_type, limit=limit)
        return await self._loader.get_or_load(
            key,
            lambda: self._load_market_list(parsed_type, limit),
            ttl=self._config.listing_ttl_seconds,
        )
    
    async def _load_market_list(self, market_type: MarketType, limit: int) -> MarketList:
        providers = [
            p for p in self._registry.capable(Capability.MARKET_LIST)
            if p.market_type is not None and market_type.includes(p.market_type)
        ]
        results = await asyncio.gather(
            *(self._bounded(p, CEX_CHAIN_ID, p.fetch_market_list(limit)) for p in providers)
        )
        
        markets: list[MarketSummary] = []
        contributors: list[str] = []
        for provider, result in zip(providers, results):
            if not result.ok:
                continue
            contributors.append(provider.name)
            markets.extend(m for m in result.data if market_type.includes(m.market_type))
        
        markets.sort(key=lambda m: m.volume_24h or 0.0, reverse=True)
        markets = markets[:limit]
        
        logger.info(
            f"get_market_list type={market_type.value} -> {len(markets)} markets "
            f"from {contributors}"
        )
        return MarketList(
            markets=markets,
            market_type=market_type.value,
            limit=limit,
            providers=contributors,
        )
    
    # ─────────────────────────────────────────────────────────────
    # Pair price
    # ─────────────────────────────────────────────────────────────
    
    async def get_price_for_pair(
        self,
        pair: str,
        chain_id: Optional[int] = None,
    ) -> PairPrice:
        """
        Price and 24h stats for "BASE-QUOTE".
        
        Raises:
            InvalidInputError: malformed pair or unknown chain
            NotFoundError: no tier has the pair
            ProviderExhaustedError: every tier failed and a key pool ran dry
            UpstreamTransientError: every tier failed
        """
        if chain_id is not None and chain_id not in self._chains:
            raise InvalidInputError(f"Unknown chain id: {chain_id}", field_name="chainId", value=chain_id)
        query = parse_pair(
            pair,
            chain_id if chain_id is not None else self._config.default_pair_chain_id,
        )
        
        key = request_signature("pair_price", pair=query.name, chain=query.chain_id)
        return await self._loader.get_or_load(
            key,
            lambda: self._run_cascade(query),
            ttl=self._config.pair_price_ttl_seconds,
        )
    
    async def _run_cascade(self, query: PairQuery) -> PairPrice:
        attempted: list[str] = []
        errors: list[MarketDataError] = []
        missed = False
        
        for tier in self._pair_tiers:
            if not tier.accepts(query):
                continue
            attempted.append(tier.name)
            try:
                price = await asyncio.wait_for(
                    tier.try_fetch(query),
                    timeout=self._config.tier_timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                logger.warning(f"[{tier.name}] Timed out pricing {query.name}")
                errors.append(UpstreamTransientError(
                    message=f"Timed out after {self._config.tier_timeout_seconds}s",
                    source_name=tier.name,
                    original_error=e,
                ))
                continue
            except MarketDataError as e:
                logger.warning(f"[{tier.name}] Failed pricing {query.name}: {e}")
                errors.append(e)
                continue
            
            if price is not None and price.price > 0:
                logger.info(f"Priced {query.name} via {tier.name}: {price.price}")
                return price
            missed = True
            logger.debug(f"[{tier.name}] No market for {query.name}")
        
        if errors and not missed:
            exhausted = [e for e in errors if isinstance(e, ProviderExhaustedError)]
            if exhausted:
                logger.error(f"PROVIDER_EXHAUSTED while pricing {query.name}")
                raise exhausted[0]
            raise UpstreamTransientError(
                message=f"All price sources failed for {query.name}",
                context={"attempted": attempted, "errors": [str(e) for e in errors]},
            )
        
        raise NotFoundError(
            "Market not found",
            attempted_sources=attempted,
            context={"pair": query.name, "chain_id": query.chain_id},
        )
    
    # ─────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────
    
    async def _bounded(
        self,
        provider: BaseMarketProvider,
        chain_id: int,
        call: Awaitable[FetchResult],
    ) -> FetchResult:
        """Await one adapter call under the per-adapter timeout."""
        try:
            return await asyncio.wait_for(call, timeout=self._config.adapter_timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.warning(
                f"[{provider.name}] Timed out after {self._config.adapter_timeout_seconds}s "
                f"on chain {chain_id}"
            )
            return FetchResult(
                provider.name,
                FetchStatus.TRANSIENT,
                error=UpstreamTransientError(
                    message="Adapter timeout",
                    source_name=provider.name,
                    original_error=e,
                ),
            )
        except Exception as e:
            logger.exception(f"[{provider.name}] Adapter raised on chain {chain_id}")
            return FetchResult(provider.name, FetchStatus.TRANSIENT, error=e)
    
    def _validate_limit(self, limit: Optional[int], default: int) -> int:
        if limit is None:
            return default
        if not 1 <= limit <= self._config.max_limit:
            raise InvalidInputError(
                f"limit must be between 1 and {self._config.max_limit}",
                field_name="limit",
                value=limit,
            )
        return limit
    
    def _validate_chains(self, chain_ids: Optional[Sequence[int]]) -> list[int]:
        if not chain_ids:
            return list(self._config.default_chain_ids)
        chains: list[int] = []
        for chain_id in chain_ids:
            if chain_id not in self._chains:
                raise InvalidInputError(
                    f"Unknown chain id: {chain_id}",
                    field_name="chains",
                    value=chain_id,
                )
            if chain_id not in chains:
                chains.append(chain_id)
        return chains
    
    @staticmethod
    def _parse_category(category: Optional[str]) -> MarketCategory:
        try:
            return MarketCategory.parse(category or "")
        except ValueError:
            raise InvalidInputError(
                f"Invalid category: {category!r}. Must be one of: hot, new, gainers, losers",
                field_name="category",
                value=category,
            )
    
    @staticmethod
    def _parse_market_type(market_type: Optional[str]) -> MarketType:
        try:
            return MarketType.parse(market_type)
        except ValueError:
            raise InvalidInputError(
                f"Invalid marketType: {market_type!r}. Must be one of: spot, perp, all",
                field_name="marketType",
                value=market_type,
            )
    
    def _resolve_network(self, network: str) -> CanonicalChain:
        chain = self._chains.resolve_chain_param(network)
        if chain is None:
            raise InvalidInputError(f"Unknown network: {network}", field_name="network", value=network)
        return chain
    
    # ─────────────────────────────────────────────────────────────
    # Lifecycle & introspection
    # ─────────────────────────────────────────────────────────────
    
    async def check_health(self) -> dict[str, Any]:
        health = await self._registry.check_health()
        return {name: h.to_dict() for name, h in health.items()}
    
    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "cache": self._loader.get_stats(),
            "registry": self._registry.get_stats(),
            "pair_tiers": [tier.name for tier in self._pair_tiers],
        }
        if self._enricher is not None:
            stats["enrichment"] = self._enricher.get_stats()
        return stats
    
    async def close(self) -> None:
        """Close every adapter session."""
        await self._registry.close_all()
    
    async def __aenter__(self) -> "AggregationService":
        return self
    
    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def build_default_service(config: Optional[AggregatorConfig] = None) -> AggregationService:
    """
    Wire the production adapters.
    
    The on-chain indexer is left out (with a warning) when no API keys are
    configured; the on-chain pair tier then prices from DEX pools only.
    """
    config = config or AggregatorConfig.from_env()
    chains = ChainRegistry.default()
    timeout = config.adapter_timeout_seconds
    
    binance = BinanceTickerProvider(chains, timeout)
    dydx = DydxPerpsProvider(chains, timeout)
    dexscreener = DexScreenerProvider(chains, timeout)
    coingecko = CoinGeckoProvider(
        chains,
        timeout,
        api_key=config.coingecko_api_key,
        metadata_ttl=config.metadata_ttl_seconds,
        pools_ttl=config.pair_listing_ttl_seconds,
    )
    
    moralis: Optional[MoralisProvider] = None
    try:
        keys = KeyRotationManager.from_env(
            prefix=config.moralis_key_prefix,
            recovery_policy=KeyRecoveryPolicy(config.key_recovery_seconds),
        )
        moralis = MoralisProvider(keys, chains, timeout)
    except ConfigurationError as e:
        logger.warning(f"On-chain indexer disabled: {e}")
    
    registry = ProviderRegistry()
    registry.register(coingecko, priority=10)
    registry.register(dexscreener, priority=20)
    if moralis is not None:
        registry.register(moralis, priority=30)
    registry.register(binance, priority=40)
    registry.register(dydx, priority=50)
    
    tiers: list[PairPriceTier] = [
        AdapterPairTier(binance),
        AdapterPairTier(dydx, accepts=DydxPerpsProvider.accepts),
        OnchainPairTier(dexscreener, moralis, default_chain_id=config.default_pair_chain_id),
    ]
    
    enricher = None
    if config.enrichment_enabled:
        enricher = TokenEnricher(
            coingecko,
            EnrichmentPolicy.from_string(
                config.enrichment_addresses,
                max_per_request=config.enrichment_max_per_request,
            ),
            timeout=timeout,
        )
    
    return AggregationService(registry, tiers, chains, config, enricher)
