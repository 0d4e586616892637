"""
CoinGecko Provider - Coin metadata and on-chain pool listings.

Two API families:
- /coins/... and /search for rank, supply and descriptive metadata
  (keyed by asset platform + contract address, or by symbol)
- /onchain/networks/{network}/... for trending and new pools (JSON:API
  documents whose `included` array carries the token and dex objects)
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

import aiohttp

from market_data.base import BaseMarketProvider, parse_float, parse_int
from market_data.cache import METADATA_TTL, PAIR_LISTING_TTL, CachedLoader, TTLCache
from market_data.chains import COINGECKO, GECKOTERMINAL, ChainRegistry
from market_data.exceptions import FetchError
from market_data.models import (
    Capability,
    MarketCategory,
    MarketTokenPair,
    NormalizedToken,
)
from market_data.providers.dexscreener import looks_like_address
from market_data.ranking import rank_pairs


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CoinMetadata:
    """Subset of /coins/{id} and /coins/{platform}/contract/{address}."""
    coin_id: str
    symbol: str
    name: str
    image: Optional[str]
    market_cap_rank: Optional[int]
    circulating_supply: Optional[float]
    price_usd: Optional[float]
    market_cap: Optional[float]
    volume_24h: Optional[float]
    high_24h: Optional[float]
    low_24h: Optional[float]
    price_change_24h: Optional[float]
    platforms: dict[str, str]
    
    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "CoinMetadata":
        market = raw.get("market_data") or {}
        image = raw.get("image")
        return cls(
            coin_id=str(raw["id"]),
            symbol=str(raw.get("symbol", "")).upper(),
            name=str(raw.get("name", "")),
            image=image.get("small") or image.get("thumb") if isinstance(image, dict) else image,
            market_cap_rank=parse_int(raw.get("market_cap_rank")),
            circulating_supply=parse_float(market.get("circulating_supply")),
            price_usd=parse_float((market.get("current_price") or {}).get("usd")),
            market_cap=parse_float((market.get("market_cap") or {}).get("usd")),
            volume_24h=parse_float((market.get("total_volume") or {}).get("usd")),
            high_24h=parse_float((market.get("high_24h") or {}).get("usd")),
            low_24h=parse_float((market.get("low_24h") or {}).get("usd")),
            price_change_24h=parse_float(market.get("price_change_percentage_24h")),
            platforms={k: v for k, v in (raw.get("platforms") or {}).items() if k and v},
        )
    
    def to_token(self, chain_id: int, address: str) -> NormalizedToken:
        return NormalizedToken(
            chain_id=chain_id,
            address=address,
            symbol=self.symbol,
            name=self.name,
            logo_uri=self.image,
            price_usd=self.price_usd,
            volume_24h=self.volume_24h,
            price_change_24h=self.price_change_24h,
            market_cap=self.market_cap,
            market_cap_rank=self.market_cap_rank,
            circulating_supply=self.circulating_supply,
            providers=frozenset({"coingecko"}),
        )


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return None


def parse_pool_document(
    document: dict[str, Any],
    chain_id: int,
    source: str = "coingecko",
) -> list[MarketTokenPair]:
    """
    Normalize a JSON:API pool listing into MarketTokenPairs.
    
    Pools whose base or quote token is absent from `included` are skipped.
    """
    included: dict[str, dict[str, Any]] = {
        item["id"]: item for item in document.get("included") or [] if "id" in item
    }
    providers = frozenset({source})
    
    pairs = []
    for pool in document.get("data") or []:
        attrs = pool.get("attributes") or {}
        rel = pool.get("relationships") or {}
        base_ref = ((rel.get("base_token") or {}).get("data") or {}).get("id")
        quote_ref = ((rel.get("quote_token") or {}).get("data") or {}).get("id")
        dex_ref = ((rel.get("dex") or {}).get("data") or {}).get("id")
        base_raw = (included.get(base_ref) or {}).get("attributes")
        quote_raw = (included.get(quote_ref) or {}).get("attributes")
        if not base_raw or not quote_raw:
            continue
        
        change = parse_float((attrs.get("price_change_percentage") or {}).get("h24"))
        volume = parse_float((attrs.get("volume_usd") or {}).get("h24"))
        txs = (attrs.get("transactions") or {}).get("h24") or {}
        tx_count = None
        if txs:
            tx_count = (parse_int(txs.get("buys")) or 0) + (parse_int(txs.get("sells")) or 0)
        market_cap = parse_float(attrs.get("market_cap_usd")) or parse_float(attrs.get("fdv_usd"))
        
        base_token = NormalizedToken(
            chain_id=chain_id,
            address=str(base_raw["address"]),
            symbol=str(base_raw.get("symbol", "")),
            name=str(base_raw.get("name", "")),
            decimals=parse_int(base_raw.get("decimals")),
            logo_uri=base_raw.get("image_url"),
            price_usd=parse_float(attrs.get("base_token_price_usd")),
            volume_24h=volume,
            price_change_24h=change,
            liquidity=parse_float(attrs.get("reserve_in_usd")),
            market_cap=market_cap,
            providers=providers,
        )
        quote_token = NormalizedToken(
            chain_id=chain_id,
            address=str(quote_raw["address"]),
            symbol=str(quote_raw.get("symbol", "")),
            name=str(quote_raw.get("name", "")),
            decimals=parse_int(quote_raw.get("decimals")),
            logo_uri=quote_raw.get("image_url"),
            price_usd=parse_float(attrs.get("quote_token_price_usd")),
            providers=providers,
        )
        pairs.append(MarketTokenPair(
            chain_id=chain_id,
            pool_address=str(attrs.get("address", "")),
            pool_name=str(attrs.get("name", "")),
            base_token=base_token,
            quote_token=quote_token,
            pair_price=parse_float(attrs.get("base_token_price_quote_token")),
            price_usd=base_token.price_usd,
            volume_24h=volume,
            liquidity=base_token.liquidity,
            price_change_24h=change,
            market_cap=market_cap,
            transactions_24h=tx_count,
            dex_name=((included.get(dex_ref) or {}).get("attributes") or {}).get("name"),
            created_at=_parse_timestamp(attrs.get("pool_created_at")),
            providers=providers,
        ))
    return pairs


class CoinGeckoProvider(BaseMarketProvider):
    """
    CoinGecko adapter.
    
    Endpoints used:
    - /coins/{platform}/contract/{address} - metadata by contract
    - /search?query=... and /coins/{id} - metadata by symbol
    - /onchain/networks/{network}/trending_pools - hot/gainers/losers
    - /onchain/networks/{network}/new_pools - new
    - /ping - health check
    
    Metadata responses are cached for 10 minutes and pool pages for 30s.
    """
    
    BASE_URL = "https://api.coingecko.com/api/v3"
    HEALTH_URL = f"{BASE_URL}/ping"
    SEARCH_DETAIL_LIMIT = 3
    
    capabilities = frozenset({
        Capability.SYMBOL_OR_ADDRESS,
        Capability.CATEGORY,
        Capability.MARKET_PAIRS,
    })
    chain_key = COINGECKO
    
    def __init__(
        self,
        chains: Optional[ChainRegistry] = None,
        timeout: float = BaseMarketProvider.DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
        api_key: Optional[str] = None,
        metadata_ttl: float = METADATA_TTL,
        pools_ttl: float = PAIR_LISTING_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(chains, timeout, session)
        self._api_key = api_key
        self._metadata_ttl = metadata_ttl
        self._pools_ttl = pools_ttl
        self._cache = CachedLoader(
            TTLCache(default_ttl=metadata_ttl, max_entries=2000, clock=clock, name="coingecko"),
            name="coingecko",
        )
    
    @property
    def name(self) -> str:
        """Unique identifier."""
        return "coingecko"
    
    def _get_default_headers(self) -> dict[str, str]:
        headers = super()._get_default_headers()
        if self._api_key:
            headers["x-cg-demo-api-key"] = self._api_key
        return headers
    
    def network_slug(self, chain_id: int) -> Optional[str]:
        return self._chains.provider_id(chain_id, GECKOTERMINAL)
    
    # ─────────────────────────────────────────────────────────────
    # Metadata
    # ─────────────────────────────────────────────────────────────
    
    async def get_token_metadata(self, chain_id: int, address: str) -> Optional[CoinMetadata]:
        """Metadata for a contract, or None if CoinGecko does not list it."""
        platform = self.chain_slug(chain_id)
        if platform is None:
            return None
        key = f"contract|{platform}|{address.lower()}"
        return await self._cache.get_or_load(
            key,
            lambda: self._load_contract(platform, address),
            ttl=self._metadata_ttl,
        )
    
    async def _load_contract(self, platform: str, address: str) -> Optional[CoinMetadata]:
        url = f"{self.BASE_URL}/coins/{platform}/contract/{address.lower()}"
        try:
            data = await self._make_request("GET", url)
        except FetchError as e:
            if e.status_code == 404:
                return None
            raise
        return CoinMetadata.from_raw(data)
    
    async def get_coin_id_by_symbol(self, symbol: str) -> Optional[str]:
        """Best-ranked coin id whose symbol matches exactly."""
        ids = await self._search_coin_ids(symbol)
        return ids[0] if ids else None
    
    async def _search_coin_ids(self, query: str) -> list[str]:
        key = f"search|{query.strip().lower()}"
        return await self._cache.get_or_load(
            key,
            lambda: self._load_search(query),
            ttl=self._metadata_ttl,
        )
    
    async def _load_search(self, query: str) -> list[str]:
        data = await self._make_request("GET", f"{self.BASE_URL}/search", params={"query": query})
        coins = data.get("coins") or []
        needle = query.strip().upper()
        exact = [c for c in coins if str(c.get("symbol", "")).upper() == needle]
        ranked = exact or coins
        ranked = sorted(ranked, key=lambda c: c.get("market_cap_rank") or 10**9)
        return [str(c["id"]) for c in ranked if c.get("id")]
    
    async def _get_coin(self, coin_id: str) -> CoinMetadata:
        return await self._cache.get_or_load(
            f"coin|{coin_id}",
            lambda: self._load_coin(coin_id),
            ttl=self._metadata_ttl,
        )
    
    async def _load_coin(self, coin_id: str) -> CoinMetadata:
        data = await self._make_request(
            "GET",
            f"{self.BASE_URL}/coins/{coin_id}",
            params={
                "localization": "false",
                "tickers": "false",
                "community_data": "false",
                "developer_data": "false",
            },
        )
        return CoinMetadata.from_raw(data)
    
    async def _fetch_by_symbol_or_address(
        self,
        chain_id: int,
        query: str,
        limit: int,
    ) -> list[NormalizedToken]:
        platform = self.chain_slug(chain_id)
        if platform is None:
            return []
        
        if looks_like_address(query):
            metadata = await self.get_token_metadata(chain_id, query)
            return [metadata.to_token(chain_id, query.strip())] if metadata else []
        
        coin_ids = (await self._search_coin_ids(query))[: min(limit, self.SEARCH_DETAIL_LIMIT)]
        coins = await asyncio.gather(*(self._get_coin(coin_id) for coin_id in coin_ids))
        return [
            coin.to_token(chain_id, coin.platforms[platform])
            for coin in coins
            if platform in coin.platforms
        ]
    
    # ─────────────────────────────────────────────────────────────
    # Pools
    # ─────────────────────────────────────────────────────────────
    
    async def _fetch_market_pairs(
        self,
        chain_id: int,
        category: MarketCategory,
        limit: int,
        page: int,
    ) -> list[MarketTokenPair]:
        network = self.network_slug(chain_id)
        if network is None:
            return []
        listing = "new_pools" if category == MarketCategory.NEW else "trending_pools"
        key = f"pools|{network}|{listing}|{page}"
        return await self._cache.get_or_load(
            key,
            lambda: self._load_pools(network, listing, chain_id, page),
            ttl=self._pools_ttl,
        )
    
    async def _load_pools(
        self,
        network: str,
        listing: str,
        chain_id: int,
        page: int,
    ) -> list[MarketTokenPair]:
        data = await self._make_request(
            "GET",
            f"{self.BASE_URL}/onchain/networks/{network}/{listing}",
            params={"include": "base_token,quote_token,dex", "page": page},
        )
        pairs = parse_pool_document(data, chain_id, source=self.name)
        logger.debug(f"[{self.name}] {len(pairs)} pools from {network}/{listing} page {page}")
        return pairs
    
    async def _fetch_by_category(
        self,
        chain_id: int,
        category: MarketCategory,
        limit: int,
        page: int,
    ) -> list[NormalizedToken]:
        pairs = rank_pairs(await self._fetch_market_pairs(chain_id, category, limit, page), category)
        
        tokens: dict[str, NormalizedToken] = {}
        for pair in pairs:
            key = pair.base_token.address.lower()
            if key in tokens:
                continue
            tokens[key] = pair.base_token
        return list(tokens.values())[:limit]
