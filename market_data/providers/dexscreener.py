"""
DexScreener Provider - Decentralized-exchange aggregator adapter.

Returns pool-level price and liquidity. A token usually trades in several
pools; the most liquid pool on the requested chain is taken as its price.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from market_data.base import BaseMarketProvider, parse_float, parse_int
from market_data.chains import DEXSCREENER
from market_data.exceptions import UpstreamPermanentError
from market_data.models import Capability, NormalizedToken


logger = logging.getLogger(__name__)


EVM_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")
SOLANA_ADDRESS = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def looks_like_address(value: str) -> bool:
    """Whether a search string is a contract address rather than a symbol."""
    value = value.strip()
    return bool(EVM_ADDRESS.match(value) or SOLANA_ADDRESS.match(value))


@dataclass(frozen=True)
class DexPair:
    """One entry of a DexScreener `pairs` array."""
    chain_slug: str
    dex_id: str
    pair_address: str
    base_address: str
    base_symbol: str
    base_name: str
    quote_address: str
    quote_symbol: str
    price_usd: Optional[float]
    price_native: Optional[float]
    volume_24h: Optional[float]
    price_change_24h: Optional[float]
    liquidity_usd: Optional[float]
    market_cap: Optional[float]
    image_url: Optional[str]
    created_at: Optional[datetime]
    
    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "DexPair":
        base = raw["baseToken"]
        quote = raw.get("quoteToken") or {}
        created_ms = parse_int(raw.get("pairCreatedAt"))
        return cls(
            chain_slug=str(raw.get("chainId", "")),
            dex_id=str(raw.get("dexId", "")),
            pair_address=str(raw.get("pairAddress", "")),
            base_address=str(base["address"]),
            base_symbol=str(base.get("symbol", "")),
            base_name=str(base.get("name", "")),
            quote_address=str(quote.get("address", "")),
            quote_symbol=str(quote.get("symbol", "")),
            price_usd=parse_float(raw.get("priceUsd")),
            price_native=parse_float(raw.get("priceNative")),
            volume_24h=parse_float((raw.get("volume") or {}).get("h24")),
            price_change_24h=parse_float((raw.get("priceChange") or {}).get("h24")),
            liquidity_usd=parse_float((raw.get("liquidity") or {}).get("usd")),
            market_cap=parse_float(raw.get("marketCap")) or parse_float(raw.get("fdv")),
            image_url=(raw.get("info") or {}).get("imageUrl"),
            created_at=datetime.utcfromtimestamp(created_ms / 1000) if created_ms else None,
        )
    
    def to_token(self, chain_id: int) -> NormalizedToken:
        return NormalizedToken(
            chain_id=chain_id,
            address=self.base_address,
            symbol=self.base_symbol,
            name=self.base_name or self.base_symbol,
            logo_uri=self.image_url,
            price_usd=self.price_usd,
            volume_24h=self.volume_24h,
            price_change_24h=self.price_change_24h,
            liquidity=self.liquidity_usd,
            market_cap=self.market_cap,
            providers=frozenset({"dexscreener"}),
        )


class DexScreenerProvider(BaseMarketProvider):
    """
    DexScreener public API adapter.
    
    Endpoints used:
    - /latest/dex/search?q=... - symbol / name search
    - /latest/dex/tokens/{address} - pools for a token address
    """
    
    BASE_URL = "https://api.dexscreener.com/latest/dex"
    
    capabilities = frozenset({Capability.SYMBOL_OR_ADDRESS})
    chain_key = DEXSCREENER
    
    @property
    def name(self) -> str:
        """Unique identifier."""
        return "dexscreener"
    
    async def search_pairs(self, chain_id: int, query: str) -> list[DexPair]:
        """Pools on one chain matching a symbol or address, most liquid first."""
        slug = self.chain_slug(chain_id)
        if slug is None:
            return []
        
        query = query.strip()
        if looks_like_address(query):
            data = await self._make_request("GET", f"{self.BASE_URL}/tokens/{query}")
        else:
            data = await self._make_request("GET", f"{self.BASE_URL}/search", params={"q": query})
        
        if not isinstance(data, dict):
            raise UpstreamPermanentError(
                message="Expected an object with a pairs array",
                source_name=self.name,
                raw_data=data,
            )
        
        pairs = []
        skipped = 0
        for raw in data.get("pairs") or []:
            if not isinstance(raw, dict) or raw.get("chainId") != slug or not raw.get("baseToken"):
                continue
            try:
                pairs.append(DexPair.from_raw(raw))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                skipped += 1
                logger.debug(f"[{self.name}] Skipping malformed pool {raw.get('pairAddress')}: {e!r}")
        if skipped:
            logger.warning(f"[{self.name}] Skipped {skipped} malformed pools for {query!r}")
        
        pairs.sort(key=lambda p: p.liquidity_usd or 0.0, reverse=True)
        return pairs
    
    async def best_pair(self, chain_id: int, address: str) -> Optional[DexPair]:
        """Most liquid pool whose base token is `address`."""
        pairs = await self.search_pairs(chain_id, address)
        address = address.lower()
        for pair in pairs:
            if pair.base_address.lower() == address:
                return pair
        return None
    
    async def get_token_price(self, chain_id: int, address: str) -> Optional[float]:
        """USD price from the most liquid pool, or None."""
        pair = await self.best_pair(chain_id, address)
        return pair.price_usd if pair else None
    
    async def _fetch_by_symbol_or_address(
        self,
        chain_id: int,
        query: str,
        limit: int,
    ) -> list[NormalizedToken]:
        pairs = await self.search_pairs(chain_id, query)
        
        # Pairs are liquidity-sorted, so the first pool seen per token wins
        tokens: dict[str, NormalizedToken] = {}
        for pair in pairs:
            key = pair.base_address.lower()
            if key not in tokens:
                tokens[key] = pair.to_token(chain_id)
            if len(tokens) >= limit:
                break
        return list(tokens.values())
