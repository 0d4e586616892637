"""
Pair-Price Cascade - Ordered tiers for BASE/QUOTE price lookups.

Each tier answers `try_fetch(query)` with a PairPrice, None for a
definitive miss, or raises a MarketDataError. The service walks the tiers
in order and stops at the first price; adding a source means appending a
tier.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from market_data.base import BaseMarketProvider
from market_data.exceptions import InvalidInputError, MarketDataError, UpstreamPermanentError
from market_data.models import USD_QUOTES, FetchStatus, PairPrice, PairQuery, PriceBar
from market_data.providers.dexscreener import DexPair, DexScreenerProvider
from market_data.providers.moralis import MoralisProvider


logger = logging.getLogger(__name__)


def parse_pair(pair: str, chain_id: Optional[int] = None) -> PairQuery:
    """
    Parse "BASE-QUOTE" (also "BASE/QUOTE" and "BASE_QUOTE").
    
    Raises:
        InvalidInputError: not exactly two non-empty symbols
    """
    normalized = (pair or "").strip().replace("/", "-").replace("_", "-").upper()
    parts = normalized.split("-")
    if len(parts) != 2 or not all(p.isalnum() for p in parts):
        raise InvalidInputError(
            f"Invalid pair format: {pair!r}, expected BASE-QUOTE",
            field_name="pair",
            value=pair,
        )
    return PairQuery(base=parts[0], quote=parts[1], chain_id=chain_id)


def summarize_bars(
    bars: Sequence[PriceBar],
    now: Optional[datetime] = None,
    window: timedelta = timedelta(hours=24),
) -> Optional[dict[str, Optional[float]]]:
    """
    24h statistics from bars in the trailing window.
    
    Change compares the newest bar's close with the oldest bar's open.
    Returns None when no bar falls inside the window.
    """
    now = now or datetime.utcnow()
    in_window = sorted((b for b in bars if b.timestamp >= now - window), key=lambda b: b.timestamp)
    if not in_window:
        return None
    
    first, last = in_window[0], in_window[-1]
    change = None
    if first.open:
        change = (last.close - first.open) / first.open * 100
    return {
        "close": last.close,
        "price_change_24h": change,
        "high_24h": max(b.high for b in in_window),
        "low_24h": min(b.low for b in in_window),
        "volume_24h": sum(b.volume for b in in_window),
    }


class PairPriceTier(ABC):
    """One step of the cascade."""
    
    @property
    @abstractmethod
    def name(self) -> str:
        pass
    
    def accepts(self, query: PairQuery) -> bool:
        """Whether this tier can answer pairs of this shape."""
        return True
    
    @abstractmethod
    async def try_fetch(self, query: PairQuery) -> Optional[PairPrice]:
        pass


class AdapterPairTier(PairPriceTier):
    """Tier backed by a provider's fetch_pair capability."""
    
    def __init__(
        self,
        provider: BaseMarketProvider,
        accepts: Optional[Callable[[PairQuery], bool]] = None,
    ) -> None:
        self._provider = provider
        self._accepts = accepts
    
    @property
    def name(self) -> str:
        return self._provider.name
    
    def accepts(self, query: PairQuery) -> bool:
        return self._accepts(query) if self._accepts else True
    
    async def try_fetch(self, query: PairQuery) -> Optional[PairPrice]:
        result = await self._provider.fetch_pair(query)
        if result.ok:
            return result.data
        if result.status == FetchStatus.NOT_FOUND:
            return None
        raise result.error


class OnchainPairTier(PairPriceTier):
    """
    Last-resort tier: DEX pool price plus historical bars.
    
    The base token is located through the DEX aggregator on the query's
    chain. The price comes from the on-chain indexer when available, else
    from the pool. 24h statistics come from the pool's 15-minute bars; when
    no bars are available the result carries the price only and every
    statistic stays None.
    """
    
    def __init__(
        self,
        dexscreener: DexScreenerProvider,
        moralis: Optional[MoralisProvider] = None,
        default_chain_id: int = 56,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._dex = dexscreener
        self._moralis = moralis
        self._default_chain_id = default_chain_id
        self._clock = clock
    
    @property
    def name(self) -> str:
        return "onchain"
    
    async def try_fetch(self, query: PairQuery) -> Optional[PairPrice]:
        try:
            return await self._price(query)
        except MarketDataError:
            raise
        except Exception as e:
            raise UpstreamPermanentError(
                message=f"Malformed on-chain data for {query.name}: {e!r}",
                source_name=self.name,
                original_error=e,
            )
    
    async def _price(self, query: PairQuery) -> Optional[PairPrice]:
        chain_id = query.chain_id if query.chain_id is not None else self._default_chain_id
        pool = await self._find_pool(chain_id, query)
        if pool is None:
            return None
        
        price = self._pool_price(pool, query)
        if query.is_usd_quoted and self._moralis is not None:
            quote = await self._indexer_price(chain_id, pool.base_address)
            if quote is not None:
                price = quote
        
        stats = None
        # Bars are USD denominated
        if self._moralis is not None and pool.pair_address and query.is_usd_quoted:
            stats = await self._bar_stats(chain_id, pool.pair_address)
        
        if price is None and stats is not None:
            price = stats["close"]
        if not price:
            return None
        
        if stats is None:
            logger.info(f"[{self.name}] {query.name} on chain {chain_id}: price only, no 24h bars")
            return PairPrice(
                pair=query.name,
                base=query.base,
                quote=query.quote,
                price=price,
                source=self.name,
                chain_id=chain_id,
                address=pool.base_address,
            )
        
        return PairPrice(
            pair=query.name,
            base=query.base,
            quote=query.quote,
            price=price,
            source=self.name,
            chain_id=chain_id,
            address=pool.base_address,
            price_change_24h=stats["price_change_24h"],
            high_24h=stats["high_24h"],
            low_24h=stats["low_24h"],
            volume_24h=stats["volume_24h"],
        )
    
    async def _find_pool(self, chain_id: int, query: PairQuery) -> Optional[DexPair]:
        pairs = await self._dex.search_pairs(chain_id, query.base)
        candidates = [p for p in pairs if p.base_symbol.upper() == query.base]
        if query.is_usd_quoted:
            quoted = [p for p in candidates if p.quote_symbol.upper() in USD_QUOTES]
            return (quoted or candidates or [None])[0]
        quoted = [p for p in candidates if p.quote_symbol.upper() == query.quote]
        return quoted[0] if quoted else None
    
    @staticmethod
    def _pool_price(pool: DexPair, query: PairQuery) -> Optional[float]:
        if query.is_usd_quoted:
            return pool.price_usd
        return pool.price_native
    
    async def _indexer_price(self, chain_id: int, address: str) -> Optional[float]:
        try:
            price = await self._moralis.get_token_price(chain_id, address)
        except MarketDataError as e:
            logger.warning(f"[{self.name}] Indexer price unavailable for {address}: {e}")
            return None
        return price.usd_price if price else None
    
    async def _bar_stats(self, chain_id: int, pair_address: str) -> Optional[dict[str, Optional[float]]]:
        now = self._clock()
        try:
            bars = await self._moralis.get_ohlcv(chain_id, pair_address, now - timedelta(hours=24), now)
        except MarketDataError as e:
            logger.warning(f"[{self.name}] Bars unavailable for pool {pair_address}: {e}")
            return None
        return summarize_bars(bars, now=now)
