"""
Binance Ticker Provider - Centralized-exchange 24h ticker adapter.

Public spot API, no authentication. The ticker already carries last price,
24h high/low, volume and percent change, so no derivation is needed.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import aiohttp

from market_data.base import BaseMarketProvider, parse_float, parse_int
from market_data.cache import TICKER_SNAPSHOT_TTL, CachedLoader, TTLCache
from market_data.chains import ChainRegistry
from market_data.exceptions import FetchError, UpstreamPermanentError
from market_data.models import (
    CEX_CHAIN_ID,
    Capability,
    MarketCategory,
    MarketSummary,
    MarketType,
    NormalizedToken,
    PairPrice,
    PairQuery,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BinanceTicker:
    """One entry of /api/v3/ticker/24hr."""
    symbol: str
    last_price: float
    price_change_percent: Optional[float]
    high_price: Optional[float]
    low_price: Optional[float]
    volume: Optional[float]
    quote_volume: Optional[float]
    trade_count: Optional[int]
    
    @classmethod
    def from_raw(cls, raw: dict[str, Any], symbol: Optional[str] = None) -> "BinanceTicker":
        """
        Parse a raw ticker.
        
        Raises:
            UpstreamPermanentError: lastPrice missing or not numeric
        """
        last_price = parse_float(raw.get("lastPrice"))
        if last_price is None:
            raise UpstreamPermanentError(
                message="Ticker without lastPrice",
                source_name="binance",
                raw_data=raw,
                field_name="lastPrice",
            )
        return cls(
            symbol=str(raw.get("symbol") or symbol or ""),
            last_price=last_price,
            price_change_percent=parse_float(raw.get("priceChangePercent")),
            high_price=parse_float(raw.get("highPrice")),
            low_price=parse_float(raw.get("lowPrice")),
            volume=parse_float(raw.get("volume")),
            quote_volume=parse_float(raw.get("quoteVolume")),
            trade_count=parse_int(raw.get("count")),
        )
    
    def base_asset(self, quote: str = "USDT") -> str:
        return self.symbol[: -len(quote)] if self.symbol.endswith(quote) else self.symbol
    
    def to_token(self, quote: str = "USDT") -> NormalizedToken:
        base = self.base_asset(quote)
        return NormalizedToken(
            chain_id=CEX_CHAIN_ID,
            address=self.symbol,
            symbol=base,
            name=base,
            price_usd=self.last_price,
            volume_24h=self.quote_volume,
            price_change_24h=self.price_change_percent,
            providers=frozenset({"binance"}),
        )
    
    def to_market_summary(self, quote: str = "USDT") -> MarketSummary:
        base = self.base_asset(quote)
        return MarketSummary(
            id=f"{CEX_CHAIN_ID}-{self.symbol.lower()}",
            symbol=base,
            name=base,
            price=self.last_price,
            market_type=MarketType.SPOT,
            provider="binance",
            price_change_24h=self.price_change_percent,
            volume_24h=self.quote_volume,
            high_24h=self.high_price,
            low_24h=self.low_price,
        )
    
    def to_pair_price(self, pair: PairQuery) -> PairPrice:
        return PairPrice(
            pair=pair.name,
            base=pair.base,
            quote=pair.quote,
            price=self.last_price,
            source="binance",
            chain_id=CEX_CHAIN_ID,
            address=self.symbol,
            price_change_24h=self.price_change_percent,
            high_24h=self.high_price,
            low_24h=self.low_price,
            volume_24h=self.quote_volume,
        )


class BinanceTickerProvider(BaseMarketProvider):
    """
    Binance spot ticker adapter.
    
    Endpoints used:
    - /api/v3/ticker/24hr?symbol=X - single pair
    - /api/v3/ticker/24hr - full snapshot for category listings and the market list
    - /api/v3/ping - health check
    
    Instruments live on the CEX sentinel chain with the exchange symbol as
    their address.
    """
    
    SPOT_BASE_URL = "https://api.binance.com"
    HEALTH_URL = f"{SPOT_BASE_URL}/api/v3/ping"
    
    QUOTE_ASSET = "USDT"
    LEVERAGED_SUFFIXES = ("UP", "DOWN", "BULL", "BEAR")
    MIN_QUOTE_VOLUME = 1000.0
    
    capabilities = frozenset({
        Capability.PAIR,
        Capability.CATEGORY,
        Capability.SYMBOL_OR_ADDRESS,
        Capability.MARKET_LIST,
    })
    market_type = MarketType.SPOT
    
    def __init__(
        self,
        chains: Optional[ChainRegistry] = None,
        timeout: float = BaseMarketProvider.DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
        snapshot_ttl: float = TICKER_SNAPSHOT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(chains, timeout, session)
        self._snapshot_ttl = snapshot_ttl
        self._snapshot = CachedLoader(
            TTLCache(default_ttl=snapshot_ttl, max_entries=4, clock=clock, name="binance_tickers"),
            name="binance_tickers",
        )
    
    @property
    def name(self) -> str:
        """Unique identifier."""
        return "binance"
    
    def supports_chain(self, chain_id: int) -> bool:
        return chain_id == CEX_CHAIN_ID
    
    @classmethod
    def exchange_symbol(cls, pair: PairQuery) -> str:
        """Exchange symbol for a pair; USD maps to USDT."""
        quote = cls.QUOTE_ASSET if pair.quote == "USD" else pair.quote
        return f"{pair.base}{quote}"
    
    # ─────────────────────────────────────────────────────────────
    # Capabilities
    # ─────────────────────────────────────────────────────────────
    
    async def _fetch_pair(self, pair: PairQuery) -> Optional[PairPrice]:
        symbol = self.exchange_symbol(pair)
        url = f"{self.SPOT_BASE_URL}/api/v3/ticker/24hr"
        try:
            data = await self._make_request("GET", url, params={"symbol": symbol})
        except FetchError as e:
            # Unknown symbols come back as HTTP 400 {"code": -1121}
            if e.status_code == 400:
                logger.debug(f"[{self.name}] No market for {symbol}")
                return None
            raise
        
        ticker = BinanceTicker.from_raw(data, symbol=symbol)
        if ticker.last_price <= 0:
            return None
        return ticker.to_pair_price(pair)
    
    async def _fetch_by_category(
        self,
        chain_id: int,
        category: MarketCategory,
        limit: int,
        page: int,
    ) -> list[NormalizedToken]:
        if chain_id != CEX_CHAIN_ID:
            return []
        tickers = self.rank_tickers(await self._usdt_tickers(), category)
        start = (page - 1) * limit
        return [t.to_token(self.QUOTE_ASSET) for t in tickers[start:start + limit]]
    
    async def _fetch_by_symbol_or_address(
        self,
        chain_id: int,
        query: str,
        limit: int,
    ) -> list[NormalizedToken]:
        if chain_id != CEX_CHAIN_ID:
            return []
        needle = query.strip().upper()
        tickers = await self._usdt_tickers()
        exact = [t for t in tickers if t.base_asset(self.QUOTE_ASSET) == needle]
        partial = [
            t for t in tickers
            if t not in exact and needle in t.base_asset(self.QUOTE_ASSET)
        ]
        partial.sort(key=lambda t: t.quote_volume or 0.0, reverse=True)
        return [t.to_token(self.QUOTE_ASSET) for t in (exact + partial)[:limit]]
    
    async def _fetch_market_list(self, limit: int) -> list[MarketSummary]:
        tickers = self.rank_tickers(await self._usdt_tickers(), MarketCategory.HOT)
        return [t.to_market_summary(self.QUOTE_ASSET) for t in tickers[:limit]]
    
    # ─────────────────────────────────────────────────────────────
    # Snapshot
    # ─────────────────────────────────────────────────────────────
    
    async def _usdt_tickers(self) -> list[BinanceTicker]:
        """Liquid USDT spot tickers, refreshed at most every snapshot_ttl seconds."""
        return await self._snapshot.get_or_load(
            "ticker_24hr",
            self._load_usdt_tickers,
            ttl=self._snapshot_ttl,
        )
    
    async def _load_usdt_tickers(self) -> list[BinanceTicker]:
        url = f"{self.SPOT_BASE_URL}/api/v3/ticker/24hr"
        data = await self._make_request("GET", url)
        if not isinstance(data, list):
            raise UpstreamPermanentError(
                message="Expected a list of tickers",
                source_name=self.name,
                raw_data=data,
            )
        
        tickers = []
        for raw in data:
            symbol = str(raw.get("symbol", ""))
            if not symbol.endswith(self.QUOTE_ASSET):
                continue
            base = symbol[: -len(self.QUOTE_ASSET)]
            if not base or base.endswith(self.LEVERAGED_SUFFIXES):
                continue
            ticker = BinanceTicker.from_raw(raw)
            if (ticker.quote_volume or 0.0) < self.MIN_QUOTE_VOLUME:
                continue
            tickers.append(ticker)
        
        logger.debug(f"[{self.name}] Loaded {len(tickers)} USDT tickers")
        return tickers
    
    @staticmethod
    def rank_tickers(
        tickers: list[BinanceTicker],
        category: MarketCategory,
    ) -> list[BinanceTicker]:
        """Order tickers for a listing category."""
        if category == MarketCategory.GAINERS:
            selected = [t for t in tickers if (t.price_change_percent or 0.0) > 0]
            return sorted(selected, key=lambda t: t.price_change_percent, reverse=True)
        if category == MarketCategory.LOSERS:
            selected = [t for t in tickers if (t.price_change_percent or 0.0) < 0]
            return sorted(selected, key=lambda t: t.price_change_percent)
        if category == MarketCategory.NEW:
            # Recently listed markets trade least
            return sorted(tickers, key=lambda t: t.trade_count or 0)
        return sorted(tickers, key=lambda t: t.quote_volume or 0.0, reverse=True)
