"""
dYdX Perpetuals Provider - Perpetuals indexer adapter.

The indexer reports oracle price and the absolute 24h price change; the
percent change is derived from the price 24h ago:

    pct = change / (price - change) * 100
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from market_data.base import BaseMarketProvider, parse_float
from market_data.exceptions import MarketDataError, UpstreamPermanentError
from market_data.models import (
    CEX_CHAIN_ID,
    Capability,
    MarketSummary,
    MarketType,
    PairPrice,
    PairQuery,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DydxMarket:
    """One entry of /v4/perpetualMarkets."""
    ticker: str
    status: str
    oracle_price: float
    price_change_24h: Optional[float]
    volume_24h: Optional[float]
    next_funding_rate: Optional[float]
    open_interest: Optional[float]
    
    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> Optional["DydxMarket"]:
        oracle_price = parse_float(raw.get("oraclePrice"))
        if oracle_price is None:
            return None
        return cls(
            ticker=str(raw.get("ticker", "")),
            status=str(raw.get("status", "ACTIVE")),
            oracle_price=oracle_price,
            price_change_24h=parse_float(raw.get("priceChange24H")),
            volume_24h=parse_float(raw.get("volume24H")),
            next_funding_rate=parse_float(raw.get("nextFundingRate")),
            open_interest=parse_float(raw.get("openInterest")),
        )
    
    @property
    def price_change_percent(self) -> Optional[float]:
        if self.price_change_24h is None:
            return None
        previous = self.oracle_price - self.price_change_24h
        if previous <= 0:
            return None
        return self.price_change_24h / previous * 100
    
    def to_market_summary(self) -> MarketSummary:
        return MarketSummary(
            id=f"dydx-{self.ticker.lower()}",
            symbol=self.ticker,
            name=self.ticker,
            price=self.oracle_price,
            market_type=MarketType.PERP,
            provider="dydx",
            price_change_24h=self.price_change_percent,
            volume_24h=self.volume_24h,
            funding_rate=self.next_funding_rate,
            open_interest=self.open_interest,
        )


class DydxPerpsProvider(BaseMarketProvider):
    """
    dYdX v4 indexer adapter.
    
    Endpoints used:
    - /v4/perpetualMarkets?ticker=BASE-USD - market snapshot
    - /v4/perpetualMarkets - every market, for the market list
    - /v4/candles/perpetualMarkets/{ticker}?resolution=1DAY&limit=1 - 24h high/low
    - /v4/time - health check
    
    All markets are USD margined; only USD and USDC quotes are served.
    """
    
    BASE_URL = "https://indexer.dydx.trade/v4"
    HEALTH_URL = f"{BASE_URL}/time"
    SUPPORTED_QUOTES = ("USD", "USDC")
    
    capabilities = frozenset({Capability.PAIR, Capability.MARKET_LIST})
    market_type = MarketType.PERP
    
    @property
    def name(self) -> str:
        """Unique identifier."""
        return "dydx"
    
    @classmethod
    def accepts(cls, pair: PairQuery) -> bool:
        return pair.quote in cls.SUPPORTED_QUOTES
    
    async def _fetch_pair(self, pair: PairQuery) -> Optional[PairPrice]:
        if not self.accepts(pair):
            return None
        
        ticker = f"{pair.base}-USD"
        data = await self._make_request(
            "GET",
            f"{self.BASE_URL}/perpetualMarkets",
            params={"ticker": ticker},
        )
        raw = (data.get("markets") or {}).get(ticker)
        if not raw:
            return None
        market = DydxMarket.from_raw(raw)
        if market is None or market.status != "ACTIVE" or market.oracle_price <= 0:
            return None
        
        high, low = await self._daily_range(ticker)
        return PairPrice(
            pair=pair.name,
            base=pair.base,
            quote=pair.quote,
            price=market.oracle_price,
            source=self.name,
            chain_id=CEX_CHAIN_ID,
            address=ticker,
            price_change_24h=market.price_change_percent,
            high_24h=high,
            low_24h=low,
            volume_24h=market.volume_24h,
            funding_rate=market.next_funding_rate,
            open_interest=market.open_interest,
        )
    
    async def list_markets(self) -> list[DydxMarket]:
        """Every ACTIVE perpetual market, most traded first."""
        data = await self._make_request("GET", f"{self.BASE_URL}/perpetualMarkets")
        raw_markets = data.get("markets") if isinstance(data, dict) else None
        if not isinstance(raw_markets, dict):
            raise UpstreamPermanentError(
                message="Expected a markets object",
                source_name=self.name,
                raw_data=data,
                field_name="markets",
            )
        
        markets = []
        for raw in raw_markets.values():
            market = DydxMarket.from_raw(raw) if isinstance(raw, dict) else None
            if market is None or market.status != "ACTIVE" or market.oracle_price <= 0:
                continue
            markets.append(market)
        markets.sort(key=lambda m: m.volume_24h or 0.0, reverse=True)
        logger.debug(f"[{self.name}] Loaded {len(markets)} active markets")
        return markets
    
    async def _fetch_market_list(self, limit: int) -> list[MarketSummary]:
        markets = await self.list_markets()
        return [m.to_market_summary() for m in markets[:limit]]
    
    async def _daily_range(self, ticker: str) -> tuple[Optional[float], Optional[float]]:
        """Latest daily candle's high/low; unknown when the candle call fails."""
        try:
            data = await self._make_request(
                "GET",
                f"{self.BASE_URL}/candles/perpetualMarkets/{ticker}",
                params={"resolution": "1DAY", "limit": 1},
            )
        except MarketDataError as e:
            logger.debug(f"[{self.name}] Candle lookup failed for {ticker}: {e}")
            return None, None
        
        candles = data.get("candles") or []
        if not candles:
            return None, None
        return parse_float(candles[0].get("high")), parse_float(candles[0].get("low"))
