"""
Moralis Provider - On-chain indexer adapter backed by a rotating key pool.

Every request takes the current key from the KeyRotationManager. A quota
failure marks that key exhausted and the request is retried with the next
key. Once the pool is exhausted calls fail fast with ProviderExhaustedError
and no request is sent.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import aiohttp

from market_data.base import BaseMarketProvider, parse_float, parse_int
from market_data.chains import MORALIS, ChainRegistry
from market_data.exceptions import (
    FetchError,
    ProviderExhaustedError,
    UpstreamPermanentError,
    UpstreamTransientError,
)
from market_data.key_manager import KeyRotationManager, is_quota_error
from market_data.models import Capability, NormalizedToken, PriceBar
from market_data.providers.dexscreener import EVM_ADDRESS


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MoralisTokenPrice:
    """Subset of /erc20/{address}/price."""
    usd_price: float
    symbol: Optional[str]
    name: Optional[str]
    logo: Optional[str]
    decimals: Optional[int]
    pair_address: Optional[str]
    liquidity_usd: Optional[float]
    percent_change_24h: Optional[float]
    
    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> Optional["MoralisTokenPrice"]:
        usd_price = parse_float(raw.get("usdPrice"))
        if usd_price is None:
            return None
        return cls(
            usd_price=usd_price,
            symbol=raw.get("tokenSymbol"),
            name=raw.get("tokenName"),
            logo=raw.get("tokenLogo"),
            decimals=parse_int(raw.get("tokenDecimals")),
            pair_address=raw.get("pairAddress"),
            liquidity_usd=parse_float(raw.get("pairTotalLiquidityUsd")),
            percent_change_24h=parse_float(raw.get("24hrPercentChange")),
        )


def _parse_bar(raw: dict[str, Any]) -> Optional[PriceBar]:
    stamp = raw.get("timestamp")
    close = parse_float(raw.get("close"))
    if not stamp or close is None:
        return None
    try:
        timestamp = datetime.fromisoformat(str(stamp).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return None
    return PriceBar(
        timestamp=timestamp,
        open=parse_float(raw.get("open")) or close,
        high=parse_float(raw.get("high")) or close,
        low=parse_float(raw.get("low")) or close,
        close=close,
        volume=parse_float(raw.get("volume")) or 0.0,
    )


class MoralisProvider(BaseMarketProvider):
    """
    Moralis Web3 Data API adapter (EVM chains).
    
    Endpoints used:
    - /erc20/metadata?chain=..&addresses[0]=.. - token metadata
    - /erc20/{address}/price?chain=.. - USD price and main pool
    - /pairs/{pair}/ohlcv?chain=..&timeframe=15min - historical bars
    """
    
    BASE_URL = "https://deep-index.moralis.io/api/v2.2"
    ROTATION_DELAY_SECONDS = 0.1
    BAR_TIMEFRAME = "15min"
    
    capabilities = frozenset({Capability.SYMBOL_OR_ADDRESS})
    chain_key = MORALIS
    
    def __init__(
        self,
        key_manager: KeyRotationManager,
        chains: Optional[ChainRegistry] = None,
        timeout: float = BaseMarketProvider.DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        super().__init__(chains, timeout, session)
        self._keys = key_manager
    
    @property
    def name(self) -> str:
        """Unique identifier."""
        return "moralis"
    
    @property
    def key_manager(self) -> KeyRotationManager:
        return self._keys
    
    async def _request(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        """
        GET with key rotation on quota errors.
        
        Raises:
            ProviderExhaustedError: no usable key (raised before any request)
        """
        for _ in range(self._keys.pool_size):
            index, key = self._keys.acquire()
            try:
                return await self._make_request(
                    "GET",
                    f"{self.BASE_URL}{path}",
                    params=params,
                    headers={"X-API-Key": key},
                )
            except UpstreamTransientError:
                raise
            except FetchError as e:
                if not is_quota_error(e.status_code, e.response_body):
                    raise
                logger.warning(
                    f"[{self.name}] Quota error on key {index + 1} "
                    f"(status={e.status_code}) for {path}"
                )
                if not self._keys.mark_exhausted(index):
                    break
                await asyncio.sleep(self.ROTATION_DELAY_SECONDS)
        
        raise ProviderExhaustedError(
            f"All API keys exhausted for {self.name}",
            source_name=self.name,
            pool_size=self._keys.pool_size,
            context={"path": path},
        )
    
    # ─────────────────────────────────────────────────────────────
    # Token data
    # ─────────────────────────────────────────────────────────────
    
    async def get_token_price(self, chain_id: int, address: str) -> Optional[MoralisTokenPrice]:
        """USD price for an ERC20 token, or None when not indexed."""
        chain = self.chain_slug(chain_id)
        if chain is None:
            return None
        try:
            data = await self._request(f"/erc20/{address}/price", {"chain": chain})
        except FetchError as e:
            if e.status_code in (400, 404):
                return None
            raise
        if not isinstance(data, dict):
            raise UpstreamPermanentError(
                message="Expected a price object",
                source_name=self.name,
                raw_data=data,
                context={"address": address},
            )
        return MoralisTokenPrice.from_raw(data)
    
    async def get_ohlcv(
        self,
        chain_id: int,
        pair_address: str,
        start: datetime,
        end: datetime,
    ) -> list[PriceBar]:
        """15-minute bars for a pool between start and end, oldest first."""
        chain = self.chain_slug(chain_id)
        if chain is None:
            return []
        data = await self._request(
            f"/pairs/{pair_address}/ohlcv",
            {
                "chain": chain,
                "timeframe": self.BAR_TIMEFRAME,
                "currency": "usd",
                "fromDate": start.strftime("%Y-%m-%dT%H:%M:%SZ"),
                "toDate": end.strftime("%Y-%m-%dT%H:%M:%SZ"),
                "limit": 1000,
            },
        )
        rows = data.get("result") if isinstance(data, dict) else data
        bars = [bar for bar in (_parse_bar(row) for row in rows or []) if bar is not None]
        bars.sort(key=lambda b: b.timestamp)
        return bars
    
    async def get_bars_24h(self, chain_id: int, pair_address: str) -> list[PriceBar]:
        end = datetime.utcnow()
        return await self.get_ohlcv(chain_id, pair_address, end - timedelta(hours=24), end)
    
    async def _fetch_by_symbol_or_address(
        self,
        chain_id: int,
        query: str,
        limit: int,
    ) -> list[NormalizedToken]:
        address = query.strip()
        chain = self.chain_slug(chain_id)
        if chain is None or not EVM_ADDRESS.match(address):
            return []
        
        data = await self._request("/erc20/metadata", {"chain": chain, "addresses[0]": address})
        if not data:
            return []
        meta = data[0]
        if not meta.get("symbol"):
            return []
        
        price = await self.get_token_price(chain_id, address)
        return [NormalizedToken(
            chain_id=chain_id,
            address=str(meta.get("address") or address),
            symbol=str(meta["symbol"]),
            name=str(meta.get("name") or meta["symbol"]),
            decimals=parse_int(meta.get("decimals")),
            logo_uri=meta.get("logo") or meta.get("thumbnail"),
            price_usd=price.usd_price if price else None,
            price_change_24h=price.percent_change_24h if price else None,
            liquidity=price.liquidity_usd if price else None,
            market_cap=parse_float(meta.get("market_cap")),
            circulating_supply=parse_float(meta.get("circulating_supply")),
            providers=frozenset({self.name}),
        )]
