"""
Market Data Models - Normalized structures shared by every provider.

Providers normalize their own payloads into these types; nothing downstream
of an adapter depends on provider-specific fields.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Optional, TypeVar


T = TypeVar("T")

# Reserved chain id for centralized-exchange instruments (no on-chain address)
CEX_CHAIN_ID = 0

USD_QUOTES = ("USD", "USDT", "USDC")


class ChainType(Enum):
    """Chain family."""
    EVM = "evm"
    SOLANA = "solana"
    OTHER = "other"


class Capability(Enum):
    """Operations an adapter may support."""
    SYMBOL_OR_ADDRESS = "symbol_or_address"
    CATEGORY = "category"
    PAIR = "pair"
    MARKET_PAIRS = "market_pairs"
    MARKET_LIST = "market_list"


class FetchStatus(Enum):
    """Outcome of a single adapter call."""
    OK = "ok"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ProviderStatus(Enum):
    """Health status of a provider."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


class MarketCategory(Enum):
    """Listing categories."""
    HOT = "hot"
    NEW = "new"
    GAINERS = "gainers"
    LOSERS = "losers"
    
    @classmethod
    def parse(cls, value: str) -> "MarketCategory":
        """Parse a category name, accepting 'top' as an alias of 'hot'."""
        normalized = (value or "").strip().lower()
        if normalized == "top":
            return cls.HOT
        return cls(normalized)


class MarketType(Enum):
    """Exchange market kinds in the unified market list."""
    SPOT = "spot"
    PERP = "perp"
    ALL = "all"
    
    @classmethod
    def parse(cls, value: Optional[str]) -> "MarketType":
        """Parse a market type; empty means ALL."""
        normalized = (value or "").strip().lower()
        return cls(normalized) if normalized else cls.ALL
    
    def includes(self, other: "MarketType") -> bool:
        return self == MarketType.ALL or self == other


@dataclass(frozen=True)
class CanonicalChain:
    """
    A blockchain network in the platform's own numbering.
    
    provider_ids maps provider name -> that provider's identifier for the
    chain. Providers missing from the map do not support the chain.
    """
    id: int
    name: str
    type: ChainType
    native_currency_symbol: str
    native_decimals: int
    provider_ids: dict[str, Any] = field(default_factory=dict, hash=False)
    
    def provider_id(self, provider: str) -> Optional[Any]:
        """Identifier used by `provider` for this chain, if supported."""
        return self.provider_ids.get(provider)
    
    @property
    def slug(self) -> str:
        return self.name.lower().replace(" ", "-")
    
    @property
    def badge(self) -> str:
        return f"{self.type.value}-{self.slug}"
    
    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "native_currency_symbol": self.native_currency_symbol,
            "native_decimals": self.native_decimals,
            "provider_ids": dict(self.provider_ids),
            "badge": self.badge,
        }


@dataclass(frozen=True)
class NormalizedToken:
    """
    Normalized token record - STRICT schema.
    
    For centralized-exchange instruments the ticker symbol stands in for
    `address` and `chain_id` is CEX_CHAIN_ID. Equality across providers is
    decided by `key`, which lower-cases the address.
    """
    chain_id: int
    address: str
    symbol: str
    name: str
    decimals: Optional[int] = None
    logo_uri: Optional[str] = None
    price_usd: Optional[float] = None
    volume_24h: Optional[float] = None
    price_change_24h: Optional[float] = None
    liquidity: Optional[float] = None
    market_cap: Optional[float] = None
    market_cap_rank: Optional[int] = None
    circulating_supply: Optional[float] = None
    holders: Optional[int] = None
    providers: frozenset[str] = field(default_factory=frozenset)
    
    @property
    def key(self) -> tuple[int, str]:
        return (self.chain_id, self.address.lower())
    
    def merge(self, other: "NormalizedToken") -> "NormalizedToken":
        """
        Combine two records for the same token.
        
        Fields already set on self win; empty fields are filled from other.
        Provider sets are unioned.
        """
        updates: dict[str, Any] = {}
        for name in _MERGEABLE_TOKEN_FIELDS:
            if _is_empty(getattr(self, name)) and not _is_empty(getattr(other, name)):
                updates[name] = getattr(other, name)
        updates["providers"] = self.providers | other.providers
        return replace(self, **updates)
    
    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "chain_id": self.chain_id,
            "address": self.address,
            "symbol": self.symbol,
            "name": self.name,
            "decimals": self.decimals,
            "logo_uri": self.logo_uri,
            "price_usd": self.price_usd,
            "volume_24h": self.volume_24h,
            "price_change_24h": self.price_change_24h,
            "liquidity": self.liquidity,
            "market_cap": self.market_cap,
            "market_cap_rank": self.market_cap_rank,
            "circulating_supply": self.circulating_supply,
            "holders": self.holders,
            "providers": sorted(self.providers),
        }


_MERGEABLE_TOKEN_FIELDS = (
    "symbol",
    "name",
    "decimals",
    "logo_uri",
    "price_usd",
    "volume_24h",
    "price_change_24h",
    "liquidity",
    "market_cap",
    "market_cap_rank",
    "circulating_supply",
    "holders",
)


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


@dataclass(frozen=True)
class MarketTokenPair:
    """A liquidity pool / trading pair on one chain."""
    chain_id: int
    pool_address: str
    pool_name: str
    base_token: NormalizedToken
    quote_token: NormalizedToken
    pair_price: Optional[float] = None
    price_usd: Optional[float] = None
    volume_24h: Optional[float] = None
    liquidity: Optional[float] = None
    price_change_24h: Optional[float] = None
    market_cap: Optional[float] = None
    transactions_24h: Optional[int] = None
    dex_name: Optional[str] = None
    created_at: Optional[datetime] = None
    providers: frozenset[str] = field(default_factory=frozenset)
    
    def __post_init__(self) -> None:
        if not (self.base_token.chain_id == self.quote_token.chain_id == self.chain_id):
            raise ValueError(
                f"Pair {self.pool_address} mixes chains: base={self.base_token.chain_id} "
                f"quote={self.quote_token.chain_id} pair={self.chain_id}"
            )
    
    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "chain_id": self.chain_id,
            "pool_address": self.pool_address,
            "pool_name": self.pool_name,
            "base_token": self.base_token.to_dict(),
            "quote_token": self.quote_token.to_dict(),
            "pair_price": self.pair_price,
            "price_usd": self.price_usd,
            "volume_24h": self.volume_24h,
            "liquidity": self.liquidity,
            "price_change_24h": self.price_change_24h,
            "market_cap": self.market_cap,
            "transactions_24h": self.transactions_24h,
            "dex_name": self.dex_name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "providers": sorted(self.providers),
        }


@dataclass(frozen=True)
class PriceBar:
    """One OHLCV bar."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class PairQuery:
    """A BASE/QUOTE pair request, optionally pinned to a chain for on-chain lookups."""
    base: str
    quote: str
    chain_id: Optional[int] = None
    
    @property
    def name(self) -> str:
        return f"{self.base}-{self.quote}"
    
    @property
    def is_usd_quoted(self) -> bool:
        return self.quote in USD_QUOTES


@dataclass(frozen=True)
class PairPrice:
    """
    Price and 24h statistics for a trading pair.
    
    A None statistic means "unknown", never zero. Callers can rely on
    price_change_24h == 0.0 being a real observation.
    """
    pair: str
    base: str
    quote: str
    price: float
    source: str
    chain_id: int
    address: str
    price_change_24h: Optional[float] = None
    high_24h: Optional[float] = None
    low_24h: Optional[float] = None
    volume_24h: Optional[float] = None
    funding_rate: Optional[float] = None
    open_interest: Optional[float] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)
    
    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "pair": self.pair,
            "base": self.base,
            "quote": self.quote,
            "price": self.price,
            "source": self.source,
            "chain_id": self.chain_id,
            "address": self.address,
            "price_change_24h": self.price_change_24h,
            "high_24h": self.high_24h,
            "low_24h": self.low_24h,
            "volume_24h": self.volume_24h,
            "funding_rate": self.funding_rate,
            "open_interest": self.open_interest,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class MarketSummary:
    """
    One exchange market in the unified market list.
    
    Spot markets are identified by exchange symbol (BTCUSDT), perpetuals
    by their ticker (BTC-USD). Both live on the CEX sentinel chain.
    """
    id: str
    symbol: str
    name: str
    price: float
    market_type: MarketType
    provider: str
    chain_id: int = CEX_CHAIN_ID
    price_change_24h: Optional[float] = None
    volume_24h: Optional[float] = None
    high_24h: Optional[float] = None
    low_24h: Optional[float] = None
    funding_rate: Optional[float] = None
    open_interest: Optional[float] = None
    
    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "symbol": self.symbol,
            "name": self.name,
            "price": self.price,
            "market_type": self.market_type.value,
            "provider": self.provider,
            "chain_id": self.chain_id,
            "price_change_24h": self.price_change_24h,
            "volume_24h": self.volume_24h,
            "high_24h": self.high_24h,
            "low_24h": self.low_24h,
            "funding_rate": self.funding_rate,
            "open_interest": self.open_interest,
        }


@dataclass(frozen=True)
class FetchResult(Generic[T]):
    """
    Result of one adapter call.
    
    NOT_FOUND is a normal outcome with no error attached. The failure
    statuses carry the typed exception that caused them.
    """
    source_name: str
    status: FetchStatus
    data: Optional[T] = None
    error: Optional[Exception] = None
    latency_ms: Optional[float] = None
    
    @property
    def ok(self) -> bool:
        return self.status == FetchStatus.OK
    
    @property
    def failed(self) -> bool:
        return self.status not in (FetchStatus.OK, FetchStatus.NOT_FOUND)


@dataclass
class ProviderHealth:
    """Health status of a provider adapter."""
    status: ProviderStatus
    last_check: datetime
    latency_ms: Optional[float] = None
    error_count: int = 0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None
    consecutive_failures: int = 0
    request_count: int = 0
    success_count: int = 0
    
    def is_usable(self) -> bool:
        """Check if provider can still be used."""
        return self.status in (ProviderStatus.HEALTHY, ProviderStatus.DEGRADED, ProviderStatus.UNKNOWN)
    
    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "last_check": self.last_check.isoformat(),
            "latency_ms": self.latency_ms,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "last_error_time": self.last_error_time.isoformat() if self.last_error_time else None,
            "consecutive_failures": self.consecutive_failures,
            "request_count": self.request_count,
            "success_count": self.success_count,
        }
