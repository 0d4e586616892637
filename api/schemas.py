"""
Pydantic schemas for the market data API.

Field names are snake_case in Python and camelCase on the wire.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


# Acronyms kept upper-case on the wire
_ALIAS_OVERRIDES = {
    "logo_uri": "logoURI",
    "price_usd": "priceUSD",
}


def to_wire_name(name: str) -> str:
    """snake_case to camelCase; digits do not start a new word (volume_24h -> volume24h)."""
    if name in _ALIAS_OVERRIDES:
        return _ALIAS_OVERRIDES[name]
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_wire_name, populate_by_name=True)

# =======================
# TOKENS
# =======================

class TokenOut(ApiModel):
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
    providers: List[str] = []

class TokensResponse(ApiModel):
    tokens: List[TokenOut]
    total: int
    chain_ids: List[int]
    query: Optional[str] = None
    category: Optional[str] = None
    limit: int

# =======================
# MARKET PAIRS
# =======================

class MarketPairOut(ApiModel):
    chain_id: int
    pool_address: str
    pool_name: str
    base_token: TokenOut
    quote_token: TokenOut
    pair_price: Optional[float] = None
    price_usd: Optional[float] = None
    volume_24h: Optional[float] = None
    liquidity: Optional[float] = None
    price_change_24h: Optional[float] = None
    market_cap: Optional[float] = None
    transactions_24h: Optional[int] = None
    dex_name: Optional[str] = None
    created_at: Optional[str] = None
    providers: List[str] = []

class MarketPairsResponse(ApiModel):
    pairs: List[MarketPairOut]
    total: int
    category: str
    network: Optional[str] = None
    limit: int
    page: int

# =======================
# PAIR PRICE
# =======================

class PairPriceOut(ApiModel):
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
    timestamp: str

class PairPriceResponse(ApiModel):
    pair: PairPriceOut

# =======================
# MARKET LIST
# =======================

class MarketOut(ApiModel):
    id: str
    symbol: str
    name: str
    price: float
    market_type: str
    provider: str
    chain_id: int
    price_change_24h: Optional[float] = None
    volume_24h: Optional[float] = None
    high_24h: Optional[float] = None
    low_24h: Optional[float] = None
    funding_rate: Optional[float] = None
    open_interest: Optional[float] = None

class MarketListResponse(ApiModel):
    markets: List[MarketOut]
    total: int
    market_type: str
    limit: int

# =======================
# CHAINS / HEALTH
# =======================

class ChainOut(ApiModel):
    id: int
    name: str
    type: str
    native_currency_symbol: str
    native_decimals: int
    provider_ids: Dict[str, Any]
    badge: str

class ChainsResponse(ApiModel):
    chains: List[ChainOut]
    total: int

class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str = "1.0.0"
    uptime_seconds: float = 0
    providers: Dict[str, Any] = {}
