"""
Aggregation Models - Response shapes of the aggregation service.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from market_data.models import MarketSummary, MarketTokenPair, NormalizedToken


@dataclass(frozen=True)
class TokenListing:
    """Result of get_tokens."""
    tokens: list[NormalizedToken]
    chain_ids: list[int]
    limit: int
    query: Optional[str] = None
    category: Optional[str] = None
    providers: list[str] = field(default_factory=list)
    
    @property
    def total(self) -> int:
        return len(self.tokens)
    
    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "tokens": [t.to_dict() for t in self.tokens],
            "total": self.total,
            "chain_ids": self.chain_ids,
            "query": self.query,
            "category": self.category,
            "limit": self.limit,
            "providers": self.providers,
        }


@dataclass(frozen=True)
class PairListing:
    """Result of get_market_pairs_by_category."""
    pairs: list[MarketTokenPair]
    category: str
    chain_ids: list[int]
    limit: int
    page: int
    network: Optional[str] = None
    
    @property
    def total(self) -> int:
        return len(self.pairs)
    
    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "pairs": [p.to_dict() for p in self.pairs],
            "total": self.total,
            "category": self.category,
            "network": self.network,
            "chain_ids": self.chain_ids,
            "limit": self.limit,
            "page": self.page,
        }


@dataclass(frozen=True)
class MarketList:
    """Result of get_market_list."""
    markets: list[MarketSummary]
    market_type: str
    limit: int
    providers: list[str] = field(default_factory=list)
    
    @property
    def total(self) -> int:
        return len(self.markets)
    
    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "markets": [m.to_dict() for m in self.markets],
            "total": self.total,
            "market_type": self.market_type,
            "limit": self.limit,
            "providers": self.providers,
        }
