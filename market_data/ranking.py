"""
Listing order: category ranking for pools and tokens, search relevance.

    hot      volume descending
    new      creation time descending (undated last)
    gainers  positive 24h change only, descending
    losers   negative 24h change only, ascending
"""

from datetime import datetime
from difflib import SequenceMatcher
from typing import Optional, Sequence

from market_data.models import MarketCategory, MarketTokenPair, NormalizedToken


def rank_pairs(pairs: Sequence[MarketTokenPair], category: MarketCategory) -> list[MarketTokenPair]:
    """Filter and order pools for a listing category."""
    if category == MarketCategory.GAINERS:
        selected = [p for p in pairs if (p.price_change_24h or 0.0) > 0]
        return sorted(selected, key=lambda p: p.price_change_24h, reverse=True)
    if category == MarketCategory.LOSERS:
        selected = [p for p in pairs if (p.price_change_24h or 0.0) < 0]
        return sorted(selected, key=lambda p: p.price_change_24h)
    if category == MarketCategory.NEW:
        return sorted(pairs, key=lambda p: _created_key(p.created_at), reverse=True)
    return sorted(pairs, key=lambda p: p.volume_24h or 0.0, reverse=True)


def rank_tokens(tokens: Sequence[NormalizedToken], category: MarketCategory) -> list[NormalizedToken]:
    """
    Filter and order tokens for a listing category.
    
    Tokens carry no creation time, so `new` keeps provider order.
    """
    if category == MarketCategory.GAINERS:
        selected = [t for t in tokens if (t.price_change_24h or 0.0) > 0]
        return sorted(selected, key=lambda t: t.price_change_24h, reverse=True)
    if category == MarketCategory.LOSERS:
        selected = [t for t in tokens if (t.price_change_24h or 0.0) < 0]
        return sorted(selected, key=lambda t: t.price_change_24h)
    if category == MarketCategory.NEW:
        return list(tokens)
    return sorted(tokens, key=lambda t: t.volume_24h or 0.0, reverse=True)


def _created_key(value: Optional[datetime]) -> datetime:
    return value or datetime.min


# ─────────────────────────────────────────────────────────────
# Search relevance
# ─────────────────────────────────────────────────────────────

SIMILARITY_THRESHOLD = 0.5


def similarity(token: NormalizedToken, query: str) -> float:
    """
    Relevance of a token to a search string in [0, 1].
    
    Exact address or symbol matches score 1.0; prefix and substring
    matches on symbol then name score progressively lower; otherwise the
    symbol's edit similarity is halved.
    """
    q = query.strip().lower()
    if not q:
        return 0.0
    symbol = token.symbol.lower()
    name = token.name.lower()
    
    if token.address.lower() == q or symbol == q:
        return 1.0
    if name == q:
        return 0.9
    if symbol.startswith(q):
        return 0.8
    if name.startswith(q):
        return 0.7
    if q in symbol:
        return 0.6
    if q in name:
        return 0.5
    return SequenceMatcher(None, q, symbol).ratio() * 0.5


def rank_search_results(
    tokens: Sequence[NormalizedToken],
    query: str,
    threshold: float = SIMILARITY_THRESHOLD,
) -> list[NormalizedToken]:
    """
    Drop tokens below the threshold and order the rest.
    
    Order: exact symbol/address matches, then score, then liquidity.
    """
    scored = [(similarity(t, query), t) for t in tokens]
    kept = [(score, t) for score, t in scored if score >= threshold]
    kept.sort(key=lambda item: (item[0] < 1.0, -item[0], -(item[1].liquidity or 0.0)))
    return [t for _, t in kept]
