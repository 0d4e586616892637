"""
FastAPI Router for market data endpoints.

Every error body has the listing shape `{error, <list>: [], total: 0}` so
clients can render empty and error states the same way. Successful
responses carry a shared-cache hint matching the service cache window.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse

from aggregation.service import AggregationService
from api.schemas import (
    ChainOut,
    ChainsResponse,
    MarketListResponse,
    MarketOut,
    MarketPairOut,
    MarketPairsResponse,
    PairPriceOut,
    PairPriceResponse,
    TokenOut,
    TokensResponse,
)
from market_data.exceptions import (
    FetchError,
    InvalidInputError,
    MarketDataError,
    NotFoundError,
    ProviderExhaustedError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["Market Data"])


# s-maxage per endpoint (seconds)
TOKENS_MAX_AGE = 60
MARKET_PAIRS_MAX_AGE = 30
MARKET_LIST_MAX_AGE = 30
PAIR_PRICE_MAX_AGE = 15
CHAINS_MAX_AGE = 3600


# =============================================================
# HELPERS
# =============================================================

def get_service(request: Request) -> AggregationService:
    return request.app.state.service


def cache_control(max_age: int) -> str:
    return f"public, s-maxage={max_age}, stale-while-revalidate={max_age * 2}"


def error_response(status_code: int, message: str, list_key: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message, list_key: [], "total": 0},
        headers={"Cache-Control": "no-store"},
    )


def status_for(error: MarketDataError) -> int:
    if isinstance(error, InvalidInputError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ProviderExhaustedError):
        return 500
    if isinstance(error, FetchError):
        return 502
    return 500


def handle_error(error: MarketDataError, list_key: str, path: str) -> JSONResponse:
    status_code = status_for(error)
    if isinstance(error, ProviderExhaustedError):
        logger.error(f"PROVIDER_EXHAUSTED {path}: {error}", extra={"error": error.to_dict()})
    elif status_code >= 500:
        logger.error(f"Request failed {path}: {error}", extra={"error": error.to_dict()})
    else:
        logger.info(f"Rejected {path}: {error.message}")
    return error_response(status_code, error.message, list_key)


# =============================================================
# TOKENS
# =============================================================

@router.get("/tokens", response_model=TokensResponse)
async def get_tokens(
    response: Response,
    chains: Optional[str] = Query(None, description="Comma-separated chain ids or slugs"),
    q: Optional[str] = Query(None, max_length=100, description="Symbol, name or address"),
    category: Optional[str] = Query(None, description="hot, new, gainers, losers"),
    limit: int = Query(30),
    service: AggregationService = Depends(get_service),
):
    """
    Tokens across one or more chains.
    
    With `q` the result is a search; otherwise a category listing.
    Multi-chain results are interleaved round-robin.
    """
    try:
        chain_ids = service.chains.parse_chain_list(chains)
        listing = await service.get_tokens(
            chain_ids=chain_ids or None,
            query=q,
            category=category,
            limit=limit,
        )
    except MarketDataError as e:
        return handle_error(e, "tokens", "/api/v1/tokens")
    
    response.headers["Cache-Control"] = cache_control(TOKENS_MAX_AGE)
    return TokensResponse(
        tokens=[TokenOut(**t.to_dict()) for t in listing.tokens],
        total=listing.total,
        chain_ids=listing.chain_ids,
        query=listing.query,
        category=listing.category,
        limit=listing.limit,
    )


# =============================================================
# MARKET PAIRS
# =============================================================

@router.get("/market-pairs", response_model=MarketPairsResponse)
async def get_market_pairs(
    response: Response,
    category: str = Query("hot", description="hot, new, gainers, losers"),
    network: Optional[str] = Query(None, description="Chain id or network slug"),
    limit: int = Query(20),
    page: int = Query(1),
    service: AggregationService = Depends(get_service),
):
    """Liquidity pools for a category, optionally on one network."""
    try:
        listing = await service.get_market_pairs_by_category(
            category=category,
            network=network,
            limit=limit,
            page=page,
        )
    except MarketDataError as e:
        return handle_error(e, "pairs", "/api/v1/market-pairs")
    
    response.headers["Cache-Control"] = cache_control(MARKET_PAIRS_MAX_AGE)
    return MarketPairsResponse(
        pairs=[MarketPairOut(**p.to_dict()) for p in listing.pairs],
        total=listing.total,
        category=listing.category,
        network=listing.network,
        limit=listing.limit,
        page=listing.page,
    )


# =============================================================
# MARKET LIST
# =============================================================

# Registered ahead of /market/{pair} so "list" is never read as a pair
@router.get("/market/list", response_model=MarketListResponse)
async def get_market_list(
    response: Response,
    market_type: Optional[str] = Query(None, alias="marketType", description="spot, perp, all"),
    limit: Optional[int] = Query(None),
    service: AggregationService = Depends(get_service),
):
    """Exchange spot and perpetual markets, sorted by 24h volume."""
    try:
        market_list = await service.get_market_list(market_type=market_type, limit=limit)
    except MarketDataError as e:
        return handle_error(e, "markets", "/api/v1/market/list")
    
    response.headers["Cache-Control"] = cache_control(MARKET_LIST_MAX_AGE)
    return MarketListResponse(
        markets=[MarketOut(**m.to_dict()) for m in market_list.markets],
        total=market_list.total,
        market_type=market_list.market_type,
        limit=market_list.limit,
    )


# =============================================================
# PAIR PRICE
# =============================================================

@router.get("/market/{pair}", response_model=PairPriceResponse)
async def get_pair_price(
    pair: str,
    response: Response,
    chain_id: Optional[int] = Query(None, alias="chainId"),
    service: AggregationService = Depends(get_service),
):
    """Price and 24h statistics for a BASE-QUOTE pair."""
    try:
        price = await service.get_price_for_pair(pair, chain_id=chain_id)
    except MarketDataError as e:
        return handle_error(e, "markets", f"/api/v1/market/{pair}")
    
    response.headers["Cache-Control"] = cache_control(PAIR_PRICE_MAX_AGE)
    return PairPriceResponse(pair=PairPriceOut(**price.to_dict()))


# =============================================================
# CHAINS
# =============================================================

@router.get("/chains", response_model=ChainsResponse)
async def get_chains(
    response: Response,
    service: AggregationService = Depends(get_service),
):
    """Registered chains with their provider identifiers."""
    chains = [ChainOut(**c.to_dict()) for c in service.chains.all()]
    response.headers["Cache-Control"] = cache_control(CHAINS_MAX_AGE)
    return ChainsResponse(chains=chains, total=len(chains))
