"""
Market Data API - Application factory.

============================================================
RESPONSIBILITY
============================================================
Exposes the aggregation service over HTTP. One service instance is
built per process and shared by every request through app.state.
============================================================
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from aggregation.config import AggregatorConfig
from aggregation.service import AggregationService, build_default_service
from api.routes import error_response, router
from api.schemas import HealthResponse

logger = logging.getLogger(__name__)


# Error bodies name the entity list of the endpoint that failed
_LIST_KEYS = (
    ("/api/v1/tokens", "tokens"),
    ("/api/v1/market-pairs", "pairs"),
    ("/api/v1/market/", "markets"),
    ("/api/v1/chains", "chains"),
)


def list_key_for(path: str) -> str:
    for prefix, key in _LIST_KEYS:
        if path.startswith(prefix):
            return key
    return "data"


def create_app(
    service: Optional[AggregationService] = None,
    config: Optional[AggregatorConfig] = None,
) -> FastAPI:
    """
    Build the FastAPI application.
    
    Args:
        service: pre-built service (tests); built from config when omitted
        config: configuration; loaded from the environment when omitted
    """
    owns_service = service is None
    if service is None:
        config = config or AggregatorConfig.from_env()
        errors = config.validate()
        if errors:
            raise ValueError(f"Invalid configuration: {errors}")
        service = build_default_service(config)
    
    startup_time = datetime.utcnow()
    
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Market data API starting")
        yield
        if owns_service:
            await app.state.service.close()
        logger.info("Market data API stopped")
    
    app = FastAPI(
        title="Market Data Aggregation API",
        description="Unified token, pool and pair price data across chains and exchanges",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.service = service
    
    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    
    app.include_router(router)
    
    # ============================================================
    # Error handlers
    # ============================================================
    
    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        )
        return error_response(400, f"Invalid request: {details}", list_key_for(request.url.path))
    
    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.url.path}")
        return error_response(500, "Internal server error", list_key_for(request.url.path))
    
    # ============================================================
    # Health
    # ============================================================
    
    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check(request: Request):
        """Provider health from the last observed requests."""
        registry = request.app.state.service.registry
        providers = {name: h.to_dict() for name, h in registry.get_all_health().items()}
        return HealthResponse(
            status="healthy",
            timestamp=datetime.utcnow().isoformat(),
            uptime_seconds=(datetime.utcnow() - startup_time).total_seconds(),
            providers=providers,
        )
    
    @app.get("/stats", tags=["Health"])
    async def stats(request: Request):
        """Cache, registry and enrichment counters."""
        return request.app.state.service.get_stats()
    
    return app
