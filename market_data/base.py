"""
Base Market Provider - Common interface for all upstream adapters.

Each adapter declares the capabilities it supports and implements the
matching `_fetch_*` hooks, which return normalized data (or an empty
result for "no data") and raise typed exceptions on failure. The public
`fetch_*` methods never raise for upstream problems: they convert every
outcome into a FetchResult so the orchestrator can treat adapters
uniformly.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Optional

import aiohttp

from market_data.chains import ChainRegistry
from market_data.exceptions import (
    FetchError,
    MarketDataError,
    ProviderExhaustedError,
    RateLimitError,
    UpstreamPermanentError,
    UpstreamTransientError,
)
from market_data.models import (
    Capability,
    FetchResult,
    FetchStatus,
    MarketCategory,
    MarketSummary,
    MarketTokenPair,
    MarketType,
    NormalizedToken,
    PairPrice,
    PairQuery,
    ProviderHealth,
    ProviderStatus,
)


logger = logging.getLogger(__name__)


def parse_float(value: Any) -> Optional[float]:
    """Float from a provider field, None when missing or unparseable."""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_int(value: Any) -> Optional[int]:
    """Int from a provider field, None when missing or unparseable."""
    number = parse_float(value)
    return int(number) if number is not None else None


class BaseMarketProvider(ABC):
    """
    Abstract base class for all provider adapters.
    
    Subclasses must:
    1. Define `name` and `capabilities`
    2. Set `chain_key` to the chain registry column they use (or override
       supports_chain)
    3. Implement the `_fetch_*` hook for each declared capability
    
    Features:
    - Shared aiohttp session with typed error mapping
    - Outcome classification into FetchResult
    - Health tracking
    """
    
    DEFAULT_TIMEOUT = 10.0
    DEGRADED_THRESHOLD = 3  # consecutive failures before degraded
    UNAVAILABLE_THRESHOLD = 5  # consecutive failures before unavailable
    HEALTH_URL: Optional[str] = None
    
    capabilities: frozenset[Capability] = frozenset()
    chain_key: Optional[str] = None
    market_type: Optional[MarketType] = None
    
    def __init__(
        self,
        chains: Optional[ChainRegistry] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._chains = chains if chains is not None else ChainRegistry.default()
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None
        
        self._health = ProviderHealth(
            status=ProviderStatus.UNKNOWN,
            last_check=datetime.utcnow(),
        )
    
    @property
    @abstractmethod
    def name(self) -> str:
        """Unique provider identifier."""
        pass
    
    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities
    
    def supports_chain(self, chain_id: int) -> bool:
        """Whether this provider has data for a canonical chain."""
        if self.chain_key is None:
            return False
        return self._chains.supports(chain_id, self.chain_key)
    
    def chain_slug(self, chain_id: int) -> Optional[Any]:
        """This provider's identifier for a canonical chain."""
        if self.chain_key is None:
            return None
        return self._chains.provider_id(chain_id, self.chain_key)
    
    # ─────────────────────────────────────────────────────────────
    # Public capability surface
    # ─────────────────────────────────────────────────────────────
    
    async def fetch_by_symbol_or_address(
        self,
        chain_id: int,
        query: str,
        limit: int = 20,
    ) -> FetchResult[list[NormalizedToken]]:
        """Tokens matching a symbol, name, or contract address."""
        self._require(Capability.SYMBOL_OR_ADDRESS)
        return await self._guard(
            "fetch_by_symbol_or_address",
            {"chain_id": chain_id, "query": query, "limit": limit},
            self._fetch_by_symbol_or_address(chain_id, query, limit),
        )
    
    async def fetch_by_category(
        self,
        chain_id: int,
        category: MarketCategory,
        limit: int = 20,
        page: int = 1,
    ) -> FetchResult[list[NormalizedToken]]:
        """Tokens in a listing category on one chain."""
        self._require(Capability.CATEGORY)
        return await self._guard(
            "fetch_by_category",
            {"chain_id": chain_id, "category": category.value, "limit": limit, "page": page},
            self._fetch_by_category(chain_id, category, limit, page),
        )
    
    async def fetch_pair(self, pair: PairQuery) -> FetchResult[PairPrice]:
        """Price and 24h statistics for a BASE/QUOTE pair."""
        self._require(Capability.PAIR)
        return await self._guard(
            "fetch_pair",
            {"pair": pair.name, "chain_id": pair.chain_id},
            self._fetch_pair(pair),
        )
    
    async def fetch_market_pairs(
        self,
        chain_id: int,
        category: MarketCategory,
        limit: int = 20,
        page: int = 1,
    ) -> FetchResult[list[MarketTokenPair]]:
        """Liquidity pools in a listing category on one chain."""
        self._require(Capability.MARKET_PAIRS)
        return await self._guard(
            "fetch_market_pairs",
            {"chain_id": chain_id, "category": category.value, "limit": limit, "page": page},
            self._fetch_market_pairs(chain_id, category, limit, page),
        )
    
    async def fetch_market_list(self, limit: int = 500) -> FetchResult[list[MarketSummary]]:
        """Exchange markets this provider lists, most traded first."""
        self._require(Capability.MARKET_LIST)
        return await self._guard(
            "fetch_market_list",
            {"limit": limit},
            self._fetch_market_list(limit),
        )
    
    # ─────────────────────────────────────────────────────────────
    # Hooks (override per declared capability)
    # ─────────────────────────────────────────────────────────────
    
    async def _fetch_by_symbol_or_address(
        self,
        chain_id: int,
        query: str,
        limit: int,
    ) -> list[NormalizedToken]:
        raise NotImplementedError
    
    async def _fetch_by_category(
        self,
        chain_id: int,
        category: MarketCategory,
        limit: int,
        page: int,
    ) -> list[NormalizedToken]:
        raise NotImplementedError
    
    async def _fetch_pair(self, pair: PairQuery) -> Optional[PairPrice]:
        raise NotImplementedError
    
    async def _fetch_market_pairs(
        self,
        chain_id: int,
        category: MarketCategory,
        limit: int,
        page: int,
    ) -> list[MarketTokenPair]:
        raise NotImplementedError
    
    async def _fetch_market_list(self, limit: int) -> list[MarketSummary]:
        raise NotImplementedError
    
    def _require(self, capability: Capability) -> None:
        if capability not in self.capabilities:
            raise NotImplementedError(f"{self.name} does not support {capability.value}")
    
    # ─────────────────────────────────────────────────────────────
    # Outcome classification
    # ─────────────────────────────────────────────────────────────
    
    async def _guard(
        self,
        operation: str,
        params: dict[str, Any],
        call: Awaitable[Any],
    ) -> FetchResult:
        """Run a hook and classify its outcome."""
        start_time = time.time()
        status = FetchStatus.OK
        data: Any = None
        error: Optional[Exception] = None
        
        try:
            data = await call
        except (ProviderExhaustedError, RateLimitError) as e:
            status, error = FetchStatus.RATE_LIMITED, e
        except UpstreamPermanentError as e:
            status, error = FetchStatus.PERMANENT, e
        except UpstreamTransientError as e:
            status, error = FetchStatus.TRANSIENT, e
        except FetchError as e:
            if e.status_code == 404:
                status = FetchStatus.NOT_FOUND
            elif e.is_client_error():
                status, error = FetchStatus.PERMANENT, e
            else:
                status, error = FetchStatus.TRANSIENT, e
        except asyncio.TimeoutError as e:
            status = FetchStatus.TRANSIENT
            error = UpstreamTransientError(
                message=f"Timed out after {self._timeout}s",
                source_name=self.name,
                original_error=e,
            )
        except (KeyError, TypeError, ValueError) as e:
            status = FetchStatus.PERMANENT
            error = UpstreamPermanentError(
                message=f"Malformed response: {e}",
                source_name=self.name,
                original_error=e,
            )
        except MarketDataError as e:
            status, error = FetchStatus.TRANSIENT, e
        except Exception as e:
            logger.exception(f"[{self.name}] Unexpected error in {operation}")
            status = FetchStatus.TRANSIENT
            error = UpstreamTransientError(
                message=f"Unexpected error: {e}",
                source_name=self.name,
                original_error=e,
            )
        
        latency_ms = (time.time() - start_time) * 1000
        
        if error is not None:
            self._on_error(operation, params, error)
            return FetchResult(self.name, status, error=error, latency_ms=latency_ms)
        
        self._on_success(latency_ms)
        if status == FetchStatus.NOT_FOUND or data is None or data == []:
            return FetchResult(self.name, FetchStatus.NOT_FOUND, data=data, latency_ms=latency_ms)
        return FetchResult(self.name, FetchStatus.OK, data=data, latency_ms=latency_ms)
    
    # ─────────────────────────────────────────────────────────────
    # HTTP
    # ─────────────────────────────────────────────────────────────
    
    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers=self._get_default_headers(),
            )
            self._owns_session = True
        return self._session
    
    def _get_default_headers(self) -> dict[str, str]:
        """Get default HTTP headers."""
        return {
            "Accept": "application/json",
            "User-Agent": "MarketDataAggregator/1.0",
        }
    
    async def _make_request(
        self,
        method: str,
        url: str,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        """
        Make HTTP request with typed error mapping.
        
        Raises:
            RateLimitError: HTTP 429
            UpstreamTransientError: HTTP 5xx, connection failure, timeout
            FetchError: other HTTP 4xx
            UpstreamPermanentError: body is not JSON
        """
        session = await self._get_session()
        
        start_time = time.time()
        try:
            async with session.request(
                method,
                url,
                params=params,
                headers=headers,
            ) as response:
                latency_ms = (time.time() - start_time) * 1000
                
                if response.status == 429:
                    retry_after = response.headers.get("Retry-After")
                    raise RateLimitError(
                        message="Rate limit exceeded",
                        source_name=self.name,
                        retry_after_seconds=int(retry_after) if retry_after and retry_after.isdigit() else None,
                        request_url=url,
                    )
                
                if response.status >= 500:
                    body = await response.text()
                    raise UpstreamTransientError(
                        message=f"HTTP {response.status}",
                        source_name=self.name,
                        status_code=response.status,
                        response_body=body[:1000],
                        request_url=url,
                        context={"params": params},
                    )
                
                if response.status >= 400:
                    body = await response.text()
                    raise FetchError(
                        message=f"HTTP {response.status}",
                        source_name=self.name,
                        status_code=response.status,
                        response_body=body[:1000],
                        request_url=url,
                        context={"params": params},
                    )
                
                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    raise UpstreamPermanentError(
                        message="Response is not valid JSON",
                        source_name=self.name,
                        original_error=e,
                        context={"url": url},
                    )
                logger.debug(f"[{self.name}] Request completed in {latency_ms:.1f}ms")
                return data
                
        except asyncio.TimeoutError as e:
            raise UpstreamTransientError(
                message=f"Timed out after {self._timeout}s",
                source_name=self.name,
                request_url=url,
                original_error=e,
            )
        except aiohttp.ClientError as e:
            raise UpstreamTransientError(
                message=f"Connection error: {e}",
                source_name=self.name,
                request_url=url,
                original_error=e,
            )
    
    # ─────────────────────────────────────────────────────────────
    # Health
    # ─────────────────────────────────────────────────────────────
    
    def _on_success(self, latency_ms: Optional[float] = None) -> None:
        """Handle successful request."""
        self._health.request_count += 1
        self._health.success_count += 1
        self._health.latency_ms = latency_ms
        self._health.consecutive_failures = 0
        
        if self._health.status != ProviderStatus.HEALTHY:
            if self._health.status != ProviderStatus.UNKNOWN:
                logger.info(f"[{self.name}] Recovered to HEALTHY status")
            self._health.status = ProviderStatus.HEALTHY
    
    def _on_error(
        self,
        operation: str,
        params: dict[str, Any],
        error: Exception,
    ) -> None:
        """Handle request error."""
        self._health.request_count += 1
        self._health.error_count += 1
        self._health.consecutive_failures += 1
        self._health.last_error = str(error)
        self._health.last_error_time = datetime.utcnow()
        
        if isinstance(error, (RateLimitError, ProviderExhaustedError)):
            self._health.status = ProviderStatus.RATE_LIMITED
        elif self._health.consecutive_failures >= self.UNAVAILABLE_THRESHOLD:
            if self._health.status != ProviderStatus.UNAVAILABLE:
                self._health.status = ProviderStatus.UNAVAILABLE
                logger.error(
                    f"[{self.name}] Marked UNAVAILABLE after "
                    f"{self._health.consecutive_failures} failures"
                )
        elif self._health.consecutive_failures >= self.DEGRADED_THRESHOLD:
            if self._health.status != ProviderStatus.DEGRADED:
                self._health.status = ProviderStatus.DEGRADED
                logger.warning(
                    f"[{self.name}] Marked DEGRADED after "
                    f"{self._health.consecutive_failures} failures"
                )
        
        status_code = getattr(error, "status_code", None)
        if isinstance(error, ProviderExhaustedError):
            logger.error(f"[{self.name}] PROVIDER_EXHAUSTED during {operation} params={params}")
        else:
            logger.warning(
                f"[{self.name}] {operation} failed params={params} "
                f"status={status_code}: {error}"
            )
    
    async def health_check(self) -> ProviderHealth:
        """Ping the provider's health endpoint."""
        self._health.last_check = datetime.utcnow()
        if self.HEALTH_URL is None:
            return self._health
        
        start_time = time.time()
        try:
            await self._make_request("GET", self.HEALTH_URL)
            self._on_success((time.time() - start_time) * 1000)
        except MarketDataError as e:
            self._on_error("health_check", {}, e)
        return self._health
    
    def get_health(self) -> ProviderHealth:
        """Get current health status."""
        return self._health
    
    async def close(self) -> None:
        """Close resources."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
    
    async def __aenter__(self) -> "BaseMarketProvider":
        """Async context manager entry."""
        return self
    
    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()
    
    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name={self.name}, status={self._health.status.value})>"
