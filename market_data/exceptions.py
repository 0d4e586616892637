"""
Market Data Exceptions - Custom exception hierarchy for the aggregation engine.

Adapters translate every upstream failure into one of these types so the
orchestrator can decide between swallowing (listings) and escalating
(pair-price cascade) without inspecting provider-specific payloads.
"""

from datetime import datetime
from typing import Any, Optional


class MarketDataError(Exception):
    """Base exception for all market data errors."""
    
    def __init__(
        self,
        message: str,
        source_name: Optional[str] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.source_name = source_name
        self.original_error = original_error
        self.context = context or {}
        self.timestamp = datetime.utcnow()
    
    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "source_name": self.source_name,
            "original_error": str(self.original_error) if self.original_error else None,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }
    
    def __str__(self) -> str:
        parts = [f"{self.__class__.__name__}: {self.message}"]
        if self.source_name:
            parts.append(f"[source={self.source_name}]")
        if self.original_error:
            parts.append(f"(caused by: {self.original_error})")
        return " ".join(parts)


class InvalidInputError(MarketDataError):
    """Malformed request parameter (chain id, limit, page, pair)."""
    
    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        value: Optional[Any] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, context=context)
        self.field_name = field_name
        self.value = value
    
    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update({
            "field_name": self.field_name,
            "value": str(self.value) if self.value is not None else None,
        })
        return data


class NotFoundError(MarketDataError):
    """No provider has data for a single-entity lookup."""
    
    def __init__(
        self,
        message: str,
        attempted_sources: Optional[list[str]] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, context=context)
        self.attempted_sources = attempted_sources or []
    
    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data["attempted_sources"] = self.attempted_sources
        return data


class ConfigurationError(MarketDataError):
    """Invalid configuration error."""
    
    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        source_name: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, source_name, context=context)
        self.config_key = config_key
    
    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data["config_key"] = self.config_key
        return data


class ProviderExhaustedError(MarketDataError):
    """Every credential in a provider's key pool is exhausted."""
    
    def __init__(
        self,
        message: str,
        source_name: Optional[str] = None,
        pool_size: int = 0,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, source_name, context=context)
        self.pool_size = pool_size
    
    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data["pool_size"] = self.pool_size
        return data


class FetchError(MarketDataError):
    """Error during data fetching from provider API."""
    
    def __init__(
        self,
        message: str,
        source_name: Optional[str] = None,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, source_name, original_error, context)
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
    
    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update({
            "status_code": self.status_code,
            "response_body": self.response_body,
            "request_url": self.request_url,
        })
        return data
    
    def is_rate_limited(self) -> bool:
        """Check if error is due to rate limiting."""
        return self.status_code == 429
    
    def is_server_error(self) -> bool:
        """Check if error is server-side."""
        return self.status_code is not None and 500 <= self.status_code < 600
    
    def is_client_error(self) -> bool:
        """Check if error is client-side."""
        return self.status_code is not None and 400 <= self.status_code < 500


class RateLimitError(FetchError):
    """Rate limit or per-key quota exceeded."""
    
    def __init__(
        self,
        message: str,
        source_name: Optional[str] = None,
        status_code: Optional[int] = 429,
        retry_after_seconds: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message,
            source_name,
            status_code=status_code,
            response_body=response_body,
            request_url=request_url,
            original_error=original_error,
            context=context,
        )
        self.retry_after_seconds = retry_after_seconds
    
    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data["retry_after_seconds"] = self.retry_after_seconds
        return data


class UpstreamTransientError(FetchError):
    """Provider timed out, was unreachable, or answered 5xx."""


class UpstreamPermanentError(MarketDataError):
    """Provider answered with a payload we cannot normalize."""
    
    def __init__(
        self,
        message: str,
        source_name: Optional[str] = None,
        raw_data: Optional[Any] = None,
        field_name: Optional[str] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, source_name, original_error, context)
        self.raw_data = raw_data
        self.field_name = field_name
    
    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update({
            "raw_data": str(self.raw_data)[:500] if self.raw_data else None,  # Truncate
            "field_name": self.field_name,
        })
        return data
