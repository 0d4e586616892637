"""
Aggregation Configuration.

============================================================
SOURCES
============================================================
Values come from environment variables; a .env file in the working
directory is loaded first if present.

    ADAPTER_TIMEOUT_SECONDS       per-adapter timeout (default 8)
    TIER_TIMEOUT_SECONDS          per cascade tier timeout (default 15)
    PAIR_PRICE_TTL_SECONDS        pair price cache (default 15)
    LISTING_TTL_SECONDS           token listing cache (default 30)
    PAIR_LISTING_TTL_SECONDS      pool listing cache (default 30)
    METADATA_TTL_SECONDS          coin metadata cache (default 600)
    DEFAULT_CHAIN_IDS             comma list used when no chain is given
    DEFAULT_PAIR_CHAIN_ID         chain for on-chain pair lookups (default 56)
    DEFAULT_MARKET_LIST_LIMIT     markets per unified list (default 500, max 1000)
    MORALIS_API_KEY_1..N          on-chain indexer key pool
    KEY_RECOVERY_SECONDS          exhausted key cooldown (unset = never)
    COINGECKO_API_KEY             optional demo key
    ENRICHMENT_ENABLED            true/false (default true)
    ENRICHMENT_ADDRESSES          "chainId:address,..." (empty = any token)
    ENRICHMENT_MAX_PER_REQUEST    enrichment lookups per response (default 3)
    LOG_LEVEL / LOG_FORMAT        logging (INFO / text)
============================================================
"""

import json
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv


load_dotenv()


DEFAULT_CHAIN_IDS = [1, 56, 137, 42161, 10, 8453, 43114, 7565164]


def _float_or_none(value: Optional[str]) -> Optional[float]:
    if value is None or value.strip() == "":
        return None
    return float(value)


def _int_list(value: Optional[str], default: List[int]) -> List[int]:
    if not value or not value.strip():
        return list(default)
    return [int(part) for part in value.split(",") if part.strip()]


@dataclass
class AggregatorConfig:
    """Runtime configuration for the aggregation service."""
    
    # Timeouts
    adapter_timeout_seconds: float = 8.0
    """Upper bound on any single adapter call."""
    
    tier_timeout_seconds: float = 15.0
    """Upper bound on one pair-price cascade tier (may span several calls)."""
    
    # Cache TTLs
    pair_price_ttl_seconds: float = 15.0
    listing_ttl_seconds: float = 30.0
    pair_listing_ttl_seconds: float = 30.0
    metadata_ttl_seconds: float = 600.0
    cache_max_entries: int = 2000
    
    # Chains
    default_chain_ids: List[int] = field(default_factory=lambda: list(DEFAULT_CHAIN_IDS))
    """Chains queried when a listing request names none."""
    
    default_pair_chain_id: int = 56
    """Chain used by the on-chain tier when a pair request names none."""
    
    # Limits
    default_token_limit: int = 30
    default_pair_limit: int = 20
    max_limit: int = 100
    default_market_list_limit: int = 500
    max_market_list_limit: int = 1000
    
    # Credentials
    moralis_key_prefix: str = "MORALIS_API_KEY"
    key_recovery_seconds: Optional[float] = None
    """Cooldown before an exhausted key is retried; None keeps it out until reset."""
    
    coingecko_api_key: Optional[str] = None
    
    # Enrichment
    enrichment_enabled: bool = True
    enrichment_addresses: str = ""
    enrichment_max_per_request: int = 3
    
    # Logging
    log_level: str = "INFO"
    log_format: str = "text"
    
    @classmethod
    def from_env(cls) -> "AggregatorConfig":
        """Load configuration from environment variables."""
        return cls(
            adapter_timeout_seconds=float(os.getenv("ADAPTER_TIMEOUT_SECONDS", "8")),
            tier_timeout_seconds=float(os.getenv("TIER_TIMEOUT_SECONDS", "15")),
            pair_price_ttl_seconds=float(os.getenv("PAIR_PRICE_TTL_SECONDS", "15")),
            listing_ttl_seconds=float(os.getenv("LISTING_TTL_SECONDS", "30")),
            pair_listing_ttl_seconds=float(os.getenv("PAIR_LISTING_TTL_SECONDS", "30")),
            metadata_ttl_seconds=float(os.getenv("METADATA_TTL_SECONDS", "600")),
            cache_max_entries=int(os.getenv("CACHE_MAX_ENTRIES", "2000")),
            default_chain_ids=_int_list(os.getenv("DEFAULT_CHAIN_IDS"), DEFAULT_CHAIN_IDS),
            default_pair_chain_id=int(os.getenv("DEFAULT_PAIR_CHAIN_ID", "56")),
            default_token_limit=int(os.getenv("DEFAULT_TOKEN_LIMIT", "30")),
            default_pair_limit=int(os.getenv("DEFAULT_PAIR_LIMIT", "20")),
            max_limit=int(os.getenv("MAX_LIMIT", "100")),
            default_market_list_limit=int(os.getenv("DEFAULT_MARKET_LIST_LIMIT", "500")),
            max_market_list_limit=int(os.getenv("MAX_MARKET_LIST_LIMIT", "1000")),
            moralis_key_prefix=os.getenv("MORALIS_KEY_PREFIX", "MORALIS_API_KEY"),
            key_recovery_seconds=_float_or_none(os.getenv("KEY_RECOVERY_SECONDS")),
            coingecko_api_key=os.getenv("COINGECKO_API_KEY") or None,
            enrichment_enabled=os.getenv("ENRICHMENT_ENABLED", "true").lower() == "true",
            enrichment_addresses=os.getenv("ENRICHMENT_ADDRESSES", ""),
            enrichment_max_per_request=int(os.getenv("ENRICHMENT_MAX_PER_REQUEST", "3")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )
    
    def validate(self) -> List[str]:
        """Validate configuration, return list of errors."""
        errors = []
        
        if self.adapter_timeout_seconds <= 0:
            errors.append("adapter_timeout_seconds must be positive")
        
        if self.tier_timeout_seconds <= 0:
            errors.append("tier_timeout_seconds must be positive")
        
        for name in (
            "pair_price_ttl_seconds",
            "listing_ttl_seconds",
            "pair_listing_ttl_seconds",
            "metadata_ttl_seconds",
        ):
            if getattr(self, name) < 0:
                errors.append(f"{name} cannot be negative")
        
        if not self.default_chain_ids:
            errors.append("default_chain_ids cannot be empty")
        
        if not 1 <= self.default_token_limit <= self.max_limit:
            errors.append("default_token_limit must be between 1 and max_limit")
        
        if not 1 <= self.default_pair_limit <= self.max_limit:
            errors.append("default_pair_limit must be between 1 and max_limit")
        
        if not 1 <= self.default_market_list_limit <= self.max_market_list_limit:
            errors.append("default_market_list_limit must be between 1 and max_market_list_limit")
        
        if self.key_recovery_seconds is not None and self.key_recovery_seconds <= 0:
            errors.append("key_recovery_seconds must be positive when set")
        
        if self.enrichment_max_per_request < 0:
            errors.append("enrichment_max_per_request cannot be negative")
        
        if self.log_format not in ("json", "text"):
            errors.append("log_format must be 'json' or 'text'")
        
        return errors


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
) -> logging.Logger:
    """
    Set up process-wide logging.
    
    Args:
        level: Log level
        log_format: Output format (json or text)
        
    Returns:
        Configured logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    
    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
            })
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        )
    
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]
    
    return logging.getLogger("aggregation")
