"""
Token Enrichment - Best-effort metadata backfill for aggregated tokens.

A token needs enrichment when its rank or circulating supply is missing,
or its price is missing or zero. Matching tokens are looked up on the
metadata provider and the empty fields are filled in. Every lookup is
bounded by a timeout and failures are logged and dropped: enrichment never
fails the request it decorates.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Optional, Protocol, Sequence

from market_data.exceptions import ConfigurationError
from market_data.models import CEX_CHAIN_ID, NormalizedToken


logger = logging.getLogger(__name__)


class MetadataSource(Protocol):
    """Anything that can look up coin metadata by contract."""
    
    async def get_token_metadata(self, chain_id: int, address: str) -> Optional[Any]:
        ...


@dataclass(frozen=True)
class EnrichmentPolicy:
    """
    Which tokens are re-enriched.
    
    addresses: (chain_id, lower-cased address) pairs to watch; empty means
        every token is eligible
    max_per_request: cap on metadata lookups per response
    """
    addresses: frozenset = frozenset()
    max_per_request: int = 3
    
    @classmethod
    def from_string(cls, value: str, max_per_request: int = 3) -> "EnrichmentPolicy":
        """
        Parse "chainId:address,chainId:address".
        
        Raises:
            ConfigurationError: malformed entry
        """
        addresses = set()
        for entry in (value or "").split(","):
            entry = entry.strip()
            if not entry:
                continue
            chain, sep, address = entry.partition(":")
            if not sep or not chain.strip().isdigit() or not address.strip():
                raise ConfigurationError(
                    f"Invalid enrichment address entry: {entry!r}",
                    config_key="ENRICHMENT_ADDRESSES",
                )
            addresses.add((int(chain), address.strip().lower()))
        return cls(addresses=frozenset(addresses), max_per_request=max_per_request)
    
    def needs_enrichment(self, token: NormalizedToken) -> bool:
        if token.chain_id == CEX_CHAIN_ID:
            return False
        if self.addresses and token.key not in self.addresses:
            return False
        return (
            token.market_cap_rank is None
            or token.circulating_supply is None
            or not token.price_usd
        )


class TokenEnricher:
    """Applies an EnrichmentPolicy using a metadata source."""
    
    def __init__(
        self,
        source: MetadataSource,
        policy: Optional[EnrichmentPolicy] = None,
        timeout: float = 5.0,
        source_name: str = "coingecko",
    ) -> None:
        self._source = source
        self._policy = policy or EnrichmentPolicy()
        self._timeout = timeout
        self._source_name = source_name
        self._enriched_count = 0
        self._failed_count = 0
    
    @property
    def policy(self) -> EnrichmentPolicy:
        return self._policy
    
    async def enrich(self, tokens: Sequence[NormalizedToken]) -> list[NormalizedToken]:
        """Return tokens with eligible entries replaced by enriched copies."""
        result = list(tokens)
        if self._policy.max_per_request <= 0:
            return result
        
        candidates = [
            i for i, token in enumerate(result) if self._policy.needs_enrichment(token)
        ][: self._policy.max_per_request]
        if not candidates:
            return result
        
        outcomes = await asyncio.gather(
            *(self._enrich_one(result[i]) for i in candidates),
            return_exceptions=True,
        )
        for i, outcome in zip(candidates, outcomes):
            token = result[i]
            if isinstance(outcome, BaseException):
                self._failed_count += 1
                logger.warning(
                    f"Enrichment failed for {token.symbol} "
                    f"({token.chain_id}:{token.address}): {outcome}"
                )
            elif outcome is not None:
                result[i] = outcome
        return result
    
    async def _enrich_one(self, token: NormalizedToken) -> Optional[NormalizedToken]:
        metadata = await asyncio.wait_for(
            self._source.get_token_metadata(token.chain_id, token.address),
            timeout=self._timeout,
        )
        if metadata is None:
            return None
        
        updates: dict[str, Any] = {}
        if token.market_cap_rank is None and metadata.market_cap_rank is not None:
            updates["market_cap_rank"] = metadata.market_cap_rank
        if token.circulating_supply is None and metadata.circulating_supply is not None:
            updates["circulating_supply"] = metadata.circulating_supply
        if not token.price_usd and metadata.price_usd:
            updates["price_usd"] = metadata.price_usd
        if token.market_cap is None and metadata.market_cap is not None:
            updates["market_cap"] = metadata.market_cap
        if not updates:
            return None
        
        updates["providers"] = token.providers | {self._source_name}
        self._enriched_count += 1
        logger.info(
            f"Enriched {token.symbol} ({token.chain_id}:{token.address}) "
            f"with {sorted(k for k in updates if k != 'providers')}"
        )
        return replace(token, **updates)
    
    def get_stats(self) -> dict[str, Any]:
        return {
            "enriched": self._enriched_count,
            "failed": self._failed_count,
            "watched_addresses": len(self._policy.addresses),
            "max_per_request": self._policy.max_per_request,
        }
