"""
Provider Registry - Ordered set of provider adapters.

The orchestrator never branches on provider names: it asks the registry
for every adapter supporting a capability (optionally on a chain) and
iterates them in priority order.
"""

import asyncio
import logging
from typing import Any, Optional

from market_data.base import BaseMarketProvider
from market_data.models import Capability, ProviderHealth


logger = logging.getLogger(__name__)


class ProviderRegistry:
    """
    Registry of provider adapters in priority order.
    
    Usage:
        registry = ProviderRegistry()
        registry.register(CoinGeckoProvider(), priority=10)
        registry.register(DexScreenerProvider(), priority=20)
        
        for provider in registry.capable(Capability.SYMBOL_OR_ADDRESS, chain_id=56):
            ...
    """
    
    def __init__(self) -> None:
        self._providers: dict[str, BaseMarketProvider] = {}
        self._priorities: dict[str, int] = {}
        self._order: list[str] = []  # Priority order
    
    def register(
        self,
        provider: BaseMarketProvider,
        priority: Optional[int] = None,
    ) -> None:
        """
        Register a provider.
        
        Args:
            provider: Adapter instance
            priority: Lower = earlier; defaults to registration order
        """
        name = provider.name
        
        if name in self._providers:
            logger.warning(f"Provider '{name}' already registered, replacing")
            self._order.remove(name)
        
        if priority is None:
            priority = max(self._priorities.values(), default=0) + 10
        
        self._providers[name] = provider
        self._priorities[name] = priority
        
        # Insert after every provider with priority <= ours
        insert_idx = len(self._order)
        for i, existing_name in enumerate(self._order):
            if priority < self._priorities[existing_name]:
                insert_idx = i
                break
        self._order.insert(insert_idx, name)
        
        logger.info(
            f"Registered provider '{name}' with priority {priority} "
            f"capabilities={sorted(c.value for c in provider.capabilities)}"
        )
    
    def unregister(self, name: str) -> Optional[BaseMarketProvider]:
        """Unregister a provider."""
        provider = self._providers.pop(name, None)
        if provider is not None:
            self._priorities.pop(name, None)
            self._order.remove(name)
            logger.info(f"Unregistered provider '{name}'")
        return provider
    
    def get(self, name: str) -> Optional[BaseMarketProvider]:
        """Get a specific provider by name."""
        return self._providers.get(name)
    
    def list_providers(self) -> list[str]:
        """All provider names in priority order."""
        return self._order.copy()
    
    def all(self) -> list[BaseMarketProvider]:
        return [self._providers[name] for name in self._order]
    
    def capable(
        self,
        capability: Capability,
        chain_id: Optional[int] = None,
    ) -> list[BaseMarketProvider]:
        """Providers supporting a capability (and chain), in priority order."""
        return [
            provider for provider in self.all()
            if provider.supports(capability)
            and (chain_id is None or provider.supports_chain(chain_id))
        ]
    
    def get_all_health(self) -> dict[str, ProviderHealth]:
        """Get health status for all registered providers."""
        return {name: self._providers[name].get_health() for name in self._order}
    
    async def check_health(self) -> dict[str, ProviderHealth]:
        """Run every provider's health check concurrently."""
        providers = self.all()
        results = await asyncio.gather(
            *(provider.health_check() for provider in providers),
            return_exceptions=True,
        )
        health = {}
        for provider, result in zip(providers, results):
            if isinstance(result, Exception):
                logger.error(f"[{provider.name}] Health check raised: {result}")
                health[provider.name] = provider.get_health()
            else:
                health[provider.name] = result
        return health
    
    def get_stats(self) -> dict[str, Any]:
        """Registry summary."""
        return {
            "providers": [
                {
                    "name": name,
                    "priority": self._priorities[name],
                    "capabilities": sorted(c.value for c in self._providers[name].capabilities),
                    "health": self._providers[name].get_health().to_dict(),
                }
                for name in self._order
            ],
        }
    
    async def close_all(self) -> None:
        """Close every provider's HTTP session."""
        for provider in self.all():
            await provider.close()
    
    def __len__(self) -> int:
        return len(self._providers)
    
    def __contains__(self, name: object) -> bool:
        return name in self._providers
