"""
Provider Registry Tests.
"""

import pytest

from market_data.models import Capability, ProviderStatus
from market_data.registry import ProviderRegistry


class TestProviderRegistry:
    """Tests for ProviderRegistry."""
    
    def test_priority_order(self, provider_factory):
        """Test providers are listed by ascending priority."""
        registry = ProviderRegistry()
        registry.register(provider_factory(name="late"), priority=50)
        registry.register(provider_factory(name="early"), priority=10)
        registry.register(provider_factory(name="middle"), priority=30)
        
        assert registry.list_providers() == ["early", "middle", "late"]
    
    def test_default_priority_appends(self, provider_factory):
        """Test registration without priority goes last."""
        registry = ProviderRegistry()
        registry.register(provider_factory(name="a"), priority=20)
        registry.register(provider_factory(name="b"))
        
        assert registry.list_providers() == ["a", "b"]
    
    def test_replace_same_name(self, provider_factory):
        """Test re-registering a name replaces the provider."""
        registry = ProviderRegistry()
        first = provider_factory(name="x")
        second = provider_factory(name="x")
        registry.register(first)
        registry.register(second)
        
        assert len(registry) == 1
        assert registry.get("x") is second
    
    def test_capable_filters_capability_and_chain(self, provider_factory):
        """Test capable() honors both capability and chain support."""
        registry = ProviderRegistry()
        registry.register(provider_factory(name="evm", chains=(1, 56)))
        registry.register(provider_factory(name="sol", chains=(7565164,)))
        registry.register(provider_factory(
            name="pairs",
            capabilities=frozenset({Capability.PAIR}),
            chains=(0,),
        ))
        
        assert [p.name for p in registry.capable(Capability.CATEGORY, 56)] == ["evm"]
        assert [p.name for p in registry.capable(Capability.CATEGORY)] == ["evm", "sol"]
        assert [p.name for p in registry.capable(Capability.PAIR)] == ["pairs"]
    
    def test_unregister(self, provider_factory):
        """Test unregister removes and returns the provider."""
        registry = ProviderRegistry()
        provider = provider_factory(name="x")
        registry.register(provider)
        
        assert registry.unregister("x") is provider
        assert "x" not in registry
        assert registry.unregister("x") is None
    
    @pytest.mark.asyncio
    async def test_check_health_without_endpoint(self, provider_factory):
        """Test providers without a health URL report their tracked state."""
        registry = ProviderRegistry()
        registry.register(provider_factory(name="x"))
        
        health = await registry.check_health()
        
        assert health["x"].status == ProviderStatus.UNKNOWN
    
    def test_stats(self, provider_factory):
        """Test stats list capabilities per provider."""
        registry = ProviderRegistry()
        registry.register(provider_factory(name="x"), priority=5)
        
        stats = registry.get_stats()
        
        assert stats["providers"][0]["priority"] == 5
        assert stats["providers"][0]["capabilities"] == ["category", "symbol_or_address"]
