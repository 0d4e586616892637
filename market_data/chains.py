"""
Chain Registry - Canonical chain table and provider id translation.

Every provider numbers chains its own way (numeric ids, slugs, large
sentinel integers for non-EVM chains). The registry maps the platform's
canonical integer id to each provider's identifier and back. Pure lookup,
no I/O.
"""

from typing import Any, Iterable, Iterator, Optional

from market_data.exceptions import ConfigurationError, InvalidInputError
from market_data.models import CEX_CHAIN_ID, CanonicalChain, ChainType


# Provider names used as provider_ids keys
DEXSCREENER = "dexscreener"
MORALIS = "moralis"
COINGECKO = "coingecko"
GECKOTERMINAL = "geckoterminal"
LIFI = "lifi"
RELAY = "relay"

# Lookup order for `chains=` and `network=` values that are not canonical ids
PARAM_PROVIDER_ORDER = (DEXSCREENER, MORALIS, GECKOTERMINAL, COINGECKO, LIFI, RELAY)


def _evm(
    chain_id: int,
    name: str,
    native: str,
    dexscreener: str,
    moralis: Optional[str],
    coingecko: str,
    geckoterminal: str,
) -> CanonicalChain:
    provider_ids: dict[str, Any] = {
        DEXSCREENER: dexscreener,
        COINGECKO: coingecko,
        GECKOTERMINAL: geckoterminal,
        LIFI: chain_id,
        RELAY: chain_id,
    }
    if moralis:
        provider_ids[MORALIS] = moralis
    return CanonicalChain(
        id=chain_id,
        name=name,
        type=ChainType.EVM,
        native_currency_symbol=native,
        native_decimals=18,
        provider_ids=provider_ids,
    )


DEFAULT_CHAINS: tuple[CanonicalChain, ...] = (
    _evm(1, "Ethereum", "ETH", "ethereum", "eth", "ethereum", "eth"),
    _evm(56, "BNB Chain", "BNB", "bsc", "bsc", "binance-smart-chain", "bsc"),
    _evm(137, "Polygon", "MATIC", "polygon", "polygon", "polygon-pos", "polygon_pos"),
    _evm(42161, "Arbitrum", "ETH", "arbitrum", "arbitrum", "arbitrum-one", "arbitrum"),
    _evm(10, "Optimism", "ETH", "optimism", "optimism", "optimistic-ethereum", "optimism"),
    _evm(8453, "Base", "ETH", "base", "base", "base", "base"),
    _evm(43114, "Avalanche", "AVAX", "avalanche", "avalanche", "avalanche", "avax"),
    CanonicalChain(
        id=7565164,
        name="Solana",
        type=ChainType.SOLANA,
        native_currency_symbol="SOL",
        native_decimals=9,
        provider_ids={
            DEXSCREENER: "solana",
            COINGECKO: "solana",
            GECKOTERMINAL: "solana",
            LIFI: 1151111081099710,
            RELAY: 792703809,
        },
    ),
    CanonicalChain(
        id=CEX_CHAIN_ID,
        name="Centralized Exchange",
        type=ChainType.OTHER,
        native_currency_symbol="USDT",
        native_decimals=6,
        provider_ids={},
    ),
)


class ChainRegistry:
    """
    Immutable-after-construction chain table.
    
    Example:
        chains = ChainRegistry.default()
        bsc = chains.resolve(56)
        chains.resolve_by_provider_id("dexscreener", "bsc")  # -> bsc
    """
    
    def __init__(self, chains: Iterable[CanonicalChain] = ()) -> None:
        self._chains: dict[int, CanonicalChain] = {}
        # (provider, str(provider_id)) -> canonical id
        self._reverse: dict[tuple[str, str], int] = {}
        for chain in chains:
            self._add(chain)
    
    @classmethod
    def default(cls) -> "ChainRegistry":
        """Registry built from the built-in chain table."""
        return cls(DEFAULT_CHAINS)
    
    def _add(self, chain: CanonicalChain) -> None:
        if chain.id in self._chains:
            raise ConfigurationError(
                f"Duplicate canonical chain id {chain.id}",
                config_key="chains",
            )
        self._chains[chain.id] = chain
        for provider, provider_id in chain.provider_ids.items():
            self._reverse.setdefault((provider, str(provider_id)), chain.id)
    
    def resolve(self, canonical_id: int) -> Optional[CanonicalChain]:
        """Chain for a canonical id, or None."""
        return self._chains.get(canonical_id)
    
    def resolve_by_provider_id(
        self,
        provider: str,
        provider_id: Any,
    ) -> Optional[CanonicalChain]:
        """Chain for a provider-specific id. Ids are compared as strings."""
        canonical_id = self._reverse.get((provider, str(provider_id)))
        if canonical_id is None:
            return None
        return self._chains[canonical_id]
    
    def provider_id(self, canonical_id: int, provider: str) -> Optional[Any]:
        """Provider-specific id for a canonical chain, or None if unsupported."""
        chain = self.resolve(canonical_id)
        return chain.provider_id(provider) if chain else None
    
    def supports(self, canonical_id: int, provider: str) -> bool:
        return self.provider_id(canonical_id, provider) is not None
    
    def resolve_chain_param(self, value: str) -> Optional[CanonicalChain]:
        """
        Resolve an HTTP `chains=` token.
        
        Accepts a canonical numeric id or any provider's identifier
        ("56", "bsc", "binance-smart-chain", "polygon_pos"). Providers are
        tried in PARAM_PROVIDER_ORDER.
        """
        token = value.strip().lower()
        if not token:
            return None
        if token.isdigit() and int(token) in self._chains:
            return self.resolve(int(token))
        for provider in PARAM_PROVIDER_ORDER:
            chain = self.resolve_by_provider_id(provider, token)
            if chain is not None:
                return chain
        return None
    
    def parse_chain_list(self, raw: Optional[str]) -> list[int]:
        """
        Parse a comma-separated chain list into canonical ids.
        
        Raises:
            InvalidInputError: if values were supplied but none resolved
        """
        if not raw or not raw.strip():
            return []
        resolved: list[int] = []
        for part in raw.split(","):
            chain = self.resolve_chain_param(part)
            if chain is not None and chain.id not in resolved:
                resolved.append(chain.id)
        if not resolved:
            raise InvalidInputError(
                f"Invalid chain identifier(s): {raw}",
                field_name="chains",
                value=raw,
            )
        return resolved
    
    def chain_badge(self, canonical_id: int) -> Optional[str]:
        chain = self.resolve(canonical_id)
        return chain.badge if chain else None
    
    def all(self) -> list[CanonicalChain]:
        """All registered chains in registration order."""
        return list(self._chains.values())
    
    def __iter__(self) -> Iterator[CanonicalChain]:
        return iter(self._chains.values())
    
    def __len__(self) -> int:
        return len(self._chains)
    
    def __contains__(self, canonical_id: object) -> bool:
        return canonical_id in self._chains
