"""Provider adapters, one module per upstream service."""

from market_data.providers.binance import BinanceTicker, BinanceTickerProvider
from market_data.providers.coingecko import CoinGeckoProvider, CoinMetadata, parse_pool_document
from market_data.providers.dexscreener import DexPair, DexScreenerProvider, looks_like_address
from market_data.providers.dydx import DydxMarket, DydxPerpsProvider
from market_data.providers.moralis import MoralisProvider, MoralisTokenPrice


__all__ = [
    "BinanceTicker",
    "BinanceTickerProvider",
    "CoinGeckoProvider",
    "CoinMetadata",
    "parse_pool_document",
    "DexPair",
    "DexScreenerProvider",
    "looks_like_address",
    "DydxMarket",
    "DydxPerpsProvider",
    "MoralisProvider",
    "MoralisTokenPrice",
]
