"""Exchange-rate oracles for converting rail units to obligation currencies."""

from gigsettle.oracle.rates import CoinGeckoRateOracle, FixedRateOracle, RateOracle

__all__ = ["CoinGeckoRateOracle", "FixedRateOracle", "RateOracle"]
