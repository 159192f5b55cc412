"""Exchange rates for converting volatile rail units into obligation currency.

get_rate(from_unit, to_unit) answers "how many to_unit is one from_unit".
An unreachable or confused oracle raises RateOracleUnavailable, which is
transient: there is no stale or hard-coded fallback price.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, Mapping, Optional, Protocol

import httpx

from gigsettle.errors import RateOracleUnavailable

logger = logging.getLogger(__name__)

# CoinGecko coin ids for the units the onchain rail can settle in.
COINGECKO_IDS: Dict[str, str] = {
    "ETH": "ethereum",
    "USDC": "usd-coin",
    "BTC": "bitcoin",
}


class RateOracle(Protocol):
    def get_rate(self, from_unit: str, to_unit: str, timeout: float = 10.0) -> Decimal:
        ...


class FixedRateOracle:
    """Configured pegs only. Inverse pairs are derived; A/A is always 1."""

    def __init__(self, pegs: Optional[Mapping[str, Decimal]] = None) -> None:
        self._pegs = {k.upper(): Decimal(v) for k, v in (pegs or {}).items()}

    def lookup(self, from_unit: str, to_unit: str) -> Optional[Decimal]:
        src, dst = from_unit.upper(), to_unit.upper()
        if src == dst:
            return Decimal("1")
        direct = self._pegs.get(f"{src}/{dst}")
        if direct is not None:
            return direct
        inverse = self._pegs.get(f"{dst}/{src}")
        if inverse is not None and inverse != 0:
            return Decimal("1") / inverse
        return None

    def get_rate(self, from_unit: str, to_unit: str, timeout: float = 10.0) -> Decimal:
        rate = self.lookup(from_unit, to_unit)
        if rate is None:
            raise RateOracleUnavailable(f"No peg for {from_unit}/{to_unit}")
        return rate


class CoinGeckoRateOracle:
    """Spot rates from the CoinGecko simple-price endpoint.

    Configured pegs are consulted first, so stablecoin pairs never hit the
    network.

    Usage:
        oracle = CoinGeckoRateOracle("https://api.coingecko.com/api/v3")
        oracle.get_rate("ETH", "USD")   # Decimal('2000.12')
    """

    def __init__(
        self,
        base_url: str,
        http: Optional[httpx.Client] = None,
        pegs: Optional[Mapping[str, Decimal]] = None,
        coin_ids: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._http = http or httpx.Client()
        self._fixed = FixedRateOracle(pegs)
        self._coin_ids = {k.upper(): v for k, v in (coin_ids or COINGECKO_IDS).items()}

    def get_rate(self, from_unit: str, to_unit: str, timeout: float = 10.0) -> Decimal:
        pegged = self._fixed.lookup(from_unit, to_unit)
        if pegged is not None:
            return pegged

        coin = self._coin_ids.get(from_unit.upper())
        if coin is None:
            raise RateOracleUnavailable(f"Unsupported unit for rate lookup: {from_unit}")
        vs = to_unit.lower()
        try:
            response = self._http.get(
                f"{self._base_url}/simple/price",
                params={"ids": coin, "vs_currencies": vs},
                timeout=timeout,
            )
            response.raise_for_status()
            body = response.json(parse_float=Decimal)
        except httpx.HTTPError as e:
            logger.info("Rate oracle request failed for %s/%s: %s", from_unit, to_unit, e)
            raise RateOracleUnavailable(f"Rate oracle unreachable: {e}") from e
        except ValueError as e:
            raise RateOracleUnavailable("Rate oracle returned malformed JSON") from e

        try:
            rate = Decimal(str(body[coin][vs]))
        except (KeyError, TypeError, InvalidOperation) as e:
            raise RateOracleUnavailable(f"Rate oracle has no {from_unit}/{to_unit} price") from e
        if rate <= 0:
            raise RateOracleUnavailable(f"Rate oracle returned non-positive rate {rate}")
        return rate
