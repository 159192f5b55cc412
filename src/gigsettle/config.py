"""Runtime configuration.

Tunables live in config/settlement_params.json and load into frozen
dataclasses. Secrets and endpoints come from the environment, optionally
seeded from a .env file at the project root.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from gigsettle.errors import ValidationError
from gigsettle.models.obligation import Rail


DEFAULT_CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"
PARAMS_FILENAME = "settlement_params.json"


@dataclass(frozen=True)
class VerificationConfig:
    poll_interval_seconds: float = 5.0
    wait_timeout_seconds: float = 300.0
    adapter_timeout_seconds: float = 15.0


@dataclass(frozen=True)
class OnchainConfig:
    unit: str = "ETH"
    min_confirmations: int = 1
    slippage_band: Decimal = Decimal("0.05")
    horizon_days: int = 14

    def __post_init__(self) -> None:
        if not 0 <= self.min_confirmations <= 64:
            raise ValidationError(
                f"min_confirmations out of range: {self.min_confirmations}",
            )
        if not Decimal("0") <= self.slippage_band < Decimal("1"):
            raise ValidationError(f"slippage_band out of range: {self.slippage_band}")


@dataclass(frozen=True)
class SweeperConfig:
    backoff_base_seconds: float = 30.0
    backoff_cap_seconds: float = 3600.0
    transient_retry_seconds: float = 10.0
    transient_max_attempts: int = 5
    default_horizon_hours: int = 48
    sweep_interval_seconds: float = 30.0
    max_workers: int = 8


@dataclass(frozen=True)
class SettlementConfig:
    """All tunables for one deployment."""

    verification: VerificationConfig = field(default_factory=VerificationConfig)
    onchain: OnchainConfig = field(default_factory=OnchainConfig)
    sweeper: SweeperConfig = field(default_factory=SweeperConfig)
    credit_validity_days: int = 365
    rate_pegs: Dict[str, Decimal] = field(default_factory=lambda: {"USDC/USD": Decimal("1")})

    def horizon_for(self, rail: Rail) -> timedelta:
        """How long a reference may stay unresolved before it expires."""
        if rail == Rail.ONCHAIN:
            return timedelta(days=self.onchain.horizon_days)
        return timedelta(hours=self.sweeper.default_horizon_hours)

    @classmethod
    def from_dict(cls, params: Mapping[str, Any]) -> SettlementConfig:
        ver = params.get("verification", {})
        onc = params.get("onchain", {})
        swp = params.get("sweeper", {})
        return cls(
            verification=VerificationConfig(
                poll_interval_seconds=float(ver.get("poll_interval_seconds", 5)),
                wait_timeout_seconds=float(ver.get("wait_timeout_seconds", 300)),
                adapter_timeout_seconds=float(ver.get("adapter_timeout_seconds", 15)),
            ),
            onchain=OnchainConfig(
                unit=str(onc.get("unit", "ETH")).upper(),
                min_confirmations=int(onc.get("min_confirmations", 1)),
                slippage_band=Decimal(str(onc.get("slippage_band", "0.05"))),
                horizon_days=int(onc.get("horizon_days", 14)),
            ),
            sweeper=SweeperConfig(
                backoff_base_seconds=float(swp.get("backoff_base_seconds", 30)),
                backoff_cap_seconds=float(swp.get("backoff_cap_seconds", 3600)),
                transient_retry_seconds=float(swp.get("transient_retry_seconds", 10)),
                transient_max_attempts=int(swp.get("transient_max_attempts", 5)),
                default_horizon_hours=int(swp.get("default_horizon_hours", 48)),
                sweep_interval_seconds=float(swp.get("sweep_interval_seconds", 30)),
                max_workers=int(swp.get("max_workers", 8)),
            ),
            credit_validity_days=int(params.get("credit", {}).get("default_validity_days", 365)),
            rate_pegs={
                k.upper(): Decimal(str(v))
                for k, v in params.get("rate_pegs", {"USDC/USD": "1"}).items()
            },
        )

    @classmethod
    def from_config_dir(cls, config_dir: Optional[Path] = None) -> SettlementConfig:
        """Load from <config_dir>/settlement_params.json."""
        path = (config_dir or DEFAULT_CONFIG_DIR) / PARAMS_FILENAME
        params = json.loads(path.read_text(encoding="utf-8"))
        return cls.from_dict(params)


@dataclass(frozen=True)
class RailCredentials:
    """Endpoints and secrets for the external rails.

    Missing values leave the corresponding rail unconfigured; the service
    reports rail_not_configured instead of failing at start-up.
    """

    eth_rpc_url: Optional[str] = None
    payee_wallet: Optional[str] = None
    stripe_secret_key: Optional[str] = None
    paypal_client_id: Optional[str] = None
    paypal_client_secret: Optional[str] = None
    paypal_base_url: str = "https://api-m.sandbox.paypal.com"
    rate_oracle_url: str = "https://api.coingecko.com/api/v3"

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> RailCredentials:
        """Read credentials from the environment (after loading env_file)."""
        if env_file is not None:
            load_dotenv(env_file)
        env = environ if environ is not None else os.environ
        return cls(
            eth_rpc_url=env.get("ETH_RPC_URL") or None,
            payee_wallet=env.get("PLATFORM_WALLET_ADDRESS") or None,
            stripe_secret_key=env.get("STRIPE_SECRET_KEY") or None,
            paypal_client_id=env.get("PAYPAL_CLIENT_ID") or None,
            paypal_client_secret=env.get("PAYPAL_CLIENT_SECRET") or None,
            paypal_base_url=env.get("PAYPAL_BASE_URL") or cls.paypal_base_url,
            rate_oracle_url=env.get("RATE_ORACLE_URL") or cls.rate_oracle_url,
        )
