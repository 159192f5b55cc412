"""Payment rails — one adapter per external settlement mechanism."""

from gigsettle.rails.card import CardRailAdapter
from gigsettle.rails.credit import CreditRailAdapter
from gigsettle.rails.onchain import OnchainRailAdapter
from gigsettle.rails.payment_rail import RailAdapter, RailCapability, RailRegistry
from gigsettle.rails.wallet import WalletRailAdapter

__all__ = [
    "CardRailAdapter",
    "CreditRailAdapter",
    "OnchainRailAdapter",
    "RailAdapter",
    "RailCapability",
    "RailRegistry",
    "WalletRailAdapter",
]
