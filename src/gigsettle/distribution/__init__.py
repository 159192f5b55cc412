"""Distribution subsystem — plans, member payouts, fee splits."""

from gigsettle.distribution.allocator import DistributionAllocator
from gigsettle.distribution.split import SplitResult, split_settlement

__all__ = ["DistributionAllocator", "SplitResult", "split_settlement"]
