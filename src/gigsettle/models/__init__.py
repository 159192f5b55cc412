"""Core data models for gigsettle."""

from gigsettle.models.distribution import (
    DistributionPlan,
    MemberPayout,
    PayoutMethod,
    PayoutStatus,
    PlanEntry,
    PlanEntryInput,
)
from gigsettle.models.obligation import IntentHandle, Obligation, PaymentReference, Rail
from gigsettle.models.settlement import (
    AmountCheck,
    RailStatus,
    RailVerification,
    RecordResult,
    RefundRecord,
    RefundResult,
    RejectionReason,
    SettlementOutcome,
    SettlementState,
)

__all__ = [
    "AmountCheck",
    "DistributionPlan",
    "IntentHandle",
    "MemberPayout",
    "Obligation",
    "PaymentReference",
    "PayoutMethod",
    "PayoutStatus",
    "PlanEntry",
    "PlanEntryInput",
    "Rail",
    "RailStatus",
    "RailVerification",
    "RecordResult",
    "RefundRecord",
    "RefundResult",
    "RejectionReason",
    "SettlementOutcome",
    "SettlementState",
]
