"""Error taxonomy for the settlement engine.

Every error carries a machine-readable ``code`` so the service layer can
report a typed reason instead of a bare message.

- ValidationError: malformed obligation or plan, non-matching sums, unknown
  identifiers. Raised before any external call; the caller can fix and retry.
- TransientAdapterError: network, rate-limit, RPC or timeout failures talking
  to a rail or the rate oracle. Never persisted as a negative outcome.
- DuplicateReferenceError / PlanAlreadyExistsError: conditional-write
  conflicts on the two guarded resources.
- InvalidPayoutTransitionError: a member payout left a terminal state.
- VerificationCancelled: the caller's deadline was cancelled mid-wait.

Rejected settlements are not exceptions. They are persisted outcomes with a
reason code (see ``gigsettle.models.settlement.RejectionReason``).
"""

from __future__ import annotations

from typing import Any, Optional


class SettlementError(Exception):
    """Base class for all settlement engine errors."""

    code = "settlement_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": str(self)}
        if self.context:
            data["context"] = {k: str(v) for k, v in self.context.items()}
        return data


class ValidationError(SettlementError, ValueError):
    code = "validation_error"


class NotFoundError(ValidationError):
    code = "not_found"


class TransientAdapterError(SettlementError):
    """Retryable failure talking to an external system."""

    code = "transient"
    retryable = True

    def __init__(
        self,
        message: str,
        retry_after_seconds: Optional[float] = None,
        **context: Any,
    ) -> None:
        super().__init__(message, **context)
        self.retry_after_seconds = retry_after_seconds


class RateOracleUnavailable(TransientAdapterError):
    code = "rate_oracle_unavailable"


class DeadlineExceeded(TransientAdapterError):
    code = "deadline_exceeded"


class VerificationCancelled(SettlementError):
    code = "verification_cancelled"


class DuplicateReferenceError(SettlementError):
    """The same (rail, rail_transaction_id) was already submitted."""

    code = "duplicate_reference"

    def __init__(self, message: str, existing_reference_id: str, **context: Any) -> None:
        super().__init__(message, **context)
        self.existing_reference_id = existing_reference_id


class PlanAlreadyExistsError(SettlementError):
    code = "plan_already_exists"


class InvalidPayoutTransitionError(SettlementError):
    code = "invalid_payout_transition"


class RefundError(ValidationError):
    code = "refund_rejected"


class RailNotConfiguredError(ValidationError):
    code = "rail_not_configured"
