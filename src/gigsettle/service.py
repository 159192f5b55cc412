"""Settlement service — the caller-facing facade.

Orchestrates the subsystems for one deployment:
- Obligation registration
- Payment intents per rail
- Payment submission (duplicate guard, verification, idempotent record)
- Settlement lookup
- Distribution plans and member payouts
- Refunds
- Internally issued credit
- Reconciliation sweeps

Every operation returns a ServiceResult. Domain errors become
``success=False`` with the error's code in ``data["code"]``; nothing
raises out of the facade except programming errors. A submission always
ends in a terminal outcome or an explicit pending state with a retry hint.

Audit events are appended after the store commit. A failed audit write
never rolls back a committed settlement; it degrades to a warning.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence, Union
from uuid import uuid4

from gigsettle import __version__
from gigsettle.config import RailCredentials, SettlementConfig
from gigsettle.distribution.allocator import DistributionAllocator
from gigsettle.distribution.split import split_settlement
from gigsettle.errors import (
    NotFoundError,
    RailNotConfiguredError,
    RefundError,
    SettlementError,
    TransientAdapterError,
    ValidationError,
)
from gigsettle.models.credit import CreditAccount, CreditStatus
from gigsettle.models.distribution import PayoutMethod, PayoutStatus, PlanEntryInput
from gigsettle.models.money import normalize_currency, to_decimal
from gigsettle.models.obligation import Obligation, PaymentReference, Rail
from gigsettle.models.settlement import (
    RefundRecord,
    RefundStatus,
    SettlementOutcome,
    SettlementState,
)
from gigsettle.oracle.rates import CoinGeckoRateOracle
from gigsettle.persistence.event_log import EventKind, EventLog
from gigsettle.persistence.store import SettlementStore
from gigsettle.rails.card import CardRailAdapter
from gigsettle.rails.chain import Web3ChainClient
from gigsettle.rails.credit import CreditRailAdapter
from gigsettle.rails.onchain import OnchainRailAdapter
from gigsettle.rails.payment_rail import RailRegistry
from gigsettle.rails.processors import PayPalClient, StripeClient
from gigsettle.rails.wallet import WalletRailAdapter
from gigsettle.settlement.deadline import Clock, Deadline, SystemClock
from gigsettle.settlement.ledger import SettlementLedger
from gigsettle.settlement.sweeper import ReconciliationSweeper
from gigsettle.settlement.verification import VerificationEngine

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

_OUTCOME_EVENTS = {
    SettlementState.PENDING: EventKind.SETTLEMENT_PENDING,
    SettlementState.ACCEPTED: EventKind.SETTLEMENT_ACCEPTED,
    SettlementState.REJECTED: EventKind.SETTLEMENT_REJECTED,
    SettlementState.EXPIRED: EventKind.SETTLEMENT_EXPIRED,
}


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


def _error_result(error: SettlementError, **data: Any) -> ServiceResult:
    payload: dict[str, Any] = {"code": error.code, **data}
    if error.context:
        payload["context"] = {k: str(v) for k, v in error.context.items()}
    retry_after = getattr(error, "retry_after_seconds", None)
    if retry_after is not None:
        payload["retry_after_seconds"] = retry_after
    return ServiceResult(success=False, errors=[str(error)], data=payload)


class SettlementService:
    """Settlement and distribution facade.

    Usage:
        store = SettlementStore(Path("data/settlement.db"))
        registry = RailRegistry()
        registry.register(CreditRailAdapter(store))
        service = SettlementService(store, registry)

        result = service.register_obligation("venue_1", "band_1", "300.00", "USD")
        oid = result.data["obligation"]["obligation_id"]
        result = service.submit_payment(oid, "card", "pi_123")
        if result.data.get("accepted"):
            service.distribute(result.data["outcome"]["settlement_id"], entries)

    From the environment (rails wired from credentials that are present):
        service = SettlementService.from_environment(Path("data/settlement.db"))
    """

    def __init__(
        self,
        store: SettlementStore,
        registry: RailRegistry,
        config: Optional[SettlementConfig] = None,
        event_log: Optional[EventLog] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._config = config or SettlementConfig()
        self._event_log = event_log
        self._clock = clock or SystemClock()
        self._audit_degraded = False

        self._ledger = SettlementLedger(store)
        self._engine = VerificationEngine(registry, self._config.verification, self._clock)
        self._allocator = DistributionAllocator(store)
        self._sweeper = ReconciliationSweeper(
            store,
            self._ledger,
            self._engine,
            self._config,
            self._clock,
            on_outcome=self._audit_sweeper_outcome,
            on_overdue=self._audit_overdue,
        )

    @classmethod
    def from_environment(
        cls,
        db_path: Union[str, Path],
        config_dir: Optional[Path] = None,
        env_file: Optional[Path] = None,
        event_log_path: Optional[Path] = None,
        clock: Optional[Clock] = None,
    ) -> SettlementService:
        """Build a service with every rail whose credentials are configured.

        The credit rail is always available. Card, wallet and onchain need
        STRIPE_SECRET_KEY, PAYPAL_CLIENT_ID/SECRET, and ETH_RPC_URL plus
        PLATFORM_WALLET_ADDRESS respectively.
        """
        config = SettlementConfig.from_config_dir(config_dir)
        creds = RailCredentials.from_env(env_file)
        store = SettlementStore(db_path)
        registry = RailRegistry()
        registry.register(CreditRailAdapter(store))

        if creds.stripe_secret_key:
            registry.register(CardRailAdapter(StripeClient(creds.stripe_secret_key), config.verification))
        if creds.paypal_client_id and creds.paypal_client_secret:
            registry.register(WalletRailAdapter(
                PayPalClient(creds.paypal_client_id, creds.paypal_client_secret, creds.paypal_base_url),
                config.verification,
            ))
        if creds.eth_rpc_url and creds.payee_wallet:
            registry.register(OnchainRailAdapter(
                Web3ChainClient(creds.eth_rpc_url, config.verification.adapter_timeout_seconds),
                CoinGeckoRateOracle(creds.rate_oracle_url, pegs=config.rate_pegs),
                creds.payee_wallet,
                config.onchain,
                config.verification,
            ))

        logger.info("Rails configured: %s", ", ".join(r.value for r in registry.list_rails()))
        event_log = EventLog(event_log_path) if event_log_path else None
        return cls(store, registry, config, event_log=event_log, clock=clock)

    @property
    def ledger(self) -> SettlementLedger:
        return self._ledger

    @property
    def allocator(self) -> DistributionAllocator:
        return self._allocator

    @property
    def sweeper(self) -> ReconciliationSweeper:
        return self._sweeper

    # ------------------------------------------------------------------
    # Obligations and intents
    # ------------------------------------------------------------------

    def register_obligation(
        self,
        payer_id: str,
        payee_id: str,
        expected_amount: Any,
        expected_currency: str,
        obligation_id: Optional[str] = None,
        description: str = "",
        due_utc: Optional[datetime] = None,
    ) -> ServiceResult:
        """Register what payer owes payee, optionally by a due date."""
        try:
            obligation = Obligation.create(
                payer_id,
                payee_id,
                expected_amount,
                expected_currency,
                obligation_id=obligation_id,
                description=description,
                now=self._clock.now(),
                due_utc=due_utc,
            )
            self._store.insert_obligation(obligation)
        except SettlementError as e:
            return _error_result(e)

        warning = self._audit(EventKind.OBLIGATION_REGISTERED, obligation.payer_id, {
            "obligation_id": obligation.obligation_id,
            "payee_id": obligation.payee_id,
            "amount": str(obligation.expected_amount),
            "currency": obligation.expected_currency,
        })
        return self._ok({"obligation": obligation.to_dict()}, warning)

    def get_obligation(self, obligation_id: str) -> Optional[Obligation]:
        return self._store.get_obligation(obligation_id)

    def outstanding(self, party_id: str) -> ServiceResult:
        """Unsettled obligations a party owes (dues) or is owed (receivable).

        The summary totals each side per currency and counts overdue ones.
        """
        if not party_id:
            return _error_result(ValidationError("outstanding needs a party_id"))
        dues: list[Obligation] = []
        receivable: list[Obligation] = []
        for obligation in self._store.outstanding_for(party_id):
            (dues if obligation.payer_id == party_id else receivable).append(obligation)

        def _totals(items: Sequence[Obligation]) -> dict[str, str]:
            totals: dict[str, Decimal] = {}
            for o in items:
                totals[o.expected_currency] = totals.get(o.expected_currency, Decimal("0")) + o.expected_amount
            return {currency: str(total) for currency, total in sorted(totals.items())}

        return ServiceResult(success=True, data={
            "party_id": party_id,
            "dues": [o.to_dict() for o in dues],
            "receivable": [o.to_dict() for o in receivable],
            "summary": {
                "owed": _totals(dues),
                "owed_to": _totals(receivable),
                "overdue": sum(1 for o in dues + receivable if o.is_overdue),
            },
        })

    def create_payment_intent(self, obligation_id: str, rail: Union[Rail, str]) -> ServiceResult:
        """Ask a rail for what the payer needs to start paying."""
        try:
            obligation = self._require_obligation(obligation_id)
            adapter = self._registry.get(self._parse_rail(rail))
            deadline = Deadline.after(self._config.verification.wait_timeout_seconds, self._clock)
            intent = adapter.create_intent(obligation, deadline)
        except SettlementError as e:
            return _error_result(e)
        return ServiceResult(success=True, data={"intent": intent.to_dict()})

    # ------------------------------------------------------------------
    # Submission and settlement
    # ------------------------------------------------------------------

    def submit_payment(
        self,
        obligation_id: str,
        rail: Union[Rail, str],
        rail_transaction_id: str,
        counterpart: Optional[str] = None,
        wait: bool = False,
        timeout: Optional[float] = None,
        deadline: Optional[Deadline] = None,
    ) -> ServiceResult:
        """Claim that a rail transaction pays an obligation, and verify it.

        Returns:
            success=True with data["state"] accepted or pending (plus
            retry_after_seconds), or success=False with data["code"] set to
            the rejection reason or error code.
        """
        try:
            obligation = self._require_obligation(obligation_id)
            rail_value = self._parse_rail(rail)
            if not self._registry.has(rail_value):
                raise RailNotConfiguredError(f"Rail not configured: {rail_value.value}")
            reference = PaymentReference.create(
                obligation.obligation_id,
                rail_value,
                rail_transaction_id,
                counterpart=counterpart,
                now=self._clock.now(),
            )
            self._ledger.register_reference(reference)
        except SettlementError as e:
            existing = getattr(e, "existing_reference_id", None)
            extra: dict[str, Any] = {}
            if existing:
                extra["existing_reference_id"] = existing
                prior = self._ledger.outcome_for_reference(existing)
                if prior is not None:
                    extra["outcome"] = prior.to_dict()
            return _error_result(e, **extra)

        warnings: list[str] = []
        self._collect(warnings, self._audit(EventKind.REFERENCE_SUBMITTED, obligation.payer_id, {
            "obligation_id": obligation.obligation_id,
            "reference_id": reference.reference_id,
            "rail": reference.rail.value,
            "rail_transaction_id": reference.rail_transaction_id,
        }))

        if self._ledger.is_settled(obligation.obligation_id):
            # No rail call can change the answer; close the attempt now.
            verdict = SettlementOutcome(
                settlement_id=f"stl_{uuid4().hex[:12]}",
                obligation_id=obligation.obligation_id,
                reference_id=reference.reference_id,
                rail=reference.rail,
                state=SettlementState.PENDING,
            )
        else:
            try:
                if wait:
                    verdict = self._engine.wait_for_settlement(
                        reference, obligation, timeout=timeout, deadline=deadline,
                    )
                else:
                    verdict = self._engine.verify(reference, obligation, deadline)
            except TransientAdapterError as e:
                retry_after = max(
                    self._config.sweeper.transient_retry_seconds, e.retry_after_seconds or 0.0,
                )
                logger.info("Submission %s deferred: %s", reference.reference_id, e)
                return ServiceResult(
                    success=True,
                    data={
                        "state": SettlementState.PENDING.value,
                        "accepted": False,
                        "reference_id": reference.reference_id,
                        "retry_after_seconds": retry_after,
                        "transient_error": e.code,
                    },
                    warnings=warnings,
                )
            except SettlementError as e:
                # Cancelled or misconfigured: the reference stays queued.
                return _error_result(e, reference_id=reference.reference_id)

        now = self._clock.now()
        result = self._ledger.record_outcome(obligation.obligation_id, reference, verdict, now)
        attempt = result.attempt or result.outcome
        self._collect(warnings, self._audit_outcome(attempt))

        data: dict[str, Any] = {
            "state": attempt.state.value,
            "accepted": result.accepted,
            "reference_id": reference.reference_id,
            "outcome": result.outcome.to_dict(),
            "attempt": attempt.to_dict(),
        }
        if attempt.state == SettlementState.PENDING:
            delay = self._sweeper.backoff_delay(0)
            self._store.reschedule(reference.reference_id, 1, 0, now + timedelta(seconds=delay))
            data["retry_after_seconds"] = delay
            return ServiceResult(success=True, data=data, warnings=warnings)
        if attempt.state == SettlementState.ACCEPTED:
            return ServiceResult(success=True, data=data, warnings=warnings)

        reason = attempt.rejection_reason.value if attempt.rejection_reason else "rejected"
        data["code"] = reason
        return ServiceResult(
            success=False,
            errors=[f"Payment rejected: {reason}"],
            data=data,
            warnings=warnings,
        )

    def get_settlement(self, obligation_id: str) -> ServiceResult:
        """The obligation's authoritative outcome plus every attempt."""
        try:
            obligation = self._require_obligation(obligation_id)
        except SettlementError as e:
            return _error_result(e)
        outcome = self._ledger.get_outcome(obligation.obligation_id)
        attempts = self._ledger.outcomes_for(obligation.obligation_id)
        data: dict[str, Any] = {
            "obligation": obligation.to_dict(),
            "outcome": outcome.to_dict() if outcome else None,
            "attempts": [a.to_dict() for a in attempts],
            "references": [r.to_dict() for r in self._store.references_for(obligation.obligation_id)],
        }
        if outcome is not None and outcome.state == SettlementState.ACCEPTED:
            plan = self._allocator.get_plan(outcome.settlement_id)
            data["plan"] = plan.to_dict() if plan else None
            data["refunds"] = [r.to_dict() for r in self._store.refunds_for(outcome.settlement_id)]
        return ServiceResult(success=True, data=data)

    # ------------------------------------------------------------------
    # Distribution
    # ------------------------------------------------------------------

    def distribute(
        self,
        settlement_id: str,
        entries: Sequence[Union[PlanEntryInput, Mapping[str, Any]]],
    ) -> ServiceResult:
        """Commit a distribution plan for an accepted settlement."""
        try:
            parsed = [self._parse_entry(e) for e in entries]
            plan = self._allocator.distribute(settlement_id, parsed, self._clock.now())
        except SettlementError as e:
            return _error_result(e)
        warning = self._audit(EventKind.DISTRIBUTION_COMMITTED, SYSTEM_ACTOR, {
            "settlement_id": settlement_id,
            "plan_id": plan.plan_id,
            "entries": [[p.member_id, str(p.amount)] for p in plan.payouts],
        })
        return self._ok({"plan": plan.to_dict()}, warning)

    def distribute_split(
        self,
        settlement_id: str,
        members: Sequence[str],
        agent_id: Optional[str] = None,
        agent_fee_percentage: Any = "0",
        other_fees: Any = "0",
        weights: Optional[Mapping[str, Any]] = None,
        remainder_member: Optional[str] = None,
    ) -> ServiceResult:
        """Split the settled amount among members after fees, then commit it."""
        settlement = self._ledger.get_settlement(settlement_id)
        if settlement is None:
            return _error_result(NotFoundError(f"Settlement not found: {settlement_id}"))
        if settlement.state != SettlementState.ACCEPTED or settlement.verified_amount is None:
            return _error_result(ValidationError(
                f"Settlement {settlement_id} is {settlement.state.value}; only accepted "
                "settlements can be distributed",
            ))
        try:
            split = split_settlement(
                settlement.verified_amount,
                settlement.verified_currency,
                members,
                agent_id=agent_id,
                agent_fee_percentage=to_decimal(agent_fee_percentage, "agent_fee_percentage"),
                other_fees=to_decimal(other_fees, "other_fees"),
                weights={k: to_decimal(v, f"weights[{k}]") for k, v in (weights or {}).items()},
                remainder_member=remainder_member,
            )
        except SettlementError as e:
            return _error_result(e)
        result = self.distribute(settlement_id, split.entries)
        if result.success:
            result.data["split"] = {
                "agent_fee": str(split.agent_fee),
                "other_fees": str(split.other_fees),
                "band_payout": str(split.band_payout),
                "remainder": str(split.remainder),
            }
        return result

    def mark_payout(
        self,
        payout_id: str,
        status: Union[PayoutStatus, str],
        rail_transaction_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ServiceResult:
        """Record a member payout's result. Only pending payouts can move."""
        try:
            try:
                target = PayoutStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown payout status: {status}") from None
            payout = self._allocator.mark_payout_outcome(
                payout_id, target, rail_transaction_id, notes, self._clock.now(),
            )
        except SettlementError as e:
            return _error_result(e)
        warning = self._audit(EventKind.PAYOUT_UPDATED, SYSTEM_ACTOR, {
            "payout_id": payout.payout_id,
            "member_id": payout.member_id,
            "status": payout.status.value,
            "rail_transaction_id": payout.rail_transaction_id,
        })
        return self._ok({"payout": payout.to_dict()}, warning)

    def payouts_for_member(self, member_id: str) -> ServiceResult:
        payouts = self._allocator.payouts_for_member(member_id)
        return ServiceResult(success=True, data={"payouts": [p.to_dict() for p in payouts]})

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def refund_settlement(self, settlement_id: str, amount: Any = None) -> ServiceResult:
        """Refund part or all of an accepted settlement on its own rail.

        amount is in the rail's currency; the total refunded never exceeds
        what the rail reported receiving. The refund is reserved in the store
        before the rail is called. A transient rail failure leaves it pending
        (still counted against the limit) for retry_refund.
        """
        try:
            settlement, reference, adapter = self._refundable(settlement_id)
            limit = settlement.rail_amount or Decimal("0")
            remaining = limit - self._store.refunded_total(settlement_id)
            value = remaining if amount is None else to_decimal(amount, "amount")
            if value <= 0:
                raise RefundError("Refund amount must be positive and not already refunded")
            if value > remaining:
                raise RefundError(f"Refund of {value} exceeds remaining {remaining}")
            record = self._store.reserve_refund(RefundRecord(
                refund_id=f"rfd_{uuid4().hex[:12]}",
                settlement_id=settlement_id,
                amount=value,
                currency=settlement.rail_currency or settlement.verified_currency or "",
                created_utc=self._clock.now(),
            ), limit)
        except SettlementError as e:
            return _error_result(e)
        return self._send_refund(record, reference, adapter)

    def retry_refund(self, refund_id: str) -> ServiceResult:
        """Ask the rail again for a refund left pending by a transient failure."""
        try:
            record = self._store.get_refund(refund_id)
            if record is None:
                raise NotFoundError(f"Refund not found: {refund_id}")
            if record.status != RefundStatus.PENDING:
                raise RefundError(f"Refund {refund_id} is {record.status.value}", refund_id=refund_id)
            _, reference, adapter = self._refundable(record.settlement_id)
        except SettlementError as e:
            return _error_result(e)
        return self._send_refund(record, reference, adapter)

    def _refundable(self, settlement_id: str) -> tuple:
        settlement = self._ledger.get_settlement(settlement_id)
        if settlement is None:
            raise NotFoundError(f"Settlement not found: {settlement_id}")
        if settlement.state != SettlementState.ACCEPTED:
            raise RefundError(f"Settlement {settlement_id} is {settlement.state.value}, not accepted")
        reference = self._store.get_reference(settlement.reference_id)
        adapter = self._registry.get(settlement.rail)
        if not adapter.capabilities.can_refund:
            raise RefundError(f"Rail {settlement.rail.value} does not support refunds")
        return settlement, reference, adapter

    def _send_refund(self, record: RefundRecord, reference: PaymentReference, adapter: Any) -> ServiceResult:
        deadline = Deadline.after(self._config.verification.wait_timeout_seconds, self._clock)
        try:
            rail_result = adapter.refund(reference, record.amount, deadline, record.refund_id)
        except TransientAdapterError as e:
            logger.warning("Refund %s left pending: %s", record.refund_id, e)
            return _error_result(e, refund_id=record.refund_id, refund=record.to_dict())
        except SettlementError as e:
            self._store.fail_refund(record.refund_id)
            logger.info("Refund %s refused by %s: %s", record.refund_id, reference.rail.value, e)
            return _error_result(e, refund_id=record.refund_id)
        record = self._store.complete_refund(record.refund_id, rail_result.rail_refund_id)

        warning = self._audit(EventKind.REFUND_ISSUED, SYSTEM_ACTOR, {
            "settlement_id": record.settlement_id,
            "refund_id": record.refund_id,
            "amount": str(record.amount),
            "currency": record.currency,
        })
        return self._ok({"refund": record.to_dict(), "rail_status": rail_result.status}, warning)

    # ------------------------------------------------------------------
    # Credit
    # ------------------------------------------------------------------

    def issue_credit(
        self,
        holder_id: str,
        amount: Any,
        currency: str,
        code: Optional[str] = None,
        validity_days: Optional[int] = None,
    ) -> ServiceResult:
        """Issue credit (a gift card) to a holder."""
        try:
            value = to_decimal(amount, "amount")
            if value <= 0:
                raise ValidationError("Credit amount must be positive")
            if not holder_id:
                raise ValidationError("Credit needs a holder_id")
            now = self._clock.now()
            account = CreditAccount(
                code=code or f"GC-{uuid4().hex[:10].upper()}",
                holder_id=holder_id,
                currency=normalize_currency(currency),
                original_amount=value,
                remaining_balance=value,
                status=CreditStatus.ACTIVE,
                issued_utc=now,
                expires_utc=now + timedelta(days=validity_days or self._config.credit_validity_days),
            )
            self._store.insert_credit(account)
        except SettlementError as e:
            return _error_result(e)
        warning = self._audit(EventKind.CREDIT_ISSUED, SYSTEM_ACTOR, {
            "code": account.code,
            "holder_id": holder_id,
            "amount": str(value),
            "currency": account.currency,
        })
        return self._ok({"credit": account.to_dict()}, warning)

    def redeem_credit(
        self,
        code: str,
        holder_id: str,
        amount: Any,
        obligation_id: Optional[str] = None,
    ) -> ServiceResult:
        """Debit credit; with obligation_id, also submit it as the payment."""
        try:
            value = to_decimal(amount, "amount")
            redemption = self._store.redeem_credit(
                code, holder_id, value, f"red_{uuid4().hex[:12]}", self._clock.now(),
            )
        except SettlementError as e:
            return _error_result(e)
        warning = self._audit(EventKind.CREDIT_REDEEMED, holder_id, {
            "code": code,
            "redemption_id": redemption.redemption_id,
            "amount": str(redemption.amount),
        })
        if obligation_id is None:
            return self._ok({"redemption": redemption.to_dict()}, warning)

        submitted = self.submit_payment(obligation_id, Rail.CREDIT, redemption.redemption_id)
        data = {"redemption": redemption.to_dict(), **submitted.data}
        warnings = list(submitted.warnings)
        self._collect(warnings, warning)
        if not submitted.data.get("accepted"):
            # Credit is synchronous: anything short of accepted paid nothing.
            account = self._store.release_redemption(redemption.redemption_id, self._clock.now())
            if account is not None:
                data["released"] = True
                data["credit"] = account.to_dict()
                self._collect(warnings, self._audit(EventKind.CREDIT_RELEASED, holder_id, {
                    "code": code,
                    "redemption_id": redemption.redemption_id,
                    "amount": str(redemption.amount),
                    "obligation_id": obligation_id,
                }))
        return ServiceResult(
            success=submitted.success, errors=submitted.errors, data=data, warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Reconciliation and status
    # ------------------------------------------------------------------

    def sweep(self) -> ServiceResult:
        """Run one reconciliation pass now."""
        report = self._sweeper.run_once(self._clock.now())
        return ServiceResult(success=True, data={"sweep": report.to_dict()})

    def status(self) -> ServiceResult:
        """System-wide status summary."""
        return ServiceResult(success=True, data={
            "version": __version__,
            "rails": sorted(r.value for r in self._registry.list_rails()),
            "settlements": self._store.count_outcomes(),
            "payouts": self._store.count_payouts(),
            "reconciliation_queue": self._store.queue_size(),
            "audit_events": self._event_log.count if self._event_log else 0,
            "audit_degraded": self._audit_degraded,
        })

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _require_obligation(self, obligation_id: str) -> Obligation:
        obligation = self._store.get_obligation(obligation_id)
        if obligation is None:
            raise NotFoundError(f"Obligation not found: {obligation_id}")
        return obligation

    @staticmethod
    def _parse_rail(rail: Union[Rail, str]) -> Rail:
        try:
            return Rail(rail)
        except ValueError:
            raise ValidationError(f"Unknown rail: {rail}") from None

    @staticmethod
    def _parse_entry(entry: Union[PlanEntryInput, Mapping[str, Any]]) -> PlanEntryInput:
        if isinstance(entry, PlanEntryInput):
            return entry
        try:
            return PlanEntryInput(
                member_id=str(entry["member_id"]),
                share_amount=to_decimal(entry["share_amount"], "share_amount"),
                payout_method=PayoutMethod(entry.get("payout_method", PayoutMethod.BANK_TRANSFER)),
                notes=str(entry.get("notes", "")),
            )
        except KeyError as e:
            raise ValidationError(f"Plan entry missing field {e}") from None
        except ValueError as e:
            if isinstance(e, SettlementError):
                raise
            raise ValidationError(f"Invalid plan entry: {e}") from None

    def _audit(self, kind: EventKind, actor_id: str, payload: dict[str, Any]) -> Optional[str]:
        """Append an audit event. Returns a warning instead of raising."""
        if self._event_log is None:
            return None
        try:
            self._event_log.record(kind, actor_id, payload, self._clock.now())
            return None
        except (OSError, ValueError) as e:
            self._audit_degraded = True
            logger.error("Audit write failed for %s: %s", kind.value, e)
            return f"Audit degraded: {e}; state is committed in the store"

    def _audit_outcome(self, outcome: SettlementOutcome) -> Optional[str]:
        return self._audit(_OUTCOME_EVENTS[outcome.state], SYSTEM_ACTOR, {
            "obligation_id": outcome.obligation_id,
            "reference_id": outcome.reference_id,
            "settlement_id": outcome.settlement_id,
            "state": outcome.state.value,
            "reason": outcome.rejection_reason.value if outcome.rejection_reason else None,
            "verified_amount": str(outcome.verified_amount) if outcome.verified_amount is not None else None,
        })

    def _audit_sweeper_outcome(self, outcome: SettlementOutcome) -> None:
        self._audit_outcome(outcome)

    def _audit_overdue(self, obligation: Obligation) -> None:
        self._audit(EventKind.OBLIGATION_OVERDUE, SYSTEM_ACTOR, {
            "obligation_id": obligation.obligation_id,
            "payer_id": obligation.payer_id,
            "due_utc": obligation.due_utc.isoformat() if obligation.due_utc else None,
        })

    @staticmethod
    def _collect(warnings: list[str], warning: Optional[str]) -> None:
        if warning:
            warnings.append(warning)

    @staticmethod
    def _ok(data: dict[str, Any], warning: Optional[str] = None) -> ServiceResult:
        return ServiceResult(success=True, data=data, warnings=[warning] if warning else [])
