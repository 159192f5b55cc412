"""gigsettle CLI — command-line interface for the settlement engine.

Usage:
    python -m gigsettle.cli status
    python -m gigsettle.cli register-obligation --payer venue_1 --payee band_1 --amount 300.00 --currency USD
    python -m gigsettle.cli submit-payment --obligation obl_123 --rail onchain --tx 0xabc --wait
    python -m gigsettle.cli get-settlement --obligation obl_123
    python -m gigsettle.cli outstanding --party venue_1
    python -m gigsettle.cli distribute --settlement stl_123 --entry m1:100.00 --entry m2:100.00:wallet
    python -m gigsettle.cli mark-payout --payout pay_123 --status succeeded --tx tr_1
    python -m gigsettle.cli sweep --loop
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from datetime import datetime
from pathlib import Path

from gigsettle.models.distribution import PayoutMethod, PayoutStatus, PlanEntryInput
from gigsettle.models.money import to_decimal
from gigsettle.models.obligation import Rail
from gigsettle.service import ServiceResult, SettlementService


DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"
DEFAULT_DATA = Path(__file__).resolve().parents[2] / "data"
DEFAULT_ENV = Path(__file__).resolve().parents[2] / ".env"


def _make_service(args: argparse.Namespace) -> SettlementService:
    """Create a SettlementService with durable persistence."""
    data_dir: Path = args.data
    data_dir.mkdir(parents=True, exist_ok=True)
    env_file = args.env_file if args.env_file and args.env_file.exists() else None
    return SettlementService.from_environment(
        data_dir / "settlement.db",
        config_dir=args.config,
        env_file=env_file,
        event_log_path=data_dir / "events.jsonl",
    )


def _emit(result: ServiceResult) -> int:
    if result.data:
        print(json.dumps(result.data, indent=2, default=str))
    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)
    if result.success:
        return 0
    print(f"Failed: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def _parse_entry(raw: str) -> PlanEntryInput:
    """member:amount[:method]"""
    parts = raw.split(":")
    if len(parts) not in (2, 3):
        raise argparse.ArgumentTypeError(f"Expected member:amount[:method], got {raw!r}")
    method = PayoutMethod(parts[2]) if len(parts) == 3 else PayoutMethod.BANK_TRANSFER
    return PlanEntryInput(member_id=parts[0], share_amount=to_decimal(parts[1]), payout_method=method)


def _parse_due(raw: str) -> datetime:
    """ISO-8601 timestamp with an offset, e.g. 2026-04-01T00:00:00+00:00"""
    try:
        value = datetime.fromisoformat(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected an ISO-8601 timestamp, got {raw!r}") from None
    if value.tzinfo is None:
        raise argparse.ArgumentTypeError(f"Timestamp needs a UTC offset: {raw!r}")
    return value


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.status())


def cmd_register_obligation(args: argparse.Namespace) -> int:
    service = _make_service(args)
    result = service.register_obligation(
        payer_id=args.payer,
        payee_id=args.payee,
        expected_amount=args.amount,
        expected_currency=args.currency,
        obligation_id=args.id,
        description=args.description or "",
        due_utc=args.due,
    )
    if result.success:
        print(f"Registered obligation: {result.data['obligation']['obligation_id']}")
        return 0
    return _emit(result)


def cmd_create_intent(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.create_payment_intent(args.obligation, args.rail))


def cmd_submit_payment(args: argparse.Namespace) -> int:
    service = _make_service(args)
    result = service.submit_payment(
        obligation_id=args.obligation,
        rail=args.rail,
        rail_transaction_id=args.tx,
        counterpart=args.counterpart,
        wait=args.wait,
        timeout=args.timeout,
    )
    return _emit(result)


def cmd_get_settlement(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.get_settlement(args.obligation))


def cmd_outstanding(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.outstanding(args.party))


def cmd_distribute(args: argparse.Namespace) -> int:
    service = _make_service(args)
    if args.split:
        result = service.distribute_split(
            args.settlement,
            members=args.split,
            agent_id=args.agent,
            agent_fee_percentage=args.agent_fee,
            other_fees=args.other_fees,
        )
    else:
        if not args.entry:
            print("Failed: give --entry at least once, or --split", file=sys.stderr)
            return 1
        result = service.distribute(args.settlement, args.entry)
    return _emit(result)


def cmd_mark_payout(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.mark_payout(args.payout, args.status, args.tx, args.notes))


def cmd_refund(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.refund_settlement(args.settlement, args.amount))


def cmd_retry_refund(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.retry_refund(args.refund))


def cmd_issue_credit(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.issue_credit(args.holder, args.amount, args.currency, code=args.code))


def cmd_redeem_credit(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.redeem_credit(args.code, args.holder, args.amount, args.obligation))


def cmd_sweep(args: argparse.Namespace) -> int:
    service = _make_service(args)
    if not args.loop:
        return _emit(service.sweep())
    stop = threading.Event()
    try:
        service.sweeper.run(stop)
    except KeyboardInterrupt:
        stop.set()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gigsettle",
        description="gigsettle — settlement and distribution engine CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=DEFAULT_DATA,
        help="Path to data directory (default: data/)",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=DEFAULT_ENV,
        help="Credentials file loaded into the environment (default: .env)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command")

    # status
    sub.add_parser("status", help="Show system status")

    # register-obligation
    p_reg = sub.add_parser("register-obligation", help="Register what a payer owes a payee")
    p_reg.add_argument("--payer", required=True, help="Payer ID")
    p_reg.add_argument("--payee", required=True, help="Payee ID")
    p_reg.add_argument("--amount", required=True, help="Expected amount (Decimal)")
    p_reg.add_argument("--currency", required=True, help="Expected currency, e.g. USD")
    p_reg.add_argument("--id", help="Obligation ID (default: generated)")
    p_reg.add_argument("--description", help="Free-text description")
    p_reg.add_argument("--due", type=_parse_due, help="Due date, ISO-8601 with offset")

    # create-intent
    p_int = sub.add_parser("create-intent", help="Start a payment on a rail")
    p_int.add_argument("--obligation", required=True, help="Obligation ID")
    p_int.add_argument("--rail", required=True, choices=[r.value for r in Rail])

    # submit-payment
    p_sub = sub.add_parser("submit-payment", help="Submit a rail transaction for verification")
    p_sub.add_argument("--obligation", required=True, help="Obligation ID")
    p_sub.add_argument("--rail", required=True, choices=[r.value for r in Rail])
    p_sub.add_argument("--tx", required=True, help="Rail transaction ID")
    p_sub.add_argument("--counterpart", help="Expected sender (onchain address)")
    p_sub.add_argument("--wait", action="store_true", help="Poll until terminal or timeout")
    p_sub.add_argument("--timeout", type=float, help="Wait budget in seconds")

    # get-settlement
    p_get = sub.add_parser("get-settlement", help="Show an obligation's settlement")
    p_get.add_argument("--obligation", required=True, help="Obligation ID")

    # outstanding
    p_out = sub.add_parser("outstanding", help="Unsettled obligations for a payer or payee")
    p_out.add_argument("--party", required=True, help="Payer or payee ID")

    # distribute
    p_dist = sub.add_parser("distribute", help="Commit a distribution plan")
    p_dist.add_argument("--settlement", required=True, help="Settlement ID")
    p_dist.add_argument(
        "--entry", action="append", type=_parse_entry,
        help="member:amount[:method] (repeatable)",
    )
    p_dist.add_argument("--split", nargs="+", metavar="MEMBER", help="Split evenly after fees")
    p_dist.add_argument("--agent", help="Booking agent ID (with --split)")
    p_dist.add_argument("--agent-fee", default="0", help="Agent fee percentage (with --split)")
    p_dist.add_argument("--other-fees", default="0", help="Other fees (with --split)")

    # mark-payout
    p_mark = sub.add_parser("mark-payout", help="Record a member payout result")
    p_mark.add_argument("--payout", required=True, help="Payout ID")
    p_mark.add_argument(
        "--status", required=True,
        choices=[s.value for s in PayoutStatus if s != PayoutStatus.PENDING],
    )
    p_mark.add_argument("--tx", help="Payout rail transaction ID")
    p_mark.add_argument("--notes", help="Notes")

    # refund
    p_ref = sub.add_parser("refund", help="Refund an accepted settlement")
    p_ref.add_argument("--settlement", required=True, help="Settlement ID")
    p_ref.add_argument("--amount", help="Amount in the rail currency (default: remaining)")

    # retry-refund
    p_rr = sub.add_parser("retry-refund", help="Retry a refund left pending")
    p_rr.add_argument("--refund", required=True, help="Refund ID")

    # issue-credit
    p_iss = sub.add_parser("issue-credit", help="Issue credit to a holder")
    p_iss.add_argument("--holder", required=True, help="Holder ID")
    p_iss.add_argument("--amount", required=True, help="Amount (Decimal)")
    p_iss.add_argument("--currency", required=True, help="Currency")
    p_iss.add_argument("--code", help="Credit code (default: generated)")

    # redeem-credit
    p_red = sub.add_parser("redeem-credit", help="Redeem credit, optionally against an obligation")
    p_red.add_argument("--code", required=True, help="Credit code")
    p_red.add_argument("--holder", required=True, help="Holder ID")
    p_red.add_argument("--amount", required=True, help="Amount (Decimal)")
    p_red.add_argument("--obligation", help="Obligation to pay with the redemption")

    # sweep
    p_sweep = sub.add_parser("sweep", help="Run reconciliation")
    p_sweep.add_argument("--loop", action="store_true", help="Keep sweeping until interrupted")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "register-obligation": cmd_register_obligation,
        "create-intent": cmd_create_intent,
        "submit-payment": cmd_submit_payment,
        "get-settlement": cmd_get_settlement,
        "outstanding": cmd_outstanding,
        "distribute": cmd_distribute,
        "mark-payout": cmd_mark_payout,
        "refund": cmd_refund,
        "retry-refund": cmd_retry_refund,
        "issue-credit": cmd_issue_credit,
        "redeem-credit": cmd_redeem_credit,
        "sweep": cmd_sweep,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
