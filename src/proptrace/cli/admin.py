"""Operator CLI for wallets, traces and bulk jobs."""

from __future__ import annotations

import argparse
import json
import sys
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

from proptrace.errors import TraceEngineError
from proptrace.services.billing import BillingService
from proptrace.services.bulk import BulkTraceService
from proptrace.services.factories import build_tracer_client
from proptrace.services.models import TraceRequest
from proptrace.services.trace_lifecycle import TraceService
from proptrace.store.sql import create_schema


def _decimal(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"invalid amount: {value}") from exc
    if amount <= 0:
        raise argparse.ArgumentTypeError("amount must be positive")
    return amount


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _init_db(args: argparse.Namespace) -> int:
    create_schema()
    print("Schema created.")
    return 0


def _credit(args: argparse.Namespace) -> int:
    service = BillingService()
    if args.tier:
        service.open_account(args.caller, tier=args.tier)
    entry = service.credit(args.caller, args.amount, args.reason)
    _print({"caller_id": entry.caller_id, "amount": entry.amount, "balance": entry.balance_after})
    return 0


def _balance(args: argparse.Namespace) -> int:
    _print(BillingService().summary(args.caller).model_dump())
    return 0


def _trace(args: argparse.Namespace) -> int:
    service = TraceService()
    request = TraceRequest(
        address=args.address,
        city=args.city,
        state=args.state,
        zip=args.zip,
        owner_name=args.owner,
    )
    outcome = service.submit_single(args.caller, request)
    if outcome.status == "processing" and args.wait:
        _print(service.wait_for_result(args.caller, outcome.trace_id).model_dump())
    else:
        _print(outcome.model_dump())
    return 0


def _bulk_status(args: argparse.Namespace) -> int:
    service = BulkTraceService()
    if args.wait:
        view = service.poll_until_complete(args.caller, args.job_id)
    else:
        view = service.poll_job(args.caller, args.job_id)
    _print(view.model_dump())
    return 0 if view.status == "completed" else 2


def _clear_cache(args: argparse.Namespace) -> int:
    deleted = TraceService().clear_cache(args.caller, args.address, args.city, args.state, args.zip)
    _print({"caller_id": args.caller, "deleted": deleted})
    return 0


def _provider_jobs(args: argparse.Namespace) -> int:
    with build_tracer_client() as tracer:
        jobs = tracer.list_jobs()
    _print(jobs[: args.limit] if args.limit else jobs)
    return 0


def _provider_analytics(args: argparse.Namespace) -> int:
    with build_tracer_client() as tracer:
        _print(tracer.get_analytics())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="proptrace-admin", description="proptrace operator commands")
    sub = parser.add_subparsers(dest="command", required=True)

    init_db = sub.add_parser("init-db", help="Create all tables on the configured database")
    init_db.set_defaults(handler=_init_db)

    credit = sub.add_parser("credit", help="Add funds to a caller's wallet")
    credit.add_argument("--caller", required=True)
    credit.add_argument("--amount", required=True, type=_decimal)
    credit.add_argument("--reason", default="Manual top-up")
    credit.add_argument("--tier", choices=["standard", "member"], default=None, help="Tier for a new wallet")
    credit.set_defaults(handler=_credit)

    balance = sub.add_parser("balance", help="Show a caller's wallet")
    balance.add_argument("--caller", required=True)
    balance.set_defaults(handler=_balance)

    for name, handler, help_text in (
        ("trace", _trace, "Submit one address"),
        ("clear-cache", _clear_cache, "Delete cached results for an address"),
    ):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("--caller", required=True)
        command.add_argument("--address", required=True)
        command.add_argument("--city", required=True)
        command.add_argument("--state", required=True)
        command.add_argument("--zip", required=True)
        if name == "trace":
            command.add_argument("--owner", default=None)
            command.add_argument("--wait", action="store_true", help="Poll until the trace settles")
        command.set_defaults(handler=handler)

    bulk_status = sub.add_parser("bulk-status", help="Poll a bulk job")
    bulk_status.add_argument("--caller", required=True)
    bulk_status.add_argument("--job-id", required=True)
    bulk_status.add_argument("--wait", action="store_true", help="Poll until completion or stall")
    bulk_status.set_defaults(handler=_bulk_status)

    provider_jobs = sub.add_parser("provider-jobs", help="List the provider queues for this account")
    provider_jobs.add_argument("--limit", type=int, default=0, help="Show only the first N queues")
    provider_jobs.set_defaults(handler=_provider_jobs)

    provider_analytics = sub.add_parser("provider-analytics", help="Show provider usage and remaining credits")
    provider_analytics.set_defaults(handler=_provider_analytics)

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""

    args = build_parser().parse_args(argv)
    handler: Callable[[argparse.Namespace], int] = args.handler
    try:
        return handler(args)
    except TraceEngineError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
