"""Command-line interface for the APR cap monitor."""
from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation

from .config import load_config
from .errors import FatalInitError
from .logging_setup import configure_logging
from .services import Application
from .services.seeding import seed_from_config, set_market_cap


def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation as e:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}") from e


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="apr-cap-monitor",
        description="Daily APR cap accrual and reimbursement engine",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("seed", help="Create tables and load markets/vaults from config")

    sync_parser = sub.add_parser("sync", help="Refresh borrower positions and vault allocations")
    sync_parser.add_argument("--limit", type=int, default=None,
                             help="Borrowers fetched per market (overrides config)")

    run_parser = sub.add_parser("run", help="Run the daily snapshot cycle once")
    run_parser.add_argument("--date", type=date.fromisoformat, default=None,
                            help="Snapshot day, YYYY-MM-DD (default: today UTC)")

    create_parser = sub.add_parser("create-entries", help="Create reimbursements for a day")
    create_parser.add_argument("--date", type=date.fromisoformat, default=None,
                               help="Snapshot day, YYYY-MM-DD (default: today UTC)")

    process_parser = sub.add_parser("process", help="Pay pending reimbursements")
    process_parser.add_argument("--limit", type=int, default=None,
                                help="Maximum items to process (overrides config)")

    retry_parser = sub.add_parser("retry", help="Reset failed reimbursements to pending")
    retry_parser.add_argument("--limit", type=int, default=None,
                              help="Maximum items to reset (overrides config)")

    sub.add_parser("stats", help="Reimbursement totals by status")

    address_parser = sub.add_parser("address", help="Reimbursements for a vault or borrower")
    address_parser.add_argument("address", help="Vault or borrower address")
    address_parser.add_argument("--history", type=int, default=0, metavar="N",
                                help="Also list the last N reimbursements")

    sub.add_parser("pending", help="Borrowers with pending reimbursements")

    pool_parser = sub.add_parser("pool", help="Vault excess interest by token")
    pool_parser.add_argument("--days", type=int, default=None,
                             help="Trailing window in days (overrides config)")

    sub.add_parser("alerts", help="Positions whose rate exceeds the alert threshold")

    cap_parser = sub.add_parser("set-cap", help="Change a market's APR cap")
    cap_parser.add_argument("market_id", help="Market id")
    cap_parser.add_argument("apr_cap", type=_decimal, help="New cap as a fraction, e.g. 0.12")

    sub.add_parser("schedule", help="Run the daily cycle on the configured UTC time")

    return parser


def _pct(rate: Decimal) -> str:
    return f"{rate * 100:.2f}%"


def _print_stats(app: Application) -> None:
    stats = app.reimbursements.get_stats()
    for label, totals in (
        ("Pending", stats.pending),
        ("Completed", stats.completed),
        ("Failed", stats.failed),
    ):
        print(f"{label:<10} {totals.count:>6}  {totals.total_amount:,.6f}")


def _print_address(app: Application, address: str, history: int) -> int:
    summary = app.reimbursements.get_reimbursements_for_address(address)
    if summary is None:
        print(f"No vault or borrower with address {address}")
        return 1
    name = f" ({summary.entity_name})" if summary.entity_name else ""
    print(f"{summary.entity_type.capitalize()} {summary.address}{name}")
    print(f"Total owed: {summary.total_owed:,.6f}")
    print(
        f"Pending: {summary.pending_reimbursements} · "
        f"Completed: {summary.completed_reimbursements} · "
        f"Failed: {summary.failed_reimbursements}"
    )
    for p in summary.positions:
        print(
            f"  #{p.position_id} {p.market_name} [{p.status}] debt {p.current_debt:,.6f} · "
            f"accrued {p.total_interest_accrued:,.6f} · above cap {p.total_reimbursable:,.6f}"
        )
    if history:
        print("History:")
        for entry in app.reimbursements.get_reimbursement_history(address, history):
            r = entry.reimbursement
            print(
                f"  {r.period_start} {entry.market_name}: {r.amount:,.6f} {r.loan_asset} "
                f"[{r.status.value}]" + (f" tx {r.tx_hash}" if r.tx_hash else "")
            )
    return 0


def _print_pending(app: Application) -> None:
    borrowers = app.reimbursements.get_pending_borrower_reimbursements()
    if not borrowers:
        print("No borrowers with pending reimbursements")
    for b in borrowers:
        print(f"{b.address}  {b.total_owed:,.6f}  ({b.pending_count} pending: {', '.join(b.markets)})")


def _print_pool(app: Application, days: int) -> None:
    pool = app.reimbursements.get_vault_reimbursement_pool(window_days=days)
    print(f"Vault excess since {pool.window_start}")
    for v in pool.vaults:
        excess = ", ".join(f"{e.amount:,.6f} {e.token}" for e in v.excess_by_token)
        print(f"  {v.name} ({v.address}) · {v.markets} market(s): {excess}")
    for t in pool.totals_by_token:
        print(f"Total {t.token}: {t.amount:,.6f}")


def _print_alerts(app: Application) -> None:
    alerts = app.reimbursements.get_rate_alerts()
    if not alerts:
        print("No rate alerts")
    for a in alerts:
        print(
            f"{a.market_name} · position {a.position_id} · {a.snapshot_date}: "
            f"rate {_pct(a.current_rate)} vs cap {_pct(a.apr_cap)}"
        )


async def _schedule(app: Application) -> None:
    scheduler = app.build_scheduler()
    scheduler.start()
    try:
        await scheduler.wait()
    finally:
        await scheduler.stop()


async def _run(args: argparse.Namespace) -> int:
    """Execute the selected command and return the exit code."""
    configure_logging(args.log_level)
    config = load_config(args.config)
    app = Application(config)
    limits = config.reimbursements

    try:
        if args.command == "seed":
            app.store.create_schema()
            result = seed_from_config(app.store, config)
            print(f"Seeded {result.markets} markets, {result.vaults} vaults, "
                  f"{result.allocations} allocations")
        elif args.command == "sync":
            app.store.ping()
            result = await app.sync_positions(args.limit)
            print(f"Synced {result.borrowers_found} borrowers ({result.positions_created} new, "
                  f"{result.positions_updated} updated), {result.allocations_updated} allocations, "
                  f"{result.errors} errors")
            return 1 if result.errors else 0
        elif args.command == "run":
            summary = await app.daily_job(args.date)
            print(f"{summary.day}: {summary.processed_count}/{summary.entity_count} processed")
        elif args.command == "create-entries":
            app.store.ping()
            day = args.date or datetime.now(timezone.utc).date()
            print(f"Created {app.reimbursements.create_entries(day)} reimbursements for {day}")
        elif args.command == "process":
            app.store.ping()
            result = await app.reimbursements.process_pending(args.limit or limits.process_limit)
            await app.reporter.report_payouts(result)
            print(f"Processed {result.processed}, failed {result.failed}, "
                  f"total {result.total_amount:,.6f}")
        elif args.command == "retry":
            app.store.ping()
            count = app.reimbursements.retry_failed(args.limit or limits.retry_limit)
            print(f"Reset {count} failed reimbursements to pending")
        elif args.command == "stats":
            _print_stats(app)
        elif args.command == "address":
            return _print_address(app, args.address, args.history)
        elif args.command == "pending":
            _print_pending(app)
        elif args.command == "pool":
            _print_pool(app, args.days or limits.pool_window_days)
        elif args.command == "alerts":
            _print_alerts(app)
        elif args.command == "set-cap":
            try:
                market = set_market_cap(app.store, args.market_id, args.apr_cap)
            except KeyError:
                print(f"Unknown market {args.market_id}")
                return 1
            print(f"{market.name}: cap {_pct(market.apr_cap)}, "
                  f"alert threshold {_pct(market.alert_threshold)}")
        elif args.command == "schedule":
            await _schedule(app)
        else:
            build_parser().print_help()
            return 1
    finally:
        app.close()
    return 0


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        sys.exit(asyncio.run(_run(args)))
    except FatalInitError as e:
        print(f"Initialization failed: {e}", file=sys.stderr)
        sys.exit(2)
