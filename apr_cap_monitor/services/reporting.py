"""Renders cycle summaries and rate alerts and dispatches them to notifiers."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from ..config import NotificationsConfig
from ..interfaces.notifier import Notifier
from ..models import (
    DailyCycleSummary,
    PhaseResult,
    ProcessResult,
    RateAlert,
    SkipReason,
)
from ..notifications import EmailNotifier, TelegramNotifier

logger = logging.getLogger(__name__)


def build_notifiers(config: NotificationsConfig) -> list[Notifier]:
    notifiers: list[Notifier] = []
    if config.telegram.enabled:
        notifiers.append(TelegramNotifier(config.telegram))
    if config.email.enabled:
        notifiers.append(EmailNotifier(config.email))
    return notifiers


def _now_str() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _pct(rate: Decimal) -> str:
    return f"{rate * 100:.2f}%"


def _phase_lines(title: str, phase: PhaseResult) -> list[str]:
    lines = [
        f"{title}: {phase.processed_count}/{len(phase.outcomes)} processed"
        + (f" · {phase.skipped_count} no data" if phase.skipped_count else "")
        + (f" · {phase.failed_count} errors" if phase.failed_count else "")
    ]
    for total in phase.totals_by_token:
        token = total.token or "?"
        lines.append(
            f"  {token}: {total.interest:,.6f} accrued · {total.above_cap:,.6f} above cap"
        )
    if phase.snapshots:
        lines.append(f"  Avg rate: {_pct(phase.average_rate)}")
    return lines


def build_cycle_message(summary: DailyCycleSummary) -> str:
    lines = [f"📊 Daily APR cap cycle · {summary.day.isoformat()}", ""]
    lines += _phase_lines("🏦 Vault supply", summary.supply)
    lines.append("")
    lines += _phase_lines("👥 Borrower debt", summary.debt)

    skipped = [
        o for o in summary.supply.outcomes + summary.debt.outcomes
        if o.skip_reason is SkipReason.ERROR
    ]
    if skipped:
        lines.append("")
        lines.append("Errors:")
        lines += [f"  {o.entity} ({o.market_id}): {o.detail}" for o in skipped]

    if summary.reimbursements_created is not None:
        lines.append("")
        lines.append(f"Reimbursements created: {summary.reimbursements_created}")

    lines.append("")
    lines.append(f"Duration: {summary.duration_seconds:.1f}s · {_now_str()} UTC")
    return "\n".join(lines)


def build_rate_alert_message(alerts: list[RateAlert]) -> str:
    lines = [f"🚨 {len(alerts)} position(s) above alert threshold", ""]
    for alert in alerts:
        multiplier = alert.rate_multiplier
        lines.append(
            f"{alert.market_name} · position {alert.position_id}\n"
            f"  Rate: {_pct(alert.current_rate)} · Cap: {_pct(alert.apr_cap)}"
            + (f" · {multiplier:.1f}x cap" if multiplier is not None else "")
            + f"\n  As of {alert.snapshot_date.isoformat()}"
        )
    lines.append("")
    lines.append(f"{_now_str()} UTC")
    return "\n".join(lines)


def build_process_message(result: ProcessResult) -> str:
    return (
        f"💸 Reimbursement payouts\n"
        f"\n"
        f"Completed: {result.processed} · Failed: {result.failed}\n"
        f"Total paid: {result.total_amount:,.6f}\n"
        f"\n"
        f"{_now_str()} UTC"
    )


class Reporter:
    """Sends cycle summaries as log messages and rate alerts as alerts."""

    def __init__(self, notifiers: list[Notifier]) -> None:
        self._notifiers = notifiers

    async def _send_log(self, message: str, silent: bool = False) -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_log(message, silent=silent)
            except Exception as e:
                logger.error("Notifier send_log failed: %s", e)

    async def _send_alert(self, message: str, subject: str = "") -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_alert(message, subject=subject)
            except Exception as e:
                logger.error("Notifier send_alert failed: %s", e)

    async def report_cycle(
        self, summary: DailyCycleSummary, alerts: list[RateAlert] | None = None
    ) -> None:
        await self._send_log(build_cycle_message(summary), silent=True)
        if alerts:
            await self._send_alert(
                build_rate_alert_message(alerts),
                subject=f"🚨 APR cap: {len(alerts)} rate alert(s)",
            )
        logger.info("Cycle report for %s sent", summary.day)

    async def report_payouts(self, result: ProcessResult) -> None:
        await self._send_log(build_process_message(result), silent=result.failed == 0)
