"""Unit tests for report rendering and notifier dispatch."""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from apr_cap_monitor.config import EmailConfig, NotificationsConfig, TelegramConfig
from apr_cap_monitor.models import (
    DailyCycleSummary,
    EntityOutcome,
    InterestSnapshot,
    PhaseResult,
    ProcessResult,
    RateAlert,
    SkipReason,
)
from apr_cap_monitor.notifications import EmailNotifier, TelegramNotifier
from apr_cap_monitor.services.reporting import (
    Reporter,
    build_cycle_message,
    build_notifiers,
    build_process_message,
    build_rate_alert_message,
)

DAY = date(2025, 1, 15)


def _summary(created: int | None = 3) -> DailyCycleSummary:
    snap = InterestSnapshot(
        position_id=1,
        market_id="m1",
        snapshot_date=DAY,
        current_rate=Decimal("0.18"),
        capped_rate=Decimal("0.12"),
        interest_accrued=Decimal("0.493151"),
        interest_above_cap=Decimal("0.164384"),
        loan_asset="USDC",
    )
    debt = PhaseResult(
        "debt",
        DAY,
        (
            EntityOutcome("position:1", "m1", snapshot=snap),
            EntityOutcome("position:2", "m2", skip_reason=SkipReason.NO_RATE_DATA),
            EntityOutcome("position:3", "m1", skip_reason=SkipReason.ERROR, detail="disk full"),
        ),
    )
    return DailyCycleSummary(
        day=DAY,
        supply=PhaseResult("supply", DAY),
        debt=debt,
        duration_seconds=1.5,
        reimbursements_created=created,
    )


def _alert() -> RateAlert:
    return RateAlert(
        position_id=7,
        market_id="m1",
        market_name="WPOL/USDC",
        snapshot_date=DAY,
        current_rate=Decimal("0.36"),
        apr_cap=Decimal("0.12"),
        alert_threshold=Decimal("0.24"),
    )


class TestBuildNotifiers:
    def test_only_enabled_channels(self) -> None:
        notifiers = build_notifiers(
            NotificationsConfig(
                telegram=TelegramConfig(enabled=True, chat_id="1"),
                email=EmailConfig(enabled=False),
            )
        )
        assert len(notifiers) == 1
        assert isinstance(notifiers[0], TelegramNotifier)

    def test_both_channels(self) -> None:
        notifiers = build_notifiers(
            NotificationsConfig(
                telegram=TelegramConfig(enabled=True),
                email=EmailConfig(enabled=True),
            )
        )
        assert [type(n) for n in notifiers] == [TelegramNotifier, EmailNotifier]

    def test_none_enabled(self) -> None:
        assert build_notifiers(NotificationsConfig()) == []


class TestMessages:
    def test_cycle_message(self) -> None:
        message = build_cycle_message(_summary())

        assert "2025-01-15" in message
        assert "👥 Borrower debt: 1/3 processed · 1 no data · 1 errors" in message
        assert "🏦 Vault supply: 0/0 processed" in message
        assert "USDC: 0.493151 accrued · 0.164384 above cap" in message
        assert "Avg rate: 18.00%" in message
        assert "position:3 (m1): disk full" in message
        assert "Reimbursements created: 3" in message
        assert "Duration: 1.5s" in message

    def test_cycle_message_without_reimbursement_step(self) -> None:
        assert "Reimbursements created" not in build_cycle_message(_summary(created=None))

    def test_rate_alert_message(self) -> None:
        message = build_rate_alert_message([_alert()])

        assert message.startswith("🚨 1 position(s) above alert threshold")
        assert "WPOL/USDC · position 7" in message
        assert "Rate: 36.00% · Cap: 12.00% · 3.0x cap" in message

    def test_process_message(self) -> None:
        message = build_process_message(
            ProcessResult(processed=9, failed=1, total_amount=Decimal("12.5"))
        )
        assert message.startswith("💸 Reimbursement payouts")
        assert "Completed: 9 · Failed: 1" in message
        assert "Total paid: 12.500000" in message


class TestReporter:
    @pytest.mark.asyncio
    async def test_cycle_without_alerts_is_one_silent_log(self) -> None:
        notifier = AsyncMock()
        await Reporter([notifier]).report_cycle(_summary(), alerts=[])

        notifier.send_log.assert_awaited_once()
        assert notifier.send_log.call_args.kwargs["silent"] is True
        notifier.send_alert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cycle_with_alerts_goes_to_every_notifier(self) -> None:
        first, second = AsyncMock(), AsyncMock()
        await Reporter([first, second]).report_cycle(_summary(), alerts=[_alert()])

        for notifier in (first, second):
            notifier.send_alert.assert_awaited_once()
            assert notifier.send_alert.call_args.kwargs["subject"] == "🚨 APR cap: 1 rate alert(s)"

    @pytest.mark.asyncio
    async def test_failing_notifier_does_not_stop_the_rest(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        broken, healthy = AsyncMock(), AsyncMock()
        broken.send_log.side_effect = RuntimeError("bot blocked")

        with caplog.at_level("ERROR"):
            await Reporter([broken, healthy]).report_cycle(_summary())

        healthy.send_log.assert_awaited_once()
        assert "bot blocked" in caplog.text

    @pytest.mark.asyncio
    async def test_payouts_loud_only_on_failure(self) -> None:
        notifier = AsyncMock()
        reporter = Reporter([notifier])

        await reporter.report_payouts(ProcessResult(processed=2))
        assert notifier.send_log.call_args.kwargs["silent"] is True

        await reporter.report_payouts(ProcessResult(processed=1, failed=1))
        assert notifier.send_log.call_args.kwargs["silent"] is False
