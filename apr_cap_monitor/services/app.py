"""Application wiring: builds every collaborator from an AppConfig."""
from __future__ import annotations

import logging
from datetime import date
from typing import Any

from ..config import AppConfig
from ..db.store import PositionStore
from ..interfaces.notifier import Notifier
from ..interfaces.payment import PaymentExecutor
from ..interfaces.position_source import PositionSource
from ..interfaces.rate_source import RateSource
from ..models import DailyCycleSummary
from ..payments import SimulatedPaymentExecutor
from ..rates import MorphoRateSource
from .orchestrator import BatchOrchestrator
from .reimbursements import ReimbursementManager
from .reporting import Reporter, build_notifiers
from .scheduler import DailyScheduler
from .snapshot_engine import SnapshotEngine
from .sync import PositionSync, SyncResult

logger = logging.getLogger(__name__)

# Registry of market data clients keyed by provider name. One client serves
# both rates and positions.
_RATE_SOURCE_FACTORIES: dict[str, Any] = {
    "morpho": lambda cfg: MorphoRateSource(cfg.morpho),
}


class Application:
    """Owns the store and the services built on it."""

    def __init__(
        self,
        config: AppConfig,
        rate_source: RateSource | None = None,
        payment_executor: PaymentExecutor | None = None,
        notifiers: list[Notifier] | None = None,
        position_source: PositionSource | None = None,
    ) -> None:
        self.config = config
        self.store = PositionStore(config.database.url, echo=config.database.echo)

        if rate_source is None or position_source is None:
            factory = _RATE_SOURCE_FACTORIES.get(config.rate_source.provider)
            if factory is None:
                raise ValueError(f"Unknown rate source provider '{config.rate_source.provider}'")
            client = factory(config.rate_source)
            if rate_source is None:
                rate_source = client
            if position_source is None:
                position_source = client
        if payment_executor is None:
            payment_executor = SimulatedPaymentExecutor(config.payments.simulated_failure_rate)
        if notifiers is None:
            notifiers = build_notifiers(config.notifications)

        self.engine = SnapshotEngine(self.store, rate_source)
        self.reimbursements = ReimbursementManager(self.store, payment_executor)
        self.orchestrator = BatchOrchestrator(
            self.store,
            self.engine,
            self.reimbursements if config.scheduler.create_reimbursements else None,
        )
        self.reporter = Reporter(notifiers)
        self.position_sync = PositionSync(self.store, position_source)

    async def daily_job(self, day: date | None = None) -> DailyCycleSummary:
        """Run the daily cycle and report it, with any rate alerts."""
        summary = await self.orchestrator.run_daily_cycle(day)
        alerts = self.reimbursements.get_rate_alerts()
        await self.reporter.report_cycle(summary, alerts)
        return summary

    async def sync_positions(self, limit: int | None = None) -> SyncResult:
        """Refresh vault allocations and borrower positions from the market API."""
        return await self.position_sync.sync(limit or self.config.sync.borrower_limit)

    def build_scheduler(self) -> DailyScheduler:
        return DailyScheduler(self.daily_job, self.config.scheduler.run_at_utc)

    def close(self) -> None:
        self.store.dispose()
