"""Daily batch: supply snapshots, debt snapshots, then reimbursement entries."""
from __future__ import annotations

import logging
import time
from datetime import date, datetime, timezone

from ..db.store import PositionStore
from ..models import DailyCycleSummary
from .reimbursements import ReimbursementManager
from .snapshot_engine import SnapshotEngine

logger = logging.getLogger(__name__)


class BatchOrchestrator:
    """Runs one daily cycle and returns its summary.

    Only a failed precondition (``FatalInitError`` from the store check) or a
    store failure escapes; per-entity problems are counted in the summary.
    """

    def __init__(
        self,
        store: PositionStore,
        engine: SnapshotEngine,
        reimbursements: ReimbursementManager | None = None,
    ) -> None:
        self._store = store
        self._engine = engine
        self._reimbursements = reimbursements

    async def run_daily_cycle(self, day: date | None = None) -> DailyCycleSummary:
        day = day or datetime.now(timezone.utc).date()
        started = time.monotonic()

        self._store.ping()
        logger.info("Starting daily cycle for %s", day)

        supply, debt = await self._engine.compute_daily_snapshots(day)

        created = None
        if self._reimbursements is not None:
            created = self._reimbursements.create_entries(day)

        summary = DailyCycleSummary(
            day=day,
            supply=supply,
            debt=debt,
            duration_seconds=time.monotonic() - started,
            reimbursements_created=created,
        )
        logger.info(
            "Daily cycle %s done in %.1fs: %d/%d entities processed",
            day,
            summary.duration_seconds,
            summary.processed_count,
            summary.entity_count,
        )
        for total in summary.totals_by_token:
            logger.info(
                "  %s: %.6f accrued, %.6f above cap",
                total.token or "?",
                total.interest,
                total.above_cap,
            )
        return summary
