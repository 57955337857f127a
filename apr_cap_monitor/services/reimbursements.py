"""Reimbursement lifecycle: create from snapshots, pay, retry, and report."""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone

from ..db import queries
from ..db.store import PositionStore
from ..errors import PaymentError
from ..interfaces.payment import PaymentExecutor
from ..models import (
    ZERO,
    PendingBorrower,
    ProcessResult,
    RateAlert,
    ReimbursementHistoryEntry,
    ReimbursementStats,
    ReimbursementStatus,
    ReimbursementSummary,
    VaultReimbursementPool,
)

logger = logging.getLogger(__name__)


class ReimbursementManager:
    """Owns the pending -> completed | failed -> pending lifecycle."""

    def __init__(self, store: PositionStore, payment_executor: PaymentExecutor) -> None:
        self._store = store
        self._payments = payment_executor

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def create_entries(self, day: date) -> int:
        """Create one pending reimbursement per above-cap snapshot on ``day``.

        The whole day is created in one transaction; existing entries for the
        same (position, day) are skipped, so rerunning creates nothing new.
        """
        created = 0
        with self._store.session_scope() as session:
            for snap in self._store.reimbursable_snapshots(session, day):
                if self._store.reimbursement_exists(session, snap.position_id, day, day):
                    continue
                self._store.insert_reimbursement(
                    session,
                    position_id=snap.position_id,
                    amount=snap.interest_above_cap,
                    period_start=day,
                    period_end=day,
                    loan_asset=snap.loan_asset,
                )
                created += 1
        logger.info("Created %d reimbursement entries for %s", created, day)
        return created

    async def process_pending(self, limit: int = 10) -> ProcessResult:
        """Pay up to ``limit`` pending reimbursements, oldest first.

        Every item is committed on its own, so a failed payment never undoes
        the ones completed before it.
        """
        with self._store.session_scope() as session:
            targets = self._store.pending_payment_targets(session, limit)

        if not targets:
            logger.info("No pending reimbursements to process")
            return ProcessResult()

        processed = failed = 0
        total = ZERO
        for target in targets:
            item = target.reimbursement
            try:
                tx_hash = await self._payments.pay(
                    target.recipient_address, item.amount, item.loan_asset
                )
            except Exception as e:
                if isinstance(e, PaymentError):
                    logger.warning(
                        "Reimbursement %d to %s (%s) failed: %s",
                        item.id,
                        target.recipient_address,
                        target.entity_name,
                        e,
                    )
                else:
                    logger.error(
                        "Unexpected error paying reimbursement %d to %s: %s: %s",
                        item.id,
                        target.recipient_address,
                        type(e).__name__,
                        e,
                    )
                with self._store.session_scope() as session:
                    self._store.transition_reimbursement(
                        session,
                        item.id,
                        ReimbursementStatus.FAILED,
                        processed_at=datetime.now(timezone.utc),
                    )
                failed += 1
                continue

            with self._store.session_scope() as session:
                self._store.transition_reimbursement(
                    session,
                    item.id,
                    ReimbursementStatus.COMPLETED,
                    tx_hash=tx_hash,
                    processed_at=datetime.now(timezone.utc),
                )
            processed += 1
            total += item.amount
            logger.info(
                "Paid reimbursement %d: %s %s to %s in %s (tx %s)",
                item.id,
                item.amount,
                item.loan_asset,
                target.entity_name,
                target.market_name,
                tx_hash,
            )

        logger.info("Processed %d reimbursements, %d failed", processed, failed)
        return ProcessResult(processed=processed, failed=failed, total_amount=total)

    def retry_failed(self, limit: int = 5) -> int:
        """Move the most recently failed reimbursements back to pending."""
        with self._store.session_scope() as session:
            failed = self._store.recently_failed(session, limit)
            for item in failed:
                self._store.transition_reimbursement(session, item.id, ReimbursementStatus.PENDING)
        logger.info("Reset %d failed reimbursements to pending", len(failed))
        return len(failed)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_stats(self) -> ReimbursementStats:
        with self._store.session_scope() as session:
            return queries.reimbursement_stats(session)

    def get_reimbursements_for_address(self, address: str) -> ReimbursementSummary | None:
        with self._store.session_scope() as session:
            return queries.reimbursements_for_address(session, address)

    def get_reimbursement_history(
        self, address: str, limit: int = 50
    ) -> list[ReimbursementHistoryEntry]:
        with self._store.session_scope() as session:
            return queries.reimbursement_history(session, address, limit)

    def get_pending_borrower_reimbursements(self) -> list[PendingBorrower]:
        with self._store.session_scope() as session:
            return queries.pending_borrowers(session)

    def get_vault_reimbursement_pool(
        self, window_days: int = 30, today: date | None = None
    ) -> VaultReimbursementPool:
        today = today or datetime.now(timezone.utc).date()
        with self._store.session_scope() as session:
            return queries.vault_reimbursement_pool(session, today - timedelta(days=window_days))

    def get_rate_alerts(self) -> list[RateAlert]:
        with self._store.session_scope() as session:
            return queries.rate_alerts(session)
