"""Position store: engine ownership, transaction scope, typed reads and writes.

Every public method takes the caller's ``Session`` so that services decide the
transaction boundaries; every read returns a frozen record from
:mod:`apr_cap_monitor.models`, never an ORM row.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterator

from sqlalchemy import create_engine, event, inspect, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased, sessionmaker

from ..errors import FatalInitError, InvalidTransitionError, OwnershipError
from ..models import (
    Borrower,
    BorrowerOwner,
    InterestSnapshot,
    Market,
    PaymentTarget,
    Position,
    PositionOwner,
    PositionStatus,
    Reimbursement,
    ReimbursementStatus,
    SupplySnapshot,
    Vault,
    VaultAllocation,
    VaultOwner,
    can_transition,
)
from .records import (
    to_allocation,
    to_borrower,
    to_interest_snapshot,
    to_market,
    to_position,
    to_reimbursement,
    to_supply_snapshot,
    to_vault,
)
from .schema import (
    Base,
    BorrowerRow,
    InterestSnapshotRow,
    MarketRow,
    PositionRow,
    ReimbursementRow,
    SupplySnapshotRow,
    VaultAllocationRow,
    VaultRow,
)

logger = logging.getLogger(__name__)

_REQUIRED_TABLES = (
    "markets",
    "vaults",
    "borrowers",
    "vault_allocations",
    "borrower_positions",
    "interest_snapshots",
    "vault_supply_snapshots",
    "reimbursements",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Owner exclusivity, checked on every insert and update of a position row
# ---------------------------------------------------------------------------


def _check_owner(mapper, connection, target: PositionRow) -> None:
    if (target.borrower_id is None) == (target.vault_id is None):
        raise OwnershipError(
            f"Position {target.id} in market {target.market_id} must have exactly one "
            f"of borrower_id/vault_id (got borrower_id={target.borrower_id}, "
            f"vault_id={target.vault_id})"
        )


event.listen(PositionRow, "before_insert", _check_owner)
event.listen(PositionRow, "before_update", _check_owner)


def _owner_columns(owner: PositionOwner) -> tuple[int | None, int | None]:
    if isinstance(owner, BorrowerOwner):
        return owner.borrower_id, None
    if isinstance(owner, VaultOwner):
        return None, owner.vault_id
    raise OwnershipError(f"Unknown position owner: {owner!r}")


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class PositionStore:
    """Persistent markets, vaults, borrowers, positions, snapshots and reimbursements."""

    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        self._engine: Engine = create_engine(url, echo=echo)
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_schema(self) -> None:
        Base.metadata.create_all(self._engine)
        logger.info("Schema ready at %s", self._engine.url.render_as_string(hide_password=True))

    def dispose(self) -> None:
        self._engine.dispose()

    def ping(self) -> None:
        """Raise FatalInitError unless the database is reachable and migrated."""
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
                inspector = inspect(conn)
                missing = [t for t in _REQUIRED_TABLES if not inspector.has_table(t)]
        except SQLAlchemyError as e:
            raise FatalInitError(f"Store unreachable: {e}") from e
        if missing:
            raise FatalInitError(f"Store is missing tables: {', '.join(missing)}")

    def session(self) -> Session:
        return self._sessions()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Commit on normal exit, roll back and re-raise on error."""
        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            logger.warning("Transaction rolled back", exc_info=True)
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Markets
    # ------------------------------------------------------------------

    def upsert_market(
        self,
        session: Session,
        market_id: str,
        name: str,
        apr_cap: Decimal,
        loan_asset: str = "",
        collateral_asset: str = "",
        alert_threshold: Decimal | None = None,
    ) -> Market:
        threshold = alert_threshold if alert_threshold is not None else apr_cap * 2
        row = session.get(MarketRow, market_id)
        if row is None:
            row = MarketRow(market_id=market_id)
            session.add(row)
        row.name = name
        row.apr_cap = apr_cap
        row.alert_threshold = threshold
        row.loan_asset = loan_asset or None
        row.collateral_asset = collateral_asset or None
        session.flush()
        return to_market(row)

    def get_market(self, session: Session, market_id: str) -> Market | None:
        row = session.get(MarketRow, market_id)
        return to_market(row) if row is not None else None

    def list_markets(self, session: Session) -> list[Market]:
        rows = session.scalars(select(MarketRow).order_by(MarketRow.name)).all()
        return [to_market(r) for r in rows]

    def update_market_cap(self, session: Session, market_id: str, apr_cap: Decimal) -> Market:
        """Change a market's cap. Existing snapshots are left untouched."""
        row = session.get(MarketRow, market_id)
        if row is None:
            raise KeyError(f"Unknown market: {market_id}")
        old_cap = row.apr_cap
        row.apr_cap = apr_cap
        row.alert_threshold = apr_cap * 2
        session.flush()
        logger.info("Market %s cap changed %s -> %s", market_id, old_cap, apr_cap)
        return to_market(row)

    # ------------------------------------------------------------------
    # Vaults, borrowers, allocations
    # ------------------------------------------------------------------

    def upsert_vault(self, session: Session, address: str, name: str, symbol: str = "") -> Vault:
        row = session.scalar(select(VaultRow).where(VaultRow.address == address))
        if row is None:
            row = VaultRow(address=address)
            session.add(row)
        row.name = name
        row.symbol = symbol or None
        session.flush()
        return to_vault(row)

    def list_vaults(self, session: Session) -> list[Vault]:
        return [to_vault(r) for r in session.scalars(select(VaultRow).order_by(VaultRow.id))]

    def upsert_borrower(self, session: Session, address: str) -> Borrower:
        row = session.scalar(select(BorrowerRow).where(BorrowerRow.address == address))
        if row is None:
            row = BorrowerRow(address=address)
            session.add(row)
            session.flush()
        return to_borrower(row)

    def upsert_allocation(
        self,
        session: Session,
        vault_id: int,
        market_id: str,
        supply_assets: Decimal,
        status: PositionStatus = PositionStatus.ACTIVE,
    ) -> VaultAllocation:
        market = session.get(MarketRow, market_id)
        if market is None:
            raise KeyError(f"Unknown market: {market_id}")
        row = session.scalar(
            select(VaultAllocationRow).where(
                VaultAllocationRow.vault_id == vault_id,
                VaultAllocationRow.market_id == market_id,
            )
        )
        if row is None:
            row = VaultAllocationRow(vault_id=vault_id, market_id=market_id)
            session.add(row)
        row.supply_assets = supply_assets
        row.loan_asset = market.loan_asset
        row.status = status.value
        session.flush()
        return to_allocation(row)

    def active_allocations(self, session: Session) -> list[VaultAllocation]:
        rows = session.execute(
            select(VaultAllocationRow, VaultRow.name)
            .join(VaultRow, VaultRow.id == VaultAllocationRow.vault_id)
            .where(VaultAllocationRow.status == PositionStatus.ACTIVE.value)
            .order_by(VaultRow.name, VaultAllocationRow.market_id)
        ).all()
        return [to_allocation(row, vault_name) for row, vault_name in rows]

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def upsert_position(
        self,
        session: Session,
        owner: PositionOwner,
        market_id: str,
        principal: Decimal,
        current_debt: Decimal | None = None,
        opened_at: datetime | None = None,
    ) -> Position:
        """Create a position or overwrite its balances (external sync)."""
        borrower_id, vault_id = _owner_columns(owner)
        row = self._position_row(session, owner, market_id)
        if row is None:
            row = PositionRow(
                borrower_id=borrower_id,
                vault_id=vault_id,
                market_id=market_id,
                opened_at=opened_at or _utcnow(),
            )
            session.add(row)
        row.principal_borrowed = principal
        row.current_debt = current_debt if current_debt is not None else principal
        row.status = PositionStatus.ACTIVE.value
        session.flush()
        return to_position(row)

    def _position_row(
        self, session: Session, owner: PositionOwner, market_id: str
    ) -> PositionRow | None:
        borrower_id, vault_id = _owner_columns(owner)
        stmt = select(PositionRow).where(PositionRow.market_id == market_id)
        if borrower_id is not None:
            stmt = stmt.where(PositionRow.borrower_id == borrower_id, PositionRow.vault_id.is_(None))
        else:
            stmt = stmt.where(PositionRow.vault_id == vault_id, PositionRow.borrower_id.is_(None))
        return session.scalar(stmt)

    def find_position(
        self, session: Session, owner: PositionOwner, market_id: str
    ) -> Position | None:
        """The owner's position in ``market_id``, open or closed."""
        row = self._position_row(session, owner, market_id)
        return to_position(row) if row is not None else None

    def get_position(self, session: Session, position_id: int) -> Position | None:
        row = session.get(PositionRow, position_id)
        return to_position(row) if row is not None else None

    def active_positions(self, session: Session) -> list[Position]:
        rows = session.scalars(
            select(PositionRow)
            .where(PositionRow.status == PositionStatus.ACTIVE.value)
            .order_by(PositionRow.id)
        ).all()
        return [to_position(r) for r in rows]

    def set_position_debt(self, session: Session, position_id: int, current_debt: Decimal) -> None:
        row = session.get(PositionRow, position_id)
        if row is None:
            raise KeyError(f"Unknown position: {position_id}")
        row.current_debt = current_debt
        session.flush()

    def close_position(self, session: Session, position_id: int) -> Position:
        row = session.get(PositionRow, position_id)
        if row is None:
            raise KeyError(f"Unknown position: {position_id}")
        row.status = PositionStatus.CLOSED.value
        session.flush()
        return to_position(row)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def upsert_interest_snapshot(self, session: Session, snap: InterestSnapshot) -> InterestSnapshot:
        row = session.scalar(
            select(InterestSnapshotRow).where(
                InterestSnapshotRow.position_id == snap.position_id,
                InterestSnapshotRow.snapshot_date == snap.snapshot_date,
            )
        )
        if row is None:
            row = InterestSnapshotRow(
                position_id=snap.position_id, snapshot_date=snap.snapshot_date
            )
            session.add(row)
        row.current_rate = snap.current_rate
        row.capped_rate = snap.capped_rate
        row.interest_accrued = snap.interest_accrued
        row.interest_above_cap = snap.interest_above_cap
        row.loan_asset = snap.loan_asset or None
        row.opening_balance = snap.opening_balance
        session.flush()
        return snap

    def upsert_supply_snapshot(self, session: Session, snap: SupplySnapshot) -> SupplySnapshot:
        row = session.scalar(
            select(SupplySnapshotRow).where(
                SupplySnapshotRow.vault_id == snap.vault_id,
                SupplySnapshotRow.market_id == snap.market_id,
                SupplySnapshotRow.snapshot_date == snap.snapshot_date,
            )
        )
        if row is None:
            row = SupplySnapshotRow(
                vault_id=snap.vault_id,
                market_id=snap.market_id,
                snapshot_date=snap.snapshot_date,
            )
            session.add(row)
        row.supply_amount = snap.supply_amount
        row.supply_apy = snap.supply_apy
        row.capped_apy = snap.capped_apy
        row.interest_earned = snap.interest_earned
        row.interest_above_cap = snap.interest_above_cap
        row.loan_asset = snap.loan_asset or None
        session.flush()
        return snap

    def interest_snapshots(self, session: Session, day: date | None = None) -> list[InterestSnapshot]:
        stmt = select(InterestSnapshotRow, PositionRow.market_id).join(
            PositionRow, PositionRow.id == InterestSnapshotRow.position_id
        )
        if day is not None:
            stmt = stmt.where(InterestSnapshotRow.snapshot_date == day)
        stmt = stmt.order_by(InterestSnapshotRow.snapshot_date, InterestSnapshotRow.position_id)
        return [to_interest_snapshot(row, market_id) for row, market_id in session.execute(stmt)]

    def supply_snapshots(self, session: Session, day: date | None = None) -> list[SupplySnapshot]:
        stmt = select(SupplySnapshotRow)
        if day is not None:
            stmt = stmt.where(SupplySnapshotRow.snapshot_date == day)
        stmt = stmt.order_by(
            SupplySnapshotRow.snapshot_date, SupplySnapshotRow.vault_id, SupplySnapshotRow.market_id
        )
        return [to_supply_snapshot(r) for r in session.scalars(stmt)]

    def reimbursable_snapshots(self, session: Session, day: date) -> list[InterestSnapshot]:
        """Snapshots of active positions on ``day`` with interest above the cap."""
        stmt = (
            select(InterestSnapshotRow, PositionRow.market_id)
            .join(PositionRow, PositionRow.id == InterestSnapshotRow.position_id)
            .where(
                InterestSnapshotRow.snapshot_date == day,
                InterestSnapshotRow.interest_above_cap > 0,
                PositionRow.status == PositionStatus.ACTIVE.value,
            )
            .order_by(InterestSnapshotRow.position_id)
        )
        return [to_interest_snapshot(row, market_id) for row, market_id in session.execute(stmt)]

    # ------------------------------------------------------------------
    # Reimbursements
    # ------------------------------------------------------------------

    def reimbursement_exists(
        self, session: Session, position_id: int, period_start: date, period_end: date
    ) -> bool:
        found = session.scalar(
            select(ReimbursementRow.id).where(
                ReimbursementRow.position_id == position_id,
                ReimbursementRow.period_start == period_start,
                ReimbursementRow.period_end == period_end,
            )
        )
        return found is not None

    def insert_reimbursement(
        self,
        session: Session,
        position_id: int,
        amount: Decimal,
        period_start: date,
        period_end: date,
        loan_asset: str = "",
    ) -> Reimbursement:
        row = ReimbursementRow(
            position_id=position_id,
            amount=amount,
            loan_asset=loan_asset or None,
            period_start=period_start,
            period_end=period_end,
            status=ReimbursementStatus.PENDING.value,
            created_at=_utcnow(),
        )
        session.add(row)
        session.flush()
        return to_reimbursement(row)

    def get_reimbursement(self, session: Session, reimbursement_id: int) -> Reimbursement | None:
        row = session.get(ReimbursementRow, reimbursement_id)
        return to_reimbursement(row) if row is not None else None

    def list_reimbursements(
        self, session: Session, status: ReimbursementStatus | None = None
    ) -> list[Reimbursement]:
        stmt = select(ReimbursementRow).order_by(ReimbursementRow.created_at, ReimbursementRow.id)
        if status is not None:
            stmt = stmt.where(ReimbursementRow.status == status.value)
        return [to_reimbursement(r) for r in session.scalars(stmt)]

    def pending_payment_targets(self, session: Session, limit: int) -> list[PaymentTarget]:
        """Oldest pending reimbursements first, joined with their recipient."""
        vault = aliased(VaultRow)
        borrower = aliased(BorrowerRow)
        stmt = (
            select(ReimbursementRow, MarketRow.name, vault.address, vault.name, borrower.address)
            .join(PositionRow, PositionRow.id == ReimbursementRow.position_id)
            .join(MarketRow, MarketRow.market_id == PositionRow.market_id)
            .outerjoin(vault, vault.id == PositionRow.vault_id)
            .outerjoin(borrower, borrower.id == PositionRow.borrower_id)
            .where(ReimbursementRow.status == ReimbursementStatus.PENDING.value)
            .order_by(ReimbursementRow.created_at, ReimbursementRow.id)
            .limit(limit)
        )
        targets: list[PaymentTarget] = []
        for row, market_name, vault_address, vault_name, borrower_address in session.execute(stmt):
            targets.append(
                PaymentTarget(
                    reimbursement=to_reimbursement(row),
                    recipient_address=vault_address or borrower_address or "",
                    entity_name=vault_name or "Direct Borrower",
                    market_name=market_name,
                )
            )
        return targets

    def recently_failed(self, session: Session, limit: int) -> list[Reimbursement]:
        stmt = (
            select(ReimbursementRow)
            .where(ReimbursementRow.status == ReimbursementStatus.FAILED.value)
            .order_by(ReimbursementRow.processed_at.desc(), ReimbursementRow.id.desc())
            .limit(limit)
        )
        return [to_reimbursement(r) for r in session.scalars(stmt)]

    def transition_reimbursement(
        self,
        session: Session,
        reimbursement_id: int,
        target: ReimbursementStatus,
        tx_hash: str | None = None,
        processed_at: datetime | None = None,
    ) -> Reimbursement:
        """Move a reimbursement along the lifecycle, rejecting illegal moves."""
        row = session.get(ReimbursementRow, reimbursement_id)
        if row is None:
            raise KeyError(f"Unknown reimbursement: {reimbursement_id}")
        current = ReimbursementStatus(row.status)
        if not can_transition(current, target):
            raise InvalidTransitionError(reimbursement_id, current.value, target.value)
        row.status = target.value
        row.tx_hash = tx_hash
        row.processed_at = processed_at
        session.flush()
        return to_reimbursement(row)
