"""Read-model queries behind the stats, address, pool and alert views."""
from __future__ import annotations

from collections import defaultdict
from datetime import date
from decimal import Decimal

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from ..models import (
    ZERO,
    PendingBorrower,
    PositionReimbursement,
    PositionStatus,
    RateAlert,
    ReimbursementHistoryEntry,
    ReimbursementStats,
    ReimbursementStatus,
    ReimbursementSummary,
    StatusTotals,
    TokenAmount,
    VaultPoolEntry,
    VaultReimbursementPool,
)
from .records import to_reimbursement
from .schema import (
    BorrowerRow,
    InterestSnapshotRow,
    MarketRow,
    PositionRow,
    ReimbursementRow,
    SupplySnapshotRow,
    VaultRow,
)

_PENDING = ReimbursementStatus.PENDING.value
_COMPLETED = ReimbursementStatus.COMPLETED.value
_FAILED = ReimbursementStatus.FAILED.value


def _dec(value) -> Decimal:
    if value is None:
        return ZERO
    return value if isinstance(value, Decimal) else Decimal(str(value))


def reimbursement_stats(session: Session) -> ReimbursementStats:
    rows = session.execute(
        select(
            ReimbursementRow.status,
            func.count(ReimbursementRow.id),
            func.coalesce(func.sum(ReimbursementRow.amount), 0),
        ).group_by(ReimbursementRow.status)
    ).all()
    totals = {status: StatusTotals(count=int(count), total_amount=_dec(amount))
              for status, count, amount in rows}
    return ReimbursementStats(
        pending=totals.get(_PENDING, StatusTotals()),
        completed=totals.get(_COMPLETED, StatusTotals()),
        failed=totals.get(_FAILED, StatusTotals()),
    )


def _find_entity(session: Session, address: str) -> tuple[str, int, str | None] | None:
    """Resolve an address to (entity_type, id, name). Vaults win over borrowers."""
    normalized = address.lower()
    vault = session.execute(
        select(VaultRow.id, VaultRow.name).where(func.lower(VaultRow.address) == normalized)
    ).first()
    if vault is not None:
        return "vault", vault.id, vault.name
    borrower_id = session.scalar(
        select(BorrowerRow.id).where(func.lower(BorrowerRow.address) == normalized)
    )
    if borrower_id is not None:
        return "borrower", borrower_id, None
    return None


def _owner_column(entity_type: str):
    return PositionRow.vault_id if entity_type == "vault" else PositionRow.borrower_id


def reimbursements_for_address(session: Session, address: str) -> ReimbursementSummary | None:
    entity = _find_entity(session, address)
    if entity is None:
        return None
    entity_type, entity_id, entity_name = entity
    owner_col = _owner_column(entity_type)

    position_rows = session.execute(
        select(
            PositionRow.id,
            PositionRow.market_id,
            MarketRow.name,
            PositionRow.current_debt,
            PositionRow.status,
            func.coalesce(func.sum(InterestSnapshotRow.interest_accrued), 0),
            func.coalesce(func.sum(InterestSnapshotRow.interest_above_cap), 0),
            func.max(InterestSnapshotRow.snapshot_date),
        )
        .join(MarketRow, MarketRow.market_id == PositionRow.market_id)
        .outerjoin(InterestSnapshotRow, InterestSnapshotRow.position_id == PositionRow.id)
        .where(owner_col == entity_id)
        .group_by(
            PositionRow.id,
            PositionRow.market_id,
            MarketRow.name,
            PositionRow.current_debt,
            PositionRow.status,
        )
    ).all()
    positions = sorted(
        (
            PositionReimbursement(
                position_id=pid,
                market_id=market_id,
                market_name=market_name,
                current_debt=_dec(debt),
                status=status,
                total_interest_accrued=_dec(accrued),
                total_reimbursable=_dec(above),
                last_snapshot_date=last_day,
            )
            for pid, market_id, market_name, debt, status, accrued, above, last_day in position_rows
        ),
        key=lambda p: p.total_reimbursable,
        reverse=True,
    )

    counts = session.execute(
        select(
            func.count(case((ReimbursementRow.status == _PENDING, 1))),
            func.count(case((ReimbursementRow.status == _COMPLETED, 1))),
            func.count(case((ReimbursementRow.status == _FAILED, 1))),
            func.coalesce(
                func.sum(case((ReimbursementRow.status == _PENDING, ReimbursementRow.amount), else_=0)),
                0,
            ),
        )
        .join(PositionRow, PositionRow.id == ReimbursementRow.position_id)
        .where(owner_col == entity_id)
    ).one()
    pending_count, completed_count, failed_count, total_pending = counts

    return ReimbursementSummary(
        address=address,
        entity_type=entity_type,
        entity_name=entity_name,
        total_owed=_dec(total_pending),
        pending_reimbursements=int(pending_count),
        completed_reimbursements=int(completed_count),
        failed_reimbursements=int(failed_count),
        positions=tuple(positions),
    )


def reimbursement_history(
    session: Session, address: str, limit: int = 50
) -> list[ReimbursementHistoryEntry]:
    entity = _find_entity(session, address)
    if entity is None:
        return []
    entity_type, entity_id, _ = entity
    rows = session.execute(
        select(ReimbursementRow, MarketRow.market_id, MarketRow.name)
        .join(PositionRow, PositionRow.id == ReimbursementRow.position_id)
        .join(MarketRow, MarketRow.market_id == PositionRow.market_id)
        .where(_owner_column(entity_type) == entity_id)
        .order_by(ReimbursementRow.created_at.desc(), ReimbursementRow.id.desc())
        .limit(limit)
    ).all()
    return [
        ReimbursementHistoryEntry(
            reimbursement=to_reimbursement(row), market_id=market_id, market_name=market_name
        )
        for row, market_id, market_name in rows
    ]


def pending_borrowers(session: Session) -> list[PendingBorrower]:
    """Borrowers of active positions with at least one pending reimbursement."""
    rows = session.execute(
        select(BorrowerRow.address, MarketRow.name, ReimbursementRow.amount)
        .join(PositionRow, PositionRow.borrower_id == BorrowerRow.id)
        .join(MarketRow, MarketRow.market_id == PositionRow.market_id)
        .join(ReimbursementRow, ReimbursementRow.position_id == PositionRow.id)
        .where(
            PositionRow.status == PositionStatus.ACTIVE.value,
            ReimbursementRow.status == _PENDING,
        )
    ).all()

    owed: dict[str, Decimal] = defaultdict(lambda: ZERO)
    count: dict[str, int] = defaultdict(int)
    markets: dict[str, set[str]] = defaultdict(set)
    for address, market_name, amount in rows:
        owed[address] += _dec(amount)
        count[address] += 1
        markets[address].add(market_name)

    result = [
        PendingBorrower(
            address=address,
            total_owed=owed[address],
            pending_count=count[address],
            markets=tuple(sorted(markets[address])),
        )
        for address in owed
    ]
    return sorted(result, key=lambda b: b.total_owed, reverse=True)


def vault_reimbursement_pool(session: Session, since: date) -> VaultReimbursementPool:
    """Vault-side excess interest by token over snapshots dated ``since`` or later."""
    rows = session.execute(
        select(
            VaultRow.name,
            VaultRow.address,
            SupplySnapshotRow.loan_asset,
            func.count(func.distinct(SupplySnapshotRow.market_id)),
            func.coalesce(func.sum(SupplySnapshotRow.interest_above_cap), 0),
        )
        .join(SupplySnapshotRow, SupplySnapshotRow.vault_id == VaultRow.id)
        .where(SupplySnapshotRow.snapshot_date >= since)
        .group_by(VaultRow.id, VaultRow.name, VaultRow.address, SupplySnapshotRow.loan_asset)
        .having(func.sum(SupplySnapshotRow.interest_above_cap) > 0)
        .order_by(VaultRow.name, SupplySnapshotRow.loan_asset)
    ).all()

    vaults: dict[str, dict] = {}
    token_totals: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for name, address, token, market_count, excess in rows:
        token = token or ""
        entry = vaults.setdefault(address, {"name": name, "markets": 0, "excess": []})
        entry["markets"] += int(market_count)
        entry["excess"].append(TokenAmount(token=token, amount=_dec(excess)))
        token_totals[token] += _dec(excess)

    return VaultReimbursementPool(
        window_start=since,
        vaults=tuple(
            VaultPoolEntry(
                name=v["name"],
                address=address,
                markets=v["markets"],
                excess_by_token=tuple(v["excess"]),
            )
            for address, v in vaults.items()
        ),
        totals_by_token=tuple(
            TokenAmount(token=token, amount=total) for token, total in token_totals.items()
        ),
    )


def rate_alerts(session: Session) -> list[RateAlert]:
    """Active positions whose latest observed rate exceeds the market alert threshold."""
    latest = (
        select(
            InterestSnapshotRow.position_id,
            func.max(InterestSnapshotRow.snapshot_date).label("last_day"),
        )
        .group_by(InterestSnapshotRow.position_id)
        .subquery()
    )
    rows = session.execute(
        select(
            InterestSnapshotRow.position_id,
            InterestSnapshotRow.snapshot_date,
            InterestSnapshotRow.current_rate,
            MarketRow.market_id,
            MarketRow.name,
            MarketRow.apr_cap,
            MarketRow.alert_threshold,
        )
        .join(
            latest,
            (latest.c.position_id == InterestSnapshotRow.position_id)
            & (latest.c.last_day == InterestSnapshotRow.snapshot_date),
        )
        .join(PositionRow, PositionRow.id == InterestSnapshotRow.position_id)
        .join(MarketRow, MarketRow.market_id == PositionRow.market_id)
        .where(
            PositionRow.status == PositionStatus.ACTIVE.value,
            InterestSnapshotRow.current_rate > MarketRow.alert_threshold,
        )
        .order_by(MarketRow.name, InterestSnapshotRow.position_id)
    ).all()
    return [
        RateAlert(
            position_id=position_id,
            market_id=market_id,
            market_name=market_name,
            snapshot_date=snapshot_date,
            current_rate=_dec(rate),
            apr_cap=_dec(cap),
            alert_threshold=_dec(threshold),
        )
        for position_id, snapshot_date, rate, market_id, market_name, cap, threshold in rows
    ]
