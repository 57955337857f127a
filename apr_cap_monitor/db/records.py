"""Row to record conversion shared by the store and the read-model queries."""
from __future__ import annotations

from ..errors import OwnershipError
from ..models import (
    Borrower,
    BorrowerOwner,
    InterestSnapshot,
    Market,
    Position,
    PositionOwner,
    PositionStatus,
    Reimbursement,
    ReimbursementStatus,
    SupplySnapshot,
    Vault,
    VaultAllocation,
    VaultOwner,
)
from .schema import (
    BorrowerRow,
    InterestSnapshotRow,
    MarketRow,
    PositionRow,
    ReimbursementRow,
    SupplySnapshotRow,
    VaultAllocationRow,
    VaultRow,
)


def to_market(row: MarketRow) -> Market:
    return Market(
        market_id=row.market_id,
        name=row.name,
        apr_cap=row.apr_cap,
        alert_threshold=row.alert_threshold,
        loan_asset=row.loan_asset or "",
        collateral_asset=row.collateral_asset or "",
    )


def to_vault(row: VaultRow) -> Vault:
    return Vault(id=row.id, address=row.address, name=row.name, symbol=row.symbol or "")


def to_borrower(row: BorrowerRow) -> Borrower:
    return Borrower(id=row.id, address=row.address)


def to_position(row: PositionRow) -> Position:
    owner: PositionOwner
    if row.borrower_id is not None and row.vault_id is None:
        owner = BorrowerOwner(row.borrower_id)
    elif row.vault_id is not None and row.borrower_id is None:
        owner = VaultOwner(row.vault_id)
    else:
        raise OwnershipError(f"Stored position {row.id} has an invalid owner")
    return Position(
        id=row.id,
        market_id=row.market_id,
        owner=owner,
        principal=row.principal_borrowed,
        current_debt=row.current_debt,
        status=PositionStatus(row.status),
        opened_at=row.opened_at,
        updated_at=row.updated_at,
    )


def to_allocation(row: VaultAllocationRow, vault_name: str = "") -> VaultAllocation:
    return VaultAllocation(
        id=row.id,
        vault_id=row.vault_id,
        market_id=row.market_id,
        supply_assets=row.supply_assets,
        loan_asset=row.loan_asset or "",
        status=PositionStatus(row.status),
        vault_name=vault_name,
    )


def to_interest_snapshot(row: InterestSnapshotRow, market_id: str) -> InterestSnapshot:
    return InterestSnapshot(
        position_id=row.position_id,
        market_id=market_id,
        snapshot_date=row.snapshot_date,
        current_rate=row.current_rate,
        capped_rate=row.capped_rate,
        interest_accrued=row.interest_accrued,
        interest_above_cap=row.interest_above_cap,
        loan_asset=row.loan_asset or "",
        opening_balance=row.opening_balance,
    )


def to_supply_snapshot(row: SupplySnapshotRow) -> SupplySnapshot:
    return SupplySnapshot(
        vault_id=row.vault_id,
        market_id=row.market_id,
        snapshot_date=row.snapshot_date,
        supply_amount=row.supply_amount,
        supply_apy=row.supply_apy,
        capped_apy=row.capped_apy,
        interest_earned=row.interest_earned,
        interest_above_cap=row.interest_above_cap,
        loan_asset=row.loan_asset or "",
    )


def to_reimbursement(row: ReimbursementRow) -> Reimbursement:
    return Reimbursement(
        id=row.id,
        position_id=row.position_id,
        amount=row.amount,
        loan_asset=row.loan_asset or "",
        period_start=row.period_start,
        period_end=row.period_end,
        status=ReimbursementStatus(row.status),
        tx_hash=row.tx_hash,
        created_at=row.created_at,
        processed_at=row.processed_at,
    )
