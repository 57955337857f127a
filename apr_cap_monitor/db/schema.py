"""SQLAlchemy tables for markets, positions, snapshots and reimbursements."""
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import ClassVar

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Token amounts and rates. Never floats.
AMOUNT = Numeric(36, 18)
RATE = Numeric(20, 12)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    type_annotation_map: ClassVar[dict] = {
        Decimal: AMOUNT,
        datetime: DateTime(timezone=True),
        date: Date,
    }


class MarketRow(Base):
    __tablename__ = "markets"

    market_id: Mapped[str] = mapped_column(String(66), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    collateral_asset: Mapped[str | None] = mapped_column(String(50))
    loan_asset: Mapped[str | None] = mapped_column(String(50))
    apr_cap: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    alert_threshold: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=_utcnow, onupdate=_utcnow)


class VaultRow(Base):
    __tablename__ = "vaults"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(42), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    symbol: Mapped[str | None] = mapped_column(String(20))
    created_at: Mapped[datetime] = mapped_column(default=_utcnow)


class BorrowerRow(Base):
    __tablename__ = "borrowers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(42), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow)


class VaultAllocationRow(Base):
    __tablename__ = "vault_allocations"
    __table_args__ = (UniqueConstraint("vault_id", "market_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vault_id: Mapped[int] = mapped_column(ForeignKey("vaults.id"), nullable=False, index=True)
    market_id: Mapped[str] = mapped_column(
        ForeignKey("markets.market_id"), nullable=False, index=True
    )
    supply_assets: Mapped[Decimal] = mapped_column(nullable=False)
    loan_asset: Mapped[str | None] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    last_updated: Mapped[datetime] = mapped_column(default=_utcnow, onupdate=_utcnow)


class PositionRow(Base):
    __tablename__ = "borrower_positions"
    __table_args__ = (
        CheckConstraint(
            "(borrower_id IS NOT NULL AND vault_id IS NULL) OR "
            "(borrower_id IS NULL AND vault_id IS NOT NULL)",
            name="check_borrower_or_vault",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    borrower_id: Mapped[int | None] = mapped_column(ForeignKey("borrowers.id"), index=True)
    vault_id: Mapped[int | None] = mapped_column(ForeignKey("vaults.id"), index=True)
    market_id: Mapped[str] = mapped_column(
        ForeignKey("markets.market_id"), nullable=False, index=True
    )
    principal_borrowed: Mapped[Decimal] = mapped_column(nullable=False)
    current_debt: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    opened_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=_utcnow, onupdate=_utcnow)


Index(
    "idx_borrower_positions_unique",
    func.coalesce(PositionRow.borrower_id, -1),
    func.coalesce(PositionRow.vault_id, -1),
    PositionRow.market_id,
    unique=True,
)


class InterestSnapshotRow(Base):
    __tablename__ = "interest_snapshots"
    __table_args__ = (UniqueConstraint("position_id", "snapshot_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    position_id: Mapped[int] = mapped_column(
        ForeignKey("borrower_positions.id"), nullable=False, index=True
    )
    snapshot_date: Mapped[date] = mapped_column(nullable=False, index=True)
    current_rate: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    capped_rate: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    interest_accrued: Mapped[Decimal] = mapped_column(nullable=False)
    interest_above_cap: Mapped[Decimal] = mapped_column(nullable=False)
    loan_asset: Mapped[str | None] = mapped_column(String(20))
    opening_balance: Mapped[Decimal | None] = mapped_column(AMOUNT)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow)


class SupplySnapshotRow(Base):
    __tablename__ = "vault_supply_snapshots"
    __table_args__ = (UniqueConstraint("vault_id", "market_id", "snapshot_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vault_id: Mapped[int] = mapped_column(ForeignKey("vaults.id"), nullable=False, index=True)
    market_id: Mapped[str] = mapped_column(
        ForeignKey("markets.market_id"), nullable=False, index=True
    )
    snapshot_date: Mapped[date] = mapped_column(nullable=False, index=True)
    supply_amount: Mapped[Decimal] = mapped_column(nullable=False)
    supply_apy: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    capped_apy: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    interest_earned: Mapped[Decimal] = mapped_column(nullable=False)
    interest_above_cap: Mapped[Decimal] = mapped_column(nullable=False)
    loan_asset: Mapped[str | None] = mapped_column(String(20))
    created_at: Mapped[datetime] = mapped_column(default=_utcnow)


class ReimbursementRow(Base):
    __tablename__ = "reimbursements"
    __table_args__ = (UniqueConstraint("position_id", "period_start", "period_end"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    position_id: Mapped[int] = mapped_column(
        ForeignKey("borrower_positions.id"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    loan_asset: Mapped[str | None] = mapped_column(String(20))
    period_start: Mapped[date] = mapped_column(nullable=False)
    period_end: Mapped[date] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False, index=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66))
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column()
