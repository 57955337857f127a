"""Data models, all frozen.

Store rows never leave :mod:`apr_cap_monitor.db.store`; every read is turned
into one of these records first.
"""
from __future__ import annotations

import enum
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Union

ZERO = Decimal("0")


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Market:
    """A lending market with its contractual APR cap."""

    market_id: str
    name: str
    apr_cap: Decimal
    alert_threshold: Decimal
    loan_asset: str = ""
    collateral_asset: str = ""


@dataclass(frozen=True)
class Vault:
    id: int
    address: str
    name: str
    symbol: str = ""


@dataclass(frozen=True)
class Borrower:
    id: int
    address: str


@dataclass(frozen=True)
class VaultOwner:
    vault_id: int

    @property
    def kind(self) -> str:
        return "vault"


@dataclass(frozen=True)
class BorrowerOwner:
    borrower_id: int

    @property
    def kind(self) -> str:
        return "borrower"


PositionOwner = Union[VaultOwner, BorrowerOwner]


class PositionStatus(str, enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(frozen=True)
class Position:
    """A stake in one market, held by exactly one vault or borrower."""

    id: int
    market_id: str
    owner: PositionOwner
    principal: Decimal
    current_debt: Decimal
    status: PositionStatus = PositionStatus.ACTIVE
    opened_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def compounds(self) -> bool:
        """Only borrower debt compounds; vault balances are synced externally."""
        return isinstance(self.owner, BorrowerOwner)


@dataclass(frozen=True)
class VaultAllocation:
    """A vault's supply stake in a specific market."""

    id: int
    vault_id: int
    market_id: str
    supply_assets: Decimal
    loan_asset: str = ""
    status: PositionStatus = PositionStatus.ACTIVE
    vault_name: str = ""


@dataclass(frozen=True)
class MarketState:
    """Current annualized rates for one market, as reported by the rate source."""

    market_id: str
    borrow_apy: Decimal
    supply_apy: Decimal
    loan_asset: str = ""


@dataclass(frozen=True)
class BorrowerPositionData:
    """An on-chain borrow position, converted from shares to token units."""

    address: str
    market_id: str
    borrow_shares: int
    borrowed_amount: Decimal
    loan_asset: str = ""
    collateral_asset: str = ""


@dataclass(frozen=True)
class AllocationData:
    """One market a vault currently supplies to, in token units."""

    market_id: str
    supply_assets: Decimal
    loan_asset: str = ""


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InterestSnapshot:
    """One day of debt-side accrual for one position."""

    position_id: int
    market_id: str
    snapshot_date: date
    current_rate: Decimal
    capped_rate: Decimal
    interest_accrued: Decimal
    interest_above_cap: Decimal
    loan_asset: str = ""
    # debt balance the accrual was computed on
    opening_balance: Decimal | None = None


@dataclass(frozen=True)
class SupplySnapshot:
    """One day of supply-side earnings for one vault allocation."""

    vault_id: int
    market_id: str
    snapshot_date: date
    supply_amount: Decimal
    supply_apy: Decimal
    capped_apy: Decimal
    interest_earned: Decimal
    interest_above_cap: Decimal
    loan_asset: str = ""

    # Uniform names shared with InterestSnapshot for summaries.
    @property
    def current_rate(self) -> Decimal:
        return self.supply_apy

    @property
    def interest_accrued(self) -> Decimal:
        return self.interest_earned


# ---------------------------------------------------------------------------
# Reimbursements
# ---------------------------------------------------------------------------


class ReimbursementStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[ReimbursementStatus, frozenset[ReimbursementStatus]] = {
    ReimbursementStatus.PENDING: frozenset(
        {ReimbursementStatus.COMPLETED, ReimbursementStatus.FAILED}
    ),
    ReimbursementStatus.FAILED: frozenset({ReimbursementStatus.PENDING}),
    ReimbursementStatus.COMPLETED: frozenset(),
}


def can_transition(current: ReimbursementStatus, target: ReimbursementStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class Reimbursement:
    id: int
    position_id: int
    amount: Decimal
    period_start: date
    period_end: date
    status: ReimbursementStatus
    loan_asset: str = ""
    tx_hash: str | None = None
    created_at: datetime | None = None
    processed_at: datetime | None = None


@dataclass(frozen=True)
class PaymentTarget:
    """A pending reimbursement joined with its recipient."""

    reimbursement: Reimbursement
    recipient_address: str
    entity_name: str
    market_name: str


# ---------------------------------------------------------------------------
# Per-item results and run summaries
# ---------------------------------------------------------------------------


class SkipReason(str, enum.Enum):
    NO_RATE_DATA = "no_rate_data"
    ERROR = "error"


Snapshot = Union[InterestSnapshot, SupplySnapshot]


@dataclass(frozen=True)
class EntityOutcome:
    """Result of one entity in a snapshot phase: a snapshot or a skip reason."""

    entity: str
    market_id: str
    snapshot: Snapshot | None = None
    skip_reason: SkipReason | None = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.snapshot is not None


@dataclass(frozen=True)
class TokenTotal:
    token: str
    interest: Decimal
    above_cap: Decimal


def _totals_by_token(snapshots: list[Snapshot]) -> tuple[TokenTotal, ...]:
    interest: dict[str, Decimal] = defaultdict(lambda: ZERO)
    above: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for snap in snapshots:
        interest[snap.loan_asset] += snap.interest_accrued
        above[snap.loan_asset] += snap.interest_above_cap
    return tuple(
        TokenTotal(token=token, interest=interest[token], above_cap=above[token])
        for token in sorted(interest)
    )


def _average_rate(snapshots: list[Snapshot]) -> Decimal:
    if not snapshots:
        return ZERO
    return sum((s.current_rate for s in snapshots), ZERO) / len(snapshots)


@dataclass(frozen=True)
class PhaseResult:
    """All per-entity outcomes of one snapshot phase."""

    phase: str
    day: date
    outcomes: tuple[EntityOutcome, ...] = ()

    @property
    def snapshots(self) -> list[Snapshot]:
        return [o.snapshot for o in self.outcomes if o.snapshot is not None]

    @property
    def processed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def skipped_count(self) -> int:
        return sum(1 for o in self.outcomes if o.skip_reason == SkipReason.NO_RATE_DATA)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.skip_reason == SkipReason.ERROR)

    @property
    def totals_by_token(self) -> tuple[TokenTotal, ...]:
        return _totals_by_token(self.snapshots)

    @property
    def average_rate(self) -> Decimal:
        return _average_rate(self.snapshots)


@dataclass(frozen=True)
class DailyCycleSummary:
    day: date
    supply: PhaseResult
    debt: PhaseResult
    duration_seconds: float = 0.0
    reimbursements_created: int | None = None

    @property
    def processed_count(self) -> int:
        return self.supply.processed_count + self.debt.processed_count

    @property
    def entity_count(self) -> int:
        return len(self.supply.outcomes) + len(self.debt.outcomes)

    @property
    def totals_by_token(self) -> tuple[TokenTotal, ...]:
        return _totals_by_token(self.supply.snapshots + self.debt.snapshots)

    @property
    def average_rate(self) -> Decimal:
        return _average_rate(self.supply.snapshots + self.debt.snapshots)


@dataclass(frozen=True)
class ProcessResult:
    processed: int = 0
    failed: int = 0
    total_amount: Decimal = ZERO


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StatusTotals:
    count: int = 0
    total_amount: Decimal = ZERO


@dataclass(frozen=True)
class ReimbursementStats:
    pending: StatusTotals = field(default_factory=StatusTotals)
    completed: StatusTotals = field(default_factory=StatusTotals)
    failed: StatusTotals = field(default_factory=StatusTotals)


@dataclass(frozen=True)
class PositionReimbursement:
    position_id: int
    market_id: str
    market_name: str
    current_debt: Decimal
    status: str
    total_interest_accrued: Decimal
    total_reimbursable: Decimal
    last_snapshot_date: date | None = None


@dataclass(frozen=True)
class ReimbursementSummary:
    address: str
    entity_type: str
    entity_name: str | None
    total_owed: Decimal
    pending_reimbursements: int
    completed_reimbursements: int
    failed_reimbursements: int
    positions: tuple[PositionReimbursement, ...] = ()


@dataclass(frozen=True)
class ReimbursementHistoryEntry:
    reimbursement: Reimbursement
    market_id: str
    market_name: str


@dataclass(frozen=True)
class PendingBorrower:
    address: str
    total_owed: Decimal
    pending_count: int
    markets: tuple[str, ...] = ()


@dataclass(frozen=True)
class TokenAmount:
    token: str
    amount: Decimal


@dataclass(frozen=True)
class VaultPoolEntry:
    name: str
    address: str
    markets: int
    excess_by_token: tuple[TokenAmount, ...] = ()


@dataclass(frozen=True)
class VaultReimbursementPool:
    window_start: date
    vaults: tuple[VaultPoolEntry, ...] = ()
    totals_by_token: tuple[TokenAmount, ...] = ()


@dataclass(frozen=True)
class RateAlert:
    position_id: int
    market_id: str
    market_name: str
    snapshot_date: date
    current_rate: Decimal
    apr_cap: Decimal
    alert_threshold: Decimal

    @property
    def rate_multiplier(self) -> Decimal | None:
        if self.apr_cap <= 0:
            return None
        return self.current_rate / self.apr_cap
