"""Typed errors raised by the accrual and reimbursement engine."""
from __future__ import annotations


class RateCapError(Exception):
    """Base class for all engine errors."""


class FatalInitError(RateCapError):
    """A precondition failed before the batch could start; nothing was written."""


class OwnershipError(RateCapError):
    """A position must be held by exactly one of a vault or a borrower."""


class InvalidTransitionError(RateCapError):
    """Reimbursement status change outside the allowed lifecycle."""

    def __init__(self, reimbursement_id: int, current: str, target: str) -> None:
        super().__init__(
            f"Reimbursement {reimbursement_id}: cannot move from {current} to {target}"
        )
        self.reimbursement_id = reimbursement_id
        self.current = current
        self.target = target


class PaymentError(RateCapError):
    """Payment execution failed; the reimbursement is marked failed."""
