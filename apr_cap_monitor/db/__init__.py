"""Persistence for markets, positions, snapshots and reimbursements."""
from .store import PositionStore

__all__ = ["PositionStore"]
