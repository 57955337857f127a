"""Service modules"""
from .app import Application
from .orchestrator import BatchOrchestrator
from .reimbursements import ReimbursementManager
from .reporting import Reporter
from .scheduler import DailyScheduler
from .snapshot_engine import SnapshotEngine
from .sync import PositionSync

__all__ = [
    "Application",
    "BatchOrchestrator",
    "DailyScheduler",
    "PositionSync",
    "ReimbursementManager",
    "Reporter",
    "SnapshotEngine",
]
