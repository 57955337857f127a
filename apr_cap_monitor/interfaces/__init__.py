"""Protocol interfaces for the APR cap monitor."""
from .notifier import Notifier
from .payment import PaymentExecutor
from .position_source import PositionSource
from .rate_source import RateSource

__all__ = ["Notifier", "PaymentExecutor", "PositionSource", "RateSource"]
