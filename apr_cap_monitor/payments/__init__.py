"""Payment executors."""
from .simulated import SimulatedPaymentExecutor

__all__ = ["SimulatedPaymentExecutor"]
