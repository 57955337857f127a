"""Payment executor protocol — pays out a reimbursement."""
from decimal import Decimal
from typing import Protocol


class PaymentExecutor(Protocol):
    """Abstract interface for executing a reimbursement payment.

    Returns the transaction reference; raises ``PaymentError`` on failure.
    """

    async def pay(self, recipient_address: str, amount: Decimal, token: str) -> str: ...
