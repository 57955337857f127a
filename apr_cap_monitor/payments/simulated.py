"""Simulated payment execution, standing in for the on-chain transfer."""
from __future__ import annotations

import asyncio
import logging
import random
import secrets
from decimal import Decimal

from ..errors import PaymentError

logger = logging.getLogger(__name__)


class SimulatedPaymentExecutor:
    """Pretend to pay, returning a random 32-byte transaction hash.

    A configurable share of payments fails with ``PaymentError``.
    """

    def __init__(
        self,
        failure_rate: float = 0.05,
        latency_seconds: float = 0.0,
        rng: random.Random | None = None,
    ) -> None:
        self.failure_rate = failure_rate
        self.latency_seconds = latency_seconds
        self._rng = rng or random.Random()

    async def pay(self, recipient_address: str, amount: Decimal, token: str) -> str:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        if self._rng.random() < self.failure_rate:
            raise PaymentError(
                f"Simulated payment failure: {amount} {token} to {recipient_address}"
            )

        tx_hash = "0x" + secrets.token_hex(32)
        logger.debug("Simulated payment of %s %s to %s: %s", amount, token, recipient_address, tx_hash)
        return tx_hash
