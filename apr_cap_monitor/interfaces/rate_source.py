"""Rate source protocol — current annualized market rates."""
from typing import Protocol

from ..models import MarketState


class RateSource(Protocol):
    """Abstract interface for looking up a market's current borrow/supply APY."""

    async def get_market_state(self, market_id: str) -> MarketState | None: ...
