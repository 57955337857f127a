"""Position source protocol — borrowers and vault allocations as they stand on-chain."""
from typing import Protocol

from ..models import AllocationData, BorrowerPositionData


class PositionSource(Protocol):
    """Abstract interface for listing a market's borrowers and a vault's allocations.

    Both calls return ``None`` when the source could not be reached.
    """

    async def get_borrower_positions(
        self, market_id: str, limit: int = 100
    ) -> list[BorrowerPositionData] | None: ...

    async def get_vault_allocations(self, vault_address: str) -> list[AllocationData] | None: ...
