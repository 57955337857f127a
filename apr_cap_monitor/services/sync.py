"""Refresh borrowers, their positions and vault allocations from the position source."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from ..db.store import PositionStore
from ..interfaces.position_source import PositionSource
from ..models import BorrowerOwner, BorrowerPositionData

logger = logging.getLogger(__name__)

BORROWER_PAGE_SIZE = 100


@dataclass(frozen=True)
class SyncResult:
    borrowers_found: int = 0
    positions_created: int = 0
    positions_updated: int = 0
    allocations_updated: int = 0
    errors: int = 0


class PositionSync:
    """Writes the source's current balances over the stored ones.

    Positions are matched by (borrower, market) and overwritten, so running it
    twice in a row changes nothing. Each borrower and each allocation is
    committed on its own; a failure is logged and counted, and the sync moves on.
    Positions missing from the source are left as they are.
    """

    def __init__(self, store: PositionStore, source: PositionSource) -> None:
        self._store = store
        self._source = source

    async def sync(self, limit: int = BORROWER_PAGE_SIZE) -> SyncResult:
        allocations = await self.sync_vault_allocations()
        borrowers = await self.sync_borrowers(limit)
        return SyncResult(
            borrowers_found=borrowers.borrowers_found,
            positions_created=borrowers.positions_created,
            positions_updated=borrowers.positions_updated,
            allocations_updated=allocations.allocations_updated,
            errors=borrowers.errors + allocations.errors,
        )

    async def sync_borrowers(self, limit: int = BORROWER_PAGE_SIZE) -> SyncResult:
        with self._store.session_scope() as session:
            markets = self._store.list_markets(session)

        logger.info("Syncing borrowers for %d markets", len(markets))

        found = created = updated = errors = 0
        for market in markets:
            positions = await self._source.get_borrower_positions(market.market_id, limit)
            if positions is None:
                logger.warning("Could not fetch borrowers for %s; skipping", market.name)
                errors += 1
                continue

            logger.info("  %s: %d borrowers", market.name, len(positions))
            found += len(positions)
            for data in positions:
                try:
                    if self._write_position(market.market_id, data):
                        created += 1
                    else:
                        updated += 1
                except Exception as e:
                    logger.error(
                        "Error syncing borrower %s in %s: %s", data.address, market.name, e
                    )
                    errors += 1

        result = SyncResult(
            borrowers_found=found,
            positions_created=created,
            positions_updated=updated,
            errors=errors,
        )
        logger.info(
            "Borrower sync: %d found, %d created, %d updated, %d errors",
            found,
            created,
            updated,
            errors,
        )
        return result

    def _write_position(self, market_id: str, data: BorrowerPositionData) -> bool:
        """Upsert one borrower's position; True if it was created."""
        with self._store.session_scope() as session:
            borrower = self._store.upsert_borrower(session, data.address)
            owner = BorrowerOwner(borrower.id)
            existed = self._store.find_position(session, owner, market_id) is not None
            self._store.upsert_position(
                session,
                owner,
                market_id,
                principal=data.borrowed_amount,
                current_debt=data.borrowed_amount,
            )
        return not existed

    async def sync_vault_allocations(self) -> SyncResult:
        """Refresh supply amounts for every stored vault in tracked markets only."""
        with self._store.session_scope() as session:
            vaults = self._store.list_vaults(session)
            tracked = {m.market_id for m in self._store.list_markets(session)}

        updated = errors = 0
        for vault in vaults:
            allocations = await self._source.get_vault_allocations(vault.address)
            if allocations is None:
                logger.warning("Could not fetch allocations for vault %s; skipping", vault.name)
                errors += 1
                continue

            relevant = [a for a in allocations if a.market_id in tracked]
            if not relevant:
                logger.info("  %s: no allocations to tracked markets", vault.name)
                continue

            for alloc in relevant:
                try:
                    with self._store.session_scope() as session:
                        self._store.upsert_allocation(
                            session, vault.id, alloc.market_id, alloc.supply_assets
                        )
                    updated += 1
                    logger.info(
                        "  %s: %.6f %s in %s",
                        vault.name,
                        alloc.supply_assets,
                        alloc.loan_asset,
                        alloc.market_id,
                    )
                except Exception as e:
                    logger.error(
                        "Error syncing allocation of %s in %s: %s", vault.name, alloc.market_id, e
                    )
                    errors += 1

        logger.info("Allocation sync: %d updated, %d errors", updated, errors)
        return SyncResult(allocations_updated=updated, errors=errors)
