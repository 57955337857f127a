"""Seed markets, vaults and allocations from configuration; admin cap changes."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from ..config import AppConfig
from ..db.store import PositionStore
from ..models import Market

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SeedResult:
    markets: int = 0
    vaults: int = 0
    allocations: int = 0


def seed_from_config(store: PositionStore, config: AppConfig) -> SeedResult:
    """Upsert every configured market, vault and allocation in one transaction.

    Rerunning with the same config changes nothing.
    """
    allocations = 0
    with store.session_scope() as session:
        for m in config.markets:
            store.upsert_market(
                session,
                market_id=m.market_id,
                name=m.name or m.market_id,
                apr_cap=m.apr_cap,
                loan_asset=m.loan_asset,
                collateral_asset=m.collateral_asset,
                alert_threshold=m.alert_threshold,
            )
        for v in config.vaults:
            vault = store.upsert_vault(session, v.address, v.name, v.symbol)
            for a in v.allocations:
                store.upsert_allocation(session, vault.id, a.market_id, a.supply_assets)
                allocations += 1

    result = SeedResult(
        markets=len(config.markets), vaults=len(config.vaults), allocations=allocations
    )
    logger.info(
        "Seeded %d markets, %d vaults, %d allocations",
        result.markets,
        result.vaults,
        result.allocations,
    )
    return result


def set_market_cap(store: PositionStore, market_id: str, apr_cap: Decimal) -> Market:
    with store.session_scope() as session:
        return store.update_market_cap(session, market_id, apr_cap)
