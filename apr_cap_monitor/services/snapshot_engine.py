"""Daily accrual snapshots for vault allocations and positions."""
from __future__ import annotations

import logging
from datetime import date

from ..accrual import compute_accrual
from ..db.store import PositionStore
from ..interfaces.rate_source import RateSource
from ..models import (
    EntityOutcome,
    InterestSnapshot,
    Market,
    MarketState,
    PhaseResult,
    Position,
    SkipReason,
    SupplySnapshot,
    VaultAllocation,
)

logger = logging.getLogger(__name__)

SUPPLY_PHASE = "supply"
DEBT_PHASE = "debt"


class SnapshotEngine:
    """Turns market rates and stored balances into one snapshot per entity per day.

    Each phase reads every balance once, before any write, so results never
    depend on processing order. Each entity is written in its own transaction;
    a failing entity is reported in the phase result and the phase continues.
    """

    def __init__(self, store: PositionStore, rate_source: RateSource) -> None:
        self._store = store
        self._rate_source = rate_source

    async def compute_daily_snapshots(self, day: date) -> tuple[PhaseResult, PhaseResult]:
        """Run the supply phase, then the debt phase, sharing one rate lookup per market."""
        rates: dict[str, MarketState | None] = {}
        supply = await self.compute_supply_snapshots(day, rates)
        debt = await self.compute_debt_snapshots(day, rates)
        return supply, debt

    # ------------------------------------------------------------------
    # Rate lookup
    # ------------------------------------------------------------------

    async def _market_state(
        self, market_id: str, rates: dict[str, MarketState | None]
    ) -> MarketState | None:
        if market_id not in rates:
            try:
                rates[market_id] = await self._rate_source.get_market_state(market_id)
            except Exception as e:
                logger.warning("Rate source failed for market %s: %s", market_id, e)
                rates[market_id] = None
        return rates[market_id]

    # ------------------------------------------------------------------
    # Supply side
    # ------------------------------------------------------------------

    async def compute_supply_snapshots(
        self, day: date, rates: dict[str, MarketState | None] | None = None
    ) -> PhaseResult:
        rates = {} if rates is None else rates
        with self._store.session_scope() as session:
            allocations = self._store.active_allocations(session)
            markets = {m.market_id: m for m in self._store.list_markets(session)}

        logger.info("Supply phase %s: %d vault allocations", day, len(allocations))

        outcomes: list[EntityOutcome] = []
        for allocation in allocations:
            outcomes.append(await self._supply_outcome(day, allocation, markets, rates))

        result = PhaseResult(phase=SUPPLY_PHASE, day=day, outcomes=tuple(outcomes))
        logger.info(
            "Supply phase %s: processed %d/%d (skipped %d, failed %d)",
            day,
            result.processed_count,
            len(outcomes),
            result.skipped_count,
            result.failed_count,
        )
        return result

    async def _supply_outcome(
        self,
        day: date,
        allocation: VaultAllocation,
        markets: dict[str, Market],
        rates: dict[str, MarketState | None],
    ) -> EntityOutcome:
        entity = f"vault:{allocation.vault_id}"
        try:
            market = markets.get(allocation.market_id)
            if market is None:
                raise LookupError(f"unknown market {allocation.market_id}")

            state = await self._market_state(allocation.market_id, rates)
            if state is None:
                logger.warning(
                    "No market data for %s, vault %s; skipping",
                    market.name,
                    allocation.vault_name or allocation.vault_id,
                )
                return EntityOutcome(
                    entity=entity,
                    market_id=allocation.market_id,
                    skip_reason=SkipReason.NO_RATE_DATA,
                )

            accrual = compute_accrual(allocation.supply_assets, state.supply_apy, market.apr_cap)
            snapshot = SupplySnapshot(
                vault_id=allocation.vault_id,
                market_id=allocation.market_id,
                snapshot_date=day,
                supply_amount=allocation.supply_assets,
                supply_apy=state.supply_apy,
                capped_apy=market.apr_cap,
                interest_earned=accrual.interest_accrued,
                interest_above_cap=accrual.interest_above_cap,
                loan_asset=allocation.loan_asset or market.loan_asset or state.loan_asset,
            )
            with self._store.session_scope() as session:
                self._store.upsert_supply_snapshot(session, snapshot)

            logger.info(
                "  %s in %s: %.6f earned, %.6f above cap",
                allocation.vault_name or entity,
                market.name,
                snapshot.interest_earned,
                snapshot.interest_above_cap,
            )
            return EntityOutcome(entity=entity, market_id=allocation.market_id, snapshot=snapshot)
        except Exception as e:
            logger.error(
                "Error processing allocation vault=%s market=%s: %s",
                allocation.vault_id,
                allocation.market_id,
                e,
            )
            return EntityOutcome(
                entity=entity,
                market_id=allocation.market_id,
                skip_reason=SkipReason.ERROR,
                detail=str(e),
            )

    # ------------------------------------------------------------------
    # Debt side
    # ------------------------------------------------------------------

    async def compute_debt_snapshots(
        self, day: date, rates: dict[str, MarketState | None] | None = None
    ) -> PhaseResult:
        rates = {} if rates is None else rates
        with self._store.session_scope() as session:
            positions = self._store.active_positions(session)
            markets = {m.market_id: m for m in self._store.list_markets(session)}
            earlier = {s.position_id: s for s in self._store.interest_snapshots(session, day)}

        logger.info("Debt phase %s: %d active positions", day, len(positions))

        outcomes: list[EntityOutcome] = []
        for position in positions:
            outcomes.append(await self._debt_outcome(day, position, markets, rates, earlier))

        result = PhaseResult(phase=DEBT_PHASE, day=day, outcomes=tuple(outcomes))
        logger.info(
            "Debt phase %s: processed %d/%d (skipped %d, failed %d)",
            day,
            result.processed_count,
            len(outcomes),
            result.skipped_count,
            result.failed_count,
        )
        return result

    async def _debt_outcome(
        self,
        day: date,
        position: Position,
        markets: dict[str, Market],
        rates: dict[str, MarketState | None],
        earlier: dict[int, InterestSnapshot],
    ) -> EntityOutcome:
        entity = f"position:{position.id}"
        try:
            market = markets.get(position.market_id)
            if market is None:
                raise LookupError(f"unknown market {position.market_id}")

            state = await self._market_state(position.market_id, rates)
            if state is None:
                logger.warning(
                    "No market data for position %s, market %s; skipping",
                    position.id,
                    position.market_id,
                )
                return EntityOutcome(
                    entity=entity,
                    market_id=position.market_id,
                    skip_reason=SkipReason.NO_RATE_DATA,
                )

            # A rerun for the same day starts from the balance that day was first
            # computed on, so debt is compounded once per day at most.
            opening_balance = position.current_debt
            previous = earlier.get(position.id)
            if position.compounds and previous is not None:
                if previous.opening_balance is not None:
                    opening_balance = previous.opening_balance
                else:
                    opening_balance -= previous.interest_accrued

            accrual = compute_accrual(opening_balance, state.borrow_apy, market.apr_cap)
            snapshot = InterestSnapshot(
                position_id=position.id,
                market_id=position.market_id,
                snapshot_date=day,
                current_rate=state.borrow_apy,
                capped_rate=market.apr_cap,
                interest_accrued=accrual.interest_accrued,
                interest_above_cap=accrual.interest_above_cap,
                loan_asset=market.loan_asset or state.loan_asset,
                opening_balance=opening_balance,
            )
            with self._store.session_scope() as session:
                self._store.upsert_interest_snapshot(session, snapshot)
                if position.compounds:
                    self._store.set_position_debt(
                        session, position.id, opening_balance + accrual.interest_accrued
                    )

            if snapshot.interest_above_cap > 0:
                logger.info(
                    "  Position %s in %s: %.6f above cap",
                    position.id,
                    market.name,
                    snapshot.interest_above_cap,
                )
            return EntityOutcome(entity=entity, market_id=position.market_id, snapshot=snapshot)
        except Exception as e:
            logger.error("Error processing position %s: %s", position.id, e)
            return EntityOutcome(
                entity=entity,
                market_id=position.market_id,
                skip_reason=SkipReason.ERROR,
                detail=str(e),
            )
