"""Morpho Blue GraphQL client: market rates, borrower positions and vault allocations."""
from __future__ import annotations

import logging
import ssl
from decimal import Decimal, InvalidOperation
from typing import Any

import aiohttp
import certifi

from ..config import MorphoConfig
from ..models import AllocationData, BorrowerPositionData, MarketState

logger = logging.getLogger(__name__)

DEFAULT_DECIMALS = 18

MARKET_STATE_QUERY = """
query GetMarketState($marketId: String!, $chainId: Int!) {
  marketByUniqueKey(uniqueKey: $marketId, chainId: $chainId) {
    uniqueKey
    loanAsset { symbol }
    collateralAsset { symbol }
    state {
      borrowApy
      supplyApy
    }
  }
}
"""

BORROWER_POSITIONS_QUERY = """
query GetMarketBorrowers($marketId: String!, $chainId: Int!, $limit: Int!) {
  marketPositions(
    where: { marketUniqueKey_in: [$marketId], chainId_in: [$chainId] }
    first: $limit
  ) {
    items {
      user { address }
      borrowShares
      market {
        uniqueKey
        loanAsset { symbol decimals }
        collateralAsset { symbol }
        state {
          borrowAssets
          borrowShares
        }
      }
    }
  }
}
"""

VAULT_ALLOCATIONS_QUERY = """
query GetVaultAllocations($vaultAddress: String!, $chainId: Int!) {
  vaultByAddress(address: $vaultAddress, chainId: $chainId) {
    address
    allocations {
      market {
        uniqueKey
        loanAsset { symbol decimals }
      }
      supplyAssets
    }
  }
}
"""


def _parse_rate(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _to_units(raw: int, decimals: Any) -> Decimal:
    """Scale an integer base-unit amount by the token's decimals."""
    return Decimal(raw).scaleb(-int(decimals if decimals is not None else DEFAULT_DECIMALS))


def _graphql_error(what: str, payload: dict[str, Any]) -> bool:
    if payload.get("errors"):
        logger.warning(
            "Morpho GraphQL error for %s: %s",
            what,
            payload["errors"][0].get("message", "unknown error"),
        )
        return True
    return False


def parse_market_state(market_id: str, payload: dict[str, Any]) -> MarketState | None:
    """Extract a MarketState from a GraphQL response body, or None if absent."""
    if _graphql_error(market_id, payload):
        return None

    market = (payload.get("data") or {}).get("marketByUniqueKey")
    if not market or not market.get("state"):
        return None

    state = market["state"]
    borrow_apy = _parse_rate(state.get("borrowApy"))
    supply_apy = _parse_rate(state.get("supplyApy"))
    if borrow_apy is None or supply_apy is None:
        return None

    loan_asset = (market.get("loanAsset") or {}).get("symbol", "")
    return MarketState(
        market_id=market_id,
        borrow_apy=borrow_apy,
        supply_apy=supply_apy,
        loan_asset=loan_asset or "",
    )


def parse_borrower_positions(
    market_id: str, payload: dict[str, Any]
) -> list[BorrowerPositionData] | None:
    """Borrowers with non-zero borrow shares, their debt converted to token units.

    The debt is ``shares * market borrowAssets / market borrowShares``, rounded
    down in base units like the protocol does. Returns None on a GraphQL error.
    """
    if _graphql_error(market_id, payload):
        return None

    items = ((payload.get("data") or {}).get("marketPositions") or {}).get("items") or []
    positions = []
    for item in items:
        try:
            shares = int(str(item.get("borrowShares") or 0))
            if shares <= 0:
                continue
            market = item["market"]
            state = market["state"]
            total_shares = int(str(state["borrowShares"]))
            total_assets = int(str(state["borrowAssets"]))
            loan = market.get("loanAsset") or {}
            raw = shares * total_assets // total_shares if total_shares > 0 else 0
            positions.append(
                BorrowerPositionData(
                    address=item["user"]["address"],
                    market_id=market.get("uniqueKey") or market_id,
                    borrow_shares=shares,
                    borrowed_amount=_to_units(raw, loan.get("decimals")),
                    loan_asset=loan.get("symbol") or "",
                    collateral_asset=(market.get("collateralAsset") or {}).get("symbol") or "",
                )
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed position in market %s: %s", market_id, e)
    return positions


def parse_vault_allocations(
    vault_address: str, payload: dict[str, Any]
) -> list[AllocationData] | None:
    """Every market a vault supplies to. Returns None on a GraphQL error."""
    if _graphql_error(vault_address, payload):
        return None

    vault = (payload.get("data") or {}).get("vaultByAddress")
    if not vault:
        return []

    allocations = []
    for alloc in vault.get("allocations") or []:
        try:
            market = alloc["market"]
            loan = market.get("loanAsset") or {}
            allocations.append(
                AllocationData(
                    market_id=market["uniqueKey"],
                    supply_assets=_to_units(int(str(alloc["supplyAssets"])), loan.get("decimals")),
                    loan_asset=loan.get("symbol") or "",
                )
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed allocation of vault %s: %s", vault_address, e)
    return allocations


class MorphoRateSource:
    """Read market rates, borrowers and vault allocations from the Morpho Blue API.

    Transport errors, timeouts and unknown markets all come back as ``None``.
    """

    def __init__(self, config: MorphoConfig) -> None:
        self.api_url = config.api_url
        self.chain_id = config.chain_id
        self.timeout = config.timeout

    async def _post(self, what: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.post(
                    self.api_url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    if response.status != 200:
                        logger.error(
                            "Error fetching %s from Morpho: HTTP %s", what, response.status
                        )
                        return None

                    return await response.json()
        except Exception as e:
            logger.error("Error fetching %s from Morpho: %s", what, e)
            return None

    async def get_market_state(self, market_id: str) -> MarketState | None:
        data = await self._post(
            f"market {market_id}",
            {
                "query": MARKET_STATE_QUERY,
                "variables": {"marketId": market_id, "chainId": self.chain_id},
            },
        )
        if data is None:
            return None

        state = parse_market_state(market_id, data)
        if state is None:
            logger.warning("No market data for %s", market_id)
        else:
            logger.debug(
                "Market %s: borrow APY %s, supply APY %s",
                market_id,
                state.borrow_apy,
                state.supply_apy,
            )
        return state

    async def get_borrower_positions(
        self, market_id: str, limit: int = 100
    ) -> list[BorrowerPositionData] | None:
        data = await self._post(
            f"borrowers of {market_id}",
            {
                "query": BORROWER_POSITIONS_QUERY,
                "variables": {"marketId": market_id, "chainId": self.chain_id, "limit": limit},
            },
        )
        if data is None:
            return None

        positions = parse_borrower_positions(market_id, data)
        if positions is not None:
            logger.debug("Market %s: %d borrowers", market_id, len(positions))
        return positions

    async def get_vault_allocations(self, vault_address: str) -> list[AllocationData] | None:
        data = await self._post(
            f"allocations of vault {vault_address}",
            {
                "query": VAULT_ALLOCATIONS_QUERY,
                "variables": {"vaultAddress": vault_address.lower(), "chainId": self.chain_id},
            },
        )
        if data is None:
            return None
        return parse_vault_allocations(vault_address, data)
