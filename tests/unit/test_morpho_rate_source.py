"""Unit tests for the Morpho client: response parsing and error handling."""
from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from apr_cap_monitor.config import MorphoConfig
from apr_cap_monitor.rates.morpho import (
    MorphoRateSource,
    parse_borrower_positions,
    parse_market_state,
    parse_vault_allocations,
)
from tests.conftest import MARKET_A


@pytest.fixture()
def rate_source() -> MorphoRateSource:
    return MorphoRateSource(
        MorphoConfig(api_url="https://morpho.example.com/graphql", chain_id=137, timeout=5)
    )


def _mock_session(status: int = 200, data: dict | None = None) -> AsyncMock:
    mock_response = AsyncMock()
    mock_response.status = status
    mock_response.json = AsyncMock(return_value=data or {})
    mock_response.__aenter__ = AsyncMock(return_value=mock_response)
    mock_response.__aexit__ = AsyncMock(return_value=None)

    mock_session = AsyncMock()
    mock_session.post = MagicMock(return_value=mock_response)
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=None)
    return mock_session


class TestParseMarketState:
    def test_parses_rates_exactly(self, sample_market_payload: dict) -> None:
        state = parse_market_state(MARKET_A, sample_market_payload)
        assert state is not None
        assert state.borrow_apy == Decimal("0.1834")
        assert state.supply_apy == Decimal("0.0921")
        assert state.loan_asset == "USDC"

    def test_graphql_error_is_no_data(self) -> None:
        payload = {"errors": [{"message": "No results matching given parameters"}], "data": None}
        assert parse_market_state(MARKET_A, payload) is None

    def test_missing_market_is_no_data(self) -> None:
        assert parse_market_state(MARKET_A, {"data": {"marketByUniqueKey": None}}) is None

    def test_missing_rate_is_no_data(self) -> None:
        payload = {"data": {"marketByUniqueKey": {"state": {"borrowApy": None, "supplyApy": 0.1}}}}
        assert parse_market_state(MARKET_A, payload) is None

    def test_non_numeric_rate_is_no_data(self) -> None:
        payload = {"data": {"marketByUniqueKey": {"state": {"borrowApy": "n/a", "supplyApy": 0.1}}}}
        assert parse_market_state(MARKET_A, payload) is None


class TestMorphoRateSource:
    @pytest.mark.asyncio
    async def test_fetches_market_state(
        self, rate_source: MorphoRateSource, sample_market_payload: dict
    ) -> None:
        mock_session = _mock_session(200, sample_market_payload)

        with patch("apr_cap_monitor.rates.morpho.aiohttp.ClientSession", return_value=mock_session):
            with patch("apr_cap_monitor.rates.morpho.aiohttp.TCPConnector"):
                state = await rate_source.get_market_state(MARKET_A)

        assert state is not None
        assert state.borrow_apy == Decimal("0.1834")
        body = mock_session.post.call_args.kwargs["json"]
        assert body["variables"] == {"marketId": MARKET_A, "chainId": 137}

    @pytest.mark.asyncio
    async def test_handles_http_error(self, rate_source: MorphoRateSource) -> None:
        mock_session = _mock_session(500)

        with patch("apr_cap_monitor.rates.morpho.aiohttp.ClientSession", return_value=mock_session):
            with patch("apr_cap_monitor.rates.morpho.aiohttp.TCPConnector"):
                state = await rate_source.get_market_state(MARKET_A)

        assert state is None

    @pytest.mark.asyncio
    async def test_handles_network_error(self, rate_source: MorphoRateSource) -> None:
        mock_session = _mock_session()
        mock_session.post = MagicMock(side_effect=ConnectionError("timeout"))

        with patch("apr_cap_monitor.rates.morpho.aiohttp.ClientSession", return_value=mock_session):
            with patch("apr_cap_monitor.rates.morpho.aiohttp.TCPConnector"):
                state = await rate_source.get_market_state(MARKET_A)

        assert state is None

    @pytest.mark.asyncio
    async def test_unknown_market_is_none(self, rate_source: MorphoRateSource) -> None:
        mock_session = _mock_session(200, {"errors": [{"message": "not found"}]})

        with patch("apr_cap_monitor.rates.morpho.aiohttp.ClientSession", return_value=mock_session):
            with patch("apr_cap_monitor.rates.morpho.aiohttp.TCPConnector"):
                state = await rate_source.get_market_state("0xunknown")

        assert state is None


def _positions_payload(*items: tuple[str, str]) -> dict:
    market = {
        "uniqueKey": MARKET_A,
        "loanAsset": {"symbol": "USDC", "decimals": 6},
        "collateralAsset": {"symbol": "WPOL"},
        "state": {"borrowAssets": "2000000000", "borrowShares": "1000000000000000"},
    }
    return {
        "data": {
            "marketPositions": {
                "items": [
                    {"user": {"address": address}, "borrowShares": shares, "market": market}
                    for address, shares in items
                ]
            }
        }
    }


class TestParseBorrowerPositions:
    def test_shares_converted_to_token_units(self) -> None:
        payload = _positions_payload(("0xB1", "250000000000000"), ("0xB2", "333333333333333"))

        positions = parse_borrower_positions(MARKET_A, payload)

        assert [p.address for p in positions] == ["0xB1", "0xB2"]
        assert positions[0].borrowed_amount == Decimal("500")
        # base units round down
        assert positions[1].borrowed_amount == Decimal("666.666666")
        assert positions[0].loan_asset == "USDC"
        assert positions[0].collateral_asset == "WPOL"
        assert positions[0].market_id == MARKET_A

    def test_suppliers_without_debt_dropped(self) -> None:
        payload = _positions_payload(("0xS1", "0"), ("0xB1", "250000000000000"))
        assert [p.address for p in parse_borrower_positions(MARKET_A, payload)] == ["0xB1"]

    def test_empty_market(self) -> None:
        assert parse_borrower_positions(MARKET_A, {"data": {"marketPositions": None}}) == []

    def test_graphql_error_is_none(self) -> None:
        assert parse_borrower_positions(MARKET_A, {"errors": [{"message": "bad"}]}) is None

    def test_malformed_item_skipped(self) -> None:
        payload = _positions_payload(("0xB1", "250000000000000"))
        payload["data"]["marketPositions"]["items"].append({"borrowShares": "5", "market": {}})

        assert len(parse_borrower_positions(MARKET_A, payload)) == 1


class TestParseVaultAllocations:
    def test_supply_assets_in_token_units(self) -> None:
        payload = {
            "data": {
                "vaultByAddress": {
                    "allocations": [
                        {
                            "market": {
                                "uniqueKey": MARKET_A,
                                "loanAsset": {"symbol": "USDC", "decimals": 6},
                            },
                            "supplyAssets": "250000123456",
                        }
                    ]
                }
            }
        }

        (alloc,) = parse_vault_allocations("0xVault", payload)

        assert alloc.market_id == MARKET_A
        assert alloc.supply_assets == Decimal("250000.123456")
        assert alloc.loan_asset == "USDC"

    def test_unknown_vault_is_empty(self) -> None:
        assert parse_vault_allocations("0xVault", {"data": {"vaultByAddress": None}}) == []


class TestMorphoPositionQueries:
    @pytest.mark.asyncio
    async def test_fetches_borrower_positions(self, rate_source: MorphoRateSource) -> None:
        mock_session = _mock_session(200, _positions_payload(("0xB1", "250000000000000")))

        with patch("apr_cap_monitor.rates.morpho.aiohttp.ClientSession", return_value=mock_session):
            with patch("apr_cap_monitor.rates.morpho.aiohttp.TCPConnector"):
                positions = await rate_source.get_borrower_positions(MARKET_A, limit=25)

        assert [p.borrowed_amount for p in positions] == [Decimal("500")]
        body = mock_session.post.call_args.kwargs["json"]
        assert "marketPositions" in body["query"]
        assert body["variables"] == {"marketId": MARKET_A, "chainId": 137, "limit": 25}

    @pytest.mark.asyncio
    async def test_borrower_positions_http_error(self, rate_source: MorphoRateSource) -> None:
        mock_session = _mock_session(502)

        with patch("apr_cap_monitor.rates.morpho.aiohttp.ClientSession", return_value=mock_session):
            with patch("apr_cap_monitor.rates.morpho.aiohttp.TCPConnector"):
                positions = await rate_source.get_borrower_positions(MARKET_A)

        assert positions is None

    @pytest.mark.asyncio
    async def test_vault_address_lowercased(self, rate_source: MorphoRateSource) -> None:
        mock_session = _mock_session(200, {"data": {"vaultByAddress": {"allocations": []}}})

        with patch("apr_cap_monitor.rates.morpho.aiohttp.ClientSession", return_value=mock_session):
            with patch("apr_cap_monitor.rates.morpho.aiohttp.TCPConnector"):
                allocations = await rate_source.get_vault_allocations("0xAbC")

        assert allocations == []
        body = mock_session.post.call_args.kwargs["json"]
        assert body["variables"] == {"vaultAddress": "0xabc", "chainId": 137}
