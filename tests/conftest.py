"""Shared test fixtures and sample data."""
from __future__ import annotations

import textwrap
from decimal import Decimal
from pathlib import Path

import pytest

from apr_cap_monitor.config import (
    AllocationConfig,
    AppConfig,
    DatabaseConfig,
    EmailConfig,
    MarketConfig,
    NotificationsConfig,
    TelegramConfig,
    VaultConfig,
)
from apr_cap_monitor.db.store import PositionStore
from apr_cap_monitor.errors import PaymentError
from apr_cap_monitor.models import (
    AllocationData,
    BorrowerOwner,
    BorrowerPositionData,
    MarketState,
    Position,
)
from apr_cap_monitor.services.seeding import seed_from_config

MARKET_A = "0x" + "a" * 64
MARKET_B = "0x" + "b" * 64
MARKET_C = "0x" + "c" * 64
VAULT_ADDRESS = "0xAcB0DCe4b0FF400AD8F6917f3ca13E434C9ed6bC"


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class FakeRateSource:
    """In-memory rate source; markets without an entry report no data."""

    def __init__(self, states: dict[str, MarketState] | None = None) -> None:
        self.states = dict(states or {})
        self.calls: list[str] = []

    def set_rates(self, market_id: str, borrow_apy: str, supply_apy: str, token: str = "") -> None:
        self.states[market_id] = MarketState(
            market_id=market_id,
            borrow_apy=Decimal(borrow_apy),
            supply_apy=Decimal(supply_apy),
            loan_asset=token,
        )

    async def get_market_state(self, market_id: str) -> MarketState | None:
        self.calls.append(market_id)
        return self.states.get(market_id)


class FakePositionSource:
    """In-memory borrowers per market and allocations per vault address.

    Markets or vaults listed in ``unreachable`` report ``None``.
    """

    def __init__(self) -> None:
        self.borrowers: dict[str, list[BorrowerPositionData]] = {}
        self.allocations: dict[str, list[AllocationData]] = {}
        self.unreachable: set[str] = set()
        self.limits: list[int] = []

    def add_borrower(self, market_id: str, address: str, amount: str) -> None:
        self.borrowers.setdefault(market_id, []).append(
            BorrowerPositionData(
                address=address,
                market_id=market_id,
                borrow_shares=1,
                borrowed_amount=Decimal(amount),
            )
        )

    async def get_borrower_positions(
        self, market_id: str, limit: int = 100
    ) -> list[BorrowerPositionData] | None:
        self.limits.append(limit)
        if market_id in self.unreachable:
            return None
        return self.borrowers.get(market_id, [])[:limit]

    async def get_vault_allocations(self, vault_address: str) -> list[AllocationData] | None:
        if vault_address in self.unreachable:
            return None
        return self.allocations.get(vault_address, [])


class FakePaymentExecutor:
    """Pays in order; the 1-based call numbers in ``fail_on`` raise PaymentError."""

    def __init__(self, fail_on: set[int] | None = None) -> None:
        self.fail_on = fail_on or set()
        self.calls: list[tuple[str, Decimal, str]] = []

    async def pay(self, recipient_address: str, amount: Decimal, token: str) -> str:
        self.calls.append((recipient_address, amount, token))
        n = len(self.calls)
        if n in self.fail_on:
            raise PaymentError(f"payment {n} rejected")
        return f"0x{n:064x}"


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'test.db'}"


@pytest.fixture()
def sample_app_config(db_url: str) -> AppConfig:
    return AppConfig(
        database=DatabaseConfig(url=db_url),
        markets=(
            MarketConfig(
                market_id=MARKET_A,
                name="WPOL/USDC",
                loan_asset="USDC",
                collateral_asset="WPOL",
                apr_cap=Decimal("0.12"),
            ),
            MarketConfig(
                market_id=MARKET_B,
                name="WBTC/USDC",
                loan_asset="USDC",
                collateral_asset="WBTC",
                apr_cap=Decimal("0.10"),
            ),
            MarketConfig(
                market_id=MARKET_C,
                name="wstETH/WETH",
                loan_asset="WETH",
                collateral_asset="wstETH",
                apr_cap=Decimal("0.15"),
                alert_threshold=Decimal("0.20"),
            ),
        ),
        vaults=(
            VaultConfig(
                address=VAULT_ADDRESS,
                name="Steakhouse USDC",
                symbol="bbqUSDC",
                allocations=(
                    AllocationConfig(market_id=MARKET_A, supply_assets=Decimal("10000")),
                    AllocationConfig(market_id=MARKET_B, supply_assets=Decimal("5000")),
                ),
            ),
        ),
        notifications=NotificationsConfig(
            telegram=TelegramConfig(
                enabled=True,
                alert_bot_token="fake-alert-token",
                log_bot_token="fake-log-token",
                chat_id="12345",
            ),
            email=EmailConfig(enabled=False),
        ),
    )


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def store(db_url: str):
    s = PositionStore(db_url)
    s.create_schema()
    yield s
    s.dispose()


@pytest.fixture()
def seeded_store(store: PositionStore, sample_app_config: AppConfig) -> PositionStore:
    """Store holding the three sample markets and one vault with two allocations."""
    seed_from_config(store, sample_app_config)
    return store


def add_borrower_position(
    store: PositionStore, address: str, market_id: str, debt: str
) -> Position:
    with store.session_scope() as session:
        borrower = store.upsert_borrower(session, address)
        return store.upsert_position(
            session, BorrowerOwner(borrower.id), market_id, Decimal(debt)
        )


@pytest.fixture()
def rate_source() -> FakeRateSource:
    return FakeRateSource()


@pytest.fixture()
def payments() -> FakePaymentExecutor:
    return FakePaymentExecutor()


# ---------------------------------------------------------------------------
# Config YAML fixture
# ---------------------------------------------------------------------------

SAMPLE_YAML = textwrap.dedent(f"""\
    database:
      url: "sqlite:///:memory:"
    rate_source:
      provider: morpho
      morpho:
        api_url: "https://morpho.example.com/graphql"
        chain_id: 137
        timeout: 10
    scheduler:
      run_at_utc: "01:30"
      create_reimbursements: false
    reimbursements:
      process_limit: 20
    payments:
      simulated_failure_rate: 0.1
    markets:
      - market_id: "{MARKET_A}"
        name: WPOL/USDC
        loan_asset: USDC
        collateral_asset: WPOL
        apr_cap: 0.15
      - market_id: "{MARKET_B}"
        name: WBTC/USDC
        loan_asset: USDC
        apr_cap: 0.10
        alert_threshold: 0.25
    vaults:
      - address: "{VAULT_ADDRESS}"
        name: Steakhouse USDC
        symbol: bbqUSDC
        allocations:
          - market_id: "{MARKET_A}"
            supply_assets: 250000
    notifications:
      telegram:
        enabled: true
        alert_bot_token: "tok1"
        log_bot_token: "tok2"
        chat_id: "999"
      email:
        enabled: false
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file


# ---------------------------------------------------------------------------
# Sample Morpho API data
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_market_payload() -> dict:
    return {
        "data": {
            "marketByUniqueKey": {
                "uniqueKey": MARKET_A,
                "loanAsset": {"symbol": "USDC"},
                "collateralAsset": {"symbol": "WPOL"},
                "state": {"borrowApy": 0.1834, "supplyApy": 0.0921},
            }
        }
    }
