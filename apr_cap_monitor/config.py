"""Configuration loader — reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = "sqlite:///apr_cap_monitor.db"
    echo: bool = False


@dataclass(frozen=True)
class MorphoConfig:
    api_url: str = "https://blue-api.morpho.org/graphql"
    chain_id: int = 137
    timeout: int = 30


@dataclass(frozen=True)
class RateSourceConfig:
    provider: str = "morpho"
    morpho: MorphoConfig = field(default_factory=MorphoConfig)


@dataclass(frozen=True)
class SchedulerConfig:
    run_at_utc: str = "00:00"
    create_reimbursements: bool = True


@dataclass(frozen=True)
class ReimbursementConfig:
    process_limit: int = 10
    retry_limit: int = 5
    pool_window_days: int = 30


@dataclass(frozen=True)
class SyncConfig:
    borrower_limit: int = 100


@dataclass(frozen=True)
class PaymentsConfig:
    simulated_failure_rate: float = 0.05


@dataclass(frozen=True)
class MarketConfig:
    market_id: str = ""
    name: str = ""
    loan_asset: str = ""
    collateral_asset: str = ""
    apr_cap: Decimal = Decimal("0")
    alert_threshold: Decimal | None = None


@dataclass(frozen=True)
class AllocationConfig:
    market_id: str = ""
    supply_assets: Decimal = Decimal("0")


@dataclass(frozen=True)
class VaultConfig:
    address: str = ""
    name: str = ""
    symbol: str = ""
    allocations: tuple[AllocationConfig, ...] = ()


@dataclass(frozen=True)
class TelegramConfig:
    enabled: bool = False
    alert_bot_token: str = ""
    log_bot_token: str = ""
    chat_id: str = ""


@dataclass(frozen=True)
class EmailConfig:
    enabled: bool = False
    alert_email: str = ""
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    sender_email: str = ""
    sender_password: str = ""


@dataclass(frozen=True)
class NotificationsConfig:
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    email: EmailConfig = field(default_factory=EmailConfig)


@dataclass(frozen=True)
class AppConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    rate_source: RateSourceConfig = field(default_factory=RateSourceConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    reimbursements: ReimbursementConfig = field(default_factory=ReimbursementConfig)
    payments: PaymentsConfig = field(default_factory=PaymentsConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    markets: tuple[MarketConfig, ...] = ()
    vaults: tuple[VaultConfig, ...] = ()
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")
_RUN_AT_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


def _to_decimal(value: Any, what: str) -> Decimal:
    # str() first so YAML floats like 0.12 keep their written digits
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid number for {what}: {value!r}") from e


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _build_database(raw: dict[str, Any]) -> DatabaseConfig:
    return DatabaseConfig(
        url=raw.get("url", DatabaseConfig.url),
        echo=bool(raw.get("echo", False)),
    )


def _build_rate_source(raw: dict[str, Any]) -> RateSourceConfig:
    morpho_raw = raw.get("morpho", {})
    return RateSourceConfig(
        provider=raw.get("provider", "morpho"),
        morpho=MorphoConfig(
            api_url=morpho_raw.get("api_url", MorphoConfig.api_url),
            chain_id=int(morpho_raw.get("chain_id", 137)),
            timeout=int(morpho_raw.get("timeout", 30)),
        ),
    )


def _build_scheduler(raw: dict[str, Any]) -> SchedulerConfig:
    return SchedulerConfig(
        run_at_utc=str(raw.get("run_at_utc", "00:00")),
        create_reimbursements=bool(raw.get("create_reimbursements", True)),
    )


def _build_reimbursements(raw: dict[str, Any]) -> ReimbursementConfig:
    return ReimbursementConfig(
        process_limit=int(raw.get("process_limit", 10)),
        retry_limit=int(raw.get("retry_limit", 5)),
        pool_window_days=int(raw.get("pool_window_days", 30)),
    )


def _build_payments(raw: dict[str, Any]) -> PaymentsConfig:
    return PaymentsConfig(
        simulated_failure_rate=float(raw.get("simulated_failure_rate", 0.05)),
    )


def _build_sync(raw: dict[str, Any]) -> SyncConfig:
    return SyncConfig(borrower_limit=int(raw.get("borrower_limit", 100)))


def _build_markets(raw: list[dict[str, Any]]) -> tuple[MarketConfig, ...]:
    markets: list[MarketConfig] = []
    for m in raw:
        market_id = str(m.get("market_id", ""))
        threshold = m.get("alert_threshold")
        markets.append(
            MarketConfig(
                market_id=market_id,
                name=m.get("name", ""),
                loan_asset=m.get("loan_asset", ""),
                collateral_asset=m.get("collateral_asset", ""),
                apr_cap=_to_decimal(m.get("apr_cap", 0), f"market '{market_id}' apr_cap"),
                alert_threshold=(
                    _to_decimal(threshold, f"market '{market_id}' alert_threshold")
                    if threshold is not None
                    else None
                ),
            )
        )
    return tuple(markets)


def _build_vaults(raw: list[dict[str, Any]]) -> tuple[VaultConfig, ...]:
    vaults: list[VaultConfig] = []
    for v in raw:
        allocations = tuple(
            AllocationConfig(
                market_id=str(a.get("market_id", "")),
                supply_assets=_to_decimal(a.get("supply_assets", 0), "supply_assets"),
            )
            for a in v.get("allocations", [])
        )
        vaults.append(
            VaultConfig(
                address=v.get("address", ""),
                name=v.get("name", ""),
                symbol=v.get("symbol", ""),
                allocations=allocations,
            )
        )
    return tuple(vaults)


def _build_notifications(raw: dict[str, Any]) -> NotificationsConfig:
    tg = raw.get("telegram", {})
    em = raw.get("email", {})
    return NotificationsConfig(
        telegram=TelegramConfig(
            enabled=bool(tg.get("enabled", False)),
            alert_bot_token=tg.get("alert_bot_token", ""),
            log_bot_token=tg.get("log_bot_token", ""),
            chat_id=str(tg.get("chat_id", "")),
        ),
        email=EmailConfig(
            enabled=bool(em.get("enabled", False)),
            alert_email=em.get("alert_email", ""),
            smtp_server=em.get("smtp_server", "smtp.gmail.com"),
            smtp_port=int(em.get("smtp_port", 587)),
            sender_email=em.get("sender_email", ""),
            sender_password=em.get("sender_password", ""),
        ),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (one level up from this package).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    cfg = AppConfig(
        database=_build_database(raw.get("database", {})),
        rate_source=_build_rate_source(raw.get("rate_source", {})),
        scheduler=_build_scheduler(raw.get("scheduler", {})),
        reimbursements=_build_reimbursements(raw.get("reimbursements", {})),
        payments=_build_payments(raw.get("payments", {})),
        sync=_build_sync(raw.get("sync", {})),
        markets=_build_markets(raw.get("markets", [])),
        vaults=_build_vaults(raw.get("vaults", [])),
        notifications=_build_notifications(raw.get("notifications", {})),
    )

    _validate(cfg)
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    if not cfg.database.url:
        raise ValueError("A database url must be configured")

    if not _RUN_AT_RE.match(cfg.scheduler.run_at_utc):
        raise ValueError(
            f"scheduler.run_at_utc must be HH:MM, got '{cfg.scheduler.run_at_utc}'"
        )

    if not 0.0 <= cfg.payments.simulated_failure_rate <= 1.0:
        raise ValueError("payments.simulated_failure_rate must be between 0 and 1")

    if cfg.sync.borrower_limit < 1:
        raise ValueError("sync.borrower_limit must be at least 1")

    market_ids: set[str] = set()
    for market in cfg.markets:
        if not market.market_id:
            raise ValueError(f"Market '{market.name}' has no market_id")
        if market.market_id in market_ids:
            raise ValueError(f"Duplicate market_id '{market.market_id}'")
        market_ids.add(market.market_id)

    for vault in cfg.vaults:
        if not vault.address:
            raise ValueError(f"Vault '{vault.name}' has no address")
        for allocation in vault.allocations:
            if allocation.market_id not in market_ids:
                raise ValueError(
                    f"Vault '{vault.name}' references unknown market "
                    f"'{allocation.market_id}'"
                )
