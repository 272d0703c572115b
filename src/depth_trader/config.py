"""
Trader Configuration

Loads DT_ prefixed environment variables using pydantic-settings.
Defaults to testnet; requires explicit DT_ENVIRONMENT=mainnet for production.

Trading parameters (never credentials) may additionally be overridden from a
JSON file.  The file is read once when settings are built; a running strategy
only sees new values after an explicit reload through ``StrategyHost.start``.
"""
from __future__ import annotations

import json
import logging
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .config_env import (
    ENV_FILE,
    MAINNET_REST_URL,
    MAINNET_WS_URL,
    TESTNET_REST_URL,
    TESTNET_WS_URL,
    Direction,
    StrategyMode,
    TradingEnvironment,
)

logger = logging.getLogger(__name__)

_CREDENTIAL_FIELDS = frozenset({"api_key", "api_secret"})


class TraderSettings(BaseSettings):
    """Configuration for both trading orchestrators."""

    model_config = SettingsConfigDict(
        env_prefix="DT_",
        env_file=ENV_FILE,
        extra="ignore",
    )

    # --- Credentials ---
    api_key: str = Field(default="", description="Exchange API key")
    api_secret: str = Field(default="", description="Exchange API secret")

    # --- Environment ---
    environment: TradingEnvironment = Field(
        default=TradingEnvironment.TESTNET,
        description="Network environment (testnet or mainnet)",
    )
    enabled: bool = Field(default=True, description="Master switch; false exits at startup")
    log_level: str = Field(default="INFO", description="Root log level")

    # --- Instrument ---
    symbol: str = Field(default="BTCUSDT", description="Futures symbol to trade")
    quantity: Decimal = Field(
        default=Decimal("0.001"),
        gt=0,
        description="Base order quantity (contracts)",
    )
    leverage: int = Field(default=10, ge=1, le=125, description="Leverage applied at startup")

    # --- Strategy selection ---
    strategy: StrategyMode = Field(
        default=StrategyMode.ORDERBOOK,
        description=(
            "'orderbook' reads TP/SL from book levels, "
            "'risk_reward' derives them from the fill price, "
            "'micro_grid' runs the two-sided maker bracket."
        ),
    )
    initial_direction: Direction = Field(
        default=Direction.LONG,
        description="Directional bias of the first trade cycle",
    )
    direction_switch_losses: int = Field(
        default=3,
        ge=1,
        description="Consecutive losses that flip the directional bias",
    )

    # --- Book levels (orderbook strategy) ---
    entry_level: int = Field(default=2, ge=1, le=20, description="Book level used for entry price")
    tp_level: int = Field(default=10, ge=1, le=20, description="Book level used for take-profit")
    sl_level: int = Field(default=8, ge=1, le=20, description="Book level used for stop-loss")

    # --- Risk/reward strategy ---
    risk_reward_ratio: Decimal = Field(
        default=Decimal("2"),
        gt=0,
        description="TP distance as a multiple of SL distance",
    )
    sl_distance_percent: Decimal = Field(
        default=Decimal("0.1"),
        gt=0,
        description="SL distance as % of the entry fill price",
    )

    # --- Timing ---
    order_timeout_s: float = Field(
        default=30.0,
        gt=0,
        description="Seconds an entry order may rest before it is cancelled",
    )
    entry_poll_interval_s: float = Field(default=1.0, gt=0, description="Entry status poll interval")
    tpsl_monitor_interval_s: float = Field(
        default=5.0,
        gt=0,
        description="Poll interval while a bracket is resting",
    )
    tpsl_monitor_max_s: float = Field(
        default=3600.0,
        gt=0,
        description="Monitoring ceiling before an open bracket is force-closed",
    )
    cycle_retry_delay_s: float = Field(
        default=5.0,
        ge=0,
        description="Pause before retrying a cycle that failed to start",
    )
    request_timeout_s: float = Field(default=10.0, gt=0, description="Per-request timeout")

    # --- Market making ---
    spread_gap_percent: Decimal = Field(
        default=Decimal("0.08"),
        gt=0,
        description="Base distance (% of touch) of each maker order from the book",
    )
    min_spread_percent: Decimal = Field(default=Decimal("0.05"), gt=0, description="Dynamic spread floor (%)")
    max_spread_percent: Decimal = Field(default=Decimal("0.5"), gt=0, description="Dynamic spread ceiling (%)")
    volatility_lookback_minutes: float = Field(
        default=5.0,
        gt=0,
        description="Window of mid observations used for the volatility estimate",
    )
    price_range_percent: Decimal = Field(
        default=Decimal("2"),
        gt=0,
        description="Containment band around the anchor price (%)",
    )
    rolling_price_update_trades: int = Field(
        default=10,
        ge=1,
        description="Completed trades between anchor re-rolls",
    )
    max_position_multiplier: Decimal = Field(
        default=Decimal("10"),
        gt=0,
        description="Position cap as a multiple of the base quantity",
    )
    daily_loss_limit_percent: Decimal = Field(
        default=Decimal("5"),
        gt=0,
        description="Daily net loss (% of balance estimate) that trips the circuit breaker",
    )
    max_consecutive_losses: int = Field(default=5, ge=1, description="Consecutive losses that trip the circuit breaker")
    balance_estimate_usd: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="Balance used for the daily loss ratio; 0 falls back to 1000",
    )
    maker_fee_percent: Decimal = Field(default=Decimal("0.02"), ge=0, description="Maker fee (%)")
    taker_fee_percent: Decimal = Field(default=Decimal("0.05"), ge=0, description="Taker fee (%)")
    emergency_close_deviation_percent: Decimal = Field(
        default=Decimal("1"),
        gt=0,
        description="Price move (% from reduction start) that forces a market close",
    )
    stabilization_wait_minutes: float = Field(
        default=5.0,
        ge=0,
        description="Pause after an emergency close before quoting again",
    )
    reduce_order_timeout_s: float = Field(
        default=30.0,
        gt=0,
        description="Seconds before a resting reduce-only order is repriced",
    )
    position_resume_threshold_percent: Decimal = Field(
        default=Decimal("50"),
        gt=0,
        le=100,
        description="Reduction (% of starting size) after which quoting resumes",
    )
    grid_loop_interval_s: float = Field(default=2.0, gt=0, description="Market-making loop tick")

    # --- Telemetry ---
    journal_enabled: bool = Field(default=True, description="Write the JSONL event journal")
    journal_dir: str = Field(default="data/journal", description="Directory for journal files")
    status_log_interval_s: float = Field(default=60.0, gt=0, description="Status summary cadence")
    user_stream_enabled: bool = Field(
        default=True,
        description="Subscribe to the user-data stream to wake order polling early",
    )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.api_secret)

    @property
    def rest_base_url(self) -> str:
        if self.environment == TradingEnvironment.MAINNET:
            return MAINNET_REST_URL
        return TESTNET_REST_URL

    @property
    def ws_base_url(self) -> str:
        if self.environment == TradingEnvironment.MAINNET:
            return MAINNET_WS_URL
        return TESTNET_WS_URL

    @field_validator("environment", "strategy", mode="before")
    @classmethod
    def _normalise_lower(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("initial_direction", mode="before")
    @classmethod
    def _normalise_direction(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("symbol", mode="before")
    @classmethod
    def _normalise_symbol(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v


def _trading_fields() -> frozenset:
    return frozenset(TraderSettings.model_fields) - _CREDENTIAL_FIELDS


def _read_overrides(path: Path) -> Dict[str, Any]:
    with open(path) as f:
        payload = json.load(f)
    if not isinstance(payload, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")

    allowed = _trading_fields()
    overrides = {}
    for key, value in payload.items():
        if key in allowed:
            overrides[key] = value
        else:
            logger.warning("Ignoring unknown or protected config key %r in %s", key, path)
    return overrides


def load_settings(overrides_path: Optional[Path] = None) -> TraderSettings:
    """Build settings from the environment plus an optional JSON override file."""
    if overrides_path is None or not Path(overrides_path).exists():
        return TraderSettings()
    overrides = _read_overrides(Path(overrides_path))
    logger.info("Loaded %d config overrides from %s", len(overrides), overrides_path)
    return TraderSettings(**overrides)


def save_trading_config(settings: TraderSettings, path: Path) -> Path:
    """Persist trading parameters (no credentials) for the next explicit reload."""
    data = settings.model_dump(mode="json", include=set(_trading_fields()))
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2, sort_keys=True)
    logger.info("Trading config saved to %s (applies on next start)", path)
    return path
