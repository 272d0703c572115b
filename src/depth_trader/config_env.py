"""Environment resolution and enums for trader configuration."""
from __future__ import annotations

import os
from enum import Enum
from pathlib import Path

# ---------------------------------------------------------------------------
# Env file resolution
# ---------------------------------------------------------------------------

def _find_project_root() -> Path:
    current = Path(__file__).resolve()
    for parent in [current] + list(current.parents):
        if (parent / "pyproject.toml").exists() or (parent / ".git").exists():
            return parent
    return current.parents[2]


PROJECT_ROOT = _find_project_root()


def _resolve_env_file() -> Path:
    env_file = os.getenv("ENV", ".env")
    candidates = []
    if env_file:
        if not env_file.startswith("."):
            candidates.append(f".{env_file}")
        candidates.append(env_file)
    else:
        candidates.append(".env")

    for candidate in candidates:
        path = Path(candidate)
        if not path.is_absolute():
            path = PROJECT_ROOT / candidate
        if path.exists():
            return path

    return PROJECT_ROOT / ".env"


ENV_FILE = _resolve_env_file()


# ---------------------------------------------------------------------------
# Venue endpoints
# ---------------------------------------------------------------------------

MAINNET_REST_URL = "https://fapi.binance.com"
MAINNET_WS_URL = "wss://fstream.binance.com"
TESTNET_REST_URL = "https://demo-fapi.binance.com"
TESTNET_WS_URL = "wss://fstream.binancefuture.com"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TradingEnvironment(str, Enum):
    TESTNET = "testnet"
    MAINNET = "mainnet"


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def opposite(self) -> "Direction":
        return Direction.SHORT if self is Direction.LONG else Direction.LONG


class StrategyMode(str, Enum):
    """Which orchestrator drives the account.

    ORDERBOOK: linear cycle, TP/SL read from book depth levels.
    RISK_REWARD: linear cycle, TP/SL derived from the fill price and a fixed ratio.
    MICRO_GRID: standing two-sided maker bracket around mid.
    """

    ORDERBOOK = "orderbook"
    RISK_REWARD = "risk_reward"
    MICRO_GRID = "micro_grid"
