"""
Public market-data helpers for Binance USD-M futures.

Synchronous (requests) counterpart of the async REST client for operator
tooling that only needs unauthenticated reads.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests

from .config_env import MAINNET_REST_URL, TESTNET_REST_URL
from .types import SymbolFilters
from .utils import safe_decimal

EXCHANGE_INFO_PATH = "/fapi/v1/exchangeInfo"
DEPTH_PATH = "/fapi/v1/depth"


def resolve_default_api_base() -> str:
    """Resolve REST base URL from environment.

    Priority:
    1) ``DT_REST_BASE`` when explicitly set
    2) ``DT_ENVIRONMENT`` equals ``mainnet``
    3) testnet default
    """
    explicit = os.getenv("DT_REST_BASE", "").strip()
    if explicit:
        return explicit.rstrip("/")
    env = os.getenv("DT_ENVIRONMENT", "testnet").strip().lower()
    if env == "mainnet":
        return MAINNET_REST_URL
    return TESTNET_REST_URL


@dataclass
class PublicMarketsClient:
    api_base: str
    timeout_s: float = 10.0

    @classmethod
    def default(cls) -> "PublicMarketsClient":
        return cls(api_base=resolve_default_api_base())

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        resp = requests.get(
            f"{self.api_base}{path}",
            params=params,
            headers={"User-Agent": "depth-trader/0.1"},
            timeout=self.timeout_s,
        )
        resp.raise_for_status()
        return resp.json()

    def fetch_all_symbols(self) -> List[Dict[str, Any]]:
        payload = self._get(EXCHANGE_INFO_PATH)
        if not isinstance(payload, dict):
            raise RuntimeError(f"Unexpected exchangeInfo payload (not a dict): {payload!r}")
        symbols = payload.get("symbols")
        if not isinstance(symbols, list):
            raise RuntimeError(f"Unexpected `symbols` in exchangeInfo payload: {symbols!r}")
        return symbols

    def fetch_symbol(self, symbol: str) -> Dict[str, Any]:
        symbol = symbol.upper()
        for entry in self.fetch_all_symbols():
            if entry.get("symbol") == symbol:
                return entry
        raise KeyError(f"Symbol not found: {symbol}")

    def fetch_depth(self, symbol: str, limit: int = 20) -> Dict[str, Any]:
        return self._get(DEPTH_PATH, {"symbol": symbol.upper(), "limit": limit})


def summarize_symbol(entry: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten the fields operators care about from an exchangeInfo symbol entry."""
    filters = SymbolFilters.from_symbol_info(entry)
    min_notional: Decimal = Decimal("0")
    for f in entry.get("filters", []):
        if f.get("filterType") == "MIN_NOTIONAL":
            min_notional = safe_decimal(f.get("notional", f.get("minNotional")))
    return {
        "symbol": entry.get("symbol"),
        "status": entry.get("status"),
        "contract_type": entry.get("contractType"),
        "base_asset": entry.get("baseAsset"),
        "quote_asset": entry.get("quoteAsset"),
        "tick_size": filters.tick_size,
        "step_size": filters.step_size,
        "min_qty": filters.min_qty,
        "min_notional": min_notional,
        "price_precision": entry.get("pricePrecision"),
        "quantity_precision": entry.get("quantityPrecision"),
    }
