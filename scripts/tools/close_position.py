#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from depth_trader.config import TraderSettings  # noqa: E402
from depth_trader.errors import ExchangeError  # noqa: E402
from depth_trader.order_manager import OrderManager, OrderRole  # noqa: E402
from depth_trader.precision import PrecisionFormatter  # noqa: E402
from depth_trader.rest_client import BinanceFuturesClient  # noqa: E402
from depth_trader.types import OrderSide, SymbolFilters  # noqa: E402


def _resolve_env_file(env_value: str) -> Path:
    raw = env_value.strip()
    candidates = [raw]
    if raw and not raw.startswith("."):
        candidates.insert(0, f".{raw}")

    for candidate in candidates:
        path = Path(candidate)
        if not path.is_absolute():
            path = PROJECT_ROOT / candidate
        if path.exists():
            return path

    path = Path(candidates[0])
    if not path.is_absolute():
        path = PROJECT_ROOT / candidates[0]
    return path


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, (Decimal, Path)):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _to_jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_jsonable(v) for v in value]
    return value


async def _run(args: argparse.Namespace) -> tuple[int, dict[str, Any]]:
    if args.env:
        env_file = _resolve_env_file(args.env)
        if not env_file.exists():
            raise RuntimeError(f"Env file not found: {env_file}")
        os.environ["ENV"] = str(env_file)
        load_dotenv(dotenv_path=env_file, override=True)
    else:
        load_dotenv()

    settings = TraderSettings()
    if not settings.is_configured:
        raise RuntimeError("Missing credentials. Ensure DT_API_KEY and DT_API_SECRET are set.")

    symbol = (args.symbol or settings.symbol).strip().upper()
    client = BinanceFuturesClient(
        settings.api_key,
        settings.api_secret,
        settings.rest_base_url,
        timeout_s=settings.request_timeout_s,
    )
    payload: dict[str, Any] = {
        "generated_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "environment": settings.environment.value,
        "symbol": symbol,
        "initial_position": None,
        "final_position": None,
        "status": "error",
        "cancel_open_orders": args.cancel_open_orders,
        "cancel_open_orders_error": None,
        "close_order": None,
        "dry_run": args.dry_run,
    }

    try:
        await client.sync_time()
        info = await client.get_symbol_info(symbol)
        formatter = PrecisionFormatter.from_filters(SymbolFilters.from_symbol_info(info))
        order_mgr = OrderManager(client, symbol, formatter=formatter)

        position = await order_mgr.get_position()
        payload["initial_position"] = position.amount
        payload["entry_price"] = position.entry_price

        if args.dry_run:
            payload["close_order"] = (
                None
                if position.is_flat
                else {
                    "side": (OrderSide.SELL if position.amount > 0 else OrderSide.BUY).value,
                    "quantity": formatter.format_quantity(position.size),
                    "type": "MARKET",
                    "reduce_only": True,
                }
            )
            payload["final_position"] = position.amount
            payload["status"] = "dry_run"
            return 0, payload

        if args.cancel_open_orders:
            try:
                await client.cancel_all_orders(symbol)
            except ExchangeError as exc:
                payload["cancel_open_orders_error"] = str(exc)
                if args.fail_on_cancel_error:
                    payload["final_position"] = position.amount
                    return 2, payload

        if position.is_flat:
            payload["final_position"] = Decimal("0")
            payload["status"] = "ok"
            return 0, payload

        side = OrderSide.SELL if position.amount > 0 else OrderSide.BUY
        order = await order_mgr.place_market(OrderRole.CLOSE, side, position.size)
        payload["close_order"] = order.describe() if order is not None else None
        if order is None and order_mgr.last_error is not None:
            payload["close_error"] = str(order_mgr.last_error)

        final = await order_mgr.get_position()
        payload["final_position"] = final.amount
        if final.is_flat:
            payload["status"] = "ok"
            return 0, payload
        if order is not None and args.allow_submitted:
            payload["status"] = "submitted_not_confirmed_flat"
            return 0, payload
        return 2, payload
    finally:
        await client.close()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Cancel resting orders and close one symbol's position with a reduce-only MARKET order.",
    )
    parser.add_argument("--env", help="Env file path or short name (e.g. .env.btc or env.btc).")
    parser.add_argument("--symbol", help="Symbol to flatten (default: DT_SYMBOL from env).")
    parser.set_defaults(cancel_open_orders=True)
    parser.add_argument(
        "--no-cancel-open-orders",
        action="store_false",
        dest="cancel_open_orders",
        help="Do not cancel resting orders before closing.",
    )
    parser.add_argument(
        "--fail-on-cancel-error",
        action="store_true",
        help="Fail immediately if cancel-all fails.",
    )
    parser.add_argument(
        "--allow-submitted",
        action="store_true",
        help="Return success when the close order was submitted but a flat position is not yet confirmed.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the close plan without submitting any order.",
    )
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    try:
        code, payload = asyncio.run(_run(args))
    except Exception as exc:
        code, payload = 2, {"status": "error", "error": str(exc)}
    print(json.dumps(_to_jsonable(payload), indent=2, sort_keys=True))
    return code


if __name__ == "__main__":
    raise SystemExit(main())
