#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

import requests
from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from depth_trader.public_markets import (  # noqa: E402
    PublicMarketsClient,
    resolve_default_api_base,
    summarize_symbol,
)
from depth_trader.utils import fmt_decimal, safe_decimal  # noqa: E402


def _fmt(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, Decimal):
        return fmt_decimal(value)
    return str(value)


def _top_of_book(client: PublicMarketsClient, symbol: str) -> Dict[str, Optional[Decimal]]:
    try:
        depth = client.fetch_depth(symbol, limit=5)
    except requests.RequestException as exc:
        print(f"warning: depth unavailable: {exc}", file=sys.stderr)
        return {"bid": None, "ask": None}
    bids = depth.get("bids") or []
    asks = depth.get("asks") or []
    return {
        "bid": safe_decimal(bids[0][0]) if bids else None,
        "ask": safe_decimal(asks[0][0]) if asks else None,
    }


def _print_summary(summary: Dict[str, Any], book: Dict[str, Optional[Decimal]]) -> None:
    print(f"Symbol: {summary['symbol']}")
    print(f"Status: {summary['status']} contract={summary['contract_type']}")
    print(f"Assets: {summary['base_asset']}/{summary['quote_asset']}")

    print("\nFilters:")
    print(f"  tickSize: {_fmt(summary['tick_size'])}")
    print(f"  stepSize: {_fmt(summary['step_size'])}")
    print(f"  minQty: {_fmt(summary['min_qty'])}")
    print(f"  minNotional: {_fmt(summary['min_notional'])}")

    bid, ask = book["bid"], book["ask"]
    print("\nTop of book:")
    print(f"  bid: {_fmt(bid)}")
    print(f"  ask: {_fmt(ask)}")
    if bid and ask:
        mid = (bid + ask) / 2
        tick = Decimal(str(summary["tick_size"]))
        print(f"  tick_bps: {_fmt((tick / mid * Decimal('10000')).quantize(Decimal('0.0001')))}")
        print(f"  min_qty_notional: {_fmt(summary['min_qty'] * mid)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Fetch Binance futures filters for one symbol.")
    parser.add_argument("symbol", help="Symbol (e.g. BTCUSDT)")
    parser.add_argument("--api-base", default=None, help="Override REST base URL")
    parser.add_argument("--raw", action="store_true", help="Print the raw exchangeInfo entry")
    args = parser.parse_args()

    load_dotenv()
    client = PublicMarketsClient(api_base=(args.api_base or resolve_default_api_base()).rstrip("/"))
    try:
        entry = client.fetch_symbol(args.symbol)
    except KeyError as exc:
        raise SystemExit(str(exc))

    if args.raw:
        print(json.dumps(entry, indent=2, sort_keys=True))
        return 0

    _print_summary(summarize_symbol(entry), _top_of_book(client, args.symbol))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
