"""
Orderbook Mirror

Local view of one symbol's partial-depth book.  The venue's partial-depth
stream delivers the top N levels of each side per message, so an accepted
update replaces both level arrays wholesale rather than merging.

Updates carry a monotonically increasing final update id.  Anything at or
below the id already applied is discarded, which makes the mirror safe
against duplicated or reordered stream delivery.  Readers always see the
arrays of exactly one accepted update.

Includes staleness detection: if no update arrives within the configured
window ``is_stale()`` turns true and orchestrators refuse to price off it.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Tuple

from .config_env import Direction
from .utils import safe_decimal

logger = logging.getLogger(__name__)

# If no book update arrives within this many seconds, data is stale.
_DEFAULT_STALENESS_THRESHOLD_S = 15.0
_DEFAULT_STALE_LOG_INTERVAL_S = 5.0

DEFAULT_ENTRY_LEVEL = 2
DEFAULT_TP_LEVEL = 10
DEFAULT_SL_LEVEL = 8


@dataclass(frozen=True)
class PriceLevel:
    """Snapshot of a single price level."""

    price: Decimal
    size: Decimal


@dataclass(frozen=True)
class TpSlValidation:
    tp_valid: bool
    sl_valid: bool
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.tp_valid and self.sl_valid


def validate_tpsl_prices(
    direction: Direction,
    entry_price: Decimal,
    tp_price: Decimal,
    sl_price: Decimal,
) -> TpSlValidation:
    """Check the bracket ordering: tp > entry > sl for LONG, reversed for SHORT."""
    if direction == Direction.LONG:
        tp_valid = tp_price > entry_price
        sl_valid = sl_price < entry_price
    else:
        tp_valid = tp_price < entry_price
        sl_valid = sl_price > entry_price

    reason = None
    if not tp_valid:
        reason = (
            f"TP {tp_price} must be {'above' if direction == Direction.LONG else 'below'} "
            f"entry {entry_price} for {direction.value}"
        )
    elif not sl_valid:
        reason = (
            f"SL {sl_price} must be {'below' if direction == Direction.LONG else 'above'} "
            f"entry {entry_price} for {direction.value}"
        )
    return TpSlValidation(tp_valid=tp_valid, sl_valid=sl_valid, reason=reason)


class BookMirror:
    """Sequence-guarded local copy of the top of one symbol's book."""

    def __init__(
        self,
        symbol: str,
        *,
        staleness_threshold_s: float = _DEFAULT_STALENESS_THRESHOLD_S,
    ) -> None:
        self._symbol = symbol
        self._staleness_threshold_s = staleness_threshold_s

        self._bids: Tuple[PriceLevel, ...] = ()
        self._asks: Tuple[PriceLevel, ...] = ()
        self._last_update_id: int = 0
        self._event_time_ms: Optional[int] = None

        # Monotonic timestamp of the most recent accepted update.
        self._last_update_ts: float = 0.0

        self.applied_updates: int = 0
        self.discarded_updates: int = 0

        self._last_stale_log_ts: float = 0.0
        self._stale_log_interval_s: float = _DEFAULT_STALE_LOG_INTERVAL_S

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def apply_snapshot(
        self,
        bids: Iterable[Any],
        asks: Iterable[Any],
        update_id: int,
        event_time_ms: Optional[int] = None,
    ) -> None:
        """Replace the book unconditionally (startup / resync)."""
        self._bids = self._parse_levels(bids, descending=True)
        self._asks = self._parse_levels(asks, descending=False)
        self._last_update_id = int(update_id)
        self._event_time_ms = event_time_ms
        self._last_update_ts = time.monotonic()
        logger.info(
            "Book snapshot applied for %s: update_id=%d bids=%d asks=%d",
            self._symbol,
            self._last_update_id,
            len(self._bids),
            len(self._asks),
        )

    def apply_diff(
        self,
        bids: Iterable[Any],
        asks: Iterable[Any],
        update_id: int,
        event_time_ms: Optional[int] = None,
    ) -> bool:
        """Apply a stream update if it is newer than the current state.

        Returns True when applied, False when discarded as stale or duplicate.
        """
        update_id = int(update_id)
        if update_id <= self._last_update_id:
            self.discarded_updates += 1
            logger.debug(
                "Discarding stale depth update for %s: u=%d last=%d",
                self._symbol,
                update_id,
                self._last_update_id,
            )
            return False

        self._bids = self._parse_levels(bids, descending=True)
        self._asks = self._parse_levels(asks, descending=False)
        self._last_update_id = update_id
        self._event_time_ms = event_time_ms
        self._last_update_ts = time.monotonic()
        self.applied_updates += 1
        return True

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    @property
    def symbol(self) -> str:
        return self._symbol

    @property
    def last_update_id(self) -> int:
        return self._last_update_id

    @property
    def event_time_ms(self) -> Optional[int]:
        return self._event_time_ms

    def has_data(self) -> bool:
        return bool(self._bids) and bool(self._asks)

    def is_stale(self) -> bool:
        if self._last_update_ts == 0.0:
            return True
        age = time.monotonic() - self._last_update_ts
        if age <= self._staleness_threshold_s:
            return False
        now = time.monotonic()
        if now - self._last_stale_log_ts >= self._stale_log_interval_s:
            self._last_stale_log_ts = now
            logger.warning(
                "Book for %s is stale: last update %.1fs ago (threshold=%.1fs)",
                self._symbol,
                age,
                self._staleness_threshold_s,
            )
        return True

    def seconds_since_update(self) -> Optional[float]:
        if self._last_update_ts == 0.0:
            return None
        return time.monotonic() - self._last_update_ts

    def depth(self) -> Tuple[int, int]:
        return len(self._bids), len(self._asks)

    # ------------------------------------------------------------------
    # Level lookups
    # ------------------------------------------------------------------

    def best_bid(self) -> Optional[PriceLevel]:
        return self._bids[0] if self._bids else None

    def best_ask(self) -> Optional[PriceLevel]:
        return self._asks[0] if self._asks else None

    def bid_at_level(self, level: int) -> Optional[Decimal]:
        """Bid price at 1-indexed *level*, or None beyond available depth."""
        if level < 1 or level > len(self._bids):
            return None
        return self._bids[level - 1].price

    def ask_at_level(self, level: int) -> Optional[Decimal]:
        """Ask price at 1-indexed *level*, or None beyond available depth."""
        if level < 1 or level > len(self._asks):
            return None
        return self._asks[level - 1].price

    def mid_price(self) -> Optional[Decimal]:
        bid = self.best_bid()
        ask = self.best_ask()
        if bid is None or ask is None:
            return None
        return (bid.price + ask.price) / 2

    def spread(self) -> Optional[Decimal]:
        bid = self.best_bid()
        ask = self.best_ask()
        if bid is None or ask is None:
            return None
        return ask.price - bid.price

    def spread_percent(self) -> Optional[Decimal]:
        spread = self.spread()
        mid = self.mid_price()
        if spread is None or not mid:
            return None
        return spread / mid * 100

    # ------------------------------------------------------------------
    # Strategy price selectors
    # ------------------------------------------------------------------

    def entry_price(self, direction: Direction, level: int = DEFAULT_ENTRY_LEVEL) -> Optional[Decimal]:
        """Passive entry inside the book: bid level for LONG, ask level for SHORT."""
        if direction == Direction.LONG:
            return self.bid_at_level(level)
        return self.ask_at_level(level)

    def take_profit_price(self, direction: Direction, level: int = DEFAULT_TP_LEVEL) -> Optional[Decimal]:
        """Deep level on the favourable side: ask for LONG, bid for SHORT."""
        if direction == Direction.LONG:
            return self.ask_at_level(level)
        return self.bid_at_level(level)

    def stop_loss_price(self, direction: Direction, level: int = DEFAULT_SL_LEVEL) -> Optional[Decimal]:
        """Level on the adverse side: bid for LONG, ask for SHORT."""
        if direction == Direction.LONG:
            return self.bid_at_level(level)
        return self.ask_at_level(level)

    def validate_tpsl_prices(
        self,
        direction: Direction,
        entry_price: Decimal,
        tp_price: Decimal,
        sl_price: Decimal,
    ) -> TpSlValidation:
        return validate_tpsl_prices(direction, entry_price, tp_price, sl_price)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def market_snapshot(self, depth: int = 5) -> Dict[str, Any]:
        bid = self.best_bid()
        ask = self.best_ask()
        return {
            "symbol": self._symbol,
            "update_id": self._last_update_id,
            "best_bid": bid.price if bid else None,
            "best_ask": ask.price if ask else None,
            "mid": self.mid_price(),
            "spread_pct": self.spread_percent(),
            "bids": [[lvl.price, lvl.size] for lvl in self._bids[:depth]],
            "asks": [[lvl.price, lvl.size] for lvl in self._asks[:depth]],
            "age_s": self.seconds_since_update(),
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_levels(raw_levels: Iterable[Any], *, descending: bool) -> Tuple[PriceLevel, ...]:
        levels = []
        for raw in raw_levels or ():
            level = BookMirror._to_price_level(raw)
            if level is not None and level.size > 0:
                levels.append(level)
        levels.sort(key=lambda lvl: lvl.price, reverse=descending)
        return tuple(levels)

    @staticmethod
    def _to_price_level(raw) -> Optional[PriceLevel]:
        if isinstance(raw, PriceLevel):
            return raw
        try:
            price, size = raw[0], raw[1]
        except (TypeError, IndexError, KeyError):
            return None
        price_d = safe_decimal(price)
        if price_d <= 0:
            return None
        return PriceLevel(price=price_d, size=safe_decimal(size))
