"""
Strategy event bus.

Orchestrators publish one event per state transition or order action; the
journal, status reporter and any monitoring surface subscribe.  Dispatch is
synchronous and each handler is isolated: a failing subscriber is logged and
skipped, never propagated into trading logic.
"""
from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

_DEFAULT_HISTORY_SIZE = 200


class EventType(str, Enum):
    # Lifecycle
    STRATEGY_STARTED = "strategy_started"
    STRATEGY_STOPPED = "strategy_stopped"
    CYCLE_STARTED = "cycle_started"
    CYCLE_ABORTED = "cycle_aborted"

    # Orders
    ORDER_PLACED = "order_placed"
    ORDER_REJECTED = "order_rejected"
    ORDER_FILLED = "order_filled"
    ORDER_CANCELED = "order_canceled"
    ORDER_EXPIRED = "order_expired"
    ORDER_TIMED_OUT = "order_timed_out"
    BRACKET_PLACED = "bracket_placed"

    # Trades
    TRADE_OPENED = "trade_opened"
    TRADE_COMPLETED = "trade_completed"
    FORCE_CLOSE = "force_close"
    DIRECTION_SWITCHED = "direction_switched"

    # Market-making safety
    CIRCUIT_TRIPPED = "circuit_tripped"
    CIRCUIT_RESET = "circuit_reset"
    RANGE_PAUSED = "range_paused"
    RANGE_RESUMED = "range_resumed"
    ANCHOR_ROLLED = "anchor_rolled"
    REDUCTION_STARTED = "reduction_started"
    REDUCTION_ENDED = "reduction_ended"
    EMERGENCY_CLOSE = "emergency_close"

    ERROR = "error"


@dataclass
class Event:
    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=time.time)
    source: Optional[str] = None


Handler = Callable[[Event], None]


class EventBus:
    """Observer registry with per-type and catch-all subscriptions."""

    def __init__(self, history_size: int = _DEFAULT_HISTORY_SIZE) -> None:
        self._subscribers: Dict[EventType, List[Handler]] = {}
        self._global_subscribers: List[Handler] = []
        self._history: Deque[Event] = deque(maxlen=history_size)
        self.published: int = 0
        self.handler_errors: int = 0

    def subscribe(self, event_type: EventType, handler: Handler) -> Handler:
        self._subscribers.setdefault(event_type, []).append(handler)
        return handler

    def subscribe_all(self, handler: Handler) -> Handler:
        self._global_subscribers.append(handler)
        return handler

    def unsubscribe(self, handler: Handler, event_type: Optional[EventType] = None) -> bool:
        if event_type is None:
            if handler in self._global_subscribers:
                self._global_subscribers.remove(handler)
                return True
            return False
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def publish(self, event_type: EventType, source: Optional[str] = None, **data: Any) -> Event:
        event = Event(type=event_type, data=data, source=source)
        self.published += 1
        self._history.append(event)
        for handler in list(self._global_subscribers) + list(self._subscribers.get(event_type, [])):
            try:
                handler(event)
            except Exception as exc:
                self.handler_errors += 1
                logger.error(
                    "Event handler %s failed for %s: %s",
                    getattr(handler, "__name__", repr(handler)),
                    event_type.value,
                    exc,
                    exc_info=True,
                )
        return event

    def recent(self, limit: int = 50) -> List[Event]:
        items = list(self._history)
        return items[-limit:]
