"""Exchange error taxonomy shared by the REST client and order handling."""
from __future__ import annotations

from typing import Optional

# Venue error codes with special handling.
ORDER_TYPE_UNSUPPORTED = -4120
UNKNOWN_ORDER = -2011
ORDER_DOES_NOT_EXIST = -2013
MARGIN_INSUFFICIENT = -2019
POST_ONLY_REJECTED = -5022
TIMESTAMP_OUTSIDE_RECV_WINDOW = -1021


class ExchangeError(Exception):
    """Base class for failures talking to the venue."""


class ExchangeApiError(ExchangeError):
    """The venue answered with a structured ``{code, msg}`` rejection."""

    def __init__(self, code: int, msg: str, status: Optional[int] = None) -> None:
        super().__init__(f"[{code}] {msg}")
        self.code = code
        self.msg = msg
        self.status = status

    @property
    def is_order_type_unsupported(self) -> bool:
        return self.code == ORDER_TYPE_UNSUPPORTED

    @property
    def is_unknown_order(self) -> bool:
        return self.code in (UNKNOWN_ORDER, ORDER_DOES_NOT_EXIST)

    @property
    def is_margin_insufficient(self) -> bool:
        return self.code == MARGIN_INSUFFICIENT


class ExchangeHttpError(ExchangeError):
    """Non-2xx response without a parseable venue error body."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"HTTP {status}: {body[:200]}")
        self.status = status
        self.body = body


class ExchangeTimeoutError(ExchangeError):
    """The request may or may not have reached the venue.

    Callers must re-query state instead of assuming success or failure.
    """

    def __init__(self, endpoint: str) -> None:
        super().__init__(f"Request timeout: {endpoint}")
        self.endpoint = endpoint


class BookUnavailableError(Exception):
    """The local book could not produce a usable price."""


class EntryUnresolvedError(ExchangeError):
    """An entry that timed out could be neither cancelled nor confirmed gone."""

    def __init__(self, order_id: Optional[int], reason: str) -> None:
        super().__init__(f"Entry {order_id} unresolved: {reason}")
        self.order_id = order_id
