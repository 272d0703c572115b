"""
Binance USD-M futures REST client.

Signed calls carry a server-synchronised ``timestamp`` plus a fixed
``recvWindow`` and an HMAC-SHA256 signature over the exact query string.
Every request runs under an explicit timeout; a timeout (or a connection
drop after the request was sent) raises ``ExchangeTimeoutError`` so callers
re-query instead of guessing the outcome.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

import aiohttp

from .errors import (
    TIMESTAMP_OUTSIDE_RECV_WINDOW,
    ExchangeApiError,
    ExchangeError,
    ExchangeHttpError,
    ExchangeTimeoutError,
)
from .utils import fmt_decimal

logger = logging.getLogger(__name__)

_DEFAULT_RECV_WINDOW_MS = 5000
_DEFAULT_TIMEOUT_S = 10.0


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return fmt_decimal(value)
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def build_query(params: Mapping[str, Any]) -> str:
    """URL-encode *params* in insertion order, dropping ``None`` values."""
    return urlencode([(k, _encode_value(v)) for k, v in params.items() if v is not None])


def sign_query(query: str, secret: str) -> str:
    return hmac.new(secret.encode(), query.encode(), hashlib.sha256).hexdigest()


class BinanceFuturesClient:
    """Async REST client; one instance per running strategy."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str,
        *,
        recv_window_ms: int = _DEFAULT_RECV_WINDOW_MS,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._api_key = api_key
        self._api_secret = api_secret
        self._base_url = base_url.rstrip("/")
        self._recv_window_ms = recv_window_ms
        self._timeout_s = timeout_s
        self._session = session
        self._time_offset_ms = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    # ------------------------------------------------------------------
    # Clock
    # ------------------------------------------------------------------

    @property
    def time_offset_ms(self) -> int:
        return self._time_offset_ms

    def _timestamp_ms(self) -> int:
        return int(time.time() * 1000) + self._time_offset_ms

    async def sync_time(self) -> int:
        """Measure the server clock offset; returns the offset in ms."""
        local_before = int(time.time() * 1000)
        data = await self._request("GET", "/fapi/v1/time")
        local_after = int(time.time() * 1000)
        server_time = int(data["serverTime"])
        self._time_offset_ms = server_time - (local_before + local_after) // 2
        logger.info("Server time synced: offset=%dms", self._time_offset_ms)
        return self._time_offset_ms

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        signed: bool = False,
        keyed: bool = False,
        _retry_on_clock: bool = True,
    ) -> Any:
        payload: Dict[str, Any] = dict(params or {})
        headers: Dict[str, str] = {}
        if signed:
            payload["timestamp"] = self._timestamp_ms()
            payload["recvWindow"] = self._recv_window_ms
        query = build_query(payload)
        if signed:
            signature = sign_query(query, self._api_secret)
            query = f"{query}&signature={signature}" if query else f"signature={signature}"
        if signed or keyed:
            headers["X-MBX-APIKEY"] = self._api_key

        url = f"{self._base_url}{path}"
        body: Optional[str] = None
        if method in ("POST", "PUT"):
            body = query
            headers["Content-Type"] = "application/x-www-form-urlencoded"
        elif query:
            url = f"{url}?{query}"

        logger.debug("%s %s %s", method, path, {k: v for k, v in payload.items() if k != "signature"})

        sess = await self._get_session()
        try:
            async with sess.request(method, url, data=body, headers=headers) as r:
                text = await r.text()
                status = r.status
        except asyncio.TimeoutError as exc:
            raise ExchangeTimeoutError(path) from exc
        except aiohttp.ClientConnectorError as exc:
            # Never reached the venue: a definite failure.
            raise ExchangeError(f"Connection failed for {path}: {exc}") from exc
        except aiohttp.ClientError as exc:
            raise ExchangeTimeoutError(path) from exc

        try:
            data = json.loads(text) if text else {}
        except ValueError:
            data = None

        if status >= 400 or (isinstance(data, dict) and int(data.get("code", 0) or 0) < 0):
            if isinstance(data, dict) and "code" in data:
                error = ExchangeApiError(int(data["code"]), str(data.get("msg", "")), status)
                if (
                    signed
                    and _retry_on_clock
                    and error.code == TIMESTAMP_OUTSIDE_RECV_WINDOW
                ):
                    logger.warning("Timestamp outside recvWindow on %s, resyncing clock", path)
                    await self.sync_time()
                    return await self._request(
                        method, path, params, signed=signed, keyed=keyed, _retry_on_clock=False
                    )
                logger.error("API error on %s %s: %s", method, path, error)
                raise error
            raise ExchangeHttpError(status, text)

        if data is None:
            raise ExchangeHttpError(status, text)
        return data

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def get_exchange_info(self) -> Dict[str, Any]:
        return await self._request("GET", "/fapi/v1/exchangeInfo")

    async def get_symbol_info(self, symbol: str) -> Dict[str, Any]:
        info = await self.get_exchange_info()
        for item in info.get("symbols", []):
            if item.get("symbol") == symbol:
                return item
        raise ValueError(f"Symbol {symbol} not found in exchange info")

    async def get_depth(self, symbol: str, limit: int = 20) -> Dict[str, Any]:
        return await self._request("GET", "/fapi/v1/depth", {"symbol": symbol, "limit": int(limit)})

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    async def set_leverage(self, symbol: str, leverage: int) -> Dict[str, Any]:
        logger.info("Setting leverage: symbol=%s leverage=%d", symbol, leverage)
        return await self._request(
            "POST", "/fapi/v1/leverage", {"symbol": symbol, "leverage": leverage}, signed=True
        )

    async def place_order(self, **params: Any) -> Dict[str, Any]:
        """POST /fapi/v1/order with the venue's parameter names."""
        logger.info(
            "Placing order: %s",
            {k: _encode_value(v) for k, v in params.items() if v is not None},
        )
        data = await self._request("POST", "/fapi/v1/order", params, signed=True)
        logger.info("Order accepted: order_id=%s status=%s", data.get("orderId"), data.get("status"))
        return data

    async def query_order(
        self,
        symbol: str,
        order_id: Optional[int] = None,
        client_order_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if order_id is None and not client_order_id:
            raise ValueError("query_order needs order_id or client_order_id")
        params = {"symbol": symbol, "orderId": order_id, "origClientOrderId": client_order_id}
        return await self._request("GET", "/fapi/v1/order", params, signed=True)

    async def cancel_order(self, symbol: str, order_id: int) -> Dict[str, Any]:
        logger.info("Cancelling order: symbol=%s order_id=%s", symbol, order_id)
        return await self._request(
            "DELETE", "/fapi/v1/order", {"symbol": symbol, "orderId": order_id}, signed=True
        )

    async def cancel_all_orders(self, symbol: str) -> Dict[str, Any]:
        logger.info("Cancelling all open orders: symbol=%s", symbol)
        return await self._request("DELETE", "/fapi/v1/allOpenOrders", {"symbol": symbol}, signed=True)

    async def get_position_risk(self, symbol: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/fapi/v2/positionRisk", {"symbol": symbol}, signed=True)
        return data if isinstance(data, list) else [data]

    # ------------------------------------------------------------------
    # Conditional (algo) orders
    # ------------------------------------------------------------------

    async def place_algo_order(self, **params: Any) -> Dict[str, Any]:
        logger.info(
            "Placing algo order: %s",
            {k: _encode_value(v) for k, v in params.items() if v is not None},
        )
        data = await self._request("POST", "/fapi/v1/algoOrder", params, signed=True)
        logger.info(
            "Algo order accepted: algo_id=%s status=%s",
            data.get("algoId", data.get("algoOrderId")),
            data.get("algoStatus", data.get("status")),
        )
        return data

    async def query_algo_order(
        self,
        symbol: str,
        algo_id: Optional[int] = None,
        client_algo_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if algo_id is None and not client_algo_id:
            raise ValueError("query_algo_order needs algo_id or client_algo_id")
        params = {"symbol": symbol, "algoId": algo_id, "clientAlgoId": client_algo_id}
        return await self._request("GET", "/fapi/v1/algoOrder", params, signed=True)

    async def cancel_algo_order(self, symbol: str, algo_id: int) -> Dict[str, Any]:
        logger.info("Cancelling algo order: symbol=%s algo_id=%s", symbol, algo_id)
        return await self._request(
            "DELETE", "/fapi/v1/algoOrder", {"symbol": symbol, "algoId": algo_id}, signed=True
        )

    # ------------------------------------------------------------------
    # User data stream
    # ------------------------------------------------------------------

    async def create_listen_key(self) -> str:
        data = await self._request("POST", "/fapi/v1/listenKey", keyed=True)
        return str(data["listenKey"])

    async def keep_alive_listen_key(self) -> None:
        await self._request("PUT", "/fapi/v1/listenKey", keyed=True)

    async def close_listen_key(self) -> None:
        await self._request("DELETE", "/fapi/v1/listenKey", keyed=True)
