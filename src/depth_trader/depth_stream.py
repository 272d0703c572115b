"""
Partial-depth stream feeding the BookMirror.

Subscribes to ``<symbol>@depth<N>@<speed>`` and hands every ``depthUpdate``
message to ``BookMirror.apply_diff``; the mirror itself rejects anything not
newer than what it already holds.  On every (re)connect the mirror is primed
again from a REST snapshot so a gap during the outage cannot leave it behind.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import websockets

from .orderbook_manager import BookMirror

logger = logging.getLogger(__name__)

_BACKOFF_START_S = 0.5
_BACKOFF_FACTOR = 1.7
_BACKOFF_MAX_S = 8.0

SnapshotFetcher = Callable[[], Awaitable[Dict[str, Any]]]


@dataclass
class StreamStats:
    connected: bool = False
    reconnects: int = 0
    messages: int = 0
    applied: int = 0
    discarded: int = 0
    malformed: int = 0
    last_message_ts: float = 0.0


class DepthStream:
    def __init__(
        self,
        mirror: BookMirror,
        ws_base_url: str,
        *,
        snapshot_fetcher: Optional[SnapshotFetcher] = None,
        levels: int = 20,
        speed: str = "100ms",
    ) -> None:
        self._mirror = mirror
        self._ws_base_url = ws_base_url.rstrip("/")
        self._snapshot_fetcher = snapshot_fetcher
        self._levels = levels
        self._speed = speed
        self.stats = StreamStats()
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    @property
    def url(self) -> str:
        stream = f"{self._mirror.symbol.lower()}@depth{self._levels}@{self._speed}"
        return f"{self._ws_base_url}/ws/{stream}"

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name=f"depth-{self._mirror.symbol}")

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self.stats.connected = False

    async def prime(self) -> None:
        """Replace the mirror from a REST snapshot."""
        if self._snapshot_fetcher is None:
            return
        snapshot = await self._snapshot_fetcher()
        self._mirror.apply_snapshot(
            snapshot.get("bids", []),
            snapshot.get("asks", []),
            int(snapshot.get("lastUpdateId", 0)),
            snapshot.get("E"),
        )

    def handle_message(self, raw: Union[str, bytes, Dict[str, Any]]) -> bool:
        """Apply one stream message; returns True when the mirror changed."""
        self.stats.messages += 1
        self.stats.last_message_ts = time.monotonic()
        try:
            data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        except ValueError:
            self.stats.malformed += 1
            logger.warning("Malformed depth message dropped")
            return False

        # Combined-stream envelope: {"stream": ..., "data": {...}}
        if isinstance(data, dict) and "data" in data and "stream" in data:
            data = data["data"]
        if not isinstance(data, dict) or data.get("e") != "depthUpdate" or "u" not in data:
            self.stats.malformed += 1
            return False

        applied = self._mirror.apply_diff(
            data.get("b", []),
            data.get("a", []),
            int(data["u"]),
            data.get("E"),
        )
        if applied:
            self.stats.applied += 1
        else:
            self.stats.discarded += 1
        return applied

    async def _run(self) -> None:
        url = self.url
        backoff = _BACKOFF_START_S
        while not self._stop.is_set():
            try:
                async with websockets.connect(url, ping_interval=15, ping_timeout=15, close_timeout=2) as ws:
                    self.stats.connected = True
                    backoff = _BACKOFF_START_S
                    logger.info("Depth stream connected: %s", url)
                    await self.prime()
                    async for msg in ws:
                        if self._stop.is_set():
                            break
                        self.handle_message(msg)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                self.stats.connected = False
                self.stats.reconnects += 1
                logger.warning(
                    "Depth stream error (%s), reconnecting in %.1fs", exc, backoff
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * _BACKOFF_FACTOR, _BACKOFF_MAX_S)

        self.stats.connected = False
        logger.info("Depth stream stopped for %s", self._mirror.symbol)
