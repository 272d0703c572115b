"""
Trade Journal

Records every strategy event (order actions, fills, completed trades, forced
closes, safety transitions) to a JSONL file.

Each line is a self-contained JSON object with a ``type`` field.  The journal
subscribes to the strategy's ``EventBus``; a write failure is logged and
swallowed so telemetry can never stall or abort trading.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from .events import Event, EventBus

logger = logging.getLogger(__name__)

_DEFAULT_JOURNAL_DIR = Path("data/journal")

# Event types that require immediate os.fsync for durability.
_CRITICAL_EVENT_TYPES = frozenset({
    "order_filled", "trade_completed", "force_close", "circuit_tripped",
    "emergency_close", "run_end", "error",
})

# For non-critical events, fsync every N writes or every N seconds.
_BATCH_FSYNC_INTERVAL_WRITES = 100
_BATCH_FSYNC_INTERVAL_S = 10.0


class _DecimalEncoder(json.JSONEncoder):
    """Encode Decimal as string to preserve precision in JSON."""

    def default(self, o):
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, Enum):
            return o.value
        if isinstance(o, Path):
            return str(o)
        return super().default(o)


class TradeJournal:
    """Append-only JSONL writer for strategy events.

    - Durable fsync for critical events, batched fsync for the rest
    - Rotation when the file exceeds ``max_size_mb``
    """

    def __init__(
        self,
        symbol: str,
        journal_dir: Optional[Path] = None,
        *,
        run_id: Optional[str] = None,
        schema_version: int = 1,
        max_size_mb: float = 50.0,
    ) -> None:
        self._symbol = symbol
        self._dir = Path(journal_dir) if journal_dir is not None else _DEFAULT_JOURNAL_DIR
        self._dir.mkdir(parents=True, exist_ok=True)
        self._run_id = run_id or uuid.uuid4().hex
        self._schema_version = schema_version
        self._max_size_bytes = int(max_size_mb * 1024 * 1024)
        self._seq = 0
        self._rotation_index = 0
        self.write_errors = 0

        self._writes_since_fsync = 0
        self._last_fsync_ts = time.monotonic()

        ts = time.strftime("%Y%m%d_%H%M%S")
        self._base_stem = f"dt_{symbol}_{ts}"
        self._path = self._dir / f"{self._base_stem}.jsonl"
        self._fh = open(self._path, "a")  # noqa: SIM115
        logger.info(
            "Trade journal: %s (run_id=%s schema=v%s max_size=%.0fMB)",
            self._path,
            self._run_id,
            self._schema_version,
            max_size_mb,
        )

    # ------------------------------------------------------------------
    # Bus wiring
    # ------------------------------------------------------------------

    def attach(self, bus: EventBus) -> None:
        bus.subscribe_all(self.on_event)

    def on_event(self, event: Event) -> None:
        data = dict(event.data)
        if event.source:
            data.setdefault("source", event.source)
        self.write(event.type.value, data)

    # ------------------------------------------------------------------
    # Core writer
    # ------------------------------------------------------------------

    def write(self, event_type: str, data: Dict[str, Any]) -> bool:
        """Append one record; returns False (after logging) on failure."""
        try:
            self._write(event_type, data)
            return True
        except (OSError, TypeError, ValueError) as exc:
            self.write_errors += 1
            logger.error("Journal write failed for %s: %s", event_type, exc)
            return False

    def _write(self, event_type: str, data: Dict[str, Any]) -> None:
        self._seq += 1
        record = {
            "ts": time.time(),
            "seq": self._seq,
            "run_id": self._run_id,
            "schema_version": self._schema_version,
            "type": event_type,
            "symbol": self._symbol,
            **data,
        }
        self._fh.write(json.dumps(record, cls=_DecimalEncoder) + "\n")
        self._fh.flush()

        if event_type in _CRITICAL_EVENT_TYPES:
            self._do_fsync()
        else:
            self._writes_since_fsync += 1
            now = time.monotonic()
            if (
                self._writes_since_fsync >= _BATCH_FSYNC_INTERVAL_WRITES
                or (now - self._last_fsync_ts) >= _BATCH_FSYNC_INTERVAL_S
            ):
                self._do_fsync()

        self._maybe_rotate()

    def _do_fsync(self) -> None:
        self._writes_since_fsync = 0
        self._last_fsync_ts = time.monotonic()
        try:
            self._fh.flush()
            os.fsync(self._fh.fileno())
        except (OSError, ValueError):
            pass

    def _maybe_rotate(self) -> None:
        if self._max_size_bytes <= 0:
            return
        try:
            pos = self._fh.tell()
        except (OSError, ValueError):
            return
        if pos < self._max_size_bytes:
            return
        self._do_fsync()
        self._fh.close()
        self._rotation_index += 1
        self._path = self._dir / f"{self._base_stem}.{self._rotation_index}.jsonl"
        self._fh = open(self._path, "a")  # noqa: SIM115
        logger.info("Journal rotated to: %s", self._path)

    # ------------------------------------------------------------------
    # Run boundaries
    # ------------------------------------------------------------------

    def record_run_start(self, *, environment: str, strategy: str, config: Dict[str, Any]) -> None:
        self.write("run_start", {
            "environment": environment,
            "strategy": strategy,
            "config": config,
        })

    def record_run_end(self, *, reason: str = "shutdown", stats: Optional[Dict[str, Any]] = None) -> None:
        self.write("run_end", {"reason": reason, "stats": stats or {}})

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        if self._fh and not self._fh.closed:
            self._do_fsync()
            self._fh.close()
        logger.info("Trade journal closed: %s", self._path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def event_count(self) -> int:
        return self._seq
