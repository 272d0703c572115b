#!/usr/bin/env python
"""Entry point for the depth trader."""
from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from depth_trader.strategy_runner import main  # noqa: E402

if __name__ == "__main__":
    raise SystemExit(main())
