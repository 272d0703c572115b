"""Allow ``python -m depth_trader`` invocation."""
from __future__ import annotations

import sys

from .strategy_runner import main

if __name__ == "__main__":
    sys.exit(main())
