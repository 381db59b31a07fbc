"""
Timestamp utilities used across BalanceChain.

Chain entries, wire frames and presence all carry integer epoch
milliseconds.
"""

from __future__ import annotations

import time


def now_ms() -> int:
    """Wall-clock milliseconds since the Unix epoch."""
    return int(time.time() * 1000)
