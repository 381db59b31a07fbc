"""
State log: signed, hash-chained, replay-protected local event log.

Every entry:
- is signed by its author (ECDSA P-256)
- links to the previous head (hash chaining)
- carries a single-use nonce (replay guard)
- is projected into derived views in the same atomic write
"""

from .engine import StateLog
from .interpreter import NO_PROJECTION, Projection, projection_for
from .models import (
    ENTRY_VERSION,
    GENESIS,
    AppendResult,
    Author,
    ChainEntry,
    ChainRecord,
    EntryType,
    VerifyReport,
    next_head,
)
from .views import ChainViews

__all__ = [
    "StateLog",
    "ChainViews",
    "Projection",
    "NO_PROJECTION",
    "projection_for",
    "ENTRY_VERSION",
    "GENESIS",
    "AppendResult",
    "Author",
    "ChainEntry",
    "ChainRecord",
    "EntryType",
    "VerifyReport",
    "next_head",
]
