"""
BalanceChain: local-first, identity-addressed messaging.

Each participant keeps a signed, hash-chained log of its own actions and
exchanges messages directly with peers; a stateless relay only routes
connection setup between identity hashes.
"""

from .chain import AppendResult, ChainEntry, ChainViews, EntryType, StateLog, VerifyReport
from .config import BalanceChainSettings, get_settings
from .errors import BalanceChainError, RejectReason
from .identity import Identity, compute_hid, derive_channel_id
from .ledger import OutboxLedger
from .node import Node
from .storage import MemoryStorage, SQLiteStorage, open_storage

__version__ = "0.3.0"

__all__ = [
    "AppendResult",
    "ChainEntry",
    "ChainViews",
    "EntryType",
    "StateLog",
    "VerifyReport",
    "BalanceChainSettings",
    "get_settings",
    "BalanceChainError",
    "RejectReason",
    "Identity",
    "compute_hid",
    "derive_channel_id",
    "OutboxLedger",
    "Node",
    "MemoryStorage",
    "SQLiteStorage",
    "open_storage",
]
