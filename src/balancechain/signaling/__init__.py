from .client import (
    Backoff,
    SignalingClient,
    SignalMessage,
    SignalStatus,
    normalize_url,
)
from .relay import RelayServer

__all__ = [
    "Backoff",
    "SignalingClient",
    "SignalMessage",
    "SignalStatus",
    "normalize_url",
    "RelayServer",
]
