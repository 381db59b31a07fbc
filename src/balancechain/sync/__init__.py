from .crypto import SessionCipher
from .frames import (
    BatchItem,
    FrameType,
    SignalKind,
    ack_frame,
    batch_frame,
    decode_frame,
    key_frame,
    pull_frame,
)
from .handlers import PeerStatus, SyncHandler
from .session import PeerSession, SessionState, SyncManager
from .transport import (
    DataChannel,
    PeerConnection,
    WebSocketDataChannel,
    WebSocketPeerConnection,
)

__all__ = [
    "SessionCipher",
    "BatchItem",
    "FrameType",
    "SignalKind",
    "ack_frame",
    "batch_frame",
    "decode_frame",
    "key_frame",
    "pull_frame",
    "PeerStatus",
    "SyncHandler",
    "PeerSession",
    "SessionState",
    "SyncManager",
    "DataChannel",
    "PeerConnection",
    "WebSocketDataChannel",
    "WebSocketPeerConnection",
]
