"""
Wire frames.

Two families travel between peers:

Signaling payloads (inside relay `data`, keyed by "kind"):
    {"kind": "offer",  "sdp": {...}}
    {"kind": "answer", "sdp": {...}}
    {"kind": "ice",    "candidate": {...}}
    {"kind": "presence", "ts": ms, "ttl": s, "hints": {...}}

Session frames (over the peer data channel, keyed by "t"):
    {"t": "k",     "pub": <agreement JWK>}
    {"t": "pull",  "channelId": str, "sinceSeq": int}
    {"t": "batch", "channelId": str, "e2ee": bool, "items": [...]}
    {"t": "ack",   "channelId": str, "upToSeq": int}
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List

from balancechain.errors import FrameError
from balancechain.utils.json import json_dumps, safe_json_loads


class SignalKind(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE = "ice"
    PRESENCE = "presence"


class FrameType(str, Enum):
    KEY = "k"
    PULL = "pull"
    BATCH = "batch"
    ACK = "ack"


@dataclass
class BatchItem:
    """One delivered (already decrypted) item of a batch."""

    seq: int
    msg_id: str
    text: str
    ts: int

    def to_wire(self) -> Dict[str, Any]:
        return {"seq": self.seq, "msgId": self.msg_id, "text": self.text, "ts": self.ts}

    @classmethod
    def from_wire(cls, item: Dict[str, Any]) -> "BatchItem":
        text = item.get("text")
        if not isinstance(text, str):
            raise FrameError("Batch item has no text")
        try:
            batch_item = cls(
                seq=int(item["seq"]),
                msg_id=str(item["msgId"]),
                text=text,
                ts=int(item.get("ts") or 0),
            )
            # lone surrogates survive json.loads but cannot be stored as UTF-8
            batch_item.text.encode("utf-8")
            batch_item.msg_id.encode("utf-8")
        except (KeyError, TypeError, ValueError, OverflowError) as e:
            raise FrameError(f"Malformed batch item: {e}")
        return batch_item


def key_frame(pub: Dict[str, Any]) -> str:
    return json_dumps({"t": FrameType.KEY.value, "pub": pub})


def pull_frame(channel_id: str, since_seq: int) -> str:
    return json_dumps({"t": FrameType.PULL.value, "channelId": channel_id, "sinceSeq": since_seq})


def batch_frame(channel_id: str, items: List[Dict[str, Any]], *, e2ee: bool) -> str:
    return json_dumps(
        {"t": FrameType.BATCH.value, "channelId": channel_id, "e2ee": e2ee, "items": items}
    )


def ack_frame(channel_id: str, up_to_seq: int) -> str:
    return json_dumps({"t": FrameType.ACK.value, "channelId": channel_id, "upToSeq": up_to_seq})


def decode_frame(raw: Any) -> Dict[str, Any]:
    """Parse a session frame. Raises FrameError for anything unusable."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise FrameError("Frame is not UTF-8")
    frame = safe_json_loads(raw)
    if not isinstance(frame, dict):
        raise FrameError("Frame is not a JSON object")
    try:
        FrameType(frame.get("t"))
    except ValueError:
        raise FrameError(f"Unknown frame type: {frame.get('t')!r}")
    return frame


def int_field(frame: Dict[str, Any], name: str) -> int:
    try:
        return int(frame.get(name) or 0)
    except (TypeError, ValueError, OverflowError):
        raise FrameError(f"Field {name!r} is not an integer")


def str_field(frame: Dict[str, Any], name: str) -> str:
    value = frame.get(name)
    if not isinstance(value, str) or not value:
        raise FrameError(f"Field {name!r} is missing")
    return value
