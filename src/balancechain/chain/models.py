"""
State log data models.

A chain entry ("STA") is immutable once written. Each stored record carries
the entry, its body hash and the head hash reached after it, so the whole
history can be re-verified offline.

Head transition:

    body_hash = sha256(canonical(entry without signature))
    new_head  = sha256(prev_head | body_hash | signature | nonce | seq)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from balancechain.codec import canonicalize, digest
from balancechain.errors import FrameError, RejectReason
from balancechain.identity import verify

GENESIS = "GENESIS"
ENTRY_VERSION = 1


class EntryType(str, Enum):
    """
    Entry types with a local projection. Any other type string is still
    chained; it just has no derived view.
    """

    CHAT_APPEND = "chat.append"
    CONTACT_ADD = "contact.add"
    CHANNEL_OPEN = "channel.open"
    MSG_INTENT = "msg.intent"
    MSG_SENT = "msg.sent"
    MSG_DELIVERED = "msg.delivered"
    MSG_ACK = "msg.ack"


def type_name(entry_type: "EntryType | str") -> str:
    if isinstance(entry_type, Enum):
        return str(entry_type.value)
    return str(entry_type)


def next_head(prev_head: str, body_hash: str, signature: str, nonce: str, seq: int) -> str:
    return digest(f"{prev_head}|{body_hash}|{signature}|{nonce}|{seq}")


@dataclass
class Author:
    hik: str
    pub_key: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"hik": self.hik, "pubKey": self.pub_key}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Author":
        return cls(hik=data["hik"], pub_key=data["pubKey"])


@dataclass
class ChainEntry:
    seq: int
    hik: str
    timestamp: int
    nonce: str
    type: str
    payload: Dict[str, Any]
    prev_hash: str
    author: Author
    signature: Optional[str] = None
    v: int = ENTRY_VERSION

    def body(self) -> Dict[str, Any]:
        """Every field except the signature."""
        return {
            "v": self.v,
            "hik": self.hik,
            "seq": self.seq,
            "timestamp": self.timestamp,
            "nonce": self.nonce,
            "type": self.type,
            "payload": self.payload,
            "prev_hash": self.prev_hash,
            "author": self.author.to_dict(),
        }

    def signable(self) -> str:
        return canonicalize(self.body())

    def body_hash(self) -> str:
        return digest(self.signable())

    def verify_signature(self) -> bool:
        if not self.signature:
            return False
        return verify(self.author.pub_key, self.body_hash(), self.signature)

    def to_dict(self) -> Dict[str, Any]:
        data = self.body()
        data["signature"] = self.signature
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChainEntry":
        try:
            return cls(
                v=data.get("v", ENTRY_VERSION),
                hik=data["hik"],
                seq=int(data["seq"]),
                timestamp=int(data["timestamp"]),
                nonce=str(data["nonce"]),
                type=str(data["type"]),
                payload=data["payload"] if "payload" in data else {},
                prev_hash=str(data["prev_hash"]),
                author=Author.from_dict(data["author"]),
                signature=data.get("signature"),
            )
        except (KeyError, TypeError, ValueError, OverflowError) as e:
            raise FrameError(f"Malformed chain entry: {e}")


@dataclass
class ChainRecord:
    """Row of the state_chain store (keyed by seq)."""

    entry: ChainEntry
    body_hash: str
    head: str

    def to_dict(self) -> Dict[str, Any]:
        return {"entry": self.entry.to_dict(), "body_hash": self.body_hash, "head": self.head}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChainRecord":
        return cls(
            entry=ChainEntry.from_dict(data["entry"]),
            body_hash=data["body_hash"],
            head=data["head"],
        )


@dataclass
class AppendResult:
    ok: bool
    head: Optional[str] = None
    length: Optional[int] = None
    reason: Optional[RejectReason] = None
    error: Optional[str] = None
    entry: Optional[ChainEntry] = field(default=None, repr=False)

    @classmethod
    def accepted(cls, entry: ChainEntry, head: str) -> "AppendResult":
        return cls(ok=True, head=head, length=entry.seq, entry=entry)

    @classmethod
    def rejected(cls, reason: RejectReason, error: Optional[str] = None) -> "AppendResult":
        return cls(ok=False, reason=reason, error=error)

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"ok": True, "head": self.head, "len": self.length}
        result: Dict[str, Any] = {"ok": False, "reason": self.reason.value if self.reason else None}
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class VerifyReport:
    ok: bool
    length: int
    head: str
    bad_seq: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "length": self.length,
            "head": self.head,
            "badSeq": self.bad_seq,
            "reason": self.reason,
        }
