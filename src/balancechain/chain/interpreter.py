"""
Entry interpreter: projects chained entries into derived views.

Each known entry type maps to a Projection naming the stores it touches and
a function applied inside the append transaction. Unknown types map to
NO_PROJECTION: they are chained, but nothing is derived from them.

Projections are total. Missing or odd payload fields fall back to empty
values rather than raising, since the chain (not the view) is the source of
truth.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet

from balancechain.storage import StoreName, Transaction

from .models import ChainEntry, EntryType, type_name


@dataclass(frozen=True)
class Projection:
    stores: FrozenSet[str]
    apply: Callable[[Transaction, ChainEntry], None]


def _int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return 0


def _str(value: Any) -> str:
    return "" if value is None else str(value)


def _payload(entry: ChainEntry) -> Dict[str, Any]:
    return entry.payload if isinstance(entry.payload, dict) else {}


def _project_chat(tx: Transaction, entry: ChainEntry) -> None:
    msg_id = f"{entry.seq}:{entry.nonce}"
    tx.put(
        StoreName.MESSAGES,
        msg_id,
        {
            "id": msg_id,
            "seq": entry.seq,
            "ts": entry.timestamp,
            "text": _str(_payload(entry).get("text")),
            "hik": entry.hik,
            "dir": "local",
        },
    )


def _project_contact(tx: Transaction, entry: ChainEntry) -> None:
    hid = _str(_payload(entry).get("hid"))
    if not hid:
        return
    existing = tx.get(StoreName.CONTACTS, hid) or {}
    tx.put(
        StoreName.CONTACTS,
        hid,
        {
            "hid": hid,
            "nickname": _str(_payload(entry).get("nickname")),
            "addedAt": existing.get("addedAt", entry.timestamp),
        },
    )


def _new_channel(channel_id: str, peer_hid: str, ts: int) -> Dict[str, Any]:
    return {
        "id": channel_id,
        "peerHid": peer_hid,
        "lastPulledSeq": 0,
        "lastAckedSeq": 0,
        "createdAt": ts,
    }


def _project_channel_open(tx: Transaction, entry: ChainEntry) -> None:
    channel_id = _str(_payload(entry).get("channelId"))
    if not channel_id or tx.get(StoreName.CHANNELS, channel_id) is not None:
        return
    tx.put(
        StoreName.CHANNELS,
        channel_id,
        _new_channel(channel_id, _str(_payload(entry).get("peerHid")), entry.timestamp),
    )


def _project_intent(tx: Transaction, entry: ChainEntry) -> None:
    msg_id = _str(_payload(entry).get("msgId"))
    if not msg_id:
        return
    channel_id = _str(_payload(entry).get("channelId"))
    to_hid = _str(_payload(entry).get("toHid"))
    if channel_id and tx.get(StoreName.CHANNELS, channel_id) is None:
        tx.put(StoreName.CHANNELS, channel_id, _new_channel(channel_id, to_hid, entry.timestamp))
    tx.put(
        StoreName.OUTBOX,
        msg_id,
        {
            "id": msg_id,
            "channelId": channel_id,
            "toHid": to_hid,
            "seqInChannel": _int(_payload(entry).get("seqInChannel")),
            "text": _str(_payload(entry).get("text")),
            "createdAt": entry.timestamp,
            "status": "pending",
        },
    )


def _project_sent(tx: Transaction, entry: ChainEntry) -> None:
    msg_id = _str(_payload(entry).get("msgId"))
    tx.put(
        StoreName.MESSAGES,
        f"out:{msg_id}",
        {
            "id": f"out:{msg_id}",
            "seq": entry.seq,
            "ts": entry.timestamp,
            "text": _str(_payload(entry).get("text")),
            "hik": entry.hik,
            "dir": "out",
            "msgId": msg_id,
            "channelId": _str(_payload(entry).get("channelId")),
            "peerHid": _str(_payload(entry).get("toHid")),
            "seqInChannel": _int(_payload(entry).get("seqInChannel")),
        },
    )


def _project_delivered(tx: Transaction, entry: ChainEntry) -> None:
    msg_id = _str(_payload(entry).get("msgId"))
    from_hid = _str(_payload(entry).get("fromHid"))
    key = f"in:{from_hid}:{msg_id}"
    tx.put(
        StoreName.MESSAGES,
        key,
        {
            "id": key,
            "seq": entry.seq,
            # sender's timestamp when known, arrival time otherwise
            "ts": _int(_payload(entry).get("ts")) or entry.timestamp,
            "text": _str(_payload(entry).get("text")),
            "hik": entry.hik,
            "dir": "in",
            "msgId": msg_id,
            "channelId": _str(_payload(entry).get("channelId")),
            "peerHid": from_hid,
            "seqInChannel": _int(_payload(entry).get("seqInChannel")),
        },
    )


def _project_ack(tx: Transaction, entry: ChainEntry) -> None:
    channel_id = _str(_payload(entry).get("channelId"))
    if not channel_id:
        return
    up_to = _int(_payload(entry).get("upToSeq"))
    channel = tx.get(StoreName.CHANNELS, channel_id) or _new_channel(
        channel_id, _str(_payload(entry).get("peerHid")), entry.timestamp
    )
    channel["lastAckedSeq"] = max(_int(channel.get("lastAckedSeq")), up_to)
    channel["lastPulledSeq"] = max(_int(channel.get("lastPulledSeq")), up_to)
    tx.put(StoreName.CHANNELS, channel_id, channel)


def _noop(tx: Transaction, entry: ChainEntry) -> None:
    return None


NO_PROJECTION = Projection(stores=frozenset(), apply=_noop)

_PROJECTIONS: Dict[str, Projection] = {
    EntryType.CHAT_APPEND.value: Projection(frozenset({StoreName.MESSAGES.value}), _project_chat),
    EntryType.CONTACT_ADD.value: Projection(frozenset({StoreName.CONTACTS.value}), _project_contact),
    EntryType.CHANNEL_OPEN.value: Projection(frozenset({StoreName.CHANNELS.value}), _project_channel_open),
    EntryType.MSG_INTENT.value: Projection(
        frozenset({StoreName.OUTBOX.value, StoreName.CHANNELS.value}), _project_intent
    ),
    EntryType.MSG_SENT.value: Projection(frozenset({StoreName.MESSAGES.value}), _project_sent),
    EntryType.MSG_DELIVERED.value: Projection(frozenset({StoreName.MESSAGES.value}), _project_delivered),
    EntryType.MSG_ACK.value: Projection(frozenset({StoreName.CHANNELS.value}), _project_ack),
}


def projection_for(entry_type: "EntryType | str") -> Projection:
    return _PROJECTIONS.get(type_name(entry_type), NO_PROJECTION)
