"""
Tests for entry projections and the derived-view readers.
"""

import asyncio

from balancechain.chain import ChainViews, EntryType, StateLog, projection_for, NO_PROJECTION
from balancechain.identity import derive_channel_id
from balancechain.storage import StoreName


def _append(log, identity, entry_type, payload):
    return asyncio.run(log.append(identity, entry_type, payload))


class TestProjections:
    def test_chat_append(self, identity, storage):
        log = StateLog(storage)
        res = _append(log, identity, EntryType.CHAT_APPEND, {"text": "note"})
        rows = ChainViews(storage).messages()
        assert len(rows) == 1
        assert rows[0]["id"] == f"1:{res.entry.nonce}"
        assert rows[0]["text"] == "note"
        assert rows[0]["dir"] == "local"

    def test_contact_add_upserts_and_keeps_added_at(self, identity, storage):
        ticks = iter([100, 200])
        log = StateLog(storage, clock=lambda: next(ticks))
        _append(log, identity, EntryType.CONTACT_ADD, {"hid": "HID-b", "nickname": "bob"})
        _append(log, identity, EntryType.CONTACT_ADD, {"hid": "HID-b", "nickname": "robert"})

        views = ChainViews(storage)
        assert len(views.contacts()) == 1
        assert views.contact("HID-b") == {"hid": "HID-b", "nickname": "robert", "addedAt": 100}

    def test_channel_open_is_idempotent(self, identity, storage):
        log = StateLog(storage)
        cid = derive_channel_id(identity.hid, "HID-b")
        _append(log, identity, EntryType.CHANNEL_OPEN, {"channelId": cid, "peerHid": "HID-b"})
        _append(log, identity, EntryType.MSG_ACK, {"channelId": cid, "peerHid": "HID-b", "upToSeq": 4})
        _append(log, identity, EntryType.CHANNEL_OPEN, {"channelId": cid, "peerHid": "HID-b"})

        channel = ChainViews(storage).channel(cid)
        assert channel["lastPulledSeq"] == 4
        assert channel["peerHid"] == "HID-b"

    def test_intent_creates_outbox_row_and_channel(self, identity, storage):
        log = StateLog(storage)
        cid = derive_channel_id(identity.hid, "HID-b")
        _append(
            log,
            identity,
            EntryType.MSG_INTENT,
            {"msgId": "m1", "channelId": cid, "toHid": "HID-b", "seqInChannel": 1, "text": "hi"},
        )
        row = storage.get(StoreName.OUTBOX, "m1")
        assert row["status"] == "pending"
        assert row["seqInChannel"] == 1
        assert ChainViews(storage).channel(cid)["lastPulledSeq"] == 0

    def test_sent_and_delivered_rows(self, identity, storage):
        log = StateLog(storage)
        _append(
            log,
            identity,
            EntryType.MSG_SENT,
            {"msgId": "m1", "channelId": "CH-x", "toHid": "HID-b", "seqInChannel": 1, "text": "out"},
        )
        _append(
            log,
            identity,
            EntryType.MSG_DELIVERED,
            {
                "channelId": "CH-x",
                "fromHid": "HID-b",
                "seqInChannel": 1,
                "msgId": "m9",
                "text": "in",
                "ts": 5,
            },
        )
        rows = {m["id"]: m for m in ChainViews(storage).messages("CH-x")}
        assert rows["out:m1"]["dir"] == "out"
        assert rows["in:HID-b:m9"]["dir"] == "in"
        assert rows["in:HID-b:m9"]["ts"] == 5

    def test_ack_only_moves_forward(self, identity, storage):
        log = StateLog(storage)
        _append(log, identity, EntryType.MSG_ACK, {"channelId": "CH-x", "peerHid": "HID-b", "upToSeq": 5})
        _append(log, identity, EntryType.MSG_ACK, {"channelId": "CH-x", "peerHid": "HID-b", "upToSeq": 3})
        channel = ChainViews(storage).channel("CH-x")
        assert channel["lastAckedSeq"] == 5
        assert channel["lastPulledSeq"] == 5

    def test_odd_payloads_do_not_break_append(self, identity, storage):
        log = StateLog(storage)
        assert _append(log, identity, EntryType.CONTACT_ADD, {"nickname": "no hid"}).ok
        assert _append(log, identity, EntryType.MSG_INTENT, {"text": "no id"}).ok
        assert _append(log, identity, EntryType.MSG_ACK, {"upToSeq": "x"}).ok
        assert storage.get_all(StoreName.CONTACTS) == []
        assert storage.get_all(StoreName.OUTBOX) == []

    def test_unknown_type_has_no_projection(self):
        assert projection_for("something.else") is NO_PROJECTION
        assert projection_for(EntryType.CHAT_APPEND) is not NO_PROJECTION


class TestPresence:
    def test_presence_expires(self, storage):
        views = ChainViews(storage)
        views.record_presence("HID-b", ts=1000, ttl_ms=500, hints={"lan": "10.0.0.2"})
        assert views.presence("HID-b", now=1200)["hints"] == {"lan": "10.0.0.2"}
        assert views.presence("HID-b", now=1500) is None
        assert views.online(now=1200) == ["HID-b"]
        assert views.online(now=2000) == []

    def test_unknown_peer(self, storage):
        assert ChainViews(storage).presence("HID-none") is None
