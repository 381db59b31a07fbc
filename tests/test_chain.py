"""
Tests for the state log engine.

Test coverage:
1. Append: seq/prev_hash linkage, head recomputation, persistence
2. Replay protection (forced nonce reuse)
3. Atomicity (injected storage failure)
4. Validate-then-append of externally produced entries
5. Whole-chain verification and tamper detection
6. Concurrent appends
7. Export
"""

import asyncio
import itertools
import os

import pytest

from balancechain.chain import (
    GENESIS,
    Author,
    ChainEntry,
    EntryType,
    StateLog,
    next_head,
)
from balancechain.chain import interpreter
from balancechain.errors import RejectReason, StorageError
from balancechain.storage import MemoryStorage, SQLiteStorage, StoreName


def _counter_nonces():
    counter = itertools.count(1)
    return lambda: f"nonce-{next(counter)}"


class FailingStorage(MemoryStorage):
    """Memory storage whose commits fail once `fail` is set."""

    fail = False

    def _apply(self, writes):
        if self.fail:
            raise StorageError("disk full")
        super()._apply(writes)


# ===========================================================================
# 1. Append
# ===========================================================================


class TestAppend:
    def test_first_entry_links_to_genesis(self, identity, storage):
        log = StateLog(storage)
        res = asyncio.run(log.append(identity, EntryType.CHAT_APPEND, {"text": "hi"}))

        assert res.ok
        assert res.length == 1
        entry = log.record(1).entry
        assert entry.seq == 1
        assert entry.prev_hash == GENESIS
        assert entry.author.hik == identity.hik
        assert entry.author.pub_key == identity.pub_key
        assert entry.verify_signature()

    def test_head_transition(self, identity, storage):
        log = StateLog(storage)
        res = asyncio.run(log.append(identity, EntryType.CHAT_APPEND, {"text": "hi"}))
        entry = res.entry
        expected = next_head(GENESIS, entry.body_hash(), entry.signature, entry.nonce, 1)
        assert res.head == expected == log.head()

    def test_entries_chain_together(self, identity, storage):
        log = StateLog(storage)

        async def run():
            for i in range(3):
                await log.append(identity, EntryType.CHAT_APPEND, {"text": str(i)})

        asyncio.run(run())
        records = log.records()
        assert [r.entry.seq for r in records] == [1, 2, 3]
        assert records[1].entry.prev_hash == records[0].head
        assert records[2].entry.prev_hash == records[1].head
        assert log.length() == 3

    def test_same_inputs_same_body_hash(self, identity):
        """Pinned clock and nonces make the signed body deterministic."""

        def build():
            log = StateLog(MemoryStorage(), clock=lambda: 1000, nonce_factory=_counter_nonces())

            async def run():
                await log.append(identity, EntryType.CHAT_APPEND, {"text": "a"})
                return await log.append(identity, EntryType.CONTACT_ADD, {"hid": "HID-x"})

            return asyncio.run(run())

        first, second = build(), build()
        assert first.entry.body_hash() == second.entry.body_hash()
        assert first.entry.prev_hash == second.entry.prev_hash
        # ECDSA signatures are randomized; the head is a pure function of its inputs
        e = second.entry
        assert second.head == next_head(e.prev_hash, e.body_hash(), e.signature, e.nonce, e.seq)

    def test_result_dict_shapes(self, identity, storage):
        log = StateLog(storage)
        ok = asyncio.run(log.append(identity, EntryType.CHAT_APPEND, {"text": "hi"}))
        assert ok.to_dict() == {"ok": True, "head": ok.head, "len": 1}

    def test_unknown_type_is_chained_without_projection(self, identity, storage):
        log = StateLog(storage)
        res = asyncio.run(log.append(identity, "custom.thing", {"x": 1}))
        assert res.ok
        assert log.record(1).entry.type == "custom.thing"
        assert storage.get_all(StoreName.MESSAGES) == []

    @pytest.mark.parametrize("payload", [[], "", 0, False])
    def test_falsy_payload_survives_verify(self, identity, storage, payload):
        log = StateLog(storage)
        res = asyncio.run(log.append(identity, "note", payload))
        assert res.ok
        assert log.record(1).entry.payload == payload
        assert log.verify().ok

    def test_sqlite_backed_log_persists(self, identity, tmp_dir):
        path = os.path.join(tmp_dir, "chain.db")
        s = SQLiteStorage(path)
        res = asyncio.run(StateLog(s).append(identity, EntryType.CHAT_APPEND, {"text": "x"}))
        s.close()

        reopened = SQLiteStorage(path)
        log = StateLog(reopened)
        assert log.head() == res.head
        assert log.length() == 1
        assert log.verify().ok
        reopened.close()


# ===========================================================================
# 2. Replay
# ===========================================================================


class TestReplay:
    def test_reused_nonce_rejected(self, identity, storage):
        log = StateLog(storage, nonce_factory=lambda: "fixed-nonce")

        async def run():
            first = await log.append(identity, EntryType.CHAT_APPEND, {"text": "a"})
            second = await log.append(identity, EntryType.CHAT_APPEND, {"text": "b"})
            return first, second

        first, second = asyncio.run(run())
        assert first.ok
        assert not second.ok
        assert second.reason is RejectReason.REPLAY
        assert second.to_dict() == {"ok": False, "reason": "replay"}
        assert log.length() == 1
        assert log.head() == first.head
        assert len(storage.get_all(StoreName.MESSAGES)) == 1


# ===========================================================================
# 3. Atomicity
# ===========================================================================


class TestAtomicity:
    def test_storage_failure_leaves_no_trace(self, identity):
        storage = FailingStorage()
        log = StateLog(storage)
        asyncio.run(log.append(identity, EntryType.CHAT_APPEND, {"text": "kept"}))
        head_before = log.head()

        storage.fail = True
        res = asyncio.run(log.append(identity, EntryType.CHAT_APPEND, {"text": "lost"}))

        assert not res.ok
        assert res.reason is RejectReason.TX_ABORT
        assert "disk full" in res.error
        assert log.length() == 1
        assert log.head() == head_before
        assert log.record(2) is None
        assert len(storage.get_all(StoreName.SYNC_LOG)) == 1
        assert [m["text"] for m in storage.get_all(StoreName.MESSAGES)] == ["kept"]

    def test_log_usable_after_failure(self, identity):
        storage = FailingStorage()
        log = StateLog(storage)
        storage.fail = True
        asyncio.run(log.append(identity, EntryType.CHAT_APPEND, {"text": "x"}))
        storage.fail = False
        res = asyncio.run(log.append(identity, EntryType.CHAT_APPEND, {"text": "y"}))
        assert res.ok
        assert res.length == 1
        assert log.verify().ok

    def test_projection_failure_aborts(self, identity, storage, monkeypatch):
        def explode(tx, entry):
            raise ValueError("cannot project")

        monkeypatch.setitem(
            interpreter._PROJECTIONS,
            EntryType.CHAT_APPEND.value,
            interpreter.Projection(frozenset({StoreName.MESSAGES.value}), explode),
        )
        log = StateLog(storage)
        res = asyncio.run(log.append(identity, EntryType.CHAT_APPEND, {"text": "x"}))

        assert not res.ok
        assert res.reason is RejectReason.TX_ABORT
        assert log.length() == 0
        assert log.head() == GENESIS
        assert storage.get_all(StoreName.SYNC_LOG) == []

    def test_overflowing_ack_does_not_raise(self, identity, storage):
        log = StateLog(storage)
        res = asyncio.run(
            log.append(identity, EntryType.MSG_ACK, {"channelId": "CH-x", "upToSeq": float("inf")})
        )
        assert res.ok
        assert storage.get(StoreName.CHANNELS, "CH-x")["lastAckedSeq"] == 0
        assert log.verify().ok

    def test_unserializable_payload_rejected(self, identity, storage):
        log = StateLog(storage)
        res = asyncio.run(log.append(identity, "note", {"when": object()}))
        assert not res.ok
        assert res.reason is RejectReason.TX_ERROR
        assert log.length() == 0


# ===========================================================================
# 4. Validate-then-append
# ===========================================================================


def _signed_entry(identity, *, seq, prev_hash, payload=None, nonce="ext-1"):
    entry = ChainEntry(
        seq=seq,
        hik=identity.hik,
        timestamp=1234,
        nonce=nonce,
        type=EntryType.CHAT_APPEND.value,
        payload=payload or {"text": "external"},
        prev_hash=prev_hash,
        author=Author(hik=identity.hik, pub_key=identity.pub_key),
    )
    entry.signature = identity.sign(entry.body_hash())
    return entry


class TestAppendEntry:
    def test_valid_entry_admitted(self, identity, storage):
        log = StateLog(storage)
        res = asyncio.run(log.append_entry(_signed_entry(identity, seq=1, prev_hash=GENESIS)))
        assert res.ok
        assert log.length() == 1
        assert log.verify().ok

    def test_tampered_payload_rejected(self, identity, storage):
        log = StateLog(storage)
        entry = _signed_entry(identity, seq=1, prev_hash=GENESIS)
        entry.payload = {"text": "changed"}
        res = asyncio.run(log.append_entry(entry))
        assert res.reason is RejectReason.BAD_SIGNATURE
        assert log.length() == 0

    def test_foreign_signature_rejected(self, identity, other_identity, storage):
        log = StateLog(storage)
        entry = _signed_entry(identity, seq=1, prev_hash=GENESIS)
        entry.signature = other_identity.sign(entry.body_hash())
        assert asyncio.run(log.append_entry(entry)).reason is RejectReason.BAD_SIGNATURE

    def test_stale_prev_hash_rejected(self, identity, storage):
        log = StateLog(storage)
        asyncio.run(log.append(identity, EntryType.CHAT_APPEND, {"text": "local"}))
        stale = _signed_entry(identity, seq=2, prev_hash=GENESIS)
        res = asyncio.run(log.append_entry(stale))
        assert res.reason is RejectReason.BAD_PREV_HASH
        assert log.length() == 1

    def test_wrong_seq_rejected(self, identity, storage):
        log = StateLog(storage)
        res = asyncio.run(log.append_entry(_signed_entry(identity, seq=5, prev_hash=GENESIS)))
        assert res.reason is RejectReason.BAD_SEQ

    def test_replayed_external_nonce(self, identity, storage):
        log = StateLog(storage, nonce_factory=lambda: "ext-1")
        first = asyncio.run(log.append(identity, EntryType.CHAT_APPEND, {"text": "a"}))
        replay = _signed_entry(identity, seq=2, prev_hash=first.head, nonce="ext-1")
        assert asyncio.run(log.append_entry(replay)).reason is RejectReason.REPLAY


# ===========================================================================
# 5. Verification
# ===========================================================================


class TestVerify:
    def _log_with(self, identity, storage, n=3):
        log = StateLog(storage)

        async def run():
            for i in range(n):
                await log.append(identity, EntryType.CHAT_APPEND, {"text": f"m{i}"})

        asyncio.run(run())
        return log

    def test_empty_chain_verifies(self, storage):
        report = StateLog(storage).verify()
        assert report.ok
        assert report.length == 0
        assert report.head == GENESIS

    def test_intact_chain(self, identity, storage):
        log = self._log_with(identity, storage)
        report = log.verify()
        assert report.ok
        assert report.length == 3
        assert report.head == log.head()

    def test_tampered_payload_detected(self, identity, storage):
        log = self._log_with(identity, storage)
        row = storage.get(StoreName.STATE_CHAIN, 2)
        row["entry"]["payload"]["text"] = "forged"
        storage.put(StoreName.STATE_CHAIN, 2, row)

        report = log.verify()
        assert not report.ok
        assert report.bad_seq == 2

    def test_tampered_signature_detected(self, identity, other_identity, storage):
        log = self._log_with(identity, storage)
        row = storage.get(StoreName.STATE_CHAIN, 3)
        row["entry"]["signature"] = other_identity.sign(row["body_hash"])
        storage.put(StoreName.STATE_CHAIN, 3, row)

        report = log.verify()
        assert not report.ok
        assert report.bad_seq == 3
        assert report.reason == "bad signature"

    def test_removed_entry_detected(self, identity, storage):
        log = self._log_with(identity, storage)
        storage.delete(StoreName.STATE_CHAIN, 2)
        report = log.verify()
        assert not report.ok
        assert report.bad_seq == 3

    def test_payload_change_moves_every_later_head(self, identity, storage):
        log = StateLog(storage, clock=lambda: 1000, nonce_factory=_counter_nonces())

        async def run():
            for i in range(5):
                await log.append(identity, EntryType.CHAT_APPEND, {"text": f"m{i}"})

        asyncio.run(run())
        records = log.records()
        original = [r.head for r in records]

        k = 3
        prev, heads = GENESIS, []
        for r in records:
            entry = ChainEntry.from_dict(r.entry.to_dict())
            entry.prev_hash = prev
            if entry.seq == k:
                entry.payload = {"text": "forged"}
            prev = next_head(prev, entry.body_hash(), entry.signature, entry.nonce, entry.seq)
            heads.append(prev)

        assert heads[: k - 1] == original[: k - 1]
        for seq in range(k, len(records) + 1):
            assert heads[seq - 1] != original[seq - 1]


# ===========================================================================
# 6. Concurrency
# ===========================================================================


class TestConcurrency:
    def test_interleaved_appends_form_one_chain(self, identity, storage):
        log = StateLog(storage)

        async def run():
            return await asyncio.gather(
                *(log.append(identity, EntryType.CHAT_APPEND, {"text": str(i)}) for i in range(20))
            )

        results = asyncio.run(run())
        assert all(r.ok for r in results)
        assert sorted(r.length for r in results) == list(range(1, 21))
        assert log.verify().ok


# ===========================================================================
# 7. Export
# ===========================================================================


class TestExport:
    def test_keys_excluded_by_default(self, identity, storage):
        storage.put(StoreName.KEYS, "identity", identity.to_record())
        log = StateLog(storage)
        asyncio.run(log.append(identity, EntryType.CHAT_APPEND, {"text": "x"}))

        data = log.export()
        assert "keys" not in data
        assert len(data["state_chain"]) == 1
        assert "keys" in log.export(include_keys=True)
