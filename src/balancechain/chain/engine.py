"""
State Log Engine - signed, hash-chained, append-only local log.

Append pipeline
===============

    1. read head/length
    2. build entry (seq = len + 1, prev_hash = head, fresh nonce)
    3. body_hash = digest(canonical(entry - signature)); sign body_hash
    4. one transaction over state_chain + sync_log + meta + projected stores
    5. inside it: nonce already in sync_log -> abort, "replay"
    6. otherwise write entry, nonce, projections and the new head/length

Any storage failure rolls the whole transaction back ("tx_abort").

Concurrency
===========

Appends are serialized with a per-log asyncio.Lock held across the whole
read-compute-write sequence, so two interleaved appends can never both
build on the same head. The transaction additionally re-reads the stored
head and refuses to commit when it moved ("bad_prev_hash"); that check is
what rejects stale externally produced entries.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Callable, Dict, List, Optional

from balancechain.codec import random_id
from balancechain.errors import RejectReason, StorageError
from balancechain.identity import Identity
from balancechain.storage import Storage, StoreName
from balancechain.utils.timestamps import now_ms

from .interpreter import projection_for
from .models import (
    GENESIS,
    AppendResult,
    Author,
    ChainEntry,
    ChainRecord,
    EntryType,
    VerifyReport,
    next_head,
    type_name,
)

logger = logging.getLogger(__name__)

META_HEAD = "chain_head"
META_LEN = "chain_len"

_CORE_STORES = frozenset(
    {StoreName.STATE_CHAIN.value, StoreName.SYNC_LOG.value, StoreName.META.value}
)


class StateLog:
    """
    The local chain plus its derived views.

    Usage:
        log = StateLog(MemoryStorage())
        res = await log.append(identity, EntryType.CHAT_APPEND, {"text": "hi"})
        if not res.ok:
            print(res.reason)

    `clock` and `nonce_factory` exist so tests can pin timestamps and nonces.
    """

    def __init__(
        self,
        storage: Storage,
        *,
        nonce_bytes: int = 16,
        clock: Optional[Callable[[], int]] = None,
        nonce_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self._storage = storage
        self._clock = clock or now_ms
        self._nonce_factory = nonce_factory or (lambda: random_id(nonce_bytes))
        self._lock = asyncio.Lock()

    @property
    def storage(self) -> Storage:
        return self._storage

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def head(self) -> str:
        return self._storage.get(StoreName.META, META_HEAD) or GENESIS

    def length(self) -> int:
        return int(self._storage.get(StoreName.META, META_LEN) or 0)

    def record(self, seq: int) -> Optional[ChainRecord]:
        row = self._storage.get(StoreName.STATE_CHAIN, seq)
        return ChainRecord.from_dict(row) if row else None

    def records(self) -> List[ChainRecord]:
        rows = self._storage.get_all(StoreName.STATE_CHAIN)
        records = [ChainRecord.from_dict(r) for r in rows]
        records.sort(key=lambda r: r.entry.seq)
        return records

    def entries(self) -> List[ChainEntry]:
        return [r.entry for r in self.records()]

    # ------------------------------------------------------------------
    # Append (locally authored)
    # ------------------------------------------------------------------

    async def append(
        self,
        identity: Identity,
        entry_type: EntryType | str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> AppendResult:
        async with self._lock:
            try:
                prev_head = self.head()
                prev_len = self.length()
            except StorageError as e:
                logger.error("Could not read chain head: %s", e)
                return AppendResult.rejected(RejectReason.TX_ERROR, str(e))

            entry = ChainEntry(
                seq=prev_len + 1,
                hik=identity.hik,
                timestamp=self._clock(),
                nonce=self._nonce_factory(),
                type=type_name(entry_type),
                payload=copy.deepcopy(payload) if payload is not None else {},
                prev_hash=prev_head,
                author=Author(hik=identity.hik, pub_key=identity.pub_key),
            )
            try:
                body_hash = entry.body_hash()
            except TypeError as e:
                logger.warning("Payload for %s is not serializable: %s", entry.type, e)
                return AppendResult.rejected(RejectReason.TX_ERROR, str(e))
            entry.signature = identity.sign(body_hash)
            return self._commit(entry, body_hash)

    # ------------------------------------------------------------------
    # Validate-then-append (entries produced elsewhere)
    # ------------------------------------------------------------------

    async def append_entry(self, entry: ChainEntry) -> AppendResult:
        """
        Admit an already signed entry.

        The signature must verify against the entry's own author key and
        prev_hash must equal the current local head.
        """
        async with self._lock:
            if not entry.verify_signature():
                logger.warning("Rejected entry seq=%s: bad signature", entry.seq)
                return AppendResult.rejected(RejectReason.BAD_SIGNATURE)

            try:
                head = self.head()
                length = self.length()
            except StorageError as e:
                return AppendResult.rejected(RejectReason.TX_ERROR, str(e))

            if entry.prev_hash != head:
                logger.warning(
                    "Rejected entry seq=%s: prev_hash %s does not match head %s",
                    entry.seq,
                    entry.prev_hash[:12],
                    head[:12],
                )
                return AppendResult.rejected(RejectReason.BAD_PREV_HASH)
            if entry.seq != length + 1:
                return AppendResult.rejected(
                    RejectReason.BAD_SEQ, f"expected seq {length + 1}, got {entry.seq}"
                )

            return self._commit(entry, entry.body_hash())

    # ------------------------------------------------------------------
    # Shared atomic write
    # ------------------------------------------------------------------

    def _commit(self, entry: ChainEntry, body_hash: str) -> AppendResult:
        projection = projection_for(entry.type)
        new_head = next_head(entry.prev_hash, body_hash, entry.signature or "", entry.nonce, entry.seq)
        record = ChainRecord(entry=entry, body_hash=body_hash, head=new_head)

        try:
            with self._storage.transaction(_CORE_STORES | projection.stores) as tx:
                # Replay protection: nonce must be unique
                if tx.get(StoreName.SYNC_LOG, entry.nonce) is not None:
                    tx.abort()
                    logger.warning("Rejected entry seq=%s: nonce replay", entry.seq)
                    return AppendResult.rejected(RejectReason.REPLAY)

                stored_head = tx.get(StoreName.META, META_HEAD) or GENESIS
                if stored_head != entry.prev_hash:
                    tx.abort()
                    return AppendResult.rejected(RejectReason.BAD_PREV_HASH)

                tx.put(StoreName.STATE_CHAIN, entry.seq, record.to_dict())
                tx.put(StoreName.SYNC_LOG, entry.nonce, {"nonce": entry.nonce, "ts": entry.timestamp})
                projection.apply(tx, entry)
                tx.put(StoreName.META, META_HEAD, new_head)
                tx.put(StoreName.META, META_LEN, entry.seq)
        except StorageError as e:
            logger.error("Append of seq=%s aborted: %s", entry.seq, e)
            return AppendResult.rejected(RejectReason.TX_ABORT, str(e))
        except (TypeError, ValueError, OverflowError) as e:
            # raised out of a projection; the transaction has already rolled back
            logger.error("Projection of seq=%s type=%s failed: %s", entry.seq, entry.type, e)
            return AppendResult.rejected(RejectReason.TX_ABORT, str(e))

        logger.debug("Appended seq=%s type=%s head=%s", entry.seq, entry.type, new_head[:12])
        return AppendResult.accepted(entry, new_head)

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def verify(self) -> VerifyReport:
        """
        Re-verify the whole chain from GENESIS.

        Checks, per entry: contiguous seq, prev_hash link, body hash,
        author signature and the recomputed head.
        """
        prev = GENESIS
        expected_seq = 1
        records = self.records()

        for record in records:
            entry = record.entry
            if entry.seq != expected_seq:
                return self._broken(len(records), entry.seq, f"expected seq {expected_seq}")
            if entry.prev_hash != prev:
                return self._broken(len(records), entry.seq, "prev_hash does not link")
            body_hash = entry.body_hash()
            if body_hash != record.body_hash:
                return self._broken(len(records), entry.seq, "body hash mismatch")
            if not entry.verify_signature():
                return self._broken(len(records), entry.seq, "bad signature")
            head = next_head(prev, body_hash, entry.signature or "", entry.nonce, entry.seq)
            if head != record.head:
                return self._broken(len(records), entry.seq, "head mismatch")
            prev = head
            expected_seq += 1

        if prev != self.head() or len(records) != self.length():
            return VerifyReport(
                ok=False,
                length=len(records),
                head=prev,
                reason="metadata does not match chain",
            )
        return VerifyReport(ok=True, length=len(records), head=prev)

    def _broken(self, length: int, seq: int, reason: str) -> VerifyReport:
        logger.warning("Chain verification failed at seq=%s: %s", seq, reason)
        return VerifyReport(ok=False, length=length, head=self.head(), bad_seq=seq, reason=reason)

    def export(self, *, include_keys: bool = False) -> Dict[str, List[Any]]:
        """Every store's rows, for backup. Private keys only on request."""
        out: Dict[str, List[Any]] = {}
        for store in StoreName:
            if store is StoreName.KEYS and not include_keys:
                continue
            out[store.value] = self._storage.get_all(store)
        return out
