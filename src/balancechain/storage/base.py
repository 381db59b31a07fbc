"""
Storage collaborator interface.

The log engine only needs a transactional key-space:

    storage.get(store, key)            point read
    storage.get_all(store)             every value in a store
    storage.put / storage.delete       single-key autocommit writes
    storage.transaction(stores)        all-or-nothing multi-store write
    storage.clear()                    full local wipe

A transaction is scoped to the stores named when it is opened; touching any
other store raises StorageError. It commits when the `with` block exits
cleanly and rolls back when the block raises or calls `tx.abort()`.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, ContextManager, Iterable, List, Optional, Protocol, Union

from balancechain.errors import StorageError

Key = Union[str, int]


class StoreName(str, Enum):
    STATE_CHAIN = "state_chain"  # seq -> chain record
    SYNC_LOG = "sync_log"  # nonce -> {nonce, ts}
    MESSAGES = "messages"
    META = "meta"  # chain_head, chain_len
    CONTACTS = "contacts"
    CHANNELS = "channels"
    OUTBOX = "outbox"
    PRESENCE = "presence"
    KEYS = "keys"


ALL_STORES = tuple(s.value for s in StoreName)


def store_name(store: Union[str, StoreName]) -> str:
    name = store.value if isinstance(store, StoreName) else str(store)
    if name not in ALL_STORES:
        raise StorageError(f"Unknown store '{name}'")
    return name


class Transaction(Protocol):
    def get(self, store: Union[str, StoreName], key: Key) -> Optional[Any]:  # pragma: no cover - interface
        ...

    def get_all(self, store: Union[str, StoreName]) -> List[Any]:  # pragma: no cover - interface
        ...

    def put(self, store: Union[str, StoreName], key: Key, value: Any) -> None:  # pragma: no cover - interface
        ...

    def delete(self, store: Union[str, StoreName], key: Key) -> None:  # pragma: no cover - interface
        ...

    def abort(self) -> None:  # pragma: no cover - interface
        ...

    @property
    def aborted(self) -> bool:  # pragma: no cover - interface
        ...


class Storage(Protocol):
    def get(self, store: Union[str, StoreName], key: Key) -> Optional[Any]:  # pragma: no cover - interface
        ...

    def get_all(self, store: Union[str, StoreName]) -> List[Any]:  # pragma: no cover - interface
        ...

    def put(self, store: Union[str, StoreName], key: Key, value: Any) -> None:  # pragma: no cover - interface
        ...

    def delete(self, store: Union[str, StoreName], key: Key) -> None:  # pragma: no cover - interface
        ...

    def transaction(
        self, stores: Iterable[Union[str, StoreName]]
    ) -> ContextManager[Transaction]:  # pragma: no cover - interface
        ...

    def clear(self) -> None:  # pragma: no cover - interface
        ...


class ScopedTransactionMixin:
    """Scope bookkeeping shared by the concrete transactions."""

    _scope: frozenset
    _aborted: bool = False

    def _check(self, store: Union[str, StoreName]) -> str:
        name = store_name(store)
        if name not in self._scope:
            raise StorageError(
                f"Store '{name}' is outside this transaction (scope: {sorted(self._scope)})"
            )
        if self._aborted:
            raise StorageError("Transaction already aborted")
        return name

    def abort(self) -> None:
        self._aborted = True

    @property
    def aborted(self) -> bool:
        return self._aborted
