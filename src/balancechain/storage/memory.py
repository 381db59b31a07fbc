from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Iterable, List, Optional, Tuple, Union

from .base import ALL_STORES, Key, ScopedTransactionMixin, StoreName, store_name

_DELETED = object()


class MemoryTransaction(ScopedTransactionMixin):
    """
    Write-buffered transaction over MemoryStorage.

    Reads see the transaction's own pending writes first.
    """

    def __init__(self, storage: "MemoryStorage", scope: frozenset) -> None:
        self._storage = storage
        self._scope = scope
        self._writes: Dict[Tuple[str, Key], Any] = {}

    def get(self, store: Union[str, StoreName], key: Key) -> Optional[Any]:
        name = self._check(store)
        if (name, key) in self._writes:
            value = self._writes[(name, key)]
            return None if value is _DELETED else copy.deepcopy(value)
        return self._storage.get(name, key)

    def get_all(self, store: Union[str, StoreName]) -> List[Any]:
        name = self._check(store)
        merged = dict(self._storage._data[name])
        for (s, key), value in self._writes.items():
            if s != name:
                continue
            if value is _DELETED:
                merged.pop(key, None)
            else:
                merged[key] = value
        return [copy.deepcopy(v) for v in merged.values()]

    def put(self, store: Union[str, StoreName], key: Key, value: Any) -> None:
        name = self._check(store)
        self._writes[(name, key)] = copy.deepcopy(value)

    def delete(self, store: Union[str, StoreName], key: Key) -> None:
        name = self._check(store)
        self._writes[(name, key)] = _DELETED


class MemoryStorage:
    """
    In-process storage. Values are deep-copied on the way in and out so
    callers can never mutate stored rows in place.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._data: Dict[str, Dict[Key, Any]] = {name: {} for name in ALL_STORES}

    def get(self, store: Union[str, StoreName], key: Key) -> Optional[Any]:
        name = store_name(store)
        with self._lock:
            value = self._data[name].get(key)
            return copy.deepcopy(value)

    def get_all(self, store: Union[str, StoreName]) -> List[Any]:
        name = store_name(store)
        with self._lock:
            return [copy.deepcopy(v) for v in self._data[name].values()]

    def put(self, store: Union[str, StoreName], key: Key, value: Any) -> None:
        with self.transaction([store]) as tx:
            tx.put(store, key, value)

    def delete(self, store: Union[str, StoreName], key: Key) -> None:
        with self.transaction([store]) as tx:
            tx.delete(store, key)

    @contextmanager
    def transaction(self, stores: Iterable[Union[str, StoreName]]) -> Iterator[MemoryTransaction]:
        scope = frozenset(store_name(s) for s in stores)
        with self._lock:
            tx = MemoryTransaction(self, scope)
            yield tx
            if not tx.aborted:
                self._apply(tx._writes)

    def _apply(self, writes: Dict[Tuple[str, Key], Any]) -> None:
        # stage touched stores, then swap them in together
        staged = {name: dict(self._data[name]) for name, _ in writes}
        for (name, key), value in writes.items():
            if value is _DELETED:
                staged[name].pop(key, None)
            else:
                staged[name][key] = value
        self._data.update(staged)

    def clear(self) -> None:
        with self._lock:
            for name in ALL_STORES:
                self._data[name].clear()
