from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, List, Optional, Union

from balancechain.errors import StorageError
from balancechain.utils.json import json_dumps, json_loads

from .base import ALL_STORES, Key, ScopedTransactionMixin, StoreName, store_name


class SQLiteTransaction(ScopedTransactionMixin):
    def __init__(self, conn: sqlite3.Connection, scope: frozenset) -> None:
        self._conn = conn
        self._scope = scope

    def get(self, store: Union[str, StoreName], key: Key) -> Optional[Any]:
        name = self._check(store)
        return _select_one(self._conn, name, key)

    def get_all(self, store: Union[str, StoreName]) -> List[Any]:
        name = self._check(store)
        return _select_all(self._conn, name)

    def put(self, store: Union[str, StoreName], key: Key, value: Any) -> None:
        name = self._check(store)
        try:
            self._conn.execute(
                """
                INSERT INTO kv (store, key, value) VALUES (?, ?, ?)
                ON CONFLICT(store, key) DO UPDATE SET value = excluded.value
                """,
                (name, json_dumps(key), json_dumps(value)),
            )
        except (sqlite3.Error, UnicodeEncodeError) as e:
            raise StorageError(f"put {name}/{key} failed: {e}")

    def delete(self, store: Union[str, StoreName], key: Key) -> None:
        name = self._check(store)
        try:
            self._conn.execute(
                "DELETE FROM kv WHERE store = ? AND key = ?", (name, json_dumps(key))
            )
        except sqlite3.Error as e:
            raise StorageError(f"delete {name}/{key} failed: {e}")


def _select_one(conn: sqlite3.Connection, name: str, key: Key) -> Optional[Any]:
    try:
        row = conn.execute(
            "SELECT value FROM kv WHERE store = ? AND key = ?", (name, json_dumps(key))
        ).fetchone()
    except sqlite3.Error as e:
        raise StorageError(f"get {name}/{key} failed: {e}")
    return json_loads(row[0]) if row else None


def _select_all(conn: sqlite3.Connection, name: str) -> List[Any]:
    try:
        rows = conn.execute(
            "SELECT value FROM kv WHERE store = ? ORDER BY rowid", (name,)
        ).fetchall()
    except sqlite3.Error as e:
        raise StorageError(f"get_all {name} failed: {e}")
    return [json_loads(r[0]) for r in rows]


class SQLiteStorage:
    """
    SQLite-backed storage.

    Schema:
        kv(
            store TEXT,
            key   TEXT,   -- JSON-encoded key (keeps int/str distinct)
            value TEXT,   -- JSON-encoded row
            PRIMARY KEY (store, key)
        )
    """

    def __init__(self, db_path: str = "balancechain.db") -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        # autocommit mode; transactions are opened explicitly
        self._conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
                store TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (store, key)
            );
            """
        )

    def get(self, store: Union[str, StoreName], key: Key) -> Optional[Any]:
        with self._lock:
            return _select_one(self._conn, store_name(store), key)

    def get_all(self, store: Union[str, StoreName]) -> List[Any]:
        with self._lock:
            return _select_all(self._conn, store_name(store))

    def put(self, store: Union[str, StoreName], key: Key, value: Any) -> None:
        with self.transaction([store]) as tx:
            tx.put(store, key, value)

    def delete(self, store: Union[str, StoreName], key: Key) -> None:
        with self.transaction([store]) as tx:
            tx.delete(store, key)

    @contextmanager
    def transaction(self, stores: Iterable[Union[str, StoreName]]) -> Iterator[SQLiteTransaction]:
        scope = frozenset(store_name(s) for s in stores)
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(f"Could not open transaction: {e}")
            tx = SQLiteTransaction(self._conn, scope)
            try:
                yield tx
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            if tx.aborted:
                self._conn.execute("ROLLBACK")
                return
            try:
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._conn.execute("ROLLBACK")
                raise StorageError(f"Commit failed: {e}")

    def clear(self) -> None:
        with self.transaction(ALL_STORES):
            self._conn.execute("DELETE FROM kv")

    def close(self) -> None:
        with self._lock:
            self._conn.close()
