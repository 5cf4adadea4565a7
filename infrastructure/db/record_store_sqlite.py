from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, Optional

from domain.errors import StoreError
from domain.repositories import RecordStore, Row

from .schema import build_delete, build_insert, build_select, build_update

logger = logging.getLogger(__name__)

PLACEHOLDER = "?"

MEMORY_DB = ":memory:"


class SqliteRecordStore(RecordStore):
    """
    SQLite-backed implementation of `RecordStore`.

    Owns the `users` and `tokens` tables and is self-initialising. Calls are
    serialised through a re-entrant lock; `transaction()` additionally takes
    the database write lock (`BEGIN IMMEDIATE`) so other processes sharing
    the file cannot interleave.

    `":memory:"` keeps one shared connection for the lifetime of the store,
    since every new connection would otherwise see an empty database.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._lock = threading.RLock()
        self._local = threading.local()
        self._shared: Optional[sqlite3.Connection] = None
        if db_path == MEMORY_DB:
            self._shared = self._get_connection()
        self._ensure_tables()

    def _get_connection(self) -> sqlite3.Connection:
        try:
            # Autocommit mode; transactions are issued explicitly.
            conn = sqlite3.connect(
                self._db_path,
                timeout=30,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open database {self._db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            active = getattr(self._local, "conn", None)
            if active is not None:
                conn = active
            elif self._shared is not None:
                conn = self._shared
            else:
                conn = self._get_connection()
            try:
                yield conn
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc
            finally:
                if conn is not active and conn is not self._shared:
                    conn.close()

    def _ensure_tables(self) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    username TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL UNIQUE,
                    ip_address TEXT NOT NULL DEFAULT '',
                    password_record TEXT NOT NULL,
                    balance INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tokens (
                    id TEXT PRIMARY KEY,
                    worth INTEGER NOT NULL,
                    revert_tag TEXT NOT NULL DEFAULT '',
                    creator_username TEXT NOT NULL DEFAULT ''
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS tokens_revert_tag ON tokens (revert_tag)")

    def close(self) -> None:
        with self._lock:
            if self._shared is not None:
                self._shared.close()
                self._shared = None

    def insert(self, table: str, values: Mapping[str, Any]) -> None:
        sql, params = build_insert(table, values, PLACEHOLDER)
        with self._connection() as conn:
            conn.execute(sql, params)

    def select_one(self, table: str, filters: Mapping[str, Any]) -> Optional[Row]:
        sql, params = build_select(table, filters, PLACEHOLDER, limit=1)
        with self._connection() as conn:
            row = conn.execute(sql, params).fetchone()
            if not row:
                return None
            return dict(row)

    def select_many(self, table: str, filters: Mapping[str, Any]) -> Iterator[Row]:
        sql, params = build_select(table, filters, PLACEHOLDER)
        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return (dict(row) for row in rows)

    def update(
        self,
        table: str,
        filters: Mapping[str, Any],
        values: Mapping[str, Any],
    ) -> int:
        sql, params = build_update(table, filters, values, PLACEHOLDER)
        with self._connection() as conn:
            return conn.execute(sql, params).rowcount

    def delete(self, table: str, filters: Mapping[str, Any]) -> int:
        sql, params = build_delete(table, filters, PLACEHOLDER)
        with self._connection() as conn:
            return conn.execute(sql, params).rowcount

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if getattr(self._local, "conn", None) is not None:
                # Joined the enclosing transaction.
                yield
                return

            conn = self._shared if self._shared is not None else self._get_connection()
            self._local.conn = conn
            try:
                self._execute_control(conn, "BEGIN IMMEDIATE")
                try:
                    yield
                except BaseException:
                    self._execute_control(conn, "ROLLBACK")
                    raise
                try:
                    self._execute_control(conn, "COMMIT")
                except StoreError:
                    if conn.in_transaction:
                        self._execute_control(conn, "ROLLBACK")
                    raise
            finally:
                self._local.conn = None
                if conn is not self._shared:
                    conn.close()

    @staticmethod
    def _execute_control(conn: sqlite3.Connection, statement: str) -> None:
        try:
            conn.execute(statement)
        except sqlite3.Error as exc:
            logger.error("SQLite %s failed: %s", statement, exc)
            raise StoreError(f"{statement} failed: {exc}") from exc
