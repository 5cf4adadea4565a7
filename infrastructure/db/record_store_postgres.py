from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, Optional

import psycopg2
import psycopg2.extensions
import psycopg2.extras

from domain.errors import StoreError
from domain.repositories import RecordStore, Row

from .schema import build_delete, build_insert, build_select, build_update

logger = logging.getLogger(__name__)

PLACEHOLDER = "%s"


class PostgresRecordStore(RecordStore):
    """
    Postgres-backed implementation of `RecordStore`.

    Outside a transaction every call runs on its own short-lived connection
    and commits immediately. `transaction()` pins one connection to the
    calling thread at SERIALIZABLE isolation; a serialization conflict
    surfaces as `StoreError` and the whole unit is rolled back.
    """

    def __init__(self, db_params: dict) -> None:
        self._db_params = db_params
        self._local = threading.local()
        self._ensure_tables()

    def _get_connection(self):
        try:
            return psycopg2.connect(**self._db_params)
        except psycopg2.Error as exc:
            raise StoreError(f"Cannot connect to Postgres: {exc}") from exc

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        active = getattr(self._local, "conn", None)
        conn = active if active is not None else self._get_connection()
        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                yield cur
            if active is None:
                conn.commit()
        except psycopg2.Error as exc:
            if active is None:
                conn.rollback()
            raise StoreError(str(exc)) from exc
        finally:
            if active is None:
                conn.close()

    def _ensure_tables(self) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    username TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL UNIQUE,
                    ip_address TEXT NOT NULL DEFAULT '',
                    password_record TEXT NOT NULL,
                    balance BIGINT NOT NULL DEFAULT 0
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tokens (
                    id TEXT PRIMARY KEY,
                    worth BIGINT NOT NULL,
                    revert_tag TEXT NOT NULL DEFAULT '',
                    creator_username TEXT NOT NULL DEFAULT ''
                )
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS tokens_revert_tag ON tokens (revert_tag)")

    def insert(self, table: str, values: Mapping[str, Any]) -> None:
        sql, params = build_insert(table, values, PLACEHOLDER)
        with self._cursor() as cur:
            cur.execute(sql, params)

    def select_one(self, table: str, filters: Mapping[str, Any]) -> Optional[Row]:
        sql, params = build_select(table, filters, PLACEHOLDER, limit=1)
        with self._cursor() as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
            if not row:
                return None
            return dict(row)

    def select_many(self, table: str, filters: Mapping[str, Any]) -> Iterator[Row]:
        sql, params = build_select(table, filters, PLACEHOLDER)
        with self._cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return (dict(row) for row in rows)

    def update(
        self,
        table: str,
        filters: Mapping[str, Any],
        values: Mapping[str, Any],
    ) -> int:
        sql, params = build_update(table, filters, values, PLACEHOLDER)
        with self._cursor() as cur:
            cur.execute(sql, params)
            return cur.rowcount

    def delete(self, table: str, filters: Mapping[str, Any]) -> int:
        sql, params = build_delete(table, filters, PLACEHOLDER)
        with self._cursor() as cur:
            cur.execute(sql, params)
            return cur.rowcount

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if getattr(self._local, "conn", None) is not None:
            yield
            return

        conn = self._get_connection()
        try:
            conn.set_session(isolation_level=psycopg2.extensions.ISOLATION_LEVEL_SERIALIZABLE)
            self._local.conn = conn
            try:
                yield
            except BaseException:
                conn.rollback()
                raise
            try:
                conn.commit()
            except psycopg2.Error as exc:
                logger.warning("Postgres commit failed: %s", exc)
                conn.rollback()
                raise StoreError(str(exc)) from exc
        finally:
            self._local.conn = None
            conn.close()
