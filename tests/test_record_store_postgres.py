import unittest
from unittest import mock

import psycopg2
import psycopg2.extensions

from domain.errors import StoreError
from infrastructure.db import record_store_postgres
from infrastructure.db.record_store_postgres import PostgresRecordStore

DB_PARAMS = {"dbname": "opencoins", "user": "ledger"}


class PostgresRecordStoreTests(unittest.TestCase):
    """Exercises the adapter against a mocked psycopg2 connection."""

    def setUp(self) -> None:
        self.conn = mock.MagicMock(name="connection")
        self.cursor = self.conn.cursor.return_value.__enter__.return_value
        patcher = mock.patch.object(
            record_store_postgres.psycopg2, "connect", return_value=self.conn
        )
        self.connect = patcher.start()
        self.addCleanup(patcher.stop)
        self.store = PostgresRecordStore(DB_PARAMS)
        self.conn.reset_mock()
        self.connect.reset_mock()
        self.cursor = self.conn.cursor.return_value.__enter__.return_value

    def test_creates_tables_on_start(self):
        store_conn = mock.MagicMock()
        self.connect.return_value = store_conn
        PostgresRecordStore(DB_PARAMS)
        cursor = store_conn.cursor.return_value.__enter__.return_value
        statements = " ".join(call.args[0] for call in cursor.execute.call_args_list)
        self.assertIn("CREATE TABLE IF NOT EXISTS users", statements)
        self.assertIn("CREATE TABLE IF NOT EXISTS tokens", statements)
        self.connect.assert_called_with(**DB_PARAMS)
        store_conn.commit.assert_called_once()

    def test_select_one_uses_bound_parameters(self):
        self.cursor.fetchone.return_value = {"username": "alice", "balance": 5}
        row = self.store.select_one("users", {"username": "alice"})

        self.assertEqual(row, {"username": "alice", "balance": 5})
        sql, params = self.cursor.execute.call_args.args
        self.assertIn("FROM users WHERE username = %s LIMIT 1", sql)
        self.assertEqual(params, ["alice"])
        self.conn.close.assert_called_once()

    def test_select_one_without_match(self):
        self.cursor.fetchone.return_value = None
        self.assertIsNone(self.store.select_one("tokens", {"id": "x:1"}))

    def test_update_returns_rowcount_and_commits(self):
        self.cursor.rowcount = 1
        count = self.store.update("users", {"username": "alice"}, {"balance": 7})

        self.assertEqual(count, 1)
        sql, params = self.cursor.execute.call_args.args
        self.assertEqual(sql, "UPDATE users SET balance = %s WHERE username = %s")
        self.assertEqual(params, [7, "alice"])
        self.conn.commit.assert_called_once()

    def test_driver_errors_become_store_errors(self):
        self.cursor.execute.side_effect = psycopg2.IntegrityError("duplicate key")
        with self.assertRaises(StoreError):
            self.store.insert("users", {"username": "alice"})
        self.conn.rollback.assert_called_once()
        self.conn.close.assert_called_once()

    def test_transaction_shares_one_serializable_connection(self):
        self.cursor.rowcount = 1
        with self.store.transaction():
            self.store.insert("tokens", {"id": "t:1", "worth": 1})
            self.store.delete("tokens", {"id": "t:1"})

        self.assertEqual(self.connect.call_count, 1)
        self.conn.set_session.assert_called_once_with(
            isolation_level=psycopg2.extensions.ISOLATION_LEVEL_SERIALIZABLE
        )
        self.conn.commit.assert_called_once()
        self.conn.close.assert_called_once()

    def test_transaction_rolls_back_on_error(self):
        with self.assertRaises(RuntimeError):
            with self.store.transaction():
                self.store.insert("tokens", {"id": "t:1", "worth": 1})
                raise RuntimeError("boom")
        self.conn.rollback.assert_called_once()
        self.conn.commit.assert_not_called()
        self.conn.close.assert_called_once()

    def test_failed_commit_is_a_store_error(self):
        self.conn.commit.side_effect = psycopg2.OperationalError("could not serialize access")
        with self.assertRaises(StoreError):
            with self.store.transaction():
                self.store.insert("tokens", {"id": "t:1", "worth": 1})
        self.conn.rollback.assert_called_once()

    def test_connection_failure_is_a_store_error(self):
        self.connect.side_effect = psycopg2.OperationalError("no route to host")
        with self.assertRaises(StoreError):
            self.store.select_one("users", {"username": "alice"})


if __name__ == "__main__":
    unittest.main()
