import base64
import unittest

from domain.accounts import AccountDirectory
from domain.errors import (
    BlankRevertTag,
    InsufficientFunds,
    InvalidToken,
    InvalidWorth,
    StoreError,
    UnknownAccount,
)
from domain.tokens import TokenLedger, coerce_worth
from infrastructure.crypto import SystemCryptoProvider
from in_memory_store import FixedCrypto, InMemoryRecordStore


class CoerceWorthTests(unittest.TestCase):
    def test_coercion(self):
        self.assertEqual(coerce_worth(5), 5)
        self.assertEqual(coerce_worth("12"), 12.0)
        self.assertEqual(coerce_worth("2.5"), 2.5)
        self.assertEqual(coerce_worth("lots"), 0)
        self.assertEqual(coerce_worth(None), 0)
        self.assertEqual(coerce_worth(True), 0)


class TokenLedgerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryRecordStore()
        crypto = SystemCryptoProvider()
        self.directory = AccountDirectory(self.store, crypto)
        self.ledger = TokenLedger(self.store, self.directory, crypto)
        self.alice = self.directory.register("alice", "Alice", "123456")
        self.bob = self.directory.register("bob", "Bob", "123456")

    def _fund(self, account, amount):
        self.directory.add_coins(account, amount)

    def _stored_balance(self, username):
        return self.store.select_one("users", {"username": username})["balance"]

    def test_mint_with_insufficient_funds_changes_nothing(self):
        self._fund(self.alice, 50)
        with self.assertRaises(InsufficientFunds):
            self.ledger.mint(100, account=self.alice)
        self.assertEqual(self.alice.balance, 50)
        self.assertEqual(self._stored_balance("alice"), 50)
        self.assertEqual(self.store.tables["tokens"], [])

    def test_mint_debits_creator(self):
        self._fund(self.alice, 150)
        token_id = self.ledger.mint(100, account=self.alice)
        self.assertEqual(self.alice.balance, 50)
        self.assertEqual(self._stored_balance("alice"), 50)

        token = self.ledger.get(token_id)
        self.assertEqual(token.worth, 100)
        self.assertEqual(token.creator_username, "alice")
        self.assertEqual(token.revert_tag, "")

    def test_mint_accepts_numeric_strings(self):
        self._fund(self.alice, 10)
        token_id = self.ledger.mint("10", account=self.alice)
        self.assertTrue(token_id.endswith(":10"))
        self.assertEqual(self.alice.balance, 0)

    def test_mint_rejects_bad_worth(self):
        self._fund(self.alice, 100)
        for worth in (0, -5, 1.5, "abc", "2.5", None, float("inf"), float("nan")):
            with self.assertRaises(InvalidWorth, msg=repr(worth)):
                self.ledger.mint(worth, account=self.alice)
        self.assertEqual(self.alice.balance, 100)
        self.assertEqual(self.store.tables["tokens"], [])

    def test_force_mint_bypasses_balance_and_positivity(self):
        token_id = self.ledger.mint(30, account=self.alice, force=True)
        self.assertEqual(self.alice.balance, -30)
        self.assertIsNotNone(self.ledger.get(token_id))
        self.ledger.mint(0, force=True)

    def test_force_mint_still_needs_whole_numbers(self):
        with self.assertRaises(InvalidWorth):
            self.ledger.mint(1.5, force=True)

    def test_administrative_mint_has_no_creator(self):
        token_id = self.ledger.mint(25)
        self.assertEqual(self.ledger.get(token_id).creator_username, "")

    def test_mint_for_deleted_account_fails(self):
        self._fund(self.alice, 10)
        self.store.delete("users", {"username": "alice"})
        with self.assertRaises(UnknownAccount):
            self.ledger.mint(5, account=self.alice)
        self.assertEqual(self.store.tables["tokens"], [])

    def test_token_id_format(self):
        directory = AccountDirectory(self.store, FixedCrypto(SystemCryptoProvider()))
        ledger = TokenLedger(self.store, directory, FixedCrypto(SystemCryptoProvider()))
        token_id = ledger.mint(1337)
        expected = base64.b64encode(bytes([1]) * 32).decode("ascii").replace("=", "")
        self.assertEqual(token_id, expected + ":1337")
        self.assertNotIn("=", token_id)

    def test_token_ids_are_unique(self):
        ids = {self.ledger.mint(1) for _ in range(50)}
        self.assertEqual(len(ids), 50)

    def test_redeem_credits_once(self):
        self._fund(self.alice, 150)
        token_id = self.ledger.mint(100, account=self.alice)

        self.assertEqual(self.ledger.redeem(token_id, self.bob), 100)
        self.assertEqual(self.bob.balance, 100)
        self.assertEqual(self._stored_balance("bob"), 100)
        self.assertIsNone(self.ledger.get(token_id))

        with self.assertRaises(InvalidToken):
            self.ledger.redeem(token_id, self.bob)
        self.assertEqual(self.bob.balance, 100)

    def test_redeem_uses_stored_worth(self):
        token_id = self.ledger.mint(5)
        self.store.update("tokens", {"id": token_id}, {"worth": 7})
        self.assertEqual(self.ledger.redeem(token_id, self.bob), 7)

    def test_redeem_unknown_token(self):
        with self.assertRaises(InvalidToken):
            self.ledger.redeem("nope:5", self.bob)

    def test_redeem_rolls_back_when_credit_fails(self):
        token_id = self.ledger.mint(40)
        self.store.fail_on.add(("update", "users"))
        with self.assertRaises(StoreError):
            self.ledger.redeem(token_id, self.bob)
        self.assertEqual(self.bob.balance, 0)
        self.assertIsNotNone(self.ledger.get(token_id))

    def test_redeem_into_deleted_account_keeps_token(self):
        token_id = self.ledger.mint(40)
        self.store.delete("users", {"username": "bob"})
        with self.assertRaises(UnknownAccount):
            self.ledger.redeem(token_id, self.bob)
        self.assertIsNotNone(self.ledger.get(token_id))

    def test_value_is_conserved(self):
        carol = self.directory.register("carol", "Carol", "123456")
        accounts = [self.alice, self.bob, carol]
        self._fund(self.alice, 500)
        self._fund(self.bob, 200)

        def total():
            balances = sum(row["balance"] for row in self.store.tables["users"])
            outstanding = sum(row["worth"] for row in self.store.tables["tokens"])
            return balances + outstanding

        start = total()
        ids = []
        for index, worth in enumerate((10, 99, 250, 1, 40)):
            ids.append(self.ledger.mint(worth, account=accounts[index % 2]))
            self.assertEqual(total(), start)
        for index, token_id in enumerate(ids[:3]):
            self.ledger.redeem(token_id, accounts[(index + 1) % 3])
            self.assertEqual(total(), start)
        with self.assertRaises(InsufficientFunds):
            self.ledger.mint(10**6, account=carol)
        self.assertEqual(total(), start)

    def test_revert_group_returns_value_to_creators(self):
        self._fund(self.alice, 100)
        self._fund(self.bob, 100)
        minted = {
            self.ledger.mint(10, "raffle", self.alice),
            self.ledger.mint(20, "raffle", self.alice),
            self.ledger.mint(30, "raffle", self.bob),
        }
        other = self.ledger.mint(5, "other", self.bob)
        carol = self.directory.register("carol", "Carol", "123456")

        outcome = self.ledger.revert_group("raffle", carol)

        self.assertTrue(outcome.complete)
        self.assertEqual(sorted(outcome.reverted), sorted(minted))
        self.assertEqual(len(outcome.reverted), 3)
        self.assertEqual(self.alice.balance, 100)
        self.assertEqual(self.bob.balance, 95)
        self.assertEqual(carol.balance, 0)
        self.assertIsNotNone(self.ledger.get(other))

    def test_revert_group_falls_back_for_deleted_creator(self):
        self._fund(self.alice, 100)
        token_id = self.ledger.mint(60, "gift", self.alice)
        admin_token = self.ledger.mint(15, "gift")
        self.directory.delete(self.alice)

        outcome = self.ledger.revert_group("gift", self.bob)

        self.assertEqual(sorted(outcome.reverted), sorted([token_id, admin_token]))
        self.assertEqual(self.bob.balance, 75)

    def test_revert_group_with_no_matches(self):
        outcome = self.ledger.revert_group("nothing", self.bob)
        self.assertEqual(outcome.reverted, [])
        self.assertTrue(outcome.complete)

    def test_revert_group_reports_failures_and_continues(self):
        self._fund(self.alice, 100)
        first = self.ledger.mint(10, "batch", self.alice)
        second = self.ledger.mint(20, "batch", self.alice)

        # Simulate a concurrent redemption between listing and processing.
        real_get = self.ledger.get

        def racing_get(token_id):
            if token_id == first:
                return None
            return real_get(token_id)

        self.ledger.get = racing_get
        outcome = self.ledger.revert_group("batch", self.bob)

        self.assertEqual(outcome.reverted, [second])
        self.assertEqual([token_id for token_id, _ in outcome.failed], [first])
        self.assertIsInstance(outcome.failed[0][1], InvalidToken)
        self.assertFalse(outcome.complete)
        self.assertEqual(self.alice.balance, 90)

    def test_revert_group_continues_after_store_failure(self):
        self._fund(self.alice, 100)
        ids = [self.ledger.mint(worth, "batch", self.alice) for worth in (10, 20, 30)]
        self.store.fail_call[("delete", "tokens")] = 2

        outcome = self.ledger.revert_group("batch", self.bob)

        self.assertEqual(outcome.reverted, [ids[0], ids[2]])
        self.assertEqual([token_id for token_id, _ in outcome.failed], [ids[1]])
        self.assertIsInstance(outcome.failed[0][1], StoreError)
        self.assertEqual(self.alice.balance, 80)
        self.assertEqual(self._stored_balance("alice"), 80)
        self.assertEqual(self.ledger.get(ids[1]).worth, 20)

    def test_revert_group_requires_tag(self):
        with self.assertRaises(BlankRevertTag):
            self.ledger.revert_group("", self.bob)


if __name__ == "__main__":
    unittest.main()
