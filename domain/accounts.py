from __future__ import annotations

import hmac
import logging
import re
import threading
import weakref
from contextlib import contextmanager
from typing import AbstractSet, Iterator, Optional

from .errors import (
    DisplayNameTaken,
    InvalidDisplayName,
    InvalidUsername,
    PasswordTooShort,
    UnknownAccount,
    UsernameTaken,
)
from .models import Account
from .repositories import CryptoProvider, RecordStore, Row

logger = logging.getLogger(__name__)

USERS_TABLE = "users"

SALT_SIZE = 32
# Hex encoding doubles the salt length.
SALT_HEX_LENGTH = SALT_SIZE * 2
MIN_PASSWORD_LENGTH = 6

USERNAME_PATTERN = re.compile(r"[A-Za-z][A-Za-z0-9_\-~]*")
DISPLAY_NAME_PATTERN = re.compile(r"[A-Za-z][A-Za-z0-9_\-~\s]*")

WRITABLE_FIELDS = frozenset({"display_name", "password_record", "ip_address", "balance"})


def is_valid_username(username: str) -> bool:
    return USERNAME_PATTERN.fullmatch(username) is not None


def is_valid_display_name(display_name: str) -> bool:
    if DISPLAY_NAME_PATTERN.fullmatch(display_name) is None:
        return False
    return not display_name[-1].isspace()


class AccountDirectory:
    """
    Owns account identity: registration, lookup, authentication and
    field-level persistence of `Account` objects.

    Lookups are de-duplicated through a weakly held cache so that every
    caller in the process holding an account sees the same object. The
    cache never outlives its holders and the store remains the source of
    truth; `refresh` re-reads the balance before composite mutations.
    """

    def __init__(self, store: RecordStore, crypto: CryptoProvider) -> None:
        self._store = store
        self._crypto = crypto
        self._live: "weakref.WeakValueDictionary[str, Account]" = weakref.WeakValueDictionary()
        self._live_lock = threading.Lock()

    # --------------------------------------------------------------------- #
    # Passwords
    # --------------------------------------------------------------------- #

    def make_password_record(self, password: str) -> str:
        salt = self._crypto.random_bytes(SALT_SIZE)
        return self._crypto.to_hex(salt) + self._digest(salt, password)

    def _digest(self, salt: bytes, password: str) -> str:
        return self._crypto.sha256_hex(salt + password.encode("utf-8"))

    def authenticate(self, account: Account, password: str) -> bool:
        record = account.password_record
        try:
            salt = self._crypto.from_hex(record[:SALT_HEX_LENGTH])
        except ValueError:
            logger.warning("Malformed password record for %s", account.username)
            return False
        expected = record[SALT_HEX_LENGTH:]
        actual = self._digest(salt, password)
        return hmac.compare_digest(actual.encode("utf-8"), expected.encode("utf-8"))

    # --------------------------------------------------------------------- #
    # Registration / lookup
    # --------------------------------------------------------------------- #

    def register(
        self,
        username: str,
        display_name: str,
        password: str,
        ip_address: Optional[str] = None,
    ) -> Account:
        """
        Create a new account with a zero balance.

        Checks run in a fixed order: username shape, display name shape,
        username uniqueness, display name uniqueness, password length.
        """

        if not is_valid_username(username):
            raise InvalidUsername()
        if not is_valid_display_name(display_name):
            raise InvalidDisplayName()

        with self._store.transaction():
            if self._store.select_one(USERS_TABLE, {"username": username}) is not None:
                raise UsernameTaken()
            if self._store.select_one(USERS_TABLE, {"display_name": display_name}) is not None:
                raise DisplayNameTaken()
            if len(password) < MIN_PASSWORD_LENGTH:
                raise PasswordTooShort()

            account = Account(
                username=username,
                display_name=display_name,
                password_record=self.make_password_record(password),
                ip_address=ip_address or "",
                balance=0,
            )
            self._store.insert(USERS_TABLE, self._to_row(account))

        logger.info("Registered account %s", username)
        return self._remember(account)

    def lookup(
        self,
        username: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Optional[Account]:
        """
        Return the account matching every given non-empty field.

        Returns None when nothing matches or no field was given.
        """

        filters = {}
        if username:
            filters["username"] = username
        if display_name:
            filters["display_name"] = display_name
        if not filters:
            return None

        row = self._store.select_one(USERS_TABLE, filters)
        if row is None:
            return None
        return self._remember(self._to_domain(row))

    def _remember(self, account: Account) -> Account:
        with self._live_lock:
            live = self._live.get(account.username)
            if live is not None:
                # Sync the shared object with the stored row.
                for name in WRITABLE_FIELDS:
                    setattr(live, name, getattr(account, name))
                return live
            self._live[account.username] = account
            return account

    def _forget(self, account: Account) -> None:
        with self._live_lock:
            if self._live.get(account.username) is account:
                del self._live[account.username]

    # --------------------------------------------------------------------- #
    # Persistence
    # --------------------------------------------------------------------- #

    def save(self, account: Account, fields: AbstractSet[str]) -> None:
        """
        Write exactly `fields` of `account` back to the store.

        Mutating an account never persists implicitly; callers name the
        fields they changed.
        """

        unknown = set(fields) - WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot save account fields: {sorted(unknown)}")
        if not fields:
            return

        values = {name: getattr(account, name) for name in fields}
        self._store.update(USERS_TABLE, {"username": account.username}, values)

    def add_coins(self, account: Account, amount: int) -> None:
        """Apply a signed balance delta and persist it."""

        account.balance += amount
        try:
            self.save(account, {"balance"})
        except Exception:
            account.balance -= amount
            raise

    def refresh(self, account: Account) -> bool:
        """
        Reload `account.balance` from the store.

        Returns False if the account row no longer exists.
        """

        row = self._store.select_one(USERS_TABLE, {"username": account.username})
        if row is None:
            return False
        account.balance = int(row["balance"])
        return True

    @contextmanager
    def atomic(self, *accounts: Optional[Account]) -> Iterator[None]:
        """
        Run a composite mutation inside one store transaction.

        If the body raises, the in-memory balances of `accounts` are put
        back to what they were on entry, matching the store rollback. A
        failed commit is not undone in memory; the next `refresh` repairs it.
        """

        held = [account for account in accounts if account is not None]
        with self._store.transaction():
            saved = [account.balance for account in held]
            try:
                yield
            except BaseException:
                for account, balance in zip(held, saved):
                    account.balance = balance
                raise

    def delete(self, account: Account, transfer_to: Optional[Account] = None) -> None:
        """
        Remove `account`, first crediting its balance to `transfer_to`.

        Raises `UnknownAccount` if either row is already gone, so a
        balance is never credited twice.
        """

        with self.atomic(account, transfer_to):
            if not self.refresh(account):
                raise UnknownAccount()
            if transfer_to is not None:
                if not self.refresh(transfer_to):
                    raise UnknownAccount()
                self.add_coins(transfer_to, account.balance)
            self._store.delete(USERS_TABLE, {"username": account.username})

        self._forget(account)
        if transfer_to is not None:
            logger.info(
                "Deleted account %s, transferred %d coins to %s",
                account.username,
                account.balance,
                transfer_to.username,
            )
        else:
            logger.info("Deleted account %s", account.username)

    # --------------------------------------------------------------------- #
    # Row mapping
    # --------------------------------------------------------------------- #

    @staticmethod
    def _to_domain(row: Row) -> Account:
        return Account(
            username=row["username"],
            display_name=row["display_name"],
            password_record=row["password_record"],
            ip_address=row.get("ip_address") or "",
            balance=int(row["balance"]),
        )

    @staticmethod
    def _to_row(account: Account) -> Row:
        return {
            "username": account.username,
            "display_name": account.display_name,
            "password_record": account.password_record,
            "ip_address": account.ip_address,
            "balance": account.balance,
        }
