from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from domain.accounts import AccountDirectory
from domain.errors import (
    BlankRevertTag,
    LedgerError,
    MissingField,
    SelfTransfer,
    StoreError,
)
from domain.models import Account
from domain.repositories import CryptoProvider, RecordStore
from domain.tokens import TokenLedger

logger = logging.getLogger(__name__)

STORE_FAILURE = "StoreFailure"


@dataclass
class TokenFailure:
    """A token that could not be processed during a bulk operation."""

    token_id: str
    error_kind: str
    error_message: str


@dataclass
class OperationResult:
    """Generic result type for ledger operations."""

    success: bool
    value: Any = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    failures: List[TokenFailure] = field(default_factory=list)

    @classmethod
    def ok(cls, value: Any = None) -> "OperationResult":
        return cls(success=True, value=value)

    @classmethod
    def from_error(cls, error: LedgerError, value: Any = None) -> "OperationResult":
        return cls(
            success=False,
            value=value,
            error_kind=error.kind,
            error_message=error.message,
        )

    def to_envelope(self) -> List[Any]:
        """
        Render the result the way the original transport did:
        `["success", payload]` (`["success"]` when there is no payload)
        or `["error", message]`.
        """

        if self.success:
            if self.value is None:
                return ["success"]
            return ["success", self.value]
        return ["error", self.error_message or "Unknown error"]


def _require(**fields: Any) -> None:
    for name, value in fields.items():
        if value is None or value == "":
            raise MissingField(name)


class LedgerService:
    """
    Public operation set of the coin ledger.

    Transports (CLI, request handlers) call only this class. Domain failures
    come back as `OperationResult`; `StoreError` is logged and re-raised so
    the caller can turn it into a generic failure.
    """

    def __init__(self, store: RecordStore, crypto: CryptoProvider) -> None:
        self._directory = AccountDirectory(store, crypto)
        self._ledger = TokenLedger(store, self._directory, crypto)

    @property
    def directory(self) -> AccountDirectory:
        return self._directory

    @property
    def ledger(self) -> TokenLedger:
        return self._ledger

    def _run(self, operation: str, action: Callable[[], Any]) -> OperationResult:
        try:
            return OperationResult.ok(action())
        except LedgerError as exc:
            logger.debug("%s refused: %s", operation, exc)
            return OperationResult.from_error(exc)
        except StoreError:
            logger.exception("%s failed in the record store", operation)
            raise

    # ------------------------------------------------------------------ #
    # Accounts
    # ------------------------------------------------------------------ #

    def register(
        self,
        username: str,
        display_name: str,
        password: str,
        ip_address: Optional[str] = None,
    ) -> OperationResult:
        def action() -> None:
            _require(username=username, display_name=display_name, password=password)
            self._directory.register(username, display_name, password, ip_address)

        return self._run("register", action)

    def lookup_account(
        self,
        username: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Optional[Account]:
        if not username and not display_name:
            raise ValueError("lookup_account needs a username or a display_name")
        return self._directory.lookup(username=username, display_name=display_name)

    def authenticate(self, account: Account, password: str) -> bool:
        if password is None:
            return False
        return self._directory.authenticate(account, password)

    def add_coins(self, account: Account, amount: int) -> None:
        with self._directory.atomic(account):
            self._directory.refresh(account)
            self._directory.add_coins(account, amount)
        logger.info("Adjusted %s balance by %d", account.username, amount)

    def delete_account(
        self,
        account: Account,
        transfer_to: Optional[Account] = None,
    ) -> OperationResult:
        def action() -> None:
            if transfer_to is not None and transfer_to.username == account.username:
                raise SelfTransfer()
            self._directory.delete(account, transfer_to)

        return self._run("delete_account", action)

    # ------------------------------------------------------------------ #
    # Tokens
    # ------------------------------------------------------------------ #

    def mint(
        self,
        worth: Any,
        revert_tag: Optional[str] = None,
        account: Optional[Account] = None,
        force: bool = False,
    ) -> OperationResult:
        def action() -> str:
            _require(worth=worth)
            return self._ledger.mint(worth, revert_tag, account, force)

        return self._run("mint", action)

    def redeem(self, token_id: str, account: Account) -> OperationResult:
        def action() -> int:
            _require(token=token_id)
            return self._ledger.redeem(token_id, account)

        return self._run("redeem", action)

    def revert_group(self, revert_tag: str, fallback: Account) -> OperationResult:
        """
        Revert every token tagged `revert_tag`.

        On success `value` is the list of reverted ids. If any token failed,
        the result is unsuccessful with kind `PartialRevert`; `value` still
        holds the ids that were reverted and `failures` names the rest.
        """

        if not revert_tag:
            return OperationResult.from_error(BlankRevertTag())
        try:
            outcome = self._ledger.revert_group(revert_tag, fallback)
        except StoreError:
            logger.exception("revert_group failed in the record store")
            raise

        if outcome.complete:
            return OperationResult.ok(outcome.reverted)

        failures = [_token_failure(token_id, exc) for token_id, exc in outcome.failed]
        return OperationResult(
            success=False,
            value=outcome.reverted,
            error_kind="PartialRevert",
            error_message=_describe_failures(failures),
            failures=failures,
        )


def _describe_failures(failures: List[TokenFailure]) -> str:
    reasons = Counter(failure.error_message for failure in failures)
    detail = ", ".join(f"{message} x{count}" for message, count in reasons.items())
    return f"Failed to revert {len(failures)} token(s): {detail}"


def _token_failure(token_id: str, error: Exception) -> TokenFailure:
    if isinstance(error, LedgerError):
        return TokenFailure(token_id=token_id, error_kind=error.kind, error_message=error.message)
    # Driver details stay in the log.
    return TokenFailure(token_id=token_id, error_kind=STORE_FAILURE, error_message="Store failure")
