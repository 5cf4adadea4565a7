from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Union

from .accounts import AccountDirectory
from .errors import (
    BlankRevertTag,
    InsufficientFunds,
    InvalidToken,
    InvalidWorth,
    LedgerError,
    StoreError,
    UnknownAccount,
)
from .models import Account, Token
from .repositories import CryptoProvider, RecordStore, Row

logger = logging.getLogger(__name__)

TOKENS_TABLE = "tokens"

TOKEN_ENTROPY_SIZE = 32


@dataclass
class RevertOutcome:
    """Tokens processed by `TokenLedger.revert_group`."""

    reverted: List[str] = field(default_factory=list)
    failed: List[Tuple[str, Union[LedgerError, StoreError]]] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed


def coerce_worth(worth: Any) -> Union[int, float]:
    """
    Interpret `worth` as a number; anything unparseable counts as 0.
    """

    if isinstance(worth, bool):
        return 0
    if isinstance(worth, int):
        return worth
    try:
        return float(worth)
    except (TypeError, ValueError):
        return 0


class TokenLedger:
    """
    Mints, redeems and reverts bearer tokens.

    Every composite mutation runs inside `AccountDirectory.atomic`, so the
    token row and the balance it moves are committed or rolled back together.
    """

    def __init__(
        self,
        store: RecordStore,
        directory: AccountDirectory,
        crypto: CryptoProvider,
    ) -> None:
        self._store = store
        self._directory = directory
        self._crypto = crypto

    def new_token_id(self, worth: int) -> str:
        entropy = self._crypto.to_base64(self._crypto.random_bytes(TOKEN_ENTROPY_SIZE))
        return f"{entropy.replace('=', '')}:{worth}"

    def get(self, token_id: str) -> Optional[Token]:
        row = self._store.select_one(TOKENS_TABLE, {"id": token_id})
        if row is None:
            return None
        return self._to_domain(row)

    def mint(
        self,
        worth: Any,
        revert_tag: Optional[str] = None,
        account: Optional[Account] = None,
        force: bool = False,
    ) -> str:
        """
        Create a token worth `worth` coins and return its id.

        When `account` is given it is debited by `worth` in the same
        transaction. `force` skips the positivity and balance checks, but
        the worth must still be a whole number.
        """

        value = coerce_worth(worth)
        if not math.isfinite(value) or value != math.floor(value):
            raise InvalidWorth()
        amount = int(value)
        if not force and amount < 1:
            raise InvalidWorth()

        with self._directory.atomic(account):
            if account is not None:
                if not self._directory.refresh(account):
                    raise UnknownAccount()
                if not force and account.balance < amount:
                    logger.debug(
                        "Refused mint of %d for %s: balance %d",
                        amount,
                        account.username,
                        account.balance,
                    )
                    raise InsufficientFunds()

            token = Token(
                id=self.new_token_id(amount),
                worth=amount,
                revert_tag=revert_tag or "",
                creator_username=account.username if account is not None else "",
            )
            self._store.insert(TOKENS_TABLE, self._to_row(token))
            if account is not None:
                self._directory.add_coins(account, -amount)

        logger.info(
            "Minted token worth %d (creator=%r, revert_tag=%r%s)",
            amount,
            token.creator_username,
            token.revert_tag,
            ", forced" if force else "",
        )
        return token.id

    def redeem(self, token_id: str, account: Account) -> int:
        """
        Consume `token_id`, credit its worth to `account` and return it.
        """

        with self._directory.atomic(account):
            token = self.get(token_id)
            if token is None:
                raise InvalidToken()
            if not self._directory.refresh(account):
                raise UnknownAccount()
            if self._store.delete(TOKENS_TABLE, {"id": token.id}) != 1:
                raise InvalidToken()
            self._directory.add_coins(account, token.worth)

        logger.info("Redeemed token worth %d into %s", token.worth, account.username)
        return token.worth

    def revert_group(self, revert_tag: str, fallback: Account) -> RevertOutcome:
        """
        Return every token tagged `revert_tag` to the account that minted it.

        Tokens whose creator no longer exists (or that were minted without
        one) go to `fallback`. Each token is redeemed in its own transaction;
        a refusal or a `StoreError` is recorded in the outcome and the
        remaining tokens are still processed. Only the initial read of the
        group can raise `StoreError`.
        """

        if not revert_tag:
            raise BlankRevertTag()

        # Materialize first: redeeming deletes rows from the table being read.
        tokens = [
            self._to_domain(row)
            for row in self._store.select_many(TOKENS_TABLE, {"revert_tag": revert_tag})
        ]

        outcome = RevertOutcome()
        for token in tokens:
            try:
                target = fallback
                if token.creator_username:
                    target = self._directory.lookup(username=token.creator_username) or fallback
                self.redeem(token.id, target)
            except LedgerError as exc:
                logger.warning("Could not revert token worth %d: %s", token.worth, exc)
                outcome.failed.append((token.id, exc))
            except StoreError as exc:
                logger.error("Store failure reverting token worth %d: %s", token.worth, exc)
                outcome.failed.append((token.id, exc))
            else:
                outcome.reverted.append(token.id)

        logger.info(
            "Reverted %d token(s) tagged %r, %d failed",
            len(outcome.reverted),
            revert_tag,
            len(outcome.failed),
        )
        return outcome

    @staticmethod
    def _to_domain(row: Row) -> Token:
        return Token(
            id=row["id"],
            worth=int(row["worth"]),
            revert_tag=row.get("revert_tag") or "",
            creator_username=row.get("creator_username") or "",
        )

    @staticmethod
    def _to_row(token: Token) -> Row:
        return {
            "id": token.id,
            "worth": token.worth,
            "revert_tag": token.revert_tag,
            "creator_username": token.creator_username,
        }
