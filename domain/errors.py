from __future__ import annotations

from typing import Optional


class LedgerError(Exception):
    """
    Base class for expected, caller-facing ledger failures.

    `kind` is a stable identifier a transport can switch on; the message is
    human readable and safe to echo back to the caller.
    """

    kind = "LedgerError"
    default_message = "Ledger operation failed"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class InvalidUsername(LedgerError):
    kind = "InvalidUsername"
    default_message = "Invalid username"


class InvalidDisplayName(LedgerError):
    kind = "InvalidDisplayName"
    default_message = "Invalid display name"


class UsernameTaken(LedgerError):
    kind = "UsernameTaken"
    default_message = "Username already used"


class DisplayNameTaken(LedgerError):
    kind = "DisplayNameTaken"
    default_message = "Display name already used"


class PasswordTooShort(LedgerError):
    kind = "PasswordTooShort"
    default_message = "Password too short"


class InvalidWorth(LedgerError):
    kind = "InvalidWorth"
    default_message = "Worth must be an integer greater than zero"


class InsufficientFunds(LedgerError):
    kind = "InsufficientFunds"
    default_message = "Not enough coins"


class InvalidToken(LedgerError):
    kind = "InvalidToken"
    default_message = "Invalid token id"


class UnknownAccount(LedgerError):
    kind = "UnknownAccount"
    default_message = "No such user"


class BlankRevertTag(LedgerError):
    kind = "BlankRevertTag"
    default_message = "Revert tag can't be blank"


class SelfTransfer(LedgerError):
    kind = "SelfTransfer"
    default_message = "Cannot transfer coins to the account being deleted"


class MissingField(LedgerError):
    kind = "MissingField"

    def __init__(self, field_name: str) -> None:
        super().__init__(f"Missing {field_name} field")
        self.field_name = field_name


class StoreError(Exception):
    """
    Infrastructure failure raised by a `RecordStore` adapter.

    Not a `LedgerError`: transports map it to a generic failure rather
    than echoing driver details.
    """
