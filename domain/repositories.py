from __future__ import annotations

from typing import Any, ContextManager, Dict, Iterator, Mapping, Optional, Protocol

Row = Dict[str, Any]


class RecordStore(Protocol):
    """
    Abstraction over the two ledger tables, `users` and `tokens`.

    Filters are mappings of column name to value; a row matches when every
    given column is equal. Implementations are responsible for:
    - Creating the tables they need.
    - Wrapping driver failures in `domain.errors.StoreError`.
    - Giving every call made inside `transaction()` serializable isolation,
      committing on normal exit and rolling back on an exception.
    """

    def insert(self, table: str, values: Mapping[str, Any]) -> None:
        """Insert a new row."""

        ...

    def select_one(self, table: str, filters: Mapping[str, Any]) -> Optional[Row]:
        """Return the first matching row, or None if nothing matches."""

        ...

    def select_many(self, table: str, filters: Mapping[str, Any]) -> Iterator[Row]:
        """Iterate over every matching row, in store order."""

        ...

    def update(
        self,
        table: str,
        filters: Mapping[str, Any],
        values: Mapping[str, Any],
    ) -> int:
        """Set `values` on matching rows and return how many were touched."""

        ...

    def delete(self, table: str, filters: Mapping[str, Any]) -> int:
        """Remove matching rows and return how many were removed."""

        ...

    def transaction(self) -> ContextManager[None]:
        """
        Scope a group of calls into one atomic unit.

        Nested use joins the outer transaction.
        """

        ...


class CryptoProvider(Protocol):
    """
    Cryptographic primitives consumed by the ledger.
    """

    def random_bytes(self, size: int) -> bytes:
        """Return `size` bytes from a cryptographically secure source."""

        ...

    def sha256_hex(self, data: bytes) -> str:
        ...

    def to_hex(self, data: bytes) -> str:
        ...

    def from_hex(self, text: str) -> bytes:
        """Decode lowercase or uppercase hex; raise ValueError if malformed."""

        ...

    def to_base64(self, data: bytes) -> str:
        ...
