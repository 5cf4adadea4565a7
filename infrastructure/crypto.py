from __future__ import annotations

import base64
import binascii
import hashlib
import secrets

from domain.repositories import CryptoProvider


class SystemCryptoProvider(CryptoProvider):
    """
    `CryptoProvider` backed by the operating system CSPRNG and hashlib.
    """

    def random_bytes(self, size: int) -> bytes:
        return secrets.token_bytes(size)

    def sha256_hex(self, data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    def to_hex(self, data: bytes) -> str:
        return binascii.hexlify(data).decode("ascii")

    def from_hex(self, text: str) -> bytes:
        # binascii.Error subclasses ValueError.
        return binascii.unhexlify(text.encode("ascii", errors="strict"))

    def to_base64(self, data: bytes) -> str:
        return base64.b64encode(data).decode("ascii")
