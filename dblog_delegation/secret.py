"""Opaque handle for a delegated key's private signing material."""

from __future__ import annotations

import hmac
import secrets

from eth_account import Account
from eth_utils import to_checksum_address

from dblog_delegation.errors import KeyGenerationError

_KEY_LENGTH = 32


class SecretKey:
    """Private key bytes that refuse to be printed, copied or pickled.

    The bytes live in a ``bytearray`` and are zeroed by :meth:`wipe` and when
    the handle is garbage collected. Only the signing helpers call
    :meth:`reveal`; the key store calls :meth:`to_hex` to persist it.
    """

    __slots__ = ("_raw",)

    def __init__(self, raw: bytes | bytearray) -> None:
        if len(raw) != _KEY_LENGTH:
            raise ValueError("private key must be 32 bytes")
        self._raw = bytearray(raw)

    @classmethod
    def generate(cls) -> "SecretKey":
        """Create a fresh key from the OS entropy source."""
        try:
            raw = secrets.token_bytes(_KEY_LENGTH)
        except (OSError, NotImplementedError) as e:
            raise KeyGenerationError("System entropy source unavailable") from e
        return cls(raw)

    @classmethod
    def from_hex(cls, value: str) -> "SecretKey":
        text = value[2:] if value.startswith(("0x", "0X")) else value
        return cls(bytes.fromhex(text))

    @property
    def address(self) -> str:
        """Checksummed address derived from this key."""
        return to_checksum_address(Account.from_key(self.reveal()).address)

    def reveal(self) -> bytes:
        if not any(self._raw):
            raise ValueError("secret key has been wiped")
        return bytes(self._raw)

    def to_hex(self) -> str:
        return "0x" + self.reveal().hex()

    def wipe(self) -> None:
        for i in range(len(self._raw)):
            self._raw[i] = 0

    def __del__(self) -> None:
        try:
            self.wipe()
        except AttributeError:
            pass

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SecretKey):
            return NotImplemented
        return hmac.compare_digest(bytes(self._raw), bytes(other._raw))

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return "SecretKey(**redacted**)"

    __str__ = __repr__

    def __copy__(self) -> "SecretKey":
        raise TypeError("SecretKey cannot be copied")

    def __deepcopy__(self, memo: dict) -> "SecretKey":
        raise TypeError("SecretKey cannot be copied")

    def __reduce__(self):
        raise TypeError("SecretKey cannot be pickled")
