"""
Error taxonomy for the delegated-key runtime.

All errors derive from :class:`DelegationError`, itself a ``RuntimeError`` so
callers that already catch ``RuntimeError`` around signing keep working.

Only the capability resolver and the publish orchestrator catch these and
decide (reauthorize, purge, retry or propagate). Every other component raises
them, or fails closed.
"""

from __future__ import annotations

import asyncio

import httpx


class DelegationError(RuntimeError):
    """Base class for every error raised by this package."""


class ValidationError(DelegationError):
    """A publish request (or other caller input) is malformed."""


class AuthorizationError(DelegationError):
    """Wallet missing, ownership mismatch, or on-chain grant missing/mismatched."""


class OwnershipError(AuthorizationError):
    """The delegated key was created for a different primary wallet."""


class KeyRecoveryError(AuthorizationError):
    """A funded delegated key could not be reauthorized.

    The key is kept in the store so the owner can retry or withdraw.
    """

    def __init__(self, message: str, address: str) -> None:
        super().__init__(message)
        self.address = address


class UserRejectionError(DelegationError):
    """The user declined a wallet prompt. Never retried automatically."""


class WalletTimeoutError(UserRejectionError):
    """Nobody answered a wallet prompt within the configured timeout."""


class FundingError(DelegationError):
    """Balance too low to cover fees, or a funding transfer failed."""


class NetworkError(DelegationError):
    """RPC endpoint or storage network unavailable or misbehaving."""


class TransactionRevertedError(NetworkError):
    """A mined transaction has ``status == 0``."""

    def __init__(self, message: str, tx_hash: str) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class KeyGenerationError(DelegationError):
    """The system entropy source failed while generating a key pair. Fatal."""


# EIP-1193 provider error code for "user rejected request"
USER_REJECTED_CODE = 4001

_REJECTION_MARKERS = (
    "user rejected",
    "user denied",
    "rejected the request",
    "user cancelled",
    "user canceled",
)

# Revert names / 4-byte error selectors raised by SessionKeyManager and the
# BlogHub session-key entry points.
_AUTHORIZATION_MARKERS = (
    "not authorized for this operation",
    "sessionkeynotactive",
    "0x62db3e42",
    "session key is not",
    "session key has expired",
    "session key spending limit exceeded",
    "sessionkeyvalidationfailed",
    "invalidsessionkey",
    "sessionkeyexpired",
    "session key is registered for a different contract",
)

# Signature checks on the session-key entry points, with the message raised
# in their place.
_SIGNATURE_REVERTS = {
    "invalidsignature": "Session key signature was rejected by the contract (InvalidSignature).",
    "0x8baa579f": "Session key signature was rejected by the contract (InvalidSignature).",
    "signatureexpired": "Session key signature deadline has passed (SignatureExpired).",
    "0x0819bdcd": "Session key signature deadline has passed (SignatureExpired).",
}

_FUNDING_MARKERS = (
    "insufficient funds",
    "insufficient balance",
    "not enough balance",
)


def _error_text(exc: BaseException) -> str:
    """``str(exc)`` plus any revert ``data`` the RPC error carries."""
    message = str(exc)
    data = getattr(exc, "data", None)
    if data and str(data) not in message:
        return f"{message} ({data})" if message else str(data)
    return message


def is_capability_error(exc: BaseException) -> bool:
    """Whether ``exc`` was caused by the delegated key's capability grant."""
    if isinstance(exc, AuthorizationError):
        return True
    text = _error_text(exc).lower()
    return any(marker in text for marker in (*_AUTHORIZATION_MARKERS, *_SIGNATURE_REVERTS))


def classify_error(exc: BaseException) -> DelegationError:
    """Map a raw wallet / RPC / transport exception onto the taxonomy.

    Already-typed errors are returned unchanged, except JSON-RPC errors
    (which carry a ``code``): their message decides the category. The
    original exception is kept as ``__cause__`` of the returned one.
    """
    if isinstance(exc, DelegationError) and not hasattr(exc, "code"):
        return exc

    if isinstance(exc, asyncio.TimeoutError):
        err: DelegationError = WalletTimeoutError("Wallet did not respond in time.")
        err.__cause__ = exc
        return err

    if isinstance(exc, httpx.HTTPError):
        err = NetworkError(f"Network request failed: {exc.__class__.__name__}: {exc}")
        err.__cause__ = exc
        return err

    message = _error_text(exc)
    lower = message.lower()
    signature_revert = next((d for m, d in _SIGNATURE_REVERTS.items() if m in lower), None)

    code = getattr(exc, "code", None)
    if code == USER_REJECTED_CODE or any(m in lower for m in _REJECTION_MARKERS):
        err = UserRejectionError("User rejected the request.")
    elif signature_revert is not None:
        err = AuthorizationError(signature_revert)
    elif any(m in lower for m in _AUTHORIZATION_MARKERS):
        # Keep the original text so callers can see which check failed
        err = AuthorizationError(message)
    elif any(m in lower for m in _FUNDING_MARKERS):
        err = FundingError("Insufficient funds to complete the transaction.")
    elif isinstance(exc, NetworkError):
        return exc
    else:
        err = NetworkError(message or exc.__class__.__name__)
    err.__cause__ = exc
    return err
