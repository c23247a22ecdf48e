"""
Local persistence of the single delegated key.

The store file is a small JSON document used like browser local storage:
the key record lives under ``dblog_session_key`` and any other entries (user
preferences, for instance) are left untouched. Writes go through a temp file
and ``os.replace`` so a crash leaves either the previous record or the new
one, never half of each.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from eth_utils import is_address

from dblog_delegation.secret import SecretKey
from dblog_delegation.types import DelegatedKey

logger = logging.getLogger(__name__)

SESSION_KEY_STORAGE = "dblog_session_key"


class KeyStore:
    """Load, save and clear the one :class:`DelegatedKey` of this device."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> DelegatedKey | None:
        """Return the stored key, or ``None``.

        A malformed record is purged and treated as absent; this never
        raises for bad data.
        """
        with self._lock:
            record = self._read_document().get(SESSION_KEY_STORAGE)
            if record is None:
                return None
            try:
                return _from_record(record)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Discarding malformed delegated key record: %s", e.__class__.__name__)
                self._remove_entry()
                return None

    def save(self, key: DelegatedKey) -> None:
        with self._lock:
            document = self._read_document()
            document[SESSION_KEY_STORAGE] = _to_record(key)
            self._write_document(document)
        logger.debug("Stored delegated key %s (owner %s)", key.address, key.owner)

    def clear(self) -> None:
        with self._lock:
            self._remove_entry()

    # ---- Internal ----

    def _remove_entry(self) -> None:
        document = self._read_document()
        if SESSION_KEY_STORAGE in document:
            del document[SESSION_KEY_STORAGE]
            self._write_document(document)

    def _read_document(self) -> dict[str, Any]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            document = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Key store %s is not valid JSON; starting empty", self._path)
            return {}
        return document if isinstance(document, dict) else {}

    def _write_document(self, document: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".keystore-", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, 0o600)
            os.replace(tmp, self._path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise


def _to_record(key: DelegatedKey) -> dict[str, Any]:
    return {
        "address": key.address,
        "privateKey": key.secret.to_hex(),
        "owner": key.owner,
        "validUntil": key.valid_until,
    }


def _from_record(record: dict[str, Any]) -> DelegatedKey:
    if not isinstance(record, dict):
        raise TypeError("record is not an object")
    if not is_address(record["address"]) or not is_address(record["owner"]):
        raise ValueError("bad address")
    valid_until = record["validUntil"]
    if isinstance(valid_until, bool) or not isinstance(valid_until, int):
        raise ValueError("bad validUntil")
    secret = SecretKey.from_hex(record["privateKey"])
    if secret.address.lower() != record["address"].lower():
        raise ValueError("private key does not match address")
    return DelegatedKey(
        address=record["address"],
        secret=secret,
        owner=record["owner"],
        valid_until=valid_until,
    )
