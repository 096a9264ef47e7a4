"""
Local-storage stores for one browser context: guest record and remembered
credentials.

Why: The resolver persists two kinds of client-side state. The guest record
is authoritative for the GUEST state; remembered credentials only pre-fill
login forms, so failures there are logged and never break a sign-in.

Security: Remembered credentials are stored unencrypted, the same as browser
local storage. Admin credentials are never written.
"""
from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional
import json
import os
import threading

import structlog

from .domain import (
    GUEST_STORAGE_KEY,
    GuestSession,
    RememberedCredential,
    credentials_storage_key,
    session_from_dict,
)
from .ports import LocalStore

logger = structlog.get_logger("shuttle_identity.stores")


class MemoryLocalStore:
    def __init__(self):
        self._data: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = str(value)

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)


class FileLocalStore:
    """JSON-file backed store; one file per browser context.

    Writes go through a temp file and `os.replace` so a crash never leaves a
    half-written file behind.
    """

    def __init__(self, path: Path | str):
        self._path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("local_store_corrupt", path=str(self._path))
            return {}
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self._path)

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = str(value)
            self._write(data)

    def remove_item(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                data.pop(key)
                self._write(data)


class GuestStore:
    """The single guest record of a browser context."""

    def __init__(self, local: LocalStore):
        self._local = local

    def load(self) -> Optional[GuestSession]:
        raw = self._local.get_item(GUEST_STORAGE_KEY)
        if raw is None:
            return None
        try:
            session = session_from_dict(json.loads(raw))
        except (ValueError, TypeError, AttributeError):
            logger.warning("guest_record_unparsable")
            self._local.remove_item(GUEST_STORAGE_KEY)
            return None
        if not isinstance(session, GuestSession):
            self._local.remove_item(GUEST_STORAGE_KEY)
            return None
        return session

    def exists(self) -> bool:
        return self._local.get_item(GUEST_STORAGE_KEY) is not None

    def save(self, session: GuestSession) -> None:
        self._local.set_item(GUEST_STORAGE_KEY, json.dumps(session.to_dict()))

    def clear(self) -> None:
        self._local.remove_item(GUEST_STORAGE_KEY)


class CredentialStore:
    """Remember-me entries for the student and driver login surfaces.

    Invalid surfaces raise ValueError. Storage failures are logged and
    ignored.
    """

    def __init__(self, local: LocalStore):
        self._local = local

    def save(self, surface: str, credential: RememberedCredential) -> None:
        key = credentials_storage_key(surface)
        try:
            self._local.set_item(key, json.dumps(credential.to_dict()))
        except OSError as exc:
            logger.warning("credentials_save_failed", surface=surface, error=type(exc).__name__)

    def load(self, surface: str) -> Optional[RememberedCredential]:
        key = credentials_storage_key(surface)
        try:
            raw = self._local.get_item(key)
        except OSError as exc:
            logger.warning("credentials_load_failed", surface=surface, error=type(exc).__name__)
            return None
        if raw is None:
            return None
        try:
            return RememberedCredential.from_dict(json.loads(raw))
        except (ValueError, TypeError, AttributeError):
            logger.warning("credentials_unparsable", surface=surface)
            return None

    def clear(self, surface: str) -> None:
        key = credentials_storage_key(surface)
        try:
            self._local.remove_item(key)
        except OSError as exc:
            logger.warning("credentials_clear_failed", surface=surface, error=type(exc).__name__)

    def has(self, surface: str) -> bool:
        return self.load(surface) is not None
