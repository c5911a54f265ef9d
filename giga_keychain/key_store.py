"""
Giga Keychain Store
===================

Persists unlocked keychains between sessions through a plain key-value
store (``get_item`` / ``set_item``), the way a browser keeps them in
local storage.  Each item is a JSON blob::

    {"iv": b64, "encrypted": b64, "salt": b64}

where ``encrypted`` is AES-CBC(JSON(weak export), PBKDF2(password, salt)).

:class:`JsonFileStore` keeps all items in one JSON document under the
OS-appropriate config directory, protected with owner-only permissions.
"""

from __future__ import annotations

import abc
import json
import logging
import os
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional, Type

from .algo import (
    KeychainError,
    MissingKeyMaterial,
    decrypt_aes,
    derive_key,
    encrypt_aes,
    from_base64,
    random_bytes,
    to_base64,
)
from .locked import LockedKeychain

if TYPE_CHECKING:
    from .keychain import BaseKeychain

logger = logging.getLogger(__name__)

SESSION_SALT_SIZE: int = 96
STORE_FILENAME: str = "keychains.json"
HOME_ENV: str = "GIGA_KEYCHAIN_HOME"


# ---------------------------------------------------------------------------
# Config directory
# ---------------------------------------------------------------------------

def config_dir() -> Path:
    """Return the config directory, honouring ``GIGA_KEYCHAIN_HOME``."""
    override = os.environ.get(HOME_ENV)
    if override:
        config = Path(override)
    else:
        if platform.system() == "Windows":
            base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
        elif platform.system() == "Darwin":
            base = Path.home() / "Library" / "Application Support"
        else:
            base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
        config = base / "GigaKeychain"
    config.mkdir(parents=True, exist_ok=True)
    return config


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class KeyValueStore(abc.ABC):
    """String items addressed by an opaque key; no transactions."""

    @abc.abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        ...

    @abc.abstractmethod
    def set_item(self, key: str, value: str) -> None:
        ...

    @abc.abstractmethod
    def remove_item(self, key: str) -> bool:
        """Remove an item. Returns True if it existed."""


class MemoryStore(KeyValueStore):
    """In-process store, mostly for tests."""

    def __init__(self):
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> bool:
        return self._items.pop(key, None) is not None


class JsonFileStore(KeyValueStore):
    """All items in a single JSON file."""

    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path) if path is not None else config_dir() / STORE_FILENAME
        self._items: Dict[str, str] = {}
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    # ----- persistence -----

    def _load(self) -> None:
        """Load items from disk."""
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text("utf-8"))
        except ValueError:
            data = None
        if not isinstance(data, dict) or not isinstance(data.get("items", {}), dict):
            # Corrupt file, start fresh
            logger.warning("ignoring corrupt keychain store %s", self._path)
            return
        self._items = {str(k): str(v) for k, v in data.get("items", {}).items()}

    def _save(self) -> None:
        """Persist items to disk."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps({"items": self._items}, indent=2), "utf-8")
        # Restrict permissions on the store file (owner-only)
        if platform.system() != "Windows":
            os.chmod(self._path, 0o600)

    # ----- operations -----

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value
        self._save()

    def remove_item(self, key: str) -> bool:
        if key in self._items:
            del self._items[key]
            self._save()
            return True
        return False


# ---------------------------------------------------------------------------
# Keychain persistence
# ---------------------------------------------------------------------------

@dataclass
class LoadResult:
    """
    Outcome of :func:`load_keychain`.

    ``keychain`` is None when the item is missing (``error`` None too) or
    when loading failed (``error`` holds the reason).
    """
    keychain: Optional["BaseKeychain"] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.keychain is not None


def store_keychain(
    keychain: "BaseKeychain",
    store: KeyValueStore,
    item_key: str,
    password: str,
) -> None:
    """Encrypt a weak export of *keychain* under *password* and store it."""
    raw_json = keychain.export(weak=True).to_json()
    salt = random_bytes(SESSION_SALT_SIZE)
    key = derive_key(password, salt)
    encrypted, iv = encrypt_aes(raw_json.encode("utf-8"), key)
    value = {
        "iv": to_base64(iv),
        "encrypted": to_base64(encrypted),
        "salt": to_base64(salt),
    }
    store.set_item(item_key, json.dumps(value))
    logger.debug("stored keychain under %r", item_key)


def load_keychain(
    keychain_cls: Type["BaseKeychain"],
    store: KeyValueStore,
    item_key: str,
    password: str,
) -> LoadResult:
    """
    Load and unlock a keychain written by :func:`store_keychain`.

    Never raises for bad data or a wrong password; the caller decides
    what to do with :attr:`LoadResult.error`.
    """
    item = store.get_item(item_key)
    if item is None:
        return LoadResult()
    try:
        value = json.loads(item)
        if not isinstance(value, dict) or any(value.get(k) is None for k in ("iv", "encrypted", "salt")):
            raise MissingKeyMaterial(f"Stored item {item_key!r} is not a keychain blob.")
        key = derive_key(password, from_base64(value["salt"]))
        decrypted = decrypt_aes(from_base64(value["encrypted"]), key, from_base64(value["iv"]))
        locked = LockedKeychain.from_json(decrypted.decode("utf-8"))
        keychain = keychain_cls.import_keychain(locked)
    except (KeychainError, ValueError) as exc:
        logger.debug("loading %r failed: %s", item_key, type(exc).__name__)
        return LoadResult(error=exc)
    return LoadResult(keychain=keychain)
