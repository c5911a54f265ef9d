import json
import os
import platform

import pytest

from giga_keychain import JsonFileStore, Keychain, LoadResult, MemoryStore, NativeKeychain
from giga_keychain.algo import DecryptionFailed, EncodingError, MissingKeyMaterial
from giga_keychain.key_store import HOME_ENV, STORE_FILENAME, config_dir


@pytest.fixture(scope="module")
def keychain():
    return Keychain.generate("gigatribe")


# --- stores ---

def test_memory_store_items():
    store = MemoryStore()
    assert store.get_item("a") is None
    store.set_item("a", "1")
    assert store.get_item("a") == "1"
    assert store.remove_item("a")
    assert not store.remove_item("a")


def test_json_file_store_persists(tmp_path):
    path = tmp_path / "store.json"
    store = JsonFileStore(path)
    store.set_item("session", "value")

    reopened = JsonFileStore(path)
    assert reopened.get_item("session") == "value"
    assert json.loads(path.read_text("utf-8")) == {"items": {"session": "value"}}

    assert reopened.remove_item("session")
    assert JsonFileStore(path).get_item("session") is None


@pytest.mark.skipif(platform.system() == "Windows", reason="POSIX permissions")
def test_json_file_store_owner_only(tmp_path):
    store = JsonFileStore(tmp_path / "store.json")
    store.set_item("k", "v")
    assert os.stat(store.path).st_mode & 0o777 == 0o600


def test_json_file_store_corrupt_file(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{not json", "utf-8")
    store = JsonFileStore(path)
    assert store.get_item("anything") is None
    store.set_item("k", "v")
    assert JsonFileStore(path).get_item("k") == "v"


def test_config_dir_override(tmp_path, monkeypatch):
    home = tmp_path / "home"
    monkeypatch.setenv(HOME_ENV, str(home))
    assert config_dir() == home
    assert home.is_dir()
    assert JsonFileStore().path == home / STORE_FILENAME


# --- keychain persistence ---

def test_store_and_load(keychain):
    store = MemoryStore()
    keychain.store_in_storage(store, "session", "local secret")

    blob = json.loads(store.get_item("session"))
    assert set(blob) == {"iv", "encrypted", "salt"}
    assert "gigatribe" not in store.get_item("session")

    result = Keychain.load_from_storage(store, "session", "local secret")
    assert result.ok
    assert result.error is None
    assert result.keychain.password == "gigatribe"
    assert result.keychain.get_unencrypted_node_key() == keychain.get_unencrypted_node_key()


def test_store_and_load_native():
    native = NativeKeychain.generate("gigatribe")
    store = MemoryStore()
    native.store_in_storage(store, "session", "local secret")
    result = NativeKeychain.load_from_storage(store, "session", "local secret")
    assert result.keychain.get_unencrypted_node_key() == native.get_unencrypted_node_key()


def test_load_missing_item():
    result = Keychain.load_from_storage(MemoryStore(), "session", "local secret")
    assert result == LoadResult()
    assert not result.ok


def test_load_wrong_password(keychain):
    store = MemoryStore()
    keychain.store_in_storage(store, "session", "local secret")
    result = Keychain.load_from_storage(store, "session", "another secret")
    assert not result.ok
    assert isinstance(result.error, (DecryptionFailed, ValueError))


def test_load_not_a_blob():
    store = MemoryStore()
    store.set_item("session", json.dumps({"iv": "AAAA"}))
    result = Keychain.load_from_storage(store, "session", "local secret")
    assert isinstance(result.error, MissingKeyMaterial)

    store.set_item("session", "not json")
    assert isinstance(Keychain.load_from_storage(store, "session", "x").error, ValueError)


def test_store_in_file(keychain, tmp_path):
    path = tmp_path / "store.json"
    keychain.store_in_storage(JsonFileStore(path), "session", "local secret")
    result = Keychain.load_from_storage(JsonFileStore(path), "session", "local secret")
    assert result.keychain.get_unencrypted_node_key() == keychain.get_unencrypted_node_key()


def test_load_non_text_fields():
    store = MemoryStore()
    store.set_item("session", json.dumps({"iv": 1, "encrypted": 2, "salt": 3}))
    result = Keychain.load_from_storage(store, "session", "local secret")
    assert not result.ok
    assert isinstance(result.error, EncodingError)
