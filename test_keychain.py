import json
from pathlib import Path

import pytest

from giga_keychain import (
    BaseKeychain,
    ChallengeMismatch,
    InvalidPassword,
    Keychain,
    LockedKeychain,
    MissingPassword,
    NativeKeychain,
    NodeKeyNotInitialized,
    NotInitialized,
    from_base64,
    to_base64,
)
from giga_keychain.algo import DEK_TYPE, MissingKeyMaterial, UnsupportedKeyFormat

VECTORS = json.loads((Path(__file__).parent / "keychain_vectors.json").read_text("utf-8"))
IMPORTABLE = VECTORS["gigatribe"]
IMPORTABLE_2 = VECTORS["123456"]


@pytest.fixture(scope="module")
def imported():
    return Keychain.import_keychain(IMPORTABLE, "gigatribe")


@pytest.fixture(scope="module")
def generated():
    return Keychain.generate("gigatribe")


@pytest.fixture(scope="module")
def native():
    return NativeKeychain.generate("gigatribe")


def _same_public_parts(a: LockedKeychain, b: LockedKeychain):
    assert a.rsa_keys.public_key == b.rsa_keys.public_key
    assert a.rsa_keys.dek_info.iv == b.rsa_keys.dek_info.iv
    assert a.rsa_keys.dek_info.salt == b.rsa_keys.dek_info.salt
    assert a.rsa_keys.dek_info.type == b.rsa_keys.dek_info.type == DEK_TYPE
    assert a.salt == b.salt


# --- legacy fixtures ---

def test_import_fixture_exposes_node_key(imported):
    assert imported.is_ready
    assert imported.get_unencrypted_node_key() == "3iBVzCEwx7jNMB1DeaUiYP0lnX0ICCxtXG1vOCnKWrg="


def test_import_second_fixture():
    keychain = Keychain.import_keychain(IMPORTABLE_2, "123456")
    assert len(from_base64(keychain.get_unencrypted_node_key())) == 32


def test_encrypt_file_key_with_node_key(imported):
    fkey = imported.encrypt_with_node_key("2zl8/2ADaRE6AGEIFFU/2d+G")
    assert fkey == "ftFtDfl9uH2RhrWjghS/henUKt7sa4PJHbMRilMBvs4="
    assert imported.decrypt_with_node_key(fkey) == b"2zl8/2ADaRE6AGEIFFU/2d+G"


def test_export_fixture(imported):
    original = LockedKeychain.from_dict(IMPORTABLE)

    weak = imported.export(weak=True)
    _same_public_parts(weak, original)
    assert weak.master_key == "jELo/+hD23tTN1/tsGSeHw=="
    assert weak.password == "gigatribe"

    strong = imported.export(weak=False)
    _same_public_parts(strong, original)
    assert strong.master_key is None
    assert strong.password is None
    assert "masterKey" not in strong.to_dict()
    assert "password" not in strong.to_dict()


def test_exported_fixture_challenge_verifies(imported):
    exported = imported.export()
    assert exported.challenge is not None
    again = Keychain.import_keychain(exported, "gigatribe")
    assert again.get_unencrypted_node_key() == imported.get_unencrypted_node_key()


def test_tampered_challenge_fails(imported):
    exported = imported.export()
    exported.challenge = imported.encrypt_with_node_key("something else")
    with pytest.raises(ChallengeMismatch):
        Keychain.import_keychain(exported, "gigatribe")


def test_garbled_challenge_fails(imported):
    exported = imported.export()
    exported.challenge = to_base64(b"\x00" * 32)
    with pytest.raises(ChallengeMismatch):
        Keychain.import_keychain(exported, "gigatribe")


def test_fixture_wrong_password():
    with pytest.raises(InvalidPassword):
        Keychain.import_keychain(IMPORTABLE, "wrong password")


def test_change_password():
    keychain = Keychain.import_keychain(IMPORTABLE, "gigatribe")
    keychain.change_password("gigatribe", "123456")
    exported = keychain.export()
    assert exported.rsa_keys.private_key != IMPORTABLE["rsaKeys"]["privateKey"]

    reimported = Keychain.import_keychain(exported, "123456")
    assert reimported.get_unencrypted_node_key() == "3iBVzCEwx7jNMB1DeaUiYP0lnX0ICCxtXG1vOCnKWrg="
    with pytest.raises((InvalidPassword, ChallengeMismatch)):
        Keychain.import_keychain(exported, "gigatribe")


def test_change_password_mismatch():
    keychain = Keychain.import_keychain(IMPORTABLE, "gigatribe")
    with pytest.raises(InvalidPassword):
        keychain.change_password("not it", "123456")
    assert keychain.export(weak=True).master_key == "jELo/+hD23tTN1/tsGSeHw=="


def test_change_password_without_held_password():
    weak = Keychain.import_keychain(IMPORTABLE, "gigatribe").export(weak=True)
    weak.password = None
    keychain = Keychain.import_keychain(weak)
    assert keychain.password is None
    keychain.change_password("anything", "123456")
    Keychain.import_keychain(keychain.export(), "123456")


# --- legacy generated ---

def test_generated_roundtrip(generated):
    exp1 = generated.export(weak=True)
    imported = Keychain.import_keychain(exp1, "gigatribe")
    exported = imported.export(weak=True)

    _same_public_parts(exported, exp1)
    assert exported.password == "gigatribe"
    assert len(exported.salt) == 44
    assert 171 < len(exported.node_key) < 345
    assert len(exported.master_key) == 24
    assert imported.get_unencrypted_node_key() == generated.get_unencrypted_node_key()


def test_generated_node_key_is_base64_text(generated):
    node_key = from_base64(generated.get_unencrypted_node_key())
    assert len(node_key) == 32
    assert len(from_base64(node_key.decode("ascii"))) == 24


def test_generated_wrong_password(generated):
    exp1 = generated.export(weak=False)
    with pytest.raises((InvalidPassword, ChallengeMismatch)):
        Keychain.import_keychain(exp1, "wrong password")


def test_explicit_password_wins(generated):
    weak = generated.export(weak=True)
    weak.master_key = None
    weak.password = "wrong password"
    keychain = Keychain.import_keychain(weak, "gigatribe")
    assert keychain.password == "gigatribe"


def test_embedded_password_used(generated):
    weak = generated.export(weak=True)
    weak.master_key = None
    keychain = Keychain.import_keychain(weak)
    assert keychain.password == "gigatribe"


def test_empty_password_falls_back_to_embedded(generated):
    weak = generated.export(weak=True)
    weak.master_key = None
    keychain = Keychain.import_keychain(weak, "")
    assert keychain.password == "gigatribe"
    assert keychain.get_unencrypted_node_key() == generated.get_unencrypted_node_key()


def test_embedded_master_key_without_password(generated):
    weak = generated.export(weak=True)
    weak.password = None
    keychain = Keychain.import_keychain(weak)
    assert keychain.password is None
    assert keychain.get_unencrypted_node_key() == generated.get_unencrypted_node_key()


def test_missing_password(generated):
    with pytest.raises(MissingPassword):
        Keychain.import_keychain(generated.export(weak=False))


def test_login_password_compat():
    keychain = Keychain.generate("azertyuiop")
    assert keychain.calculate_login_password_compat("mobiuser01") == "Ju51bwKeziurk32HMdVx8g=="
    assert len(from_base64(keychain.calculate_login_password())) == 24


def test_generate_requires_password():
    with pytest.raises(InvalidPassword):
        Keychain.generate(None)
    with pytest.raises(InvalidPassword):
        NativeKeychain.generate("")


def test_base_keychain_is_abstract():
    with pytest.raises(TypeError):
        BaseKeychain("gigatribe")
    with pytest.raises(TypeError):
        BaseKeychain.generate("gigatribe")


def test_uninitialized_keychain():
    keychain = Keychain("gigatribe")
    assert not keychain.is_ready
    with pytest.raises(NotInitialized):
        keychain.export()
    with pytest.raises(NotInitialized):
        keychain.change_password("gigatribe", "x")
    with pytest.raises(NodeKeyNotInitialized):
        keychain.encrypt_with_node_key("data")
    with pytest.raises(NodeKeyNotInitialized):
        keychain.decrypt_with_node_key("AAAA")


def test_locked_keychain_missing_fields():
    broken = json.loads(json.dumps(IMPORTABLE))
    del broken["rsaKeys"]["dekInfo"]["iv"]
    with pytest.raises(MissingKeyMaterial):
        Keychain.import_keychain(broken, "gigatribe")
    with pytest.raises(MissingKeyMaterial):
        LockedKeychain.from_dict({"salt": "AAAA"})


def test_locked_keychain_unknown_dek_type():
    broken = json.loads(json.dumps(IMPORTABLE))
    broken["rsaKeys"]["dekInfo"]["type"] = "AES-256-GCM"
    with pytest.raises(UnsupportedKeyFormat):
        LockedKeychain.from_dict(broken)


def test_locked_keychain_json_roundtrip(imported):
    locked = imported.export(weak=True)
    assert LockedKeychain.from_json(locked.to_json()) == locked
    assert locked.is_weak
    assert not imported.export().is_weak


# --- native ---

def test_native_roundtrip(native):
    exp1 = native.export(weak=True)
    assert exp1.challenge is None
    assert len(from_base64(exp1.salt)) == 96

    imported = NativeKeychain.import_keychain(exp1, "gigatribe")
    _same_public_parts(imported.export(weak=True), exp1)
    assert imported.get_unencrypted_node_key() == native.get_unencrypted_node_key()


def test_native_wrong_password(native):
    with pytest.raises(InvalidPassword):
        NativeKeychain.import_keychain(native.export(), "wrong password")


def test_native_node_key_encryption(native):
    ciphertext = native.encrypt_with_node_key(b"payload")
    assert native.decrypt_with_node_key(ciphertext) == b"payload"


def test_native_change_password(native):
    keychain = NativeKeychain.import_keychain(native.export(), "gigatribe")
    keychain.change_password("gigatribe", "hunter2")
    reimported = NativeKeychain.import_keychain(keychain.export(), "hunter2")
    assert reimported.get_unencrypted_node_key() == native.get_unencrypted_node_key()


def test_native_reads_legacy_private_key(imported):
    # the PKCS#1 private key of a legacy keychain goes through the PKCS#8 translation
    from giga_keychain.rsa_backend import NativeRsaBackend

    backend = NativeRsaBackend()
    backend.import_private_key(imported.backend.export_private_key())
    backend.import_public_key(imported.backend.export_public_key())
    assert backend.export_public_key() == IMPORTABLE["rsaKeys"]["publicKey"]
