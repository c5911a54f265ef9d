"""
Giga Keychain
=============

A password unlocks a long-lived RSA keypair, which unlocks a 32-byte
node key protecting user data::

    password + profile salt ──PBKDF2──► master key
    master key + dekInfo    ──PBKDF2──► wrap key ──AES-CBC──► private key
    private key             ──RSA─────► node key
    node key[:16] / [16:]   ──AES-CBC──► payloads (challenge, file keys)

Two variants share the orchestration:

  * :class:`Keychain`: legacy bignum backend, PKCS#1 private key,
    PKCS#1 v1.5 node key wrapping and a challenge proving the node key.
  * :class:`NativeKeychain`: provider backend, PKCS#8, RSA-OAEP.

A keychain is either uninitialized or holds a complete :class:`Session`;
there is no state in between.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, replace
from typing import Optional, Type, Union

from . import key_store
from .algo import (
    CHALLENGE_DATA,
    IV_SIZE,
    NODE_KEY_SIZE,
    RSA_BITS,
    RSA_EXPONENT,
    ChallengeMismatch,
    DecryptionFailed,
    InvalidPassword,
    MissingPassword,
    NodeKeyLengthMismatch,
    NodeKeyNotInitialized,
    NotInitialized,
    calculate_login_password,
    calculate_login_password_compat,
    calculate_master_key,
    calculate_private_key_wrap_key,
    decrypt_aes,
    encrypt_aes,
    from_base64,
    random_bytes,
    to_base64,
)
from .locked import DekInfo, LockedKeychain, LockedRsaKeys
from .rsa_backend import LegacyRsaBackend, NativeRsaBackend, RsaBackend

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DekParams:
    """Raw ``iv`` and ``salt`` locking the private key."""
    iv: bytes
    salt: bytes


@dataclass(frozen=True)
class Session:
    """Everything a ready keychain holds."""
    salt: bytes
    master_key: bytes
    dek_info: DekParams
    backend: RsaBackend
    node_key: bytes

    def __post_init__(self):
        if len(self.node_key) != NODE_KEY_SIZE:
            raise NodeKeyLengthMismatch(
                f"Node key must be {NODE_KEY_SIZE} bytes, got {len(self.node_key)}."
            )


# ---------------------------------------------------------------------------
# Shared orchestration
# ---------------------------------------------------------------------------


class BaseKeychain(abc.ABC):
    """Generate / import / export / change-password protocol."""

    profile_salt_size: int = 32
    dek_salt_size: int = 16
    challenge_data: Optional[str] = None

    def __init__(self, password: Optional[str] = None):
        self.password = password
        self._session: Optional[Session] = None

    def __repr__(self) -> str:
        state = "ready" if self.is_ready else "uninitialized"
        return f"<{type(self).__name__} {state}>"

    @property
    def is_ready(self) -> bool:
        return self._session is not None

    @property
    def salt(self) -> bytes:
        return self._require_session().salt

    @property
    def dek_info(self) -> DekParams:
        return self._require_session().dek_info

    @property
    def backend(self) -> RsaBackend:
        return self._require_session().backend

    def _require_session(self) -> Session:
        if self._session is None:
            raise NotInitialized("The keychain is not correctly initialized.")
        return self._session

    # ----- constructors -----

    @classmethod
    def generate(cls, password: Optional[str]):
        """Create a keychain with fresh salt, RSA keypair and node key."""
        chain = cls(password)
        chain._do_generate()
        return chain

    @classmethod
    def import_keychain(
        cls,
        locked: Union[LockedKeychain, dict],
        password: Optional[str] = None,
    ):
        """
        Unlock a serialized keychain.

        *password* takes precedence over a password embedded in a weak
        export.  An embedded master key is used as is.

        Raises
        ------
        MissingPassword
            No password and no embedded master key.
        InvalidPassword
            The private key cannot be unlocked with the derived key.
        ChallengeMismatch
            Legacy only: the node key does not decrypt the challenge.
        """
        if isinstance(locked, dict):
            locked = LockedKeychain.from_dict(locked)
        chain = cls(password)
        chain._do_import(locked)
        return chain

    @classmethod
    def load_from_storage(
        cls,
        store: key_store.KeyValueStore,
        item_key: str,
        password: str,
    ) -> key_store.LoadResult:
        return key_store.load_keychain(cls, store, item_key, password)

    def store_in_storage(
        self,
        store: key_store.KeyValueStore,
        item_key: str,
        password: str,
    ) -> None:
        """Persist a weak export encrypted under *password*."""
        key_store.store_keychain(self, store, item_key, password)

    # ----- variant hooks -----

    @property
    @abc.abstractmethod
    def backend_class(self) -> Type[RsaBackend]:
        """RSA backend each keychain of this variant owns."""

    def _check_new_password(self, password: Optional[str]) -> None:
        if not password:
            raise InvalidPassword("password must not be empty")

    def _new_node_key(self) -> bytes:
        return random_bytes(NODE_KEY_SIZE)

    # ----- protocol steps -----

    def _do_generate(self) -> None:
        self._check_new_password(self.password)
        salt = random_bytes(self.profile_salt_size)
        master_key = calculate_master_key(self.password, salt)

        backend = self.backend_class()
        backend.generate(RSA_BITS, RSA_EXPONENT)

        dek_info = DekParams(iv=random_bytes(IV_SIZE), salt=random_bytes(self.dek_salt_size))
        self._session = Session(salt, master_key, dek_info, backend, self._new_node_key())
        logger.debug("generated %s", self)

    def _do_import(self, locked: LockedKeychain) -> None:
        # an empty password counts as absent
        password = self.password or locked.password
        salt = from_base64(locked.salt)

        if locked.master_key is not None:
            master_key = from_base64(locked.master_key)
        elif password is None:
            raise MissingPassword("Cannot import this keychain without a password")
        else:
            master_key = calculate_master_key(password, salt)

        dek = locked.rsa_keys.dek_info
        dek_info = DekParams(iv=from_base64(dek.iv), salt=from_base64(dek.salt))

        backend = self.backend_class()
        self._unlock_private_key(backend, locked.rsa_keys.private_key, master_key, dek_info)
        backend.import_public_key(locked.rsa_keys.public_key)
        node_key = backend.unwrap_node_key(locked.node_key)

        if locked.challenge is not None and self.challenge_data is not None:
            self._verify_challenge(node_key, locked.challenge)

        self.password = password
        self._session = Session(salt, master_key, dek_info, backend, node_key)
        logger.debug("imported %s (challenge=%s)", self, locked.challenge is not None)

    @staticmethod
    def _unlock_private_key(
        backend: RsaBackend, text: str, master_key: bytes, dek_info: DekParams
    ) -> None:
        wrap_key = calculate_private_key_wrap_key(master_key, dek_info.salt)
        try:
            pem = decrypt_aes(from_base64(text), wrap_key, dek_info.iv).decode("utf-8")
        except (DecryptionFailed, UnicodeDecodeError) as exc:
            raise InvalidPassword("Cannot unlock the private key: wrong password.") from exc
        backend.import_private_key(pem)

    def _verify_challenge(self, node_key: bytes, challenge: str) -> None:
        try:
            plain = _node_key_decrypt(node_key, challenge)
        except DecryptionFailed as exc:
            raise ChallengeMismatch("Challenge failed.") from exc
        if plain != self.challenge_data.encode("utf-8"):
            raise ChallengeMismatch("Challenge failed.")

    def export(self, weak: bool = False) -> LockedKeychain:
        """
        Serialize the keychain.

        The private key is wrapped under the *current* master key, so a
        password change takes effect here.  ``weak`` embeds the master
        key and password, for trusted local caching only.
        """
        session = self._require_session()
        wrap_key = calculate_private_key_wrap_key(session.master_key, session.dek_info.salt)
        pem = session.backend.export_private_key()
        encrypted, _ = encrypt_aes(pem.encode("utf-8"), wrap_key, session.dek_info.iv)

        locked = LockedKeychain(
            salt=to_base64(session.salt),
            rsa_keys=LockedRsaKeys(
                private_key=to_base64(encrypted),
                public_key=session.backend.export_public_key(),
                dek_info=DekInfo(
                    iv=to_base64(session.dek_info.iv),
                    salt=to_base64(session.dek_info.salt),
                ),
            ),
            node_key=session.backend.wrap_node_key(session.node_key),
        )
        if self.challenge_data is not None:
            locked.challenge = self.encrypt_with_node_key(self.challenge_data)
        if weak:
            locked.master_key = to_base64(session.master_key)
            locked.password = self.password
        logger.debug("exported %s (weak=%s)", self, weak)
        return locked

    def change_password(self, old_password: str, new_password: str) -> None:
        """
        Re-derive the master key from *new_password*.

        Remember to export (or store) the keychain afterwards.
        """
        session = self._require_session()
        if self.password and self.password != old_password:
            raise InvalidPassword("password mismatch")
        master_key = calculate_master_key(new_password, session.salt)
        self._session = replace(session, master_key=master_key)
        self.password = new_password
        logger.debug("password changed for %s", self)

    def calculate_login_password_compat(self, login: str) -> str:
        """Login password for the account API. *login* is case sensitive."""
        if self.password is None:
            raise MissingPassword("password should not be null")
        return calculate_login_password_compat(self.password, login)

    # ----- node key -----

    def _node_key(self) -> bytes:
        if self._session is None:
            raise NodeKeyNotInitialized("nodekey must not be null")
        return self._session.node_key

    def get_unencrypted_node_key(self) -> str:
        return to_base64(self._node_key())

    def encrypt_with_node_key(self, data: Union[str, bytes]) -> str:
        """AES-CBC with node_key[:16] as key and node_key[16:] as IV; base64 output."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        node_key = self._node_key()
        encrypted, _ = encrypt_aes(data, node_key[:16], node_key[16:])
        return to_base64(encrypted)

    def decrypt_with_node_key(self, data: str) -> bytes:
        return _node_key_decrypt(self._node_key(), data)


def _node_key_decrypt(node_key: bytes, data: str) -> bytes:
    return decrypt_aes(from_base64(data), node_key[:16], node_key[16:])


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------


class Keychain(BaseKeychain):
    """Legacy keychain, compatible with already issued profiles."""

    backend_class = LegacyRsaBackend
    profile_salt_size = 32
    dek_salt_size = 16
    challenge_data = CHALLENGE_DATA

    def _check_new_password(self, password: Optional[str]) -> None:
        if password is None:
            raise InvalidPassword("password must not be null")

    def _new_node_key(self) -> bytes:
        # 32 base64 characters, used as raw key bytes
        return to_base64(random_bytes(24)).encode("ascii")

    def calculate_login_password(self) -> str:
        """Older login password; not accepted by the current account API."""
        if self.password is None:
            raise MissingPassword("password should not be null")
        return calculate_login_password(self.password)


class NativeKeychain(BaseKeychain):
    """Keychain on the provider backend (PKCS#8, RSA-OAEP)."""

    backend_class = NativeRsaBackend
    profile_salt_size = 96
    dek_salt_size = 8
