"""
Giga Keychain Primitives
========================

Symmetric building blocks shared by every keychain variant:
- Base64 codec (standard alphabet, strict padding on decode)
- PBKDF2-HMAC-SHA256 key derivation and the fixed protocol derivations
- AES-CBC envelope encryption (PKCS#7 padding)

Uses the ``cryptography`` library for every primitive.

Derivation table
----------------
::

    master key        PBKDF2(password, UTF8(b64(profile_salt)), 1024, 128 bits)
    private wrap key  PBKDF2(b64(master_key), dek_salt,         1024, 128 bits)
    login password    PBKDF2(password, UTF8(login + suffix),    1024, 128 bits)
    file key / id     PBKDF2(lower(sha1), UTF8(constant A|B),     32, 144 bits)

The master key salt is the *base64 text* of the profile salt, not the
raw bytes.  Keychains issued by other clients depend on it.
"""

from __future__ import annotations

import base64
import binascii
import os
from typing import Optional, Tuple, Union

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PBKDF2_ITERATIONS: int = 1024
MASTER_KEY_BITS: int = 128
FILE_KDF_ITERATIONS: int = 32
FILE_KDF_BITS: int = 144
LEGACY_LOGIN_ITERATIONS: int = 512
LEGACY_LOGIN_BITS: int = 192

AES_BLOCK_SIZE: int = 16
IV_SIZE: int = 16          # AES-CBC IV
NODE_KEY_SIZE: int = 32    # 16 bytes AES key || 16 bytes IV
NODE_KEY_B64_THRESHOLD: int = 44  # len(b64(32 bytes))

RSA_BITS: int = 1024
RSA_EXPONENT: int = 0x10001

DEK_TYPE: str = "AES-128-CBC:1024"
CHALLENGE_DATA: str = "dE9yL9kF6nU1zJ0fC4tQ6zY5lO2mN4hE"

LOGIN_SALT_SUFFIX: str = '"D<?4\'V%Fh(U,9SjdO4v)|1mJV31]#;W'
LEGACY_LOGIN_SALT: str = "uh7rPXycB9uxLtRHoLFo1OwOyyHr+UTg"
FILE_KEY_SALT: str = '={w|>6L:{Xn;HAKf^w=,fgSX}sfw)`hxopaqk.6Hg\';w23"sd+b07`LSOGqz#-)['
FILE_ID_SALT: str = "5%;[yw\"XG2&Om#i*T$v.B2'Ae/VST4t#u$@pxsauO,H){`hUd7Xu@4q4WCc<>'ie"

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class KeychainError(Exception):
    """Base exception for all keychain errors."""


class InvalidParameters(KeychainError):
    """A primitive was called with unusable parameters."""


class EncodingError(KeychainError):
    """Text is not valid, correctly padded base64."""


class InvalidPassword(KeychainError):
    """Password is missing, wrong, or does not match the held one."""


class MissingKeyMaterial(KeychainError):
    """A field required by the operation is absent."""


class MissingPassword(InvalidPassword, MissingKeyMaterial):
    """Neither a password nor an embedded master key is available."""


class NotInitialized(MissingKeyMaterial):
    """The keychain has not been generated or imported."""


class KeyNotInitialized(MissingKeyMaterial):
    """The RSA backend holds no key for this operation."""


class NodeKeyNotInitialized(MissingKeyMaterial):
    """No node key is available."""


class ChallengeMismatch(KeychainError):
    """The decrypted challenge differs from the expected plaintext."""


class NodeKeyLengthMismatch(KeychainError):
    """The unwrapped node key is not 32 bytes long."""


class DecryptionFailed(KeychainError):
    """Wrong key, bad padding, or malformed ciphertext."""


class UnsupportedKeyFormat(KeychainError):
    """Key material is neither PKCS#1 nor PKCS#8 (or SPKI for public keys)."""


class Asn1Error(KeychainError):
    """Structural DER error."""


class MalformedAsn1(Asn1Error):
    """Truncated data or an unsupported length encoding."""


class UnexpectedTag(Asn1Error):
    """A TLV carries a different tag than the structure requires."""

    def __init__(self, field: str, tag: int, expected: int):
        super().__init__(f"{field} is not tagged 0x{expected:02x}: 0x{tag:02x}")
        self.field = field
        self.tag = tag
        self.expected = expected


class SequenceTooLong(Asn1Error):
    """A length does not fit in three length bytes."""


# ---------------------------------------------------------------------------
# KeychainEngine
# ---------------------------------------------------------------------------


class KeychainEngine:
    """
    Symmetric primitives used by the keychain protocol.

    All public methods are **static** — the class serves as a logical
    namespace, mirrored by module-level aliases below.
    """

    # ------------------------------------------------------------------
    # Random material & base64
    # ------------------------------------------------------------------

    @staticmethod
    def random_bytes(size: int) -> bytes:
        """Return *size* cryptographically secure random bytes."""
        if size <= 0:
            raise InvalidParameters(f"Random size must be positive, got {size}.")
        return os.urandom(size)

    @staticmethod
    def to_base64(data: Union[bytes, bytearray]) -> str:
        """Encode bytes as standard, padded base64 text."""
        return base64.b64encode(bytes(data)).decode("ascii")

    @staticmethod
    def from_base64(text: Union[str, bytes]) -> bytes:
        """
        Decode standard base64.

        Raises
        ------
        EncodingError
            On characters outside the alphabet, incorrect padding or
            a value that is not text.
        """
        if not isinstance(text, (str, bytes)):
            raise EncodingError(f"Base64 input must be str or bytes, not {type(text).__name__}.")
        if isinstance(text, str):
            try:
                text = text.encode("ascii")
            except UnicodeEncodeError as exc:
                raise EncodingError("Base64 text must be ASCII.") from exc
        try:
            return base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise EncodingError(f"Invalid base64 input: {exc}") from exc

    # ------------------------------------------------------------------
    # Key derivation (PBKDF2)
    # ------------------------------------------------------------------

    @staticmethod
    def derive_key(
        password: str,
        salt: bytes,
        iterations: int = PBKDF2_ITERATIONS,
        length: int = MASTER_KEY_BITS,
    ) -> bytes:
        """
        Derive ``length`` bits from *password* with PBKDF2-HMAC-SHA256.

        Parameters
        ----------
        password : str
            UTF-8 encoded before use.
        salt : bytes
            Must not be empty.
        iterations : int
            PBKDF2 round count.
        length : int
            Output size in **bits**, a positive multiple of 8.
        """
        if not salt:
            raise InvalidParameters("Salt must not be empty.")
        if length <= 0 or length % 8:
            raise InvalidParameters(f"Output length must be a positive multiple of 8 bits, got {length}.")
        if iterations <= 0:
            raise InvalidParameters(f"Iterations must be positive, got {iterations}.")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=length // 8,
            salt=bytes(salt),
            iterations=iterations,
        )
        return kdf.derive(password.encode("utf-8"))

    @staticmethod
    def calculate_master_key(password: str, profile_salt: bytes) -> bytes:
        """Master key from the password and the profile salt (base64 text as salt)."""
        salt = KeychainEngine.to_base64(profile_salt).encode("utf-8")
        return KeychainEngine.derive_key(password, salt, PBKDF2_ITERATIONS, MASTER_KEY_BITS)

    @staticmethod
    def calculate_private_key_wrap_key(master_key: bytes, dek_salt: bytes) -> bytes:
        """AES key that locks the serialized RSA private key."""
        return KeychainEngine.derive_key(
            KeychainEngine.to_base64(master_key), dek_salt, PBKDF2_ITERATIONS, MASTER_KEY_BITS
        )

    @staticmethod
    def calculate_login_password_compat(password: str, login: str) -> str:
        """Login password accepted by the account API. *login* is case sensitive."""
        salt = (login + LOGIN_SALT_SUFFIX).encode("utf-8")
        return KeychainEngine.to_base64(
            KeychainEngine.derive_key(password, salt, PBKDF2_ITERATIONS, MASTER_KEY_BITS)
        )

    @staticmethod
    def calculate_login_password(password: str) -> str:
        """Older login password derivation, kept for the legacy keychain."""
        salt = KeychainEngine.from_base64(LEGACY_LOGIN_SALT)
        return KeychainEngine.to_base64(
            KeychainEngine.derive_key(password, salt, LEGACY_LOGIN_ITERATIONS, LEGACY_LOGIN_BITS)
        )

    @staticmethod
    def calculate_file_key(sha1: str) -> str:
        """File key (``fkey``) from the hex SHA-1 of a file."""
        return KeychainEngine._file_secret(sha1, FILE_KEY_SALT)

    @staticmethod
    def calculate_file_id(sha1: str) -> str:
        """File id (``fid``) from the hex SHA-1 of a file."""
        return KeychainEngine._file_secret(sha1, FILE_ID_SALT)

    @staticmethod
    def _file_secret(sha1: str, constant: str) -> str:
        if not sha1:
            raise InvalidParameters("SHA-1 digest must not be empty.")
        derived = KeychainEngine.derive_key(
            sha1.lower(), constant.encode("utf-8"), FILE_KDF_ITERATIONS, FILE_KDF_BITS
        )
        return KeychainEngine.to_base64(derived)

    # ------------------------------------------------------------------
    # AES-CBC envelope
    # ------------------------------------------------------------------

    @staticmethod
    def encrypt_aes(
        plaintext: bytes,
        key: bytes,
        iv: Optional[bytes] = None,
    ) -> Tuple[bytes, bytes]:
        """
        Encrypt *plaintext* with AES-CBC and PKCS#7 padding.

        A random 16-byte IV is drawn when *iv* is omitted.

        Returns
        -------
        (ciphertext, iv) : tuple[bytes, bytes]
        """
        if iv is None:
            iv = os.urandom(IV_SIZE)
        try:
            cipher = Cipher(algorithms.AES(bytes(key)), modes.CBC(bytes(iv)))
        except ValueError as exc:
            raise InvalidParameters(f"Bad AES key or IV: {exc}") from exc
        padder = padding.PKCS7(AES_BLOCK_SIZE * 8).padder()
        padded = padder.update(bytes(plaintext)) + padder.finalize()
        encryptor = cipher.encryptor()
        return encryptor.update(padded) + encryptor.finalize(), bytes(iv)

    @staticmethod
    def decrypt_aes(ciphertext: bytes, key: bytes, iv: bytes) -> bytes:
        """
        Decrypt a blob produced by :meth:`encrypt_aes`.

        Raises
        ------
        DecryptionFailed
            On a wrong length, bad padding, or unusable key / IV.
        """
        try:
            cipher = Cipher(algorithms.AES(bytes(key)), modes.CBC(bytes(iv)))
            decryptor = cipher.decryptor()
            padded = decryptor.update(bytes(ciphertext)) + decryptor.finalize()
            unpadder = padding.PKCS7(AES_BLOCK_SIZE * 8).unpadder()
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as exc:
            raise DecryptionFailed(f"AES-CBC decryption failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Module-level convenience functions
# ---------------------------------------------------------------------------

_engine = KeychainEngine

random_bytes = _engine.random_bytes
to_base64 = _engine.to_base64
from_base64 = _engine.from_base64

derive_key = _engine.derive_key
calculate_master_key = _engine.calculate_master_key
calculate_private_key_wrap_key = _engine.calculate_private_key_wrap_key
calculate_login_password_compat = _engine.calculate_login_password_compat
calculate_login_password = _engine.calculate_login_password
calculate_file_key = _engine.calculate_file_key
calculate_file_id = _engine.calculate_file_id

encrypt_aes = _engine.encrypt_aes
decrypt_aes = _engine.decrypt_aes
