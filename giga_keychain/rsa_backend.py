"""
Giga Keychain RSA Backends
==========================

Two owners of the keychain RSA keypair behind one contract:

  1. Legacy — keys held as bignums (``RSAPrivateNumbers``), PKCS#1
     serialization through :mod:`giga_keychain.asn1`, node key wrapped
     with RSA PKCS#1 v1.5 over its base64 text.
  2. Native — provider key objects, PKCS#8 / SPKI serialization,
     node key wrapped with RSA-OAEP (SHA-256).

Serialized keys are exchanged as "PEM strings": the base64 body of the
DER encoding.  Readers also accept fully armored PEM text.
"""

from __future__ import annotations

import abc
import logging
import textwrap
from typing import Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.rsa import (
    RSAPrivateKey,
    RSAPublicKey,
)

from . import asn1
from .algo import (
    NODE_KEY_B64_THRESHOLD,
    NODE_KEY_SIZE,
    RSA_BITS,
    RSA_EXPONENT,
    Asn1Error,
    DecryptionFailed,
    EncodingError,
    KeyNotInitialized,
    NodeKeyLengthMismatch,
    UnsupportedKeyFormat,
    from_base64,
    to_base64,
)

logger = logging.getLogger(__name__)

OAEP_SHA256 = asym_padding.OAEP(
    mgf=asym_padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)

# ---------------------------------------------------------------------------
# PEM helpers
# ---------------------------------------------------------------------------


def pem_body(text: str) -> str:
    """Strip armor lines and whitespace, leaving the base64 body."""
    lines = [line.strip() for line in text.strip().splitlines()]
    return "".join(line for line in lines if line and not line.startswith("-----"))


def armor(der: bytes, label: str) -> str:
    """Wrap DER bytes as PEM text with 64-character lines."""
    body = "\n".join(textwrap.wrap(to_base64(der), 64))
    return f"-----BEGIN {label}-----\n{body}\n-----END {label}-----\n"


def _pem_to_der(text: str) -> bytes:
    if not isinstance(text, str):
        raise UnsupportedKeyFormat(f"Key text must be str, not {type(text).__name__}.")
    try:
        return from_base64(pem_body(text))
    except EncodingError as exc:
        raise UnsupportedKeyFormat("Key text is not base64 DER.") from exc


def _encode(der: bytes, label: str, armored: bool) -> str:
    return armor(der, label) if armored else to_base64(der)


def _load_spki(der: bytes) -> RSAPublicKey:
    try:
        key = serialization.load_der_public_key(der)
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise UnsupportedKeyFormat("Public key is not X.509 SubjectPublicKeyInfo.") from exc
    if not isinstance(key, RSAPublicKey):
        raise UnsupportedKeyFormat("SubjectPublicKeyInfo does not contain an RSA key.")
    return key


def _spki(key: RSAPublicKey) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class RsaBackend(abc.ABC):
    """Owns one RSA keypair; never shared between keychains."""

    name = "rsa"

    @abc.abstractmethod
    def generate(self, bits: int = RSA_BITS, exponent: int = RSA_EXPONENT) -> None:
        """Replace the held keypair with a fresh one."""

    @property
    @abc.abstractmethod
    def has_private_key(self) -> bool:
        ...

    @property
    @abc.abstractmethod
    def has_public_key(self) -> bool:
        ...

    @abc.abstractmethod
    def import_private_key(self, text: str) -> None:
        """Load a PKCS#8 or PKCS#1 private key given as PEM text."""

    @abc.abstractmethod
    def export_private_key(self) -> str:
        ...

    @abc.abstractmethod
    def import_public_key(self, text: str) -> None:
        ...

    @abc.abstractmethod
    def export_public_key(self) -> str:
        ...

    @abc.abstractmethod
    def wrap_node_key(self, node_key: bytes) -> str:
        """Encrypt the node key under the public key; base64 output."""

    @abc.abstractmethod
    def unwrap_node_key(self, wrapped: str) -> bytes:
        """Decrypt a wrapped node key; always returns exactly 32 bytes."""

    def _require_private(self) -> None:
        if not self.has_private_key:
            raise KeyNotInitialized(f"{self.name} backend holds no private key.")

    def _require_public(self) -> None:
        if not self.has_public_key:
            raise KeyNotInitialized(f"{self.name} backend holds no public key.")


def _check_node_key(node_key: bytes) -> bytes:
    if len(node_key) != NODE_KEY_SIZE:
        raise NodeKeyLengthMismatch(
            f"Cannot import nodeKey: length {NODE_KEY_SIZE} != {len(node_key)}"
        )
    return node_key


# ---------------------------------------------------------------------------
# Legacy (bignum) backend
# ---------------------------------------------------------------------------


class LegacyRsaBackend(RsaBackend):
    """RSA keypair stored as integers, PKCS#1 v1.5 node key wrapping."""

    name = "legacy"

    def __init__(self):
        self._private: Optional[rsa.RSAPrivateNumbers] = None
        self._public: Optional[rsa.RSAPublicNumbers] = None
        self._private_key: Optional[RSAPrivateKey] = None

    @property
    def has_private_key(self) -> bool:
        return self._private is not None

    @property
    def has_public_key(self) -> bool:
        return self._public is not None

    @property
    def public_numbers(self) -> Optional[rsa.RSAPublicNumbers]:
        return self._public

    # ----- key material -----

    def generate(self, bits: int = RSA_BITS, exponent: int = RSA_EXPONENT) -> None:
        key = rsa.generate_private_key(public_exponent=exponent, key_size=bits)
        self._private_key = key
        self._private = key.private_numbers()
        self._public = self._private.public_numbers
        logger.debug("generated %d-bit legacy RSA key", bits)

    def set_public(self, n: int, e: int) -> None:
        self._public = rsa.RSAPublicNumbers(e, n)

    def set_private(
        self, n: int, e: int, d: int, p: int, q: int, dp: int, dq: int, qinv: int
    ) -> None:
        """Set the full private key; the values are checked for consistency."""
        public = rsa.RSAPublicNumbers(e, n)
        numbers = rsa.RSAPrivateNumbers(p, q, d, dp, dq, qinv, public)
        try:
            key = numbers.private_key()
        except ValueError as exc:
            raise UnsupportedKeyFormat(f"Inconsistent RSA private key: {exc}") from exc
        self._private, self._public, self._private_key = numbers, public, key

    def _components(self) -> asn1.RsaPrivateComponents:
        self._require_private()
        k = self._private
        return asn1.RsaPrivateComponents.from_ints(
            k.public_numbers.n, k.public_numbers.e, k.d, k.p, k.q, k.dmp1, k.dmq1, k.iqmp
        )

    def _set_components(self, components: asn1.RsaPrivateComponents) -> None:
        version, n, e, d, p, q, dp, dq, qinv = components.to_ints()
        if version != 0:
            raise UnsupportedKeyFormat(f"Unsupported RSAPrivateKey version {version}")
        self.set_private(n, e, d, p, q, dp, dq, qinv)

    # ----- PEM conversions -----

    def private_key_to_pkcs1_pem(self, armored: bool = False) -> str:
        return _encode(asn1.write_rsa_private_key(self._components()), "RSA PRIVATE KEY", armored)

    def private_key_to_pkcs8_pem(self, armored: bool = False) -> str:
        return _encode(asn1.write_pkcs8_private_key(self._components()), "PRIVATE KEY", armored)

    def read_private_key_from_pkcs1_pem(self, pem: str) -> None:
        self._set_components(asn1.read_rsa_private_key(_pem_to_der(pem)))

    def read_private_key_from_pkcs8_pem(self, pem: str) -> None:
        self._set_components(asn1.read_pkcs8_private_key(_pem_to_der(pem)))

    def public_key_to_x509_pem(self, armored: bool = False) -> str:
        self._require_public()
        return _encode(_spki(self._public.public_key()), "PUBLIC KEY", armored)

    def read_public_key_from_x509_pem(self, pem: str) -> None:
        self._public = _load_spki(_pem_to_der(pem)).public_numbers()

    # ----- contract -----

    def import_private_key(self, text: str) -> None:
        try:
            self.read_private_key_from_pkcs8_pem(text)
        except (Asn1Error, UnsupportedKeyFormat):
            try:
                self.read_private_key_from_pkcs1_pem(text)
            except Asn1Error as exc:
                raise UnsupportedKeyFormat("Private key is neither PKCS#8 nor PKCS#1.") from exc

    def export_private_key(self) -> str:
        return self.private_key_to_pkcs1_pem()

    def import_public_key(self, text: str) -> None:
        self.read_public_key_from_x509_pem(text)

    def export_public_key(self) -> str:
        return self.public_key_to_x509_pem()

    def wrap_node_key(self, node_key: bytes) -> str:
        self._require_public()
        payload = to_base64(node_key).encode("ascii")
        return to_base64(self._public.public_key().encrypt(payload, asym_padding.PKCS1v15()))

    def unwrap_node_key(self, wrapped: str) -> bytes:
        """
        Decrypt the node key and peel base64 layers.

        Other clients wrap the raw 32-byte key. This one and some older
        clients wrap base64 text, so decoding repeats while the payload
        is still at least 44 bytes long.
        """
        self._require_private()
        ciphertext = from_base64(wrapped)
        size = (self._private.public_numbers.n.bit_length() + 7) // 8
        if len(ciphertext) > size:
            raise DecryptionFailed("Wrapped node key is longer than the RSA modulus.")
        # leading zero bytes may have been dropped by the encoder
        ciphertext = ciphertext.rjust(size, b"\x00")
        try:
            payload = self._private_key.decrypt(ciphertext, asym_padding.PKCS1v15())
        except ValueError as exc:
            raise DecryptionFailed("NodeKey decryption failed") from exc

        node_key = payload
        try:
            while len(node_key) >= NODE_KEY_B64_THRESHOLD:
                node_key = from_base64(node_key)
        except EncodingError as exc:
            raise DecryptionFailed("NodeKey payload is not base64.") from exc
        return _check_node_key(node_key)


# ---------------------------------------------------------------------------
# Native (provider) backend
# ---------------------------------------------------------------------------


class NativeRsaBackend(RsaBackend):
    """Provider key objects, PKCS#8 / SPKI, RSA-OAEP with SHA-256."""

    name = "native"

    def __init__(self):
        self._private_key: Optional[RSAPrivateKey] = None
        self._public_key: Optional[RSAPublicKey] = None

    @property
    def has_private_key(self) -> bool:
        return self._private_key is not None

    @property
    def has_public_key(self) -> bool:
        return self._public_key is not None

    def generate(self, bits: int = RSA_BITS, exponent: int = RSA_EXPONENT) -> None:
        self._private_key = rsa.generate_private_key(public_exponent=exponent, key_size=bits)
        self._public_key = self._private_key.public_key()
        logger.debug("generated %d-bit native RSA key", bits)

    def import_pkcs8_private_key(self, der: bytes) -> None:
        try:
            key = serialization.load_der_private_key(der, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise UnsupportedKeyFormat("Provider rejected the PKCS#8 private key.") from exc
        if not isinstance(key, RSAPrivateKey):
            raise UnsupportedKeyFormat("PKCS#8 data does not contain an RSA private key.")
        self._private_key = key
        self._public_key = key.public_key()

    def import_pkcs1_private_key(self, der: bytes) -> None:
        """Translate a PKCS#1 key to PKCS#8, then hand it to the provider."""
        self.import_pkcs8_private_key(asn1.pkcs1_to_pkcs8(der))

    def import_private_key(self, text: str) -> None:
        der = _pem_to_der(text)
        try:
            asn1.read_pkcs8_private_key(der)
        except (Asn1Error, UnsupportedKeyFormat):
            try:
                self.import_pkcs1_private_key(der)
            except Asn1Error as exc:
                raise UnsupportedKeyFormat("Private key is neither PKCS#8 nor PKCS#1.") from exc
            logger.debug("translated PKCS#1 private key to PKCS#8")
        else:
            self.import_pkcs8_private_key(der)

    def export_private_key(self) -> str:
        self._require_private()
        der = self._private_key.private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return to_base64(der)

    def import_public_key(self, text: str) -> None:
        self._public_key = _load_spki(_pem_to_der(text))

    def export_public_key(self) -> str:
        self._require_public()
        return to_base64(_spki(self._public_key))

    def wrap_node_key(self, node_key: bytes) -> str:
        self._require_public()
        return to_base64(self._public_key.encrypt(node_key, OAEP_SHA256))

    def unwrap_node_key(self, wrapped: str) -> bytes:
        self._require_private()
        try:
            node_key = self._private_key.decrypt(from_base64(wrapped), OAEP_SHA256)
        except ValueError as exc:
            raise DecryptionFailed("NodeKey decryption failed") from exc
        if len(node_key) > NODE_KEY_B64_THRESHOLD:
            try:
                node_key = from_base64(node_key)
            except EncodingError as exc:
                raise DecryptionFailed("NodeKey payload is not base64.") from exc
        return _check_node_key(node_key)
