"""Password-protected RSA keychain for the Giga file-sharing client."""

import logging

from .algo import (
    Asn1Error,
    ChallengeMismatch,
    DecryptionFailed,
    EncodingError,
    InvalidParameters,
    InvalidPassword,
    KeychainError,
    KeyNotInitialized,
    MalformedAsn1,
    MissingKeyMaterial,
    MissingPassword,
    NodeKeyLengthMismatch,
    NodeKeyNotInitialized,
    NotInitialized,
    SequenceTooLong,
    UnexpectedTag,
    UnsupportedKeyFormat,
    calculate_file_id,
    calculate_file_key,
    derive_key,
    from_base64,
    to_base64,
)
from .key_store import JsonFileStore, KeyValueStore, LoadResult, MemoryStore
from .keychain import BaseKeychain, Keychain, NativeKeychain
from .locked import DekInfo, LockedKeychain, LockedRsaKeys
from .rsa_backend import LegacyRsaBackend, NativeRsaBackend, RsaBackend

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())
