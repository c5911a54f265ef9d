"""
Locked (serialized) keychain
============================

The only form of a keychain that is ever persisted or transmitted::

    {
      "salt": b64,
      "rsaKeys": {
        "privateKey": b64,          # AES-CBC(PEM text, wrap key)
        "publicKey": b64,           # X.509 SubjectPublicKeyInfo
        "dekInfo": {"type": "AES-128-CBC:1024", "iv": b64, "salt": b64}
      },
      "nodeKey": b64,               # RSA-wrapped node key
      "masterKey": b64,             # weak exports only
      "password": str,              # weak exports only
      "challenge": b64              # legacy keychains only
    }

Field names are part of the compatibility contract.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .algo import DEK_TYPE, MissingKeyMaterial, UnsupportedKeyFormat


def _require(d: Dict[str, Any], key: str, where: str) -> Any:
    try:
        value = d[key]
    except (KeyError, TypeError):
        raise MissingKeyMaterial(f"Locked keychain is missing {where}{key}.") from None
    if value is None:
        raise MissingKeyMaterial(f"Locked keychain is missing {where}{key}.")
    return value


@dataclass
class DekInfo:
    """Parameters locking the private key: base64 ``iv`` and ``salt``."""
    iv: str
    salt: str
    type: str = DEK_TYPE

    def to_dict(self) -> dict:
        return {"type": self.type, "iv": self.iv, "salt": self.salt}

    @classmethod
    def from_dict(cls, d: dict) -> "DekInfo":
        dek_type = d.get("type", DEK_TYPE) if isinstance(d, dict) else DEK_TYPE
        if dek_type != DEK_TYPE:
            raise UnsupportedKeyFormat(f"Unsupported dekInfo type {dek_type!r}.")
        return cls(
            iv=_require(d, "iv", "rsaKeys.dekInfo."),
            salt=_require(d, "salt", "rsaKeys.dekInfo."),
        )


@dataclass
class LockedRsaKeys:
    private_key: str
    public_key: str
    dek_info: DekInfo

    def to_dict(self) -> dict:
        return {
            "privateKey": self.private_key,
            "publicKey": self.public_key,
            "dekInfo": self.dek_info.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "LockedRsaKeys":
        return cls(
            private_key=_require(d, "privateKey", "rsaKeys."),
            public_key=_require(d, "publicKey", "rsaKeys."),
            dek_info=DekInfo.from_dict(_require(d, "dekInfo", "rsaKeys.")),
        )


@dataclass
class LockedKeychain:
    salt: str
    rsa_keys: LockedRsaKeys
    node_key: str
    master_key: Optional[str] = None
    password: Optional[str] = None
    challenge: Optional[str] = None

    @property
    def is_weak(self) -> bool:
        """True when secrets are embedded (local caching only)."""
        return self.master_key is not None or self.password is not None

    def to_dict(self) -> dict:
        d = {
            "salt": self.salt,
            "rsaKeys": self.rsa_keys.to_dict(),
            "nodeKey": self.node_key,
        }
        if self.challenge is not None:
            d["challenge"] = self.challenge
        if self.master_key is not None:
            d["masterKey"] = self.master_key
        if self.password is not None:
            d["password"] = self.password
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "LockedKeychain":
        if not isinstance(d, dict):
            raise MissingKeyMaterial("Locked keychain must be a JSON object.")
        return cls(
            salt=_require(d, "salt", ""),
            rsa_keys=LockedRsaKeys.from_dict(_require(d, "rsaKeys", "")),
            node_key=_require(d, "nodeKey", ""),
            master_key=d.get("masterKey"),
            password=d.get("password"),
            challenge=d.get("challenge"),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str) -> "LockedKeychain":
        return cls.from_dict(json.loads(text))
