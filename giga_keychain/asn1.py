"""
DER transcoder between PKCS#1 ``RSAPrivateKey`` and PKCS#8 ``PrivateKeyInfo``.

Only the structures an RSA private key needs are handled::

    RSAPrivateKey ::= SEQUENCE {
        version, modulus, publicExponent, privateExponent,
        prime1, prime2, exponent1, exponent2, coefficient   INTEGER }

    PrivateKeyInfo ::= SEQUENCE {
        version              INTEGER (0),
        algorithm            SEQUENCE { OID 1.2.840.113549.1.1.1, NULL },
        privateKey           OCTET STRING (RSAPrivateKey) }

Integer contents are carried as raw big-endian byte strings, sign byte
included, so a read followed by a write reproduces the input bytes.
"""

from __future__ import annotations

from dataclasses import astuple, dataclass, fields
from typing import List, Tuple

from .algo import MalformedAsn1, SequenceTooLong, UnexpectedTag, UnsupportedKeyFormat

TAG_INTEGER = 0x02
TAG_OCTET_STRING = 0x04
TAG_NULL = 0x05
TAG_OID = 0x06
TAG_SEQUENCE = 0x30  # SEQUENCE (16) | constructed (32)

RSA_ENCRYPTION_OID = "1.2.840.113549.1.1.1"

MAX_LENGTH = 0xFFFFFF


@dataclass(frozen=True)
class RsaPrivateComponents:
    """The nine INTEGER fields of a PKCS#1 private key, as DER contents."""

    version: bytes
    n: bytes
    e: bytes
    d: bytes
    p: bytes
    q: bytes
    dmodp: bytes
    dmodq: bytes
    iqmp: bytes

    @classmethod
    def from_ints(cls, n, e, d, p, q, dmodp, dmodq, iqmp, version=0) -> "RsaPrivateComponents":
        return cls(*(int_to_der_bytes(v) for v in (version, n, e, d, p, q, dmodp, dmodq, iqmp)))

    def to_ints(self) -> Tuple[int, ...]:
        """Integer values in field order (version first)."""
        return tuple(int.from_bytes(v, "big", signed=True) for v in astuple(self))


_FIELD_NAMES = {
    "version": "version",
    "n": "modulus",
    "e": "public exponent",
    "d": "private exponent",
    "p": "prime1",
    "q": "prime2",
    "dmodp": "exponent1",
    "dmodq": "exponent2",
    "iqmp": "iqmp",
}


def int_to_der_bytes(value: int) -> bytes:
    """Minimal two's complement big-endian encoding of *value*."""
    size = value.bit_length() // 8 + 1
    return value.to_bytes(size, "big", signed=True)


def encode_length(length: int) -> bytes:
    """Short form up to 0x7F, otherwise 0x81..0x83 followed by the length."""
    if length < 0:
        raise MalformedAsn1(f"Negative length {length}")
    if length <= 0x7F:
        return bytes([length])
    if length > MAX_LENGTH:
        raise SequenceTooLong(f"Length {length} does not fit in 3 bytes")
    body = length.to_bytes((length.bit_length() + 7) // 8, "big")
    return bytes([0x80 | len(body)]) + body


def _encode_base128(value: int) -> bytes:
    out = [value & 0x7F]
    value >>= 7
    while value:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    return bytes(reversed(out))


def encode_oid(oid: str) -> bytes:
    """Contents octets of a dotted OID string."""
    try:
        arcs = [int(part, 10) for part in oid.split(".")]
    except ValueError as exc:
        raise MalformedAsn1(f"Bad OID {oid!r}") from exc
    if len(arcs) < 2 or arcs[0] > 2 or (arcs[0] < 2 and arcs[1] >= 40):
        raise MalformedAsn1(f"Bad OID {oid!r}")
    out = _encode_base128(40 * arcs[0] + arcs[1])
    for arc in arcs[2:]:
        if arc < 0:
            raise MalformedAsn1(f"Bad OID {oid!r}")
        out += _encode_base128(arc)
    return out


def decode_oid(data: bytes) -> str:
    """Dotted string from OID contents octets."""
    arcs: List[int] = []
    value = 0
    pending = False
    for b in data:
        value = (value << 7) | (b & 0x7F)
        pending = bool(b & 0x80)
        if not pending:
            arcs.append(value)
            value = 0
    if pending or not arcs:
        raise MalformedAsn1("Truncated OID")
    first = arcs.pop(0)
    head = [min(first // 40, 2)]
    head.append(first - 40 * head[0])
    return ".".join(str(a) for a in head + arcs)


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------


class PkcsReader:
    """Sequential DER reader over one buffer."""

    def __init__(self, buf: bytes):
        self.buf = bytes(buf)
        self.offset = 0

    def read_length(self) -> int:
        if self.offset >= len(self.buf):
            raise MalformedAsn1("Missing length byte")
        first = self.buf[self.offset]
        self.offset += 1
        if not first & 0x80:
            return first
        count = first & 0x7F
        if count == 0:
            raise MalformedAsn1("Indefinite length not supported")
        if count > 4:
            raise MalformedAsn1(f"Length encoding too long ({count} bytes)")
        if len(self.buf) - self.offset < count:
            raise MalformedAsn1("Truncated length")
        length = int.from_bytes(self.buf[self.offset:self.offset + count], "big")
        self.offset += count
        return length

    def read_header(self, expected: int, field: str) -> int:
        """Consume a tag and length; returns the content length."""
        if self.offset >= len(self.buf):
            raise MalformedAsn1(f"Missing {field}")
        tag = self.buf[self.offset]
        if tag != expected:
            raise UnexpectedTag(field, tag, expected)
        self.offset += 1
        length = self.read_length()
        if len(self.buf) - self.offset < length:
            raise MalformedAsn1(f"{field} runs past the end of the buffer")
        return length

    def read_value(self, expected: int, field: str) -> bytes:
        length = self.read_header(expected, field)
        value = self.buf[self.offset:self.offset + length]
        self.offset += length
        return value

    def read_integer(self, field: str) -> bytes:
        return self.read_value(TAG_INTEGER, field)

    def read_pkcs1_rsa_private(self) -> RsaPrivateComponents:
        self.read_header(TAG_SEQUENCE, "RSAPrivateKey")
        values = [self.read_integer(_FIELD_NAMES[f.name]) for f in fields(RsaPrivateComponents)]
        return RsaPrivateComponents(*values)

    def read_pkcs8_rsa_private(self) -> RsaPrivateComponents:
        self.read_header(TAG_SEQUENCE, "PrivateKeyInfo")
        self.read_integer("PrivateKeyInfo version")
        algorithm_end = self.read_header(TAG_SEQUENCE, "AlgorithmIdentifier") + self.offset
        oid = decode_oid(self.read_value(TAG_OID, "algorithm"))
        if oid != RSA_ENCRYPTION_OID:
            raise UnsupportedKeyFormat(f"Not an RSA private key (algorithm {oid})")
        self.offset = algorithm_end
        inner = self.read_value(TAG_OCTET_STRING, "privateKey")
        return PkcsReader(inner).read_pkcs1_rsa_private()


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


class PkcsWriter:
    """
    Append-only DER builder.

    ``start_sequence`` writes the tag and remembers where the length
    goes; ``end_sequence`` inserts the length bytes there once the
    contents are known.
    """

    def __init__(self):
        self.data = bytearray()
        self.seq: List[int] = []

    def start_sequence(self, tag: int = TAG_SEQUENCE) -> None:
        self.data.append(tag)
        self.seq.append(len(self.data))

    def end_sequence(self) -> None:
        if not self.seq:
            raise MalformedAsn1("No open sequence")
        start = self.seq.pop()
        self.data[start:start] = encode_length(len(self.data) - start)

    def write_buffer(self, buf: bytes, tag: int) -> None:
        self.data.append(tag)
        self.data += encode_length(len(buf))
        self.data += buf

    def write_oid(self, oid: str) -> None:
        self.write_buffer(encode_oid(oid), TAG_OID)

    def write_null(self) -> None:
        self.data += bytes([TAG_NULL, 0])

    def write_rsa_components(self, key: RsaPrivateComponents) -> None:
        self.start_sequence()
        for value in astuple(key):
            self.write_buffer(value, TAG_INTEGER)
        self.end_sequence()

    def write_rsa_private_key(self, key: RsaPrivateComponents) -> bytes:
        """PKCS#8 ``PrivateKeyInfo`` around the PKCS#1 key."""
        self.start_sequence()
        self.write_buffer(b"\x00", TAG_INTEGER)

        self.start_sequence()
        self.write_oid(RSA_ENCRYPTION_OID)
        self.write_null()
        self.end_sequence()

        self.start_sequence(TAG_OCTET_STRING)
        self.write_rsa_components(key)
        self.end_sequence()

        self.end_sequence()
        return self.finish()

    def write_pkcs1_private_key(self, key: RsaPrivateComponents) -> bytes:
        self.write_rsa_components(key)
        return self.finish()

    def finish(self) -> bytes:
        if self.seq:
            raise MalformedAsn1(f"{len(self.seq)} sequence(s) left open")
        out = bytes(self.data)
        self.data = bytearray()
        return out


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------


def read_rsa_private_key(buf: bytes) -> RsaPrivateComponents:
    """Parse a PKCS#1 ``RSAPrivateKey``."""
    return PkcsReader(buf).read_pkcs1_rsa_private()


def read_pkcs8_private_key(buf: bytes) -> RsaPrivateComponents:
    """Parse a PKCS#8 ``PrivateKeyInfo`` holding an RSA key."""
    return PkcsReader(buf).read_pkcs8_rsa_private()


def write_pkcs8_private_key(components: RsaPrivateComponents) -> bytes:
    return PkcsWriter().write_rsa_private_key(components)


def write_rsa_private_key(components: RsaPrivateComponents) -> bytes:
    """Bare PKCS#1 encoding of *components*."""
    return PkcsWriter().write_pkcs1_private_key(components)


def pkcs1_to_pkcs8(der: bytes) -> bytes:
    return write_pkcs8_private_key(read_rsa_private_key(der))
