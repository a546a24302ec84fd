"""BIP32 extended public keys — parsing and non-hardened child derivation.

Only the public half of BIP32 is needed to scan a wallet's addresses:
- Extended key deserialization (xpub/tpub and the SLIP-132 ypub/zpub/upub/vpub
  variants, Base58Check)
- Public child key derivation (``CKDpub``)
- Compressed public key encoding on secp256k1
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import struct
from dataclasses import dataclass
from typing import Self

from ecdsa import SECP256k1
from ecdsa.ellipticcurve import INFINITY, Point

from btc_explorer.bitcoin.crypto import hash160, sha256d

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_CURVE = SECP256k1
_CURVE_ORDER = _CURVE.order
_CURVE_GEN = _CURVE.generator

HARDENED_OFFSET = 0x80000000


class KeyNetwork(enum.StrEnum):
    """Network family encoded in the version bytes."""

    MAINNET = "mainnet"
    TESTNET = "testnet"


# Public version bytes -> network family
_PUBLIC_VERSIONS: dict[bytes, KeyNetwork] = {
    b"\x04\x88\xb2\x1e": KeyNetwork.MAINNET,  # xpub
    b"\x04\x9d\x7c\xb2": KeyNetwork.MAINNET,  # ypub
    b"\x04\xb2\x47\x46": KeyNetwork.MAINNET,  # zpub
    b"\x04\x35\x87\xcf": KeyNetwork.TESTNET,  # tpub
    b"\x04\x4a\x52\x62": KeyNetwork.TESTNET,  # upub
    b"\x04\x5f\x1c\xf6": KeyNetwork.TESTNET,  # vpub
}


# ---------------------------------------------------------------------------
# Base58Check encoding / decoding
# ---------------------------------------------------------------------------

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def base58_encode(payload: bytes) -> str:
    """Encode raw bytes to Base58 (no checksum)."""
    n = int.from_bytes(payload, "big")
    result: list[str] = []
    while n > 0:
        n, remainder = divmod(n, 58)
        result.append(_B58_ALPHABET[remainder])
    # Leading zero bytes become leading '1's
    pad = len(payload) - len(payload.lstrip(b"\x00"))
    return _B58_ALPHABET[0] * pad + "".join(reversed(result))


def base58_decode(s: str) -> bytes:
    """Decode a Base58 string to raw bytes (no checksum).

    Raises:
        ValueError: If the string contains a non-Base58 character.
    """
    n = 0
    for char in s:
        digit = _B58_ALPHABET.find(char)
        if digit < 0:
            msg = f"Invalid Base58 character: {char!r}"
            raise ValueError(msg)
        n = n * 58 + digit
    result = n.to_bytes((n.bit_length() + 7) // 8, "big") if n > 0 else b""
    pad = len(s) - len(s.lstrip(_B58_ALPHABET[0]))
    return b"\x00" * pad + result


def base58check_encode(payload: bytes) -> str:
    """Encode bytes with a 4-byte SHA256d checksum (Base58Check)."""
    return base58_encode(payload + sha256d(payload)[:4])


def base58check_decode(s: str) -> bytes:
    """Decode a Base58Check string, verifying the checksum.

    Raises:
        ValueError: If the checksum is invalid.
    """
    raw = base58_decode(s)
    if len(raw) < 4:
        msg = "Base58Check string too short"
        raise ValueError(msg)
    payload, checksum = raw[:-4], raw[-4:]
    if checksum != sha256d(payload)[:4]:
        msg = "Base58Check checksum mismatch"
        raise ValueError(msg)
    return payload


# ---------------------------------------------------------------------------
# Point encoding
# ---------------------------------------------------------------------------


def decompress_public_key(compressed: bytes) -> Point:
    """Decode a 33-byte SEC compressed public key to a curve point.

    Raises:
        ValueError: If the encoding is malformed or not on the curve.
    """
    if len(compressed) != 33 or compressed[0] not in (0x02, 0x03):
        msg = "Invalid compressed public key"
        raise ValueError(msg)
    x = int.from_bytes(compressed[1:], "big")
    p = _CURVE.curve.p()
    if x >= p:
        msg = "Public key x coordinate out of range"
        raise ValueError(msg)
    # y^2 = x^3 + 7  (mod p)  for secp256k1
    y_sq = (pow(x, 3, p) + 7) % p
    y = pow(y_sq, (p + 1) // 4, p)
    if (y * y) % p != y_sq:
        msg = "Public key is not on secp256k1"
        raise ValueError(msg)
    if (y % 2 == 0) != (compressed[0] == 0x02):
        y = p - y
    return Point(_CURVE.curve, x, y)


def compress_point(point: Point) -> bytes:
    """Encode a curve point as a 33-byte compressed public key."""
    prefix = b"\x02" if point.y() % 2 == 0 else b"\x03"
    return prefix + point.x().to_bytes(32, "big")


# ---------------------------------------------------------------------------
# BIP32 Extended Key
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExtendedKey:
    """A BIP32 extended public key.

    Attributes:
        key: 33-byte compressed public key.
        chain_code: 32-byte chain code.
        depth: Derivation depth (0 for master).
        parent_fingerprint: First 4 bytes of parent's Hash160(pubkey).
        child_index: Index used in derivation.
        version: 4 version bytes the key was serialized with.
    """

    key: bytes
    chain_code: bytes
    depth: int
    parent_fingerprint: bytes
    child_index: int
    version: bytes = b"\x04\x88\xb2\x1e"

    @property
    def network(self) -> KeyNetwork:
        return _PUBLIC_VERSIONS[self.version]

    # -- Serialization -----------------------------------------------------

    def serialize(self) -> bytes:
        """Serialize to the 78-byte BIP32 format."""
        return (
            self.version
            + struct.pack("B", self.depth)
            + self.parent_fingerprint
            + struct.pack(">I", self.child_index)
            + self.chain_code
            + self.key
        )

    def to_string(self) -> str:
        """Encode as a Base58Check string with the original version bytes."""
        return base58check_encode(self.serialize())

    @classmethod
    def from_string(cls, s: str) -> Self:
        """Decode a Base58Check extended public key.

        Raises:
            ValueError: Bad checksum or length, private or unknown version
                bytes, or a public key that is not on the curve.
        """
        data = base58check_decode(s.strip())
        if len(data) != 78:
            msg = f"Invalid extended key length: {len(data)}"
            raise ValueError(msg)
        version = data[:4]
        if version not in _PUBLIC_VERSIONS:
            msg = f"Unsupported extended public key version: {version.hex()}"
            raise ValueError(msg)
        key = data[45:78]
        decompress_public_key(key)
        return cls(
            key=key,
            chain_code=data[13:45],
            depth=data[4],
            parent_fingerprint=data[5:9],
            child_index=struct.unpack(">I", data[9:13])[0],
            version=version,
        )

    # -- Derivation --------------------------------------------------------

    def fingerprint(self) -> bytes:
        """First 4 bytes of Hash160(compressed pubkey)."""
        return hash160(self.key)[:4]

    def derive_child(self, index: int) -> ExtendedKey:
        """Derive the non-hardened child at *index*.

        Raises:
            ValueError: If a hardened index is requested or the derived key
                        is invalid.
        """
        if not 0 <= index < HARDENED_OFFSET:
            msg = "Cannot derive hardened child from public key"
            raise ValueError(msg)

        data = self.key + struct.pack(">I", index)
        digest = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        il, ir = digest[:32], digest[32:]

        il_int = int.from_bytes(il, "big")
        if il_int >= _CURVE_ORDER:
            msg = "Derived key is invalid (il >= curve order)"
            raise ValueError(msg)

        child_point = decompress_public_key(self.key) + _CURVE_GEN * il_int
        if child_point == INFINITY:
            msg = "Derived key is invalid (point at infinity)"
            raise ValueError(msg)
        return ExtendedKey(
            key=compress_point(child_point),
            chain_code=ir,
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint(),
            child_index=index,
            version=self.version,
        )

    def derive_path(self, *indices: int) -> ExtendedKey:
        key = self
        for index in indices:
            key = key.derive_child(index)
        return key
