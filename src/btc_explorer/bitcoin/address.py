"""Address encoding — P2PKH (Base58Check) and P2WPKH (bech32).

Segwit v0 addresses follow BIP173: ``hrp`` + ``1`` + 5-bit data + checksum.
"""

from __future__ import annotations

from btc_explorer.bitcoin.crypto import hash160
from btc_explorer.bitcoin.keys import base58check_decode, base58check_encode

# Human-readable parts
HRP_MAINNET = "bc"
HRP_TESTNET = "tb"
HRP_REGTEST = "bcrt"

# P2PKH version bytes
_MAINNET_PUBKEY_HASH = b"\x00"  # 1...
_TESTNET_PUBKEY_HASH = b"\x6f"  # m... or n...

_BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_BECH32_GENERATOR = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)


# ---------------------------------------------------------------------------
# Bech32
# ---------------------------------------------------------------------------


def _polymod(values: list[int]) -> int:
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i, gen in enumerate(_BECH32_GENERATOR):
            if (top >> i) & 1:
                chk ^= gen
    return chk


def _hrp_expand(hrp: str) -> list[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _convert_bits(data: bytes | list[int], from_bits: int, to_bits: int, *, pad: bool) -> list[int]:
    acc = 0
    bits = 0
    result: list[int] = []
    maxv = (1 << to_bits) - 1
    for value in data:
        if value < 0 or value >> from_bits:
            msg = "Invalid data for bit conversion"
            raise ValueError(msg)
        acc = (acc << from_bits) | value
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            result.append((acc >> bits) & maxv)
    if pad:
        if bits:
            result.append((acc << (to_bits - bits)) & maxv)
    elif bits >= from_bits or ((acc << (to_bits - bits)) & maxv):
        msg = "Invalid padding in bit conversion"
        raise ValueError(msg)
    return result


def bech32_encode(hrp: str, data: list[int]) -> str:
    """Encode 5-bit *data* under *hrp* with a bech32 checksum."""
    values = _hrp_expand(hrp) + data
    polymod = _polymod([*values, 0, 0, 0, 0, 0, 0]) ^ 1
    checksum = [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]
    return hrp + "1" + "".join(_BECH32_CHARSET[d] for d in data + checksum)


def bech32_decode(address: str) -> tuple[str, list[int]]:
    """Split a bech32 string into ``(hrp, data)``, verifying the checksum.

    Raises:
        ValueError: Mixed case, bad characters, or checksum mismatch.
    """
    if address.lower() != address and address.upper() != address:
        msg = "Mixed-case bech32 string"
        raise ValueError(msg)
    address = address.lower()
    pos = address.rfind("1")
    if pos < 1 or pos + 7 > len(address) or len(address) > 90:
        msg = "Invalid bech32 separator position or length"
        raise ValueError(msg)
    hrp = address[:pos]
    try:
        data = [_BECH32_CHARSET.index(c) for c in address[pos + 1 :]]
    except ValueError as exc:
        msg = "Invalid bech32 character"
        raise ValueError(msg) from exc
    if _polymod(_hrp_expand(hrp) + data) != 1:
        msg = "Bech32 checksum mismatch"
        raise ValueError(msg)
    return hrp, data[:-6]


def segwit_address(hrp: str, witness_version: int, program: bytes) -> str:
    """Encode a witness program as a segwit v0 address."""
    return bech32_encode(hrp, [witness_version, *_convert_bits(program, 8, 5, pad=True)])


def decode_segwit_address(address: str) -> tuple[str, int, bytes]:
    """Return ``(hrp, witness_version, program)`` for a v0 segwit address."""
    hrp, data = bech32_decode(address)
    if not data or data[0] != 0:
        msg = "Only witness version 0 is supported"
        raise ValueError(msg)
    program = bytes(_convert_bits(data[1:], 5, 8, pad=False))
    if len(program) not in (20, 32):
        msg = f"Invalid witness program length: {len(program)}"
        raise ValueError(msg)
    return hrp, data[0], program


# ---------------------------------------------------------------------------
# Address helpers
# ---------------------------------------------------------------------------


def pubkey_to_p2wpkh(pubkey: bytes, hrp: str = HRP_MAINNET) -> str:
    """Generate a native segwit P2WPKH address from a compressed public key.

    Raises:
        ValueError: If *pubkey* is not a 33-byte compressed key.
    """
    if len(pubkey) != 33:
        msg = "P2WPKH requires a compressed public key"
        raise ValueError(msg)
    return segwit_address(hrp, 0, hash160(pubkey))


def pubkey_to_p2pkh(pubkey: bytes, *, testnet: bool = False) -> str:
    """Generate a legacy P2PKH address from a public key."""
    version = _TESTNET_PUBKEY_HASH if testnet else _MAINNET_PUBKEY_HASH
    return base58check_encode(version + hash160(pubkey))


def validate_address(address: str) -> bool:
    """Check whether *address* is a well-formed P2PKH or segwit v0 address."""
    try:
        if address[:2].lower() in ("bc", "tb"):
            decode_segwit_address(address)
            return True
        payload = base58check_decode(address)
    except (ValueError, IndexError):
        return False
    return len(payload) == 21
