"""
Recovery key codec.

The operator-supplied recovery key is the Matrix base58 form printed by
Element ("EsTc ..."): header bytes 0x8B 0x01, the 32-byte private key and a
parity byte equal to the XOR of everything before it.  Grouping spaces and
dashes are ignored.  Unpadded base64 of the raw 32 bytes is accepted too.
"""

import base64
import binascii

from parley.e2ee.types import RecoveryKeyError

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

_HEADER = bytes([0x8B, 0x01])
_PRIVATE_KEY_LEN = 32
_TOTAL_LEN = len(_HEADER) + _PRIVATE_KEY_LEN + 1


def _parity(data: bytes) -> int:
    parity = 0
    for b in data:
        parity ^= b
    return parity


def _b58decode(text: str) -> bytes:
    n = 0
    for char in text:
        n = n * 58 + BASE58_ALPHABET.index(char)
    body = n.to_bytes((n.bit_length() + 7) // 8, "big") if n else b""
    leading_ones = len(text) - len(text.lstrip("1"))
    return b"\x00" * leading_ones + body


def _b58encode(data: bytes) -> str:
    n = int.from_bytes(data, "big")
    out = ""
    while n > 0:
        n, rem = divmod(n, 58)
        out = BASE58_ALPHABET[rem] + out
    leading_zeros = len(data) - len(data.lstrip(b"\x00"))
    return "1" * leading_zeros + out


def decode_recovery_key(key: str) -> bytes:
    """Return the 32-byte backup private key encoded in *key*.

    Raises :class:`RecoveryKeyError` if *key* is neither a valid base58
    recovery key nor base64 of exactly 32 bytes.
    """
    compact = (key or "").replace(" ", "").replace("-", "").strip()
    if not compact:
        raise RecoveryKeyError("recovery key is empty")

    if all(c in BASE58_ALPHABET for c in compact):
        decoded = _b58decode(compact)
        if len(decoded) == _TOTAL_LEN and decoded.startswith(_HEADER):
            if _parity(decoded[:-1]) != decoded[-1]:
                raise RecoveryKeyError("recovery key parity check failed")
            return decoded[len(_HEADER):len(_HEADER) + _PRIVATE_KEY_LEN]

    try:
        raw = base64.b64decode(compact + "=" * (-len(compact) % 4), validate=True)
    except (binascii.Error, ValueError):
        raw = b""
    if len(raw) == _PRIVATE_KEY_LEN:
        return raw

    raise RecoveryKeyError(
        "recovery key is neither a Matrix base58 key nor base64 of 32 bytes"
    )


def encode_recovery_key(private_key: bytes) -> str:
    """Encode a 32-byte private key as a space-grouped base58 recovery key."""
    if len(private_key) != _PRIVATE_KEY_LEN:
        raise RecoveryKeyError(f"private key must be {_PRIVATE_KEY_LEN} bytes, got {len(private_key)}")
    payload = _HEADER + private_key
    payload += bytes([_parity(payload)])
    encoded = _b58encode(payload)
    return " ".join(encoded[i:i + 4] for i in range(0, len(encoded), 4))
