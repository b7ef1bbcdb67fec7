"""
SM2 Public-Key Encryption
=========================

Curve arithmetic over ``sm2p256v1`` and the SM2 encryption scheme
(GB/T 32918.4) used to wrap session keys.

Ciphertext layout (``C1 || C2 || C3``, the order BouncyCastle's
``SM2Engine`` emits by default)::

    C1  65 bytes   ephemeral point k*G, uncompressed (04 || x || y)
    C2  len(M)     M XOR KDF(x2 || y2, len(M))
    C3  32 bytes   SM3(x2 || M || y2)

Points are affine ``(x, y)`` tuples; ``None`` is the point at infinity.
SM3 comes from the ``cryptography`` library.
"""

from __future__ import annotations

import hmac
import secrets
from typing import NamedTuple, Optional

from cryptography.hazmat.primitives import hashes

# ---------------------------------------------------------------------------
# Curve parameters (sm2p256v1)
# ---------------------------------------------------------------------------

P: int = 0xFFFFFFFEFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFF00000000FFFFFFFFFFFFFFFF
A: int = 0xFFFFFFFEFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFF00000000FFFFFFFFFFFFFFFC
B: int = 0x28E9FA9E9D9F5E344D5A9E4BCF6509A7F39789F515AB8F92DDBCBD414D940E93
N: int = 0xFFFFFFFEFFFFFFFFFFFFFFFFFFFFFFFF7203DF6B21C6052B53BBF40939D54123
GX: int = 0x32C4AE2C1F1981195F9904466A39C9948FE30BBFF2660BE1715A4589334C74C7
GY: int = 0xBC3736A2F4F6779C59BDCEE36B692153D0A9877CC62A474002DF32E52139F0A0

FIELD_SIZE: int = 32
COMPRESSED_SIZE: int = 1 + FIELD_SIZE
UNCOMPRESSED_SIZE: int = 1 + 2 * FIELD_SIZE
HASH_SIZE: int = 32


class Point(NamedTuple):
    x: int
    y: int


G = Point(GX, GY)


# ---------------------------------------------------------------------------
# Point arithmetic
# ---------------------------------------------------------------------------


def is_on_curve(pt: Optional[Point]) -> bool:
    """Check ``y^2 == x^3 + ax + b (mod p)``; infinity counts as on-curve."""
    if pt is None:
        return True
    x, y = pt
    if not (0 <= x < P and 0 <= y < P):
        return False
    return (y * y - (x * x * x + A * x + B)) % P == 0


def point_add(p1: Optional[Point], p2: Optional[Point]) -> Optional[Point]:
    if p1 is None:
        return p2
    if p2 is None:
        return p1
    x1, y1 = p1
    x2, y2 = p2
    if x1 == x2:
        if (y1 + y2) % P == 0:
            return None
        return point_double(p1)
    lam = (y2 - y1) * pow(x2 - x1, -1, P) % P
    x3 = (lam * lam - x1 - x2) % P
    y3 = (lam * (x1 - x3) - y1) % P
    return Point(x3, y3)


def point_double(pt: Optional[Point]) -> Optional[Point]:
    if pt is None or pt.y == 0:
        return None
    x, y = pt
    lam = (3 * x * x + A) * pow(2 * y, -1, P) % P
    x3 = (lam * lam - 2 * x) % P
    y3 = (lam * (x - x3) - y) % P
    return Point(x3, y3)


def scalar_mult(k: int, pt: Optional[Point]) -> Optional[Point]:
    """Compute ``k * pt`` with left-to-right double-and-add."""
    k %= N
    if k == 0 or pt is None:
        return None
    result: Optional[Point] = None
    for bit in bin(k)[2:]:
        result = point_double(result)
        if bit == "1":
            result = point_add(result, pt)
    return result


# ---------------------------------------------------------------------------
# Point encoding
# ---------------------------------------------------------------------------


def encode_point(pt: Point, compressed: bool = True) -> bytes:
    """SEC1 encoding: ``02/03 || x`` when *compressed*, else ``04 || x || y``."""
    x = pt.x.to_bytes(FIELD_SIZE, "big")
    if compressed:
        return bytes([2 + (pt.y & 1)]) + x
    return b"\x04" + x + pt.y.to_bytes(FIELD_SIZE, "big")


def decode_point(data: bytes) -> Point:
    """
    Decode a SEC1 point and check it lies on the curve.

    Raises
    ------
    ValueError
        On a wrong length, unknown prefix, or a point off the curve.
    """
    if len(data) == COMPRESSED_SIZE and data[0] in (2, 3):
        x = int.from_bytes(data[1:], "big")
        if x >= P:
            raise ValueError("x coordinate out of range")
        rhs = (x * x * x + A * x + B) % P
        # p = 3 (mod 4), so a square root is rhs^((p+1)/4)
        y = pow(rhs, (P + 1) // 4, P)
        if y * y % P != rhs:
            raise ValueError("x coordinate is not on the curve")
        if y & 1 != data[0] & 1:
            y = P - y
        return Point(x, y)
    if len(data) == UNCOMPRESSED_SIZE and data[0] == 4:
        pt = Point(
            int.from_bytes(data[1 : 1 + FIELD_SIZE], "big"),
            int.from_bytes(data[1 + FIELD_SIZE :], "big"),
        )
        if not is_on_curve(pt):
            raise ValueError("point is not on the curve")
        return pt
    raise ValueError(f"unsupported point encoding ({len(data)} bytes)")


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def generate_private_scalar() -> int:
    """Draw ``d`` uniformly from ``[1, n-2]``."""
    return secrets.randbelow(N - 2) + 1


def public_point(d: int) -> Point:
    pt = scalar_mult(d, G)
    if pt is None:
        raise ValueError("private scalar is a multiple of the group order")
    return pt


# ---------------------------------------------------------------------------
# SM3 / KDF
# ---------------------------------------------------------------------------


def sm3(*parts: bytes) -> bytes:
    h = hashes.Hash(hashes.SM3())
    for part in parts:
        h.update(part)
    return h.finalize()


def kdf(z: bytes, length: int) -> bytes:
    """SM2 key derivation: ``SM3(z || ct)`` for ct = 1, 2, ... (4-byte BE)."""
    out = bytearray()
    counter = 1
    while len(out) < length:
        out += sm3(z, counter.to_bytes(4, "big"))
        counter += 1
    return bytes(out[:length])


def _xor(a: bytes, b: bytes) -> bytes:
    return bytes(x ^ y for x, y in zip(a, b))


# ---------------------------------------------------------------------------
# Encrypt / decrypt
# ---------------------------------------------------------------------------


def encrypt(public: Point, message: bytes) -> bytes:
    """Encrypt *message* to *public*; randomized on every call."""
    if not message:
        raise ValueError("message must not be empty")
    while True:
        k = secrets.randbelow(N - 1) + 1
        c1 = scalar_mult(k, G)
        shared = scalar_mult(k, public)
        if c1 is None or shared is None:
            raise ValueError("public point is not in the prime-order group")
        x2 = shared.x.to_bytes(FIELD_SIZE, "big")
        y2 = shared.y.to_bytes(FIELD_SIZE, "big")
        t = kdf(x2 + y2, len(message))
        if any(t):
            break
    c2 = _xor(message, t)
    c3 = sm3(x2, message, y2)
    return encode_point(c1, compressed=False) + c2 + c3


def decrypt(d: int, ciphertext: bytes) -> bytes:
    """
    Decrypt an SM2 ciphertext with scalar *d*.

    Every failure raises the same ``ValueError`` so that callers cannot
    tell a wrong key from a damaged ciphertext.
    """
    failure = ValueError("SM2 decryption failed")
    if len(ciphertext) <= UNCOMPRESSED_SIZE + HASH_SIZE:
        raise failure
    try:
        c1 = decode_point(ciphertext[:UNCOMPRESSED_SIZE])
    except ValueError:
        raise failure from None
    c2 = ciphertext[UNCOMPRESSED_SIZE:-HASH_SIZE]
    c3 = ciphertext[-HASH_SIZE:]

    shared = scalar_mult(d, c1)
    if shared is None:
        raise failure
    x2 = shared.x.to_bytes(FIELD_SIZE, "big")
    y2 = shared.y.to_bytes(FIELD_SIZE, "big")
    t = kdf(x2 + y2, len(c2))
    if not any(t):
        raise failure
    message = _xor(c2, t)
    if not hmac.compare_digest(sm3(x2, message, y2), c3):
        raise failure
    return message
