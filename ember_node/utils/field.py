"""Scalar arithmetic modulo the secp256k1 group order.

Splitting and reconstruction both go through these helpers so leader and
followers agree bit-for-bit on every result.
"""

from __future__ import annotations

from ember_node.errors import DomainError

# secp256k1 group order (the field the custodied private key lives in)
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


def add(a: int, b: int, p: int = SECP256K1_ORDER) -> int:
    return (a + b) % p


def sub(a: int, b: int, p: int = SECP256K1_ORDER) -> int:
    return (a - b) % p


def mul(a: int, b: int, p: int = SECP256K1_ORDER) -> int:
    return (a * b) % p


def inverse(a: int, p: int = SECP256K1_ORDER) -> int:
    """Modular multiplicative inverse using the extended Euclidean algorithm."""
    a %= p
    if a == 0:
        raise DomainError("Inverse of zero is undefined")
    g, x, _ = _extended_gcd(a, p)
    if g != 1:
        raise DomainError(f"{a} has no inverse modulo {p}")
    return x % p


def _extended_gcd(a: int, b: int) -> tuple[int, int, int]:
    old_r, r = a, b
    old_s, s = 1, 0
    old_t, t = 0, 1
    while r:
        q = old_r // r
        old_r, r = r, old_r - q * r
        old_s, s = s, old_s - q * s
        old_t, t = t, old_t - q * t
    return old_r, old_s, old_t


def is_element(v: int, p: int = SECP256K1_ORDER) -> bool:
    """True if v is a canonical field element (0 <= v < p)."""
    return 0 <= v < p
