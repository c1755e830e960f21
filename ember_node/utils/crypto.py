"""Shamir Secret Sharing over the secp256k1 scalar field."""

from __future__ import annotations

import secrets
from dataclasses import dataclass

from eth_account import Account

from ember_node.errors import InsufficientShares, InvalidParameters
from ember_node.utils import field
from ember_node.utils.field import SECP256K1_ORDER


@dataclass(frozen=True)
class Share:
    """A single Shamir share: (x, y) where y = f(x) for secret polynomial f."""

    x: int
    y: int


class SecretScalar:
    """Single-owner holder for a private scalar.

    The value never appears in repr/str output. Call wipe() once the owner is
    done with it; any later access raises.
    """

    __slots__ = ("_value",)

    def __init__(self, value: int) -> None:
        if not 1 <= value < SECP256K1_ORDER:
            raise InvalidParameters("Secret scalar must be in [1, order)")
        self._value: int | None = value

    @classmethod
    def generate(cls) -> SecretScalar:
        """Draw a fresh nonzero scalar from the OS CSPRNG."""
        return cls(secrets.randbelow(SECP256K1_ORDER - 1) + 1)

    @property
    def value(self) -> int:
        if self._value is None:
            raise RuntimeError("Secret scalar has been wiped")
        return self._value

    @property
    def wiped(self) -> bool:
        return self._value is None

    def wipe(self) -> None:
        self._value = None

    def __repr__(self) -> str:
        return "SecretScalar(<wiped>)" if self._value is None else "SecretScalar(<redacted>)"

    __str__ = __repr__

    def __copy__(self) -> SecretScalar:
        raise TypeError("SecretScalar cannot be copied")

    def __deepcopy__(self, memo: dict) -> SecretScalar:
        raise TypeError("SecretScalar cannot be copied")

    def __reduce__(self) -> tuple:
        raise TypeError("SecretScalar cannot be pickled")


def custody_address(secret: SecretScalar) -> str:
    """Ethereum address of the key whose private scalar is `secret`."""
    return Account.from_key(secret.value.to_bytes(32, "big")).address


def split_secret(
    secret: int,
    n: int,
    t: int,
    prime: int = SECP256K1_ORDER,
) -> list[Share]:
    """Split a secret integer into n Shamir shares with threshold t.

    Args:
        secret: The secret value to split (0 <= secret < prime).
        n: Total number of shares to generate.
        t: Minimum shares needed for reconstruction.
        prime: The prime field modulus.

    Returns:
        List of n Share objects evaluated at x = 1..n.
    """
    if t < 1:
        raise InvalidParameters(f"Threshold must be >= 1, got {t}")
    if t > n:
        raise InvalidParameters(f"Threshold {t} exceeds share count {n}")
    if n >= prime:
        raise InvalidParameters("Share count must be smaller than the field modulus")
    if not field.is_element(secret, prime):
        raise InvalidParameters("Secret must be a field element (0 <= secret < prime)")

    # Random polynomial coefficients: a_0 = secret, a_1..a_{t-1} drawn fresh per call
    coeffs = [secret] + [secrets.randbelow(prime) for _ in range(t - 1)]

    shares = []
    for i in range(1, n + 1):
        # Horner's rule, highest degree first
        y = 0
        for c in reversed(coeffs):
            y = field.add(field.mul(y, i, prime), c, prime)
        shares.append(Share(x=i, y=y))

    coeffs.clear()
    return shares


def _distinct(shares: list[Share]) -> list[Share]:
    seen: dict[int, int] = {}
    unique = []
    for s in shares:
        if s.x in seen:
            if seen[s.x] != s.y:
                raise InvalidParameters(f"Conflicting values for share index {s.x}")
            continue
        seen[s.x] = s.y
        unique.append(s)
    return unique


def reconstruct_secret(
    shares: list[Share],
    t: int,
    prime: int = SECP256K1_ORDER,
) -> int:
    """Reconstruct the secret from t or more Shamir shares using Lagrange interpolation at x = 0.

    Args:
        shares: Shares from the same polynomial; duplicates by index are collapsed.
        t: The reconstruction threshold the shares were generated with.
        prime: The prime field modulus.

    Returns:
        The original secret value.
    """
    if t < 1:
        raise InvalidParameters(f"Threshold must be >= 1, got {t}")
    unique = _distinct(shares)
    if len(unique) < t:
        raise InsufficientShares(f"Need {t} distinct shares, got {len(unique)}")
    for s in unique:
        if s.x % prime == 0:
            raise InvalidParameters("Share index 0 would reveal the secret directly")

    points = unique[:t]
    secret = 0
    for i, si in enumerate(points):
        numerator = 1
        denominator = 1
        for j, sj in enumerate(points):
            if i == j:
                continue
            numerator = field.mul(numerator, field.sub(0, sj.x, prime), prime)
            denominator = field.mul(denominator, field.sub(si.x, sj.x, prime), prime)

        lagrange_coeff = field.mul(numerator, field.inverse(denominator, prime), prime)
        secret = field.add(secret, field.mul(si.y, lagrange_coeff, prime), prime)

    return secret
