"""Tests for scalar field arithmetic."""

from __future__ import annotations

import pytest

from ember_node.errors import DomainError
from ember_node.utils import field
from ember_node.utils.field import SECP256K1_ORDER as N


class TestArithmetic:
    def test_add_wraps(self) -> None:
        assert field.add(N - 1, 2) == 1

    def test_sub_wraps(self) -> None:
        assert field.sub(0, 1) == N - 1

    def test_mul_reduces(self) -> None:
        assert field.mul(N - 1, N - 1) == 1

    def test_small_prime(self) -> None:
        assert field.add(5, 4, 7) == 2
        assert field.mul(3, 5, 7) == 1


class TestInverse:
    @pytest.mark.parametrize("a", [1, 2, 3, 12345, N - 1])
    def test_inverse_times_value_is_one(self, a: int) -> None:
        assert field.mul(a, field.inverse(a)) == 1

    def test_inverse_of_zero_raises(self) -> None:
        with pytest.raises(DomainError):
            field.inverse(0)

    def test_inverse_of_multiple_of_modulus_raises(self) -> None:
        with pytest.raises(DomainError):
            field.inverse(N)

    def test_non_coprime_raises(self) -> None:
        with pytest.raises(DomainError):
            field.inverse(2, 4)

    def test_domain_error_is_arithmetic_error(self) -> None:
        with pytest.raises(ArithmeticError):
            field.inverse(0, 7)


class TestIsElement:
    def test_bounds(self) -> None:
        assert field.is_element(0)
        assert field.is_element(N - 1)
        assert not field.is_element(N)
        assert not field.is_element(-1)
