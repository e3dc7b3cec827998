from fractions import Fraction

import pytest

from lattice_ratio import (
    UNISON,
    Ratio,
    invert,
    multiply,
    normalize_to_octave,
    power,
    reduce_ratio,
)


def test_ratio_is_kept_in_lowest_terms():
    assert Ratio(6, 4) == Ratio(3, 2)
    assert (Ratio(6, 4).numerator, Ratio(6, 4).denominator) == (3, 2)


def test_negative_denominator_moves_sign_to_numerator():
    assert reduce_ratio(3, -6) == (-1, 2)


def test_zero_denominator_rejected():
    with pytest.raises(ZeroDivisionError):
        Ratio(1, 0)


def test_str_is_always_a_fraction():
    assert str(Ratio(3, 2)) == "3/2"
    assert str(UNISON) == "1/1"
    assert str(Ratio(4)) == "4/1"


def test_multiply_reduces():
    assert multiply(Ratio(3, 2), Ratio(4, 3)) == Ratio(2, 1)
    assert Ratio(3, 2) * Ratio(5, 4) == Ratio(15, 8)


def test_ratio_is_an_exact_fraction():
    r = Ratio(3, 2) * Ratio(5, 4)
    assert isinstance(r, Ratio)
    assert r == Fraction(15, 8)
    assert r.value == 1.875
    assert str(power(Ratio(3, 2), -1)) == "2/3"


def test_invert():
    assert invert(Ratio(5, 4)) == Ratio(4, 5)
    with pytest.raises(ZeroDivisionError):
        invert(Ratio(0, 1))


def test_power_zero_is_unison():
    assert power(Ratio(3, 2), 0) == UNISON


def test_power_positive_and_negative():
    assert power(Ratio(3, 2), 3) == Ratio(27, 8)
    assert power(Ratio(3, 2), -2) == Ratio(4, 9)
    assert power(Ratio(5, 4), -1) == Ratio(4, 5)


@pytest.mark.parametrize(
    "ratio, expected, shift",
    [
        (Ratio(1, 1), Ratio(1, 1), 0),
        (Ratio(2, 1), Ratio(1, 1), 1),
        (Ratio(3, 2), Ratio(3, 2), 0),
        (Ratio(9, 4), Ratio(9, 8), 1),
        (Ratio(2, 3), Ratio(4, 3), -1),
        (Ratio(4, 5), Ratio(8, 5), -1),
        (Ratio(81, 16), Ratio(81, 64), 2),
        (Ratio(1, 8), Ratio(1, 1), -3),
    ],
)
def test_normalize_to_octave(ratio, expected, shift):
    assert normalize_to_octave(ratio) == (expected, shift)


def test_normalize_rejects_non_positive():
    with pytest.raises(ValueError):
        normalize_to_octave(Ratio(0, 1))
    with pytest.raises(ValueError):
        normalize_to_octave(Ratio(-3, 2))


def test_normalize_is_exact_across_the_lattice():
    fifth, third = Ratio(3, 2), Ratio(5, 4)
    for f in range(-24, 25):
        for t in range(-12, 13):
            raw = multiply(power(fifth, f), power(third, t))
            normalized, shift = normalize_to_octave(raw)
            # 1 <= n/d < 2 without touching floats
            assert normalized.denominator <= normalized.numerator < 2 * normalized.denominator
            assert multiply(normalized, power(Ratio(2, 1), shift)) == raw
