"""
Exact rational arithmetic for the just-intonation lattice.

Every fifth/third stack and every octave reduction goes through the
functions here, so a node fifty steps from the origin carries the same
exact ratio as one next to it. Floats appear only when a caller asks for
``Ratio.value`` (frequency math, loop comparisons), never as stored state.
"""

from __future__ import annotations

from fractions import Fraction


def reduce_ratio(numerator: int, denominator: int) -> tuple[int, int]:
    """Return (numerator, denominator) in lowest terms, denominator > 0."""
    f = Fraction(numerator, denominator)
    return f.numerator, f.denominator


class Ratio(Fraction):
    """A Fraction that prints as "n/d" and stays a Ratio under multiply."""

    __slots__ = ()

    @property
    def value(self) -> float:
        return float(self)

    def __mul__(self, other: object) -> Ratio:
        if not isinstance(other, Ratio):
            return NotImplemented
        return multiply(self, other)

    def __str__(self) -> str:
        return f"{self.numerator}/{self.denominator}"


UNISON: Ratio = Ratio(1, 1)
OCTAVE_UP: Ratio = Ratio(2, 1)
OCTAVE_DOWN: Ratio = Ratio(1, 2)


def multiply(a: Ratio, b: Ratio) -> Ratio:
    return Ratio(a.numerator * b.numerator, a.denominator * b.denominator)


def invert(r: Ratio) -> Ratio:
    if r.numerator == 0:
        raise ZeroDivisionError("cannot invert a zero ratio")
    return Ratio(r.denominator, r.numerator)


def power(base: Ratio, exponent: int) -> Ratio:
    """Raise base to an integer exponent.

    Negative exponents invert the base first, then apply the positive
    exponent, so no fractional power is ever taken.
    """
    if exponent == 0:
        return UNISON
    if exponent < 0:
        base = invert(base)
        exponent = -exponent
    return Ratio(base.numerator ** exponent, base.denominator ** exponent)


def normalize_to_octave(r: Ratio) -> tuple[Ratio, int]:
    """Fold a ratio into [1, 2) by octaves.

    Returns (normalized, octave_shift) with normalized == r * 2**-octave_shift.
    Boundary tests compare integers (n >= 2d, n < d), never floats.
    """
    if r.numerator <= 0:
        raise ValueError(f"cannot octave-reduce non-positive ratio {r}")
    current = r
    octave_shift = 0
    while current.numerator >= 2 * current.denominator:
        current = multiply(current, OCTAVE_DOWN)
        octave_shift += 1
    while current.numerator < current.denominator:
        current = multiply(current, OCTAVE_UP)
        octave_shift -= 1
    return current, octave_shift
