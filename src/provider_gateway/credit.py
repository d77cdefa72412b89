"""
Fixed-point monetary value used for every cost and charge in the gateway.

Amounts are stored as an integer count of nano-dollars so that repeated
multiplication by fractional margins never drifts. Conversion to decimal
dollars or cents happens only at I/O boundaries and is always rounded
half-even.
"""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal
from fractions import Fraction
from functools import total_ordering
from typing import Union

RAW_PER_DOLLAR = 1_000_000_000
RAW_PER_CENT = RAW_PER_DOLLAR // 100

Number = Union[int, float, str, Decimal, Fraction]


def _to_fraction(value: Number) -> Fraction:
    if isinstance(value, bool):
        raise TypeError("bool is not a monetary value")
    if isinstance(value, Fraction):
        return value
    if isinstance(value, int):
        return Fraction(value)
    if isinstance(value, float):
        # str() first so 0.1 means 0.1, not its binary expansion
        return Fraction(Decimal(str(value)))
    if isinstance(value, (Decimal, str)):
        try:
            return Fraction(Decimal(value))
        except (ArithmeticError, ValueError) as exc:
            raise ValueError(f"not a finite decimal: {value!r}") from exc
    raise TypeError(f"unsupported numeric type: {type(value).__name__}")


def _round_half_even(value: Fraction) -> int:
    # Fraction.__round__ without ndigits rounds ties to even
    return int(round(value))


@total_ordering
class Credit:
    """
    Immutable amount of money in nano-dollars.

    Example:
        ```python
        cost = Credit.from_dollars("0.0079")
        charge = cost * Decimal("2.53")
        charge.to_display_string()  # "$0.02"
        ```
    """

    __slots__ = ("_raw",)

    def __init__(self, raw: int) -> None:
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise TypeError("Credit raw value must be an int")
        self._raw = raw

    # =========================================================================
    # Construction
    # =========================================================================

    @classmethod
    def from_raw(cls, raw: int) -> Credit:
        return cls(raw)

    @classmethod
    def from_dollars(cls, dollars: Number) -> Credit:
        return cls(_round_half_even(_to_fraction(dollars) * RAW_PER_DOLLAR))

    @classmethod
    def from_cents(cls, cents: Number) -> Credit:
        return cls(_round_half_even(_to_fraction(cents) * RAW_PER_CENT))

    @classmethod
    def zero(cls) -> Credit:
        return cls(0)

    # =========================================================================
    # Arithmetic
    # =========================================================================

    @property
    def raw(self) -> int:
        return self._raw

    def add(self, other: Credit) -> Credit:
        return Credit(self._raw + _coerce(other)._raw)

    def subtract(self, other: Credit) -> Credit:
        return Credit(self._raw - _coerce(other)._raw)

    def multiply(self, factor: Number) -> Credit:
        """Multiply by an exact rational factor, rounding half-even to one raw unit."""
        return Credit(_round_half_even(self._raw * _to_fraction(factor)))

    def is_zero(self) -> bool:
        return self._raw == 0

    def is_negative(self) -> bool:
        return self._raw < 0

    def __add__(self, other: Credit) -> Credit:
        return self.add(other)

    def __sub__(self, other: Credit) -> Credit:
        return self.subtract(other)

    def __mul__(self, factor: Number) -> Credit:
        return self.multiply(factor)

    __rmul__ = __mul__

    def __neg__(self) -> Credit:
        return Credit(-self._raw)

    def __bool__(self) -> bool:
        return self._raw != 0

    # =========================================================================
    # Boundary conversions
    # =========================================================================

    def to_dollars(self) -> Decimal:
        return (Decimal(self._raw) / RAW_PER_DOLLAR).quantize(Decimal("0.000000001"), rounding=ROUND_HALF_EVEN)

    def to_cents(self) -> int:
        return _round_half_even(Fraction(self._raw, RAW_PER_CENT))

    def to_display_string(self) -> str:
        dollars = (Decimal(self._raw) / RAW_PER_DOLLAR).quantize(Decimal("0.01"), rounding=ROUND_HALF_EVEN)
        if dollars < 0:
            return f"-${-dollars}"
        return f"${dollars}"

    # =========================================================================
    # Dunder protocol
    # =========================================================================

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Credit):
            return NotImplemented
        return self._raw == other._raw

    def __lt__(self, other: Credit) -> bool:
        if not isinstance(other, Credit):
            return NotImplemented
        return self._raw < other._raw

    def __hash__(self) -> int:
        return hash(("Credit", self._raw))

    def __repr__(self) -> str:
        return f"Credit(raw={self._raw})"

    def __str__(self) -> str:
        return self.to_display_string()


def _coerce(value: Credit) -> Credit:
    if not isinstance(value, Credit):
        raise TypeError(f"expected Credit, got {type(value).__name__}")
    return value


__all__ = ["Credit", "RAW_PER_DOLLAR", "RAW_PER_CENT"]
