"""Fixed-precision money arithmetic.

Amounts are held as integer minor units together with an ISO 4217 currency
code. Scaling by a rate or fraction rounds half-up to the minor unit exactly
once; sums and differences are exact.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from fractions import Fraction

from billcycle.services.billing.errors import CurrencyMismatch, InvalidAmount

_ZERO_DECIMAL_CURRENCIES = frozenset({"CLP", "ISK", "JPY", "KRW", "UGX", "VND"})


def currency_exponent(currency: str) -> int:
    return 0 if currency.upper() in _ZERO_DECIMAL_CURRENCIES else 2


def round_half_up(value: Fraction) -> int:
    """Round an exact rational to the nearest integer, halves away from zero."""
    if value < 0:
        return -round_half_up(-value)
    numerator, denominator = value.numerator, value.denominator
    return (2 * numerator + denominator) // (2 * denominator)


def _as_fraction(value: Decimal | Fraction | int | str) -> Fraction:
    if isinstance(value, float):
        raise TypeError("Money arithmetic does not accept floats")
    if isinstance(value, Fraction):
        return value
    if isinstance(value, str):
        return Fraction(Decimal(value))
    return Fraction(value)


@dataclass(frozen=True, order=False)
class Money:
    minor: int
    currency: str

    def __post_init__(self):
        if not isinstance(self.minor, int) or isinstance(self.minor, bool):
            raise TypeError("Money.minor must be an int")
        object.__setattr__(self, "currency", self.currency.upper())

    @classmethod
    def zero(cls, currency: str) -> Money:
        return cls(0, currency)

    @classmethod
    def of(cls, amount: Decimal | int | str, currency: str) -> Money:
        """Build from a major-unit amount that is already exact to the minor unit."""
        if isinstance(amount, float):
            raise TypeError("Money.of does not accept floats")
        exponent = currency_exponent(currency)
        scaled = Decimal(str(amount)).scaleb(exponent)
        if scaled != scaled.to_integral_value():
            raise InvalidAmount(
                f"{amount} has more precision than {currency.upper()} allows",
                details={"amount": str(amount), "currency": currency.upper()},
            )
        return cls(int(scaled), currency)

    @property
    def amount(self) -> Decimal:
        exponent = currency_exponent(self.currency)
        quantum = Decimal(1).scaleb(-exponent)
        return Decimal(self.minor).scaleb(-exponent).quantize(quantum)

    def _check(self, other: Money) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot combine Money with {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatch(
                f"Cannot combine {self.currency} with {other.currency}",
                details={"left": self.currency, "right": other.currency},
            )

    def __add__(self, other: Money) -> Money:
        self._check(other)
        return Money(self.minor + other.minor, self.currency)

    def __sub__(self, other: Money) -> Money:
        self._check(other)
        return Money(self.minor - other.minor, self.currency)

    def __neg__(self) -> Money:
        return Money(-self.minor, self.currency)

    def __lt__(self, other: Money) -> bool:
        self._check(other)
        return self.minor < other.minor

    def __le__(self, other: Money) -> bool:
        self._check(other)
        return self.minor <= other.minor

    def __gt__(self, other: Money) -> bool:
        self._check(other)
        return self.minor > other.minor

    def __ge__(self, other: Money) -> bool:
        self._check(other)
        return self.minor >= other.minor

    def __bool__(self) -> bool:
        return self.minor != 0

    def is_zero(self) -> bool:
        return self.minor == 0

    def is_negative(self) -> bool:
        return self.minor < 0

    def scale(self, factor: Decimal | Fraction | int | str) -> Money:
        """Multiply by an exact factor, rounding half-up once."""
        return Money(round_half_up(self.minor * _as_fraction(factor)), self.currency)

    def percent(self, rate: Decimal | Fraction | int | str) -> Money:
        """``rate`` percent of this amount, rounded half-up once."""
        return self.scale(_as_fraction(rate) / 100)

    def min(self, other: Money) -> Money:
        self._check(other)
        return self if self.minor <= other.minor else other

    def allocate(self, ratios: list[int]) -> list[Money]:
        """Split into parts proportional to ``ratios`` without losing a minor unit.

        Remainders go to the earliest parts, so the parts always sum to self.
        """
        if not ratios or any(r < 0 for r in ratios) or sum(ratios) == 0:
            raise ValueError("ratios must be non-negative and not all zero")
        total = sum(ratios)
        parts = [self.minor * r // total for r in ratios]
        remainder = self.minor - sum(parts)
        for index in range(remainder):
            parts[index % len(parts)] += 1
        return [Money(part, self.currency) for part in parts]

    def __str__(self) -> str:
        return f"{self.amount} {self.currency}"


def money_sum(values, currency: str) -> Money:
    total = Money.zero(currency)
    for value in values:
        total = total + value
    return total
