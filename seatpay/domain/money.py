"""
Money value object.

Amounts are held as integer minor units (cents) so nothing accumulates
floating-point error. Rounding happens exactly once, half-up, at the point a
percentage is applied.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import NamedTuple

from pydantic import BaseModel, field_validator

CENTS = Decimal("100")


def round_half_up(value: Decimal) -> int:
    """Round a Decimal to the nearest integer, ties away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class Money(BaseModel):
    """
    Money value object with currency.

    Money(cents=3275, currency="CAD") is CA$32.75. Two values are equal when
    both the amount and the currency match.
    """

    cents: int
    currency: str

    model_config = {"frozen": True}

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Currency must be a 3-letter ISO code."""
        if len(v) != 3 or not v.isalpha():
            raise ValueError(f"Currency must be a 3-letter code, got {v!r}")
        return v.upper()

    @classmethod
    def of(cls, amount: Decimal | str | int, currency: str) -> Money:
        """
        Build Money from a major-unit amount.

        Money.of("32.75", "CAD") == Money(cents=3275, currency="CAD")
        """
        try:
            value = Decimal(str(amount))
        except InvalidOperation as exc:
            raise ValueError(f"Invalid amount: {amount!r}") from exc
        return cls(cents=round_half_up(value * CENTS), currency=currency)

    @classmethod
    def zero(cls, currency: str) -> Money:
        return cls(cents=0, currency=currency)

    @property
    def amount(self) -> Decimal:
        """Major-unit amount with two decimal places."""
        return (Decimal(self.cents) / CENTS).quantize(Decimal("0.01"))

    @property
    def is_positive(self) -> bool:
        return self.cents > 0

    def _check_currency(self, other: Money) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Currency mismatch: {self.currency} vs {other.currency}")

    def __add__(self, other: Money) -> Money:
        """Add money (only same currency)."""
        self._check_currency(other)
        return Money(cents=self.cents + other.cents, currency=self.currency)

    def __sub__(self, other: Money) -> Money:
        """Subtract money (only same currency)."""
        self._check_currency(other)
        return Money(cents=self.cents - other.cents, currency=self.currency)

    def __lt__(self, other: Money) -> bool:
        self._check_currency(other)
        return self.cents < other.cents

    def __le__(self, other: Money) -> bool:
        self._check_currency(other)
        return self.cents <= other.cents

    def __gt__(self, other: Money) -> bool:
        self._check_currency(other)
        return self.cents > other.cents

    def __ge__(self, other: Money) -> bool:
        self._check_currency(other)
        return self.cents >= other.cents

    def percentage(self, percent: Decimal | float | str) -> Money:
        """
        Percentage of this amount, rounded half-up to the cent.

        Money.of("32.75", "CAD").percentage(15) -> CA$4.91
        """
        pct = Decimal(str(percent))
        return Money(cents=round_half_up(Decimal(self.cents) * pct / CENTS), currency=self.currency)

    def split_fee(self, fee_percent: Decimal | float | str) -> FeeSplit:
        """Split a gross amount into platform fee and driver net."""
        fee = self.percentage(fee_percent)
        return FeeSplit(gross=self, fee=fee, net=self - fee)

    def to_provider_string(self) -> str:
        """Decimal string used by REST rails, e.g. '32.75'."""
        return f"{self.amount:.2f}"

    def __str__(self) -> str:
        return f"{self.amount:.2f} {self.currency}"

    def __repr__(self) -> str:
        return f"Money({self.amount}, {self.currency})"


class FeeSplit(NamedTuple):
    """Result of a service-fee split; fee + net always equals gross."""

    gross: Money
    fee: Money
    net: Money
