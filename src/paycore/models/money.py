"""Fixed-point money value type.

Amounts are exact ``Decimal`` values in the currency's minor units.
Floats are rejected outright, and so is any amount finer than the minor
unit: nothing is ever rounded. Arithmetic and ordering are only defined
between equal currencies.
"""

from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Currencies whose minor unit is not cents
CURRENCY_EXPONENTS: dict[str, int] = {
    "JPY": 0,
    "KRW": 0,
    "ISK": 0,
    "BHD": 3,
    "KWD": 3,
}

DEFAULT_EXPONENT = 2


class CurrencyMismatchError(ValueError):
    """Raised when combining money values in different currencies."""

    def __init__(self, left: str, right: str) -> None:
        super().__init__(f"Currency mismatch: {left} vs {right}")
        self.left = left
        self.right = right


def currency_exponent(currency: str) -> int:
    """Number of decimal places used by a currency."""
    return CURRENCY_EXPONENTS.get(currency.upper(), DEFAULT_EXPONENT)


class Money(BaseModel):
    """An exact monetary amount in a single currency."""

    model_config = ConfigDict(frozen=True)

    amount: Decimal = Field(..., description="Exact decimal amount")
    currency: str = Field(
        ...,
        min_length=3,
        max_length=3,
        description="ISO-4217 currency code",
        examples=["USD", "EUR"],
    )

    @field_validator("amount", mode="before")
    @classmethod
    def _reject_float(cls, value: Any) -> Any:
        if isinstance(value, float):
            raise ValueError("Money amounts must not be floats; use str or Decimal")
        if isinstance(value, str):
            try:
                return Decimal(value)
            except InvalidOperation as e:
                raise ValueError(f"Invalid money amount: {value!r}") from e
        return value

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        if not value.isalpha():
            raise ValueError(f"Invalid currency code: {value!r}")
        return value.upper()

    @model_validator(mode="after")
    def _quantize(self) -> "Money":
        if not self.amount.is_finite():
            raise ValueError("Money amount must be finite")
        exponent = Decimal(1).scaleb(-currency_exponent(self.currency))
        try:
            quantized = self.amount.quantize(exponent)
        except InvalidOperation as e:
            raise ValueError(f"Money amount out of range: {self.amount}") from e
        if quantized != self.amount:
            raise ValueError(
                f"{self.amount} has more decimal places than {self.currency} allows"
            )
        # frozen model: bypass __setattr__ to store the normalized amount
        object.__setattr__(self, "amount", quantized)
        return self

    # Construction helpers

    @classmethod
    def of(cls, amount: str | int | Decimal, currency: str) -> "Money":
        """Build a Money value from a string, int or Decimal amount."""
        return cls(amount=amount, currency=currency)

    @classmethod
    def zero(cls, currency: str) -> "Money":
        """The zero amount in ``currency``."""
        return cls(amount=Decimal(0), currency=currency)

    @classmethod
    def from_minor_units(cls, units: int, currency: str) -> "Money":
        """Build from an integer count of minor units (e.g. cents)."""
        return cls(
            amount=Decimal(units).scaleb(-currency_exponent(currency)),
            currency=currency,
        )

    def to_minor_units(self) -> int:
        """Integer count of minor units, as most gateways expect."""
        return int(self.amount.scaleb(currency_exponent(self.currency)))

    # Predicates

    def is_zero(self) -> bool:
        return self.amount == 0

    def is_positive(self) -> bool:
        return self.amount > 0

    def is_negative(self) -> bool:
        return self.amount < 0

    # Arithmetic

    def _check(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot combine Money with {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatchError(self.currency, other.currency)

    def __add__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(amount=self.amount + other.amount, currency=self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(amount=self.amount - other.amount, currency=self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount < other.amount

    def __le__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount <= other.amount

    def __gt__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount > other.amount

    def __ge__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount >= other.amount

    def min(self, other: "Money") -> "Money":
        """The smaller of two amounts in the same currency."""
        return self if self <= other else other

    def __str__(self) -> str:
        return f"{self.amount} {self.currency}"
