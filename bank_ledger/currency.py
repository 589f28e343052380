"""
Currency and Money Module

ISO 4217 currency codes with their minor-unit precision, and an immutable
Money value that always rounds half-up to that precision. Floats are never
accepted as money: every amount goes through Decimal(str(...)).
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Union

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    INR = ("INR", 2)
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    JPY = ("JPY", 0)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        return Decimal('0.1') ** self.precision


def to_decimal(value: Union[Decimal, int, str, float]) -> Decimal:
    """Coerce a numeric input to Decimal without binary float artefacts"""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_amount(value: Decimal, currency: Currency = Currency.INR) -> Decimal:
    """Round half-up to the currency's minor unit"""
    return value.quantize(currency.quantum, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    """
    amount: Decimal
    currency: Currency = Currency.INR

    def __post_init__(self):
        object.__setattr__(self, 'amount', quantize_amount(to_decimal(self.amount), self.currency))

    @classmethod
    def zero(cls, currency: Currency = Currency.INR) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        return Money(self.amount * to_decimal(multiplier), self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def parse_money(value, currency: Currency = Currency.INR, name: str = "Amount",
                allow_zero: bool = False) -> Money:
    """
    Validate a caller-supplied amount and wrap it as Money

    Raises:
        ValidationError: not a finite number, negative, zero (unless allowed)
            or finer than the currency's minor unit
    """
    if isinstance(value, Money):
        value = value.amount
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{name} is required")
    try:
        amount = to_decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{name} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{name} must be a finite number")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError(f"{name} must be positive" if not allow_zero else f"{name} cannot be negative")
    if amount != quantize_amount(amount, currency):
        raise ValidationError(f"{name} has more than {currency.precision} decimal places")
    return Money(amount, currency)
