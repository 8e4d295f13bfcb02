"""
Money Module

Currency codes with their minor-unit precision and an immutable Money type.
Amounts are Decimal quantized to the currency's minor unit with ROUND_HALF_UP.
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Union
from enum import Enum

# Set global decimal context for financial precision
getcontext().prec = 28

AmountLike = Union[Decimal, int, str]


class Currency(Enum):
    """ISO 4217 currency codes with minor-unit precision"""
    UGX = ("UGX", 0)  # Ugandan Shilling, no minor unit in circulation
    KES = ("KES", 2)  # Kenyan Shilling
    TZS = ("TZS", 2)  # Tanzanian Shilling
    RWF = ("RWF", 0)  # Rwandan Franc
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def minor_unit(self) -> Decimal:
        """Smallest representable amount, e.g. Decimal('0.01')"""
        return Decimal(1).scaleb(-self.precision)


def to_decimal(value: AmountLike) -> Decimal:
    """
    Convert an int, str or Decimal to Decimal without passing through float

    Raises:
        ValueError: If value is a float, a bool, or not a number
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"Monetary values must not be floats: {value!r}")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip().replace(",", ""))
    except (InvalidOperation, AttributeError):
        raise ValueError(f"Cannot convert {value!r} to Decimal")


def round_to_currency(value: Decimal, currency: Currency) -> Decimal:
    """Round a Decimal to the currency's minor unit, half up"""
    return value.quantize(currency.minor_unit, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.

    Every construction rounds once to the minor unit, so arithmetic that
    must round exactly once should be done in Decimal and wrapped at the end.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        amount = to_decimal(self.amount)
        object.__setattr__(self, 'amount', round_to_currency(amount, self.currency))

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    @classmethod
    def from_minor_units(cls, units: int, currency: Currency) -> 'Money':
        """Build from an integer count of minor units (cents, shillings...)"""
        if isinstance(units, bool) or not isinstance(units, int):
            raise ValueError(f"Minor units must be an integer, got {units!r}")
        return cls(Decimal(units).scaleb(-currency.precision), currency)

    @property
    def minor_units(self) -> int:
        """Exact integer count of minor units"""
        return int(self.amount.scaleb(self.currency.precision))

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot {verb} Money and {type(other).__name__}")
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def add(self, other: 'Money') -> 'Money':
        return self + other

    def subtract(self, other: 'Money') -> 'Money':
        return self - other

    def multiply_by_rate(self, percent: AmountLike, basis: AmountLike = 100) -> 'Money':
        """
        Multiply by ``percent / basis`` with a single rounding

        Args:
            percent: Rate numerator, e.g. 10 for 10%
            basis: Rate denominator (100 for percentages)
        """
        product = self.amount * to_decimal(percent) / to_decimal(basis)
        return Money(product, self.currency)

    def compare(self, other: 'Money') -> int:
        """Return -1, 0 or 1 as self is less than, equal to or greater than other"""
        self._check_currency(other, "compare")
        if self.amount < other.amount:
            return -1
        if self.amount > other.amount:
            return 1
        return 0

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

    def __lt__(self, other: 'Money') -> bool:
        return self.compare(other) < 0

    def __le__(self, other: 'Money') -> bool:
        return self.compare(other) <= 0

    def __gt__(self, other: 'Money') -> bool:
        return self.compare(other) > 0

    def __ge__(self, other: 'Money') -> bool:
        return self.compare(other) >= 0

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

    def __str__(self) -> str:
        return self.to_string()
