"""
Money and Currency Module

ISO 4217 currency codes and an immutable Money type with Decimal precision.
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import List, Union
from enum import Enum
import re

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    PKR = ("PKR", 2)  # Pakistani Rupee, 2 decimal places
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable amount (one minor unit)"""
        return Decimal('0.1') ** self.precision


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    All monetary values MUST use this class or raw Decimal.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if isinstance(self.amount, float):
            raise ValidationError("Monetary amounts must not be floats")
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        # Round to currency precision
        rounded = self.amount.quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    @classmethod
    def from_minor_units(cls, units: int, currency: Currency) -> 'Money':
        """Build Money from an integer count of minor units (pence, paisa)"""
        return cls(Decimal(units) * currency.quantum, currency)

    def to_minor_units(self) -> int:
        """Integer count of minor units"""
        return int(self.amount.scaleb(self.currency.precision))

    def _check_currency(self, other: 'Money', verb: str) -> None:
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

    def split(self, parts: int) -> List['Money']:
        """
        Split into `parts` amounts that sum exactly to this amount.

        Works in integer minor units; the leftover units are handed out one
        each starting from the first share, so 1000.00 / 3 gives
        [333.34, 333.33, 333.33].

        Raises:
            ValidationError: If parts is not a positive integer
        """
        if parts < 1:
            raise ValidationError("Cannot split money into fewer than one part")

        units = self.to_minor_units()
        sign = -1 if units < 0 else 1
        base, remainder = divmod(abs(units), parts)
        shares = []
        for index in range(parts):
            share = base + (1 if index < remainder else 0)
            shares.append(Money.from_minor_units(sign * share, self.currency))
        return shares

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    def __str__(self) -> str:
        return str(self.amount)


def decimal_from_string(value: Union[str, int, Decimal]) -> Decimal:
    """
    Safely convert a user-supplied value to Decimal, handling common formats

    Args:
        value: String (or int/Decimal) representation of number

    Returns:
        Decimal value

    Raises:
        ValidationError: If the value cannot be converted to a finite Decimal
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"Amount {value!r} must be a decimal string, not {type(value).__name__}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    else:
        if not value or not isinstance(value, str):
            raise ValidationError("Amount must be a non-empty string")

        # Remove currency symbols and whitespace
        clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

        if ',' in clean_value and '.' in clean_value:
            # Both comma and dot - assume comma is thousands separator
            clean_value = clean_value.replace(',', '')
        elif ',' in clean_value and clean_value.count(',') == 1:
            parts = clean_value.split(',')
            if len(parts[1]) <= 2:  # Likely decimal separator
                clean_value = clean_value.replace(',', '.')
            else:  # Likely thousands separator
                clean_value = clean_value.replace(',', '')

        try:
            result = Decimal(clean_value)
        except InvalidOperation:
            raise ValidationError(f"Cannot convert '{value}' to Decimal")

    if not result.is_finite():
        raise ValidationError(f"Amount {value!r} is not a finite number")
    return result


def parse_money(value: Union[str, int, Decimal], currency: Currency,
                allow_zero: bool = True) -> Money:
    """
    Parse a non-negative monetary amount

    Raises:
        ValidationError: If the amount is malformed, negative, or zero when
            zero is not allowed
    """
    money = Money(decimal_from_string(value), currency)
    if money.is_negative():
        raise ValidationError(f"Amount {value!r} must not be negative")
    if not allow_zero and money.is_zero():
        raise ValidationError(f"Amount {value!r} must be greater than zero")
    return money
