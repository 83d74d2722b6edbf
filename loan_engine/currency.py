"""
Currency and Decimal Support Module

Handles ISO 4217 currency codes and proper Decimal precision for loan
calculations. NEVER uses float for monetary values; rounding happens only
at monetary output boundaries.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Union

# Set global decimal context for financial precision
getcontext().prec = 28  # High precision for financial calculations

ZERO = Decimal('0')
ONE = Decimal('1')
HUNDRED = Decimal('100')
CENT = Decimal('0.01')

DecimalLike = Union[Decimal, int, str, float]


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    GBP = ("GBP", 2)  # British Pound
    ZAR = ("ZAR", 2)  # South African Rand
    ZWG = ("ZWG", 2)  # Zimbabwe Gold
    KES = ("KES", 2)  # Kenyan Shilling
    UGX = ("UGX", 0)  # Ugandan Shilling, no minor unit
    JPY = ("JPY", 0)  # Japanese Yen, no minor unit

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision


def to_decimal(value: DecimalLike) -> Decimal:
    """
    Convert a numeric value to Decimal without binary float drift

    Floats are converted through their string representation so that
    0.1 becomes Decimal('0.1') rather than its binary expansion.

    Raises:
        ValueError: If value is None, a bool, or not numeric
    """
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    try:
        return Decimal(str(value).strip())
    except Exception:
        raise ValueError(f"Cannot convert {value!r} to Decimal")


def round_money(value: Decimal, places: int = 2) -> Decimal:
    """Round to a fixed number of decimal places using ROUND_HALF_UP"""
    return value.quantize(Decimal('0.1') ** places, rounding=ROUND_HALF_UP)


def decimal_power(base: Decimal, exponent: int) -> Decimal:
    """Integer power of a Decimal, computed within the decimal context"""
    if exponent < 0:
        return ONE / decimal_power(base, -exponent)
    result = ONE
    for _ in range(exponent):
        result *= base
    return result


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    All monetary values MUST use this class or raw Decimal.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', to_decimal(self.amount))

        # Round to currency precision
        object.__setattr__(self, 'amount', round_money(self.amount, self.currency.precision))

    def __add__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot add {self.currency.code} and {other.currency.code}")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot subtract {other.currency.code} from {self.currency.code}")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        return Money(self.amount * to_decimal(multiplier), self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __lt__(self, other: 'Money') -> bool:
        if self.currency != other.currency:
            raise ValueError(f"Cannot compare {self.currency.code} and {other.currency.code}")
        return self.amount < other.amount

    def __gt__(self, other: 'Money') -> bool:
        if self.currency != other.currency:
            raise ValueError(f"Cannot compare {self.currency.code} and {other.currency.code}")
        return self.amount > other.amount

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == ZERO

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > ZERO

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def currency_from_code(code: str) -> Currency:
    """Look up a Currency by ISO code"""
    try:
        return Currency[code.upper()]
    except KeyError:
        raise ValueError(f"Unsupported currency: {code}")
