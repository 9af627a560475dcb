"""
Currency Support Module

ISO 4217 currency codes supported by accounts. Balances and amounts are
integers in the currency's smallest unit; Decimal is used only for display.
"""

from decimal import Decimal
from enum import Enum


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    CAD = ("CAD", 2)  # Canadian Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Look up a currency by its ISO code"""
        try:
            return cls[code.upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency: {code}")


def to_major_units(amount: int, currency: Currency) -> Decimal:
    """Convert an amount in minor units (cents) to a Decimal in major units"""
    return Decimal(amount).scaleb(-currency.precision)


def format_amount(amount: int, currency: Currency) -> str:
    """Format a minor-unit amount for display"""
    return f"{currency.code} {to_major_units(amount, currency):,.{currency.precision}f}"
