"""
Amount Parsing and Formatting Module

Ledger deltas and balances are Decimal values. NEVER uses float for monetary
values. Amounts are rendered with at least one fractional digit so that whole
numbers keep the familiar "20.0" shape on the wire and in ledger files.
"""

from decimal import Decimal, InvalidOperation, getcontext
from typing import Optional
import re

# Set global decimal context for financial precision
getcontext().prec = 28  # High precision for financial calculations

AMOUNT_PATTERN = re.compile(r'[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?')

ZERO = Decimal('0.0')
ONE_PLACE = Decimal('0.1')

# Amounts must fit the context exactly: at most 28 significant digits, with the
# leading digit no further than 28 places from the decimal point
MAX_SIGNIFICANT_DIGITS = 28
MAX_ADJUSTED_EXPONENT = 28


def decimal_from_string(value: str) -> Decimal:
    """
    Strictly convert a string to a finite Decimal

    Surrounding whitespace is ignored. Grouping characters, currency symbols,
    NaN and Infinity are rejected, and so are values that cannot be held
    exactly in the decimal context (too many digits or too large an exponent).

    Args:
        value: String representation of number

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Value must be a non-empty string")

    clean_value = value.strip()
    if not AMOUNT_PATTERN.fullmatch(clean_value):
        raise ValueError(f"Cannot convert '{value}' to Decimal")

    try:
        result = Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")

    if not result.is_finite():
        raise ValueError(f"Amount must be finite: '{value}'")

    if abs(result.adjusted()) > MAX_ADJUSTED_EXPONENT:
        raise ValueError(f"Amount out of range: '{value}'")
    if significant_digits(result) > MAX_SIGNIFICANT_DIGITS:
        raise ValueError(f"Amount has too many digits: '{value}'")
    return result


def significant_digits(amount: Decimal) -> int:
    """Number of digits in the coefficient, ignoring trailing zeros"""
    coefficient = ''.join(str(digit) for digit in amount.as_tuple().digits)
    return len(coefficient.rstrip('0')) or 1


def parse_amount(value: str) -> Optional[Decimal]:
    """Parse an amount, returning None instead of raising"""
    try:
        return decimal_from_string(value)
    except ValueError:
        return None


def format_amount(amount: Decimal) -> str:
    """
    Format an amount for the wire and for ledger lines

    Whole numbers get one fractional digit ("20" -> "20.0"), anything else
    keeps its own precision. Exponent notation is never produced.
    """
    if amount == amount.to_integral_value():
        try:
            amount = amount.quantize(ONE_PLACE)
        except InvalidOperation:
            pass  # Too many digits for the context precision
    text = format(amount, 'f')
    if text.startswith('-') and amount.is_zero():
        text = text[1:]
    return text
