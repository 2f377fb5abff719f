"""
Numeric parser service for spreadsheet amounts.

Handles the cell formats found in exported ledgers:
- Plain numbers: 1234, 1234.56, -123
- Currency and thousands separators: $1,234.56
- Accounting negatives: (1,234.56)

Anything that does not parse is treated as an empty cell.
"""
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class ParsedNumber:
    """Result of parsing a cell value."""

    value: Optional[Decimal]
    raw_value: str
    is_negative: bool = False
    currency: Optional[str] = None


class NumericParser:
    """
    Parser for ledger cell amounts.

    Numeric cells pass through unchanged. String cells have currency
    symbols, thousands separators and whitespace removed; a value wrapped
    in parentheses is negative.
    """

    CURRENCY_SYMBOLS = ("$", "€", "£", "¥", "USD", "EUR", "GBP", "CAD", "AUD")

    PARENTHESES_PATTERN = re.compile(r"^\s*\(([^)]*)\)\s*$")
    NUMBER_PATTERN = re.compile(r"^\d*\.?\d+(?:[eE][+-]?\d+)?$|^\d+\.$")

    def parse(self, value_str: str) -> ParsedNumber:
        """
        Parse a string value into a Decimal.

        Args:
            value_str: The string to parse.

        Returns:
            ParsedNumber whose value is None when the text is not numeric.
        """
        if not value_str or not value_str.strip():
            return ParsedNumber(value=None, raw_value=value_str or "")

        original = value_str
        value_str = value_str.strip()

        is_negative = False
        paren_match = self.PARENTHESES_PATTERN.match(value_str)
        if paren_match:
            value_str = paren_match.group(1).strip()
            is_negative = True

        if value_str.startswith("-"):
            is_negative = not is_negative
            value_str = value_str[1:].strip()
        elif value_str.startswith("+"):
            value_str = value_str[1:].strip()

        currency = None
        for symbol in self.CURRENCY_SYMBOLS:
            if value_str.startswith(symbol):
                currency = symbol
                value_str = value_str[len(symbol):].strip()
                break

        # "-$1,200" puts the sign after the symbol
        if value_str.startswith("-"):
            is_negative = not is_negative
            value_str = value_str[1:].strip()

        cleaned = value_str.replace(",", "").replace(" ", "")
        if not self.NUMBER_PATTERN.match(cleaned):
            return ParsedNumber(value=None, raw_value=original, currency=currency)

        try:
            parsed_value = Decimal(cleaned)
        except InvalidOperation:
            logger.debug("Failed to parse number", value=original)
            return ParsedNumber(value=None, raw_value=original, currency=currency)

        if is_negative:
            parsed_value = -parsed_value

        return ParsedNumber(
            value=parsed_value,
            raw_value=original,
            is_negative=is_negative,
            currency=currency,
        )

    def parse_amount(self, value: Any) -> float:
        """
        Parse a cell into a float amount.

        Numbers are returned as-is; blank or non-numeric cells become 0.
        """
        if value is None or isinstance(value, bool):
            return 0.0
        if isinstance(value, (int, float, Decimal)):
            return float(value)
        parsed = self.parse(str(value))
        if parsed.value is None:
            return 0.0
        return float(parsed.value)


# Singleton instance
_parser_instance: Optional[NumericParser] = None


def get_numeric_parser() -> NumericParser:
    """Get singleton NumericParser instance."""
    global _parser_instance
    if _parser_instance is None:
        _parser_instance = NumericParser()
    return _parser_instance


def parse_amount(value: Any) -> float:
    """Parse a spreadsheet cell into an amount (0 when not numeric)."""
    return get_numeric_parser().parse_amount(value)
