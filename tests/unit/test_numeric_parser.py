"""
Unit tests for NumericParser service.
"""
from decimal import Decimal

import pytest

from forecast_engine.services.numeric_parser import NumericParser, parse_amount


class TestNumericParser:
    """Tests for NumericParser class."""

    @pytest.fixture
    def parser(self) -> NumericParser:
        """Create parser instance."""
        return NumericParser()

    def test_parse_integer(self, parser: NumericParser):
        result = parser.parse("1234")
        assert result.value == Decimal("1234")
        assert result.is_negative is False

    def test_parse_with_commas_and_decimal(self, parser: NumericParser):
        result = parser.parse("1,234,567.89")
        assert result.value == Decimal("1234567.89")

    def test_parse_usd(self, parser: NumericParser):
        result = parser.parse("$1,234.56")
        assert result.value == Decimal("1234.56")
        assert result.currency == "$"

    def test_parse_parentheses_negative(self, parser: NumericParser):
        """Accounting negatives are wrapped in parentheses."""
        result = parser.parse("(1,234.56)")
        assert result.value == Decimal("-1234.56")
        assert result.is_negative is True

    def test_parse_currency_inside_parentheses(self, parser: NumericParser):
        result = parser.parse("($500)")
        assert result.value == Decimal("-500")

    def test_parse_minus_sign(self, parser: NumericParser):
        assert parser.parse("-123").value == Decimal("-123")
        assert parser.parse("$-1,200").value == Decimal("-1200")

    def test_parse_empty(self, parser: NumericParser):
        result = parser.parse("")
        assert result.value is None

    def test_parse_text(self, parser: NumericParser):
        result = parser.parse("n/a")
        assert result.value is None
        assert result.raw_value == "n/a"


class TestParseAmount:
    """Tests for cell amount parsing."""

    @pytest.mark.parametrize(
        "cell,expected",
        [
            (1500, 1500.0),
            (12.5, 12.5),
            (Decimal("3.25"), 3.25),
            ("2,500", 2500.0),
            ("(750)", -750.0),
            ("  $1,000.50 ", 1000.5),
        ],
    )
    def test_numeric_cells(self, cell, expected):
        assert parse_amount(cell) == expected

    @pytest.mark.parametrize("cell", [None, "", "   ", "abc", "-", True])
    def test_non_numeric_cells_are_zero(self, cell):
        assert parse_amount(cell) == 0.0
