"""
Period normalizer service.

Maps free-form header text to canonical ``YYYY-MM`` period keys and
statement labels to the StatementType enum, and provides the month
arithmetic used by imports, forecasts and variance.
"""
import re
from datetime import date, datetime
from typing import Any, List, Optional, Tuple

import structlog
from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from forecast_engine.exceptions import InvalidPeriodError
from forecast_engine.models.line_item import StatementType

logger = structlog.get_logger(__name__)


class PeriodNormalizer:
    """
    Service for period and statement-type normalization.

    Accepted period formats:
    - ``2024-01``, ``2024/1``
    - ``Jan 2024``, ``January-2024``, ``jan_2024``
    - datetime / date cells
    - other date strings carrying a four-digit year (``01/31/2024``)

    Bare numbers are never treated as periods.
    """

    DIRECT_PATTERN = re.compile(r"^(\d{4})[/-](\d{1,2})$")
    PERIOD_KEY_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")
    YEAR_PATTERN = re.compile(r"^\d{4}$")
    HAS_YEAR_PATTERN = re.compile(r"(?<!\d)\d{4}(?!\d)")
    NUMERIC_PATTERN = re.compile(r"^[+-]?[\d.,\s]+$")
    WORD_SPLIT_PATTERN = re.compile(r"[\s\-]+")

    MONTH_LABELS = [
        "january", "february", "march", "april", "may", "june",
        "july", "august", "september", "october", "november", "december",
    ]

    STATEMENT_ALIASES = {
        "income": StatementType.INCOME_STATEMENT,
        "income statement": StatementType.INCOME_STATEMENT,
        "p": StatementType.INCOME_STATEMENT,
        "p_l": StatementType.INCOME_STATEMENT,
        "p&l": StatementType.INCOME_STATEMENT,
        "is": StatementType.INCOME_STATEMENT,
        "revenue": StatementType.INCOME_STATEMENT,
        "profit and loss": StatementType.INCOME_STATEMENT,
        "balance": StatementType.BALANCE_SHEET,
        "balance sheet": StatementType.BALANCE_SHEET,
        "bs": StatementType.BALANCE_SHEET,
        "assets": StatementType.BALANCE_SHEET,
        "liabilities": StatementType.BALANCE_SHEET,
    }

    def normalize_period_label(self, label: Any) -> Optional[str]:
        """
        Normalize a header cell to a ``YYYY-MM`` key.

        Args:
            label: Header text or a date cell.

        Returns:
            Zero-padded period key, or None if the label is not a month.
        """
        if label is None or isinstance(label, bool):
            return None
        if isinstance(label, (datetime, date)):
            return format_period(label.year, label.month)
        if isinstance(label, (int, float)):
            return None

        trimmed = str(label).strip()
        if not trimmed:
            return None

        direct = self.DIRECT_PATTERN.match(trimmed)
        if direct:
            year, month = int(direct.group(1)), int(direct.group(2))
            return format_period(year, month) if 1 <= month <= 12 else None

        words = [w for w in self.WORD_SPLIT_PATTERN.split(trimmed.lower().replace("_", " ")) if w]
        if len(words) >= 2:
            month = self._month_from_word(words[0])
            if month is not None:
                year = next((w for w in words if self.YEAR_PATTERN.match(w)), None)
                if year:
                    return format_period(int(year), month)

        return self._parse_generic_date(trimmed)

    def _month_from_word(self, word: str) -> Optional[int]:
        """Match a month name or a 3+ letter prefix of one."""
        word = word.rstrip(".")
        if len(word) < 3:
            return None
        for index, name in enumerate(self.MONTH_LABELS):
            if name.startswith(word):
                return index + 1
        return None

    def _parse_generic_date(self, text: str) -> Optional[str]:
        if self.NUMERIC_PATTERN.match(text) or not self.HAS_YEAR_PATTERN.search(text):
            return None
        try:
            parsed = date_parser.parse(text, default=datetime(2000, 1, 1))
        except (ValueError, OverflowError):
            return None
        return format_period(parsed.year, parsed.month)

    def normalize_statement_type(self, value: Any) -> StatementType:
        """
        Map a statement label to StatementType.

        Unknown labels containing "balance" are balance sheets; everything
        else, including blanks, is an income statement.
        """
        if value is None:
            return StatementType.INCOME_STATEMENT
        if isinstance(value, StatementType):
            return value
        normalized = str(value).strip().lower()
        if not normalized:
            return StatementType.INCOME_STATEMENT
        if normalized in self.STATEMENT_ALIASES:
            return self.STATEMENT_ALIASES[normalized]
        if normalized in (StatementType.INCOME_STATEMENT.value, StatementType.BALANCE_SHEET.value):
            return StatementType(normalized)
        return StatementType.BALANCE_SHEET if "balance" in normalized else StatementType.INCOME_STATEMENT


def format_period(year: int, month: int) -> str:
    """Format a year and month as ``YYYY-MM``."""
    return f"{year:04d}-{month:02d}"


def parse_period(period: str) -> Tuple[int, int]:
    """
    Split a ``YYYY-MM`` key into (year, month).

    Raises:
        InvalidPeriodError: If the key is malformed or the month is out of range.
    """
    match = PeriodNormalizer.PERIOD_KEY_PATTERN.match(period or "")
    if not match:
        raise InvalidPeriodError(period)
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise InvalidPeriodError(period)
    return year, month


def add_months(period: str, months: int) -> str:
    """Shift a period key by a number of months (negative goes back)."""
    year, month = parse_period(period)
    shifted = date(year, month, 1) + relativedelta(months=months)
    return format_period(shifted.year, shifted.month)


def current_period(today: Optional[date] = None) -> str:
    """Period key of the current calendar month."""
    today = today or date.today()
    return format_period(today.year, today.month)


def trailing_periods(months: int, today: Optional[date] = None) -> List[str]:
    """The ``months`` consecutive periods ending at the current month."""
    end = current_period(today)
    return [add_months(end, offset) for offset in range(-(months - 1), 1)]


def get_period_normalizer() -> PeriodNormalizer:
    """Get PeriodNormalizer instance."""
    return PeriodNormalizer()
