"""
Statement converter service.

Turns an arbitrary ledger export (any column layout) into the standard
import template: ``Statement, Line Code, Line Name, Category, Subcategory``
followed by one column per month. Also produces the blank template.
"""
import csv
import io
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

import structlog

from forecast_engine.models.line_item import StatementType
from forecast_engine.services.numeric_parser import get_numeric_parser
from forecast_engine.services.period_normalizer import get_period_normalizer, trailing_periods
from forecast_engine.services.workbook_parser import (
    ACCOUNT_HINTS,
    CATEGORY_HINTS,
    CODE_HINTS,
    SUBCATEGORY_HINTS,
    CodeAllocator,
    MonthColumn,
    RawTable,
    cell_text,
    get_workbook_parser,
    guess_column,
)

logger = structlog.get_logger(__name__)


TEMPLATE_COLUMNS = ["Statement", "Line Code", "Line Name", "Category", "Subcategory"]
SAMPLE_ROW = ["Income Statement", "REV_TOTAL", "Total Revenue", "Revenue", "Contract Revenue"]
TOTAL_ROW_PATTERNS = ["total", "grand total", "net income", "net profit"]

STATEMENT_LABELS = {
    StatementType.INCOME_STATEMENT: "Income Statement",
    StatementType.BALANCE_SHEET: "Balance Sheet",
}


@dataclass
class ConverterMapping:
    """How columns of a raw export map onto the template."""

    line_name_column: str
    statement_mode: str = "single"  # single | column
    single_statement: StatementType = StatementType.INCOME_STATEMENT
    statement_column: Optional[str] = None
    line_code_column: Optional[str] = None
    category_column: Optional[str] = None
    subcategory_column: Optional[str] = None
    default_category: str = ""
    default_subcategory: str = ""
    month_headers: List[str] = field(default_factory=list)
    skip_total_rows: bool = True
    skip_zero_rows: bool = True


@dataclass
class ConvertedLine:
    """A template line with its monthly values."""

    statement: StatementType
    line_code: str
    line_name: str
    category: Optional[str] = None
    subcategory: Optional[str] = None
    values: Dict[str, float] = field(default_factory=dict)


@dataclass
class ConversionSummary:
    """Row count and period range of converted lines."""

    row_count: int
    period_start: Optional[str] = None
    period_end: Optional[str] = None


def default_mapping(headers: Sequence[str], month_headers: Sequence[str]) -> ConverterMapping:
    """Guess a mapping from header names."""
    return ConverterMapping(
        line_name_column=guess_column(headers, ACCOUNT_HINTS) or (headers[0] if headers else ""),
        line_code_column=guess_column(headers, CODE_HINTS),
        category_column=guess_column(headers, CATEGORY_HINTS),
        subcategory_column=guess_column(headers, SUBCATEGORY_HINTS),
        month_headers=list(month_headers),
    )


def convert_rows(
    raw_rows: Sequence[Dict[str, Any]],
    mapping: ConverterMapping,
    available_months: Sequence[MonthColumn],
) -> List[ConvertedLine]:
    """
    Convert raw rows into template lines.

    Rows without a name are dropped, as are total rows and all-zero rows
    when the mapping asks for it. Missing codes become slugs of the name.
    """
    if not mapping.line_name_column:
        return []

    numbers = get_numeric_parser()
    periods = get_period_normalizer()
    months = [month for month in available_months if month.header in mapping.month_headers]
    codes = CodeAllocator()
    result: List[ConvertedLine] = []

    for row in raw_rows:
        line_name = cell_text(row.get(mapping.line_name_column))
        if not line_name:
            continue

        lower_name = line_name.lower()
        if mapping.skip_total_rows and any(lower_name.startswith(p) for p in TOTAL_ROW_PATTERNS):
            continue

        statement = mapping.single_statement
        if mapping.statement_mode == "column" and mapping.statement_column:
            statement = periods.normalize_statement_type(cell_text(row.get(mapping.statement_column)))

        line_code = cell_text(row.get(mapping.line_code_column)) if mapping.line_code_column else ""
        if not line_code:
            line_code = codes.allocate(line_name)

        if mapping.category_column:
            category = cell_text(row.get(mapping.category_column)) or None
        else:
            category = mapping.default_category.strip() or None
        if mapping.subcategory_column:
            subcategory = cell_text(row.get(mapping.subcategory_column)) or None
        else:
            subcategory = mapping.default_subcategory.strip() or None

        values = {month.period: numbers.parse_amount(row.get(month.header)) for month in months}
        if mapping.skip_zero_rows and sum(values.values()) == 0:
            continue

        result.append(ConvertedLine(
            statement=statement,
            line_code=line_code,
            line_name=line_name,
            category=category,
            subcategory=subcategory,
            values=values,
        ))

    return result


def _format_amount(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _write_csv(rows: Sequence[Sequence[str]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerows(rows)
    return buffer.getvalue().rstrip("\n")


def build_template_csv(lines: Sequence[ConvertedLine], periods: Sequence[str]) -> str:
    """Render converted lines as template CSV text."""
    rows = [TEMPLATE_COLUMNS + list(periods)]
    for line in lines:
        rows.append([
            STATEMENT_LABELS[line.statement],
            line.line_code,
            line.line_name,
            line.category or "",
            line.subcategory or "",
        ] + [_format_amount(line.values.get(period, 0)) for period in periods])
    return _write_csv(rows)


def summarize_converted_lines(lines: Sequence[ConvertedLine]) -> ConversionSummary:
    """Row count and the first/last period carried by the lines."""
    if not lines:
        return ConversionSummary(row_count=0)
    periods = sorted({period for line in lines for period in line.values})
    return ConversionSummary(row_count=len(lines), period_start=periods[0], period_end=periods[-1])


def template_headers(months: int, today: Optional[date] = None) -> List[str]:
    """Template header row with ``months`` trailing month columns."""
    return TEMPLATE_COLUMNS + trailing_periods(months, today)


def build_blank_template(months: int, today: Optional[date] = None) -> str:
    """Blank import template with one sample row."""
    return _write_csv([template_headers(months, today), SAMPLE_ROW])


class StatementConverter:
    """Converts an uploaded raw export straight into template CSV."""

    def __init__(self):
        self.parser = get_workbook_parser()

    def convert_file(
        self,
        content: bytes,
        file_name: str,
        mapping: Optional[ConverterMapping] = None,
    ) -> Dict[str, Any]:
        """
        Parse a raw export and convert it.

        Returns:
            Dict with the template ``csv``, the ``mapping`` used and a ``summary``.
        """
        table: RawTable = self.parser.parse_workbook(content, file_name)
        months = self.parser.detect_month_columns(table.headers)
        if mapping is None:
            mapping = default_mapping(table.headers, [m.header for m in months])

        lines = convert_rows(table.rows, mapping, months)
        periods = sorted({m.period for m in months if m.header in mapping.month_headers})
        summary = summarize_converted_lines(lines)

        logger.info(
            "Raw export converted",
            file_name=file_name,
            lines=summary.row_count,
            period_start=summary.period_start,
            period_end=summary.period_end,
        )
        return {
            "csv": build_template_csv(lines, periods),
            "mapping": mapping,
            "summary": summary,
        }


def get_statement_converter() -> StatementConverter:
    """Get StatementConverter instance."""
    return StatementConverter()
