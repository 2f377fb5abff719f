"""
Workbook parser service.

Reads the first sheet of an uploaded ``.xlsx``/``.xlsm``/``.csv`` export into
a header-keyed table, finds the real header row below any title rows, and
extracts one ParsedLineRow per account with its monthly amounts.
"""
import csv
import io
import re
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import structlog
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from forecast_engine.exceptions import (
    EmptyWorkbookError,
    InsufficientPeriodsError,
    NoMonthColumnsError,
    NoRowsExtractedError,
    UnsupportedFileTypeError,
    ValidationError,
)
from forecast_engine.models.line_item import StatementType
from forecast_engine.services.numeric_parser import get_numeric_parser
from forecast_engine.services.period_normalizer import get_period_normalizer

logger = structlog.get_logger(__name__)


ACCOUNT_HINTS = ["account", "name", "description", "line", "label"]
CODE_HINTS = ["code", "number", "#", "id"]
CATEGORY_HINTS = ["category", "type", "class", "group"]
SUBCATEGORY_HINTS = ["sub", "detail"]
STATEMENT_HINTS = ["statement"]

# Exact header names, matched case-insensitively, before falling back to hints
LINE_CODE_ALIASES = ["line code", "code", "account", "line_code"]
LINE_NAME_ALIASES = ["line name", "name", "account name", "line_name"]
STATEMENT_ALIASES = ["statement", "statement type", "type"]
CATEGORY_ALIASES = ["category", "line category", "group"]
SUBCATEGORY_ALIASES = ["subcategory", "line subcategory", "sub category"]

MAX_CODE_LENGTH = 40

SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


@dataclass
class MonthColumn:
    """A header recognized as a calendar month."""

    header: str
    period: str  # YYYY-MM


@dataclass
class RawTable:
    """First-sheet contents keyed by the detected header row."""

    headers: List[str]
    rows: List[Dict[str, Any]]
    header_row_index: int = 0


@dataclass
class ParsedLineValue:
    """One month's amount for a line."""

    period: str
    amount: float


@dataclass
class ParsedLineRow:
    """A line item row extracted from a workbook."""

    statement_type: StatementType
    line_code: str
    line_name: str
    line_category: Optional[str] = None
    line_subcategory: Optional[str] = None
    values: List[ParsedLineValue] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.statement_type.value}:{self.line_code.lower()}"


@dataclass
class ColumnMapping:
    """Columns resolved for line extraction."""

    line_name: str
    line_code: Optional[str] = None
    statement: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None


def slugify_code(name: str) -> str:
    """Lowercase dash-separated code derived from a line name."""
    slug = SLUG_PATTERN.sub("-", name.lower()).strip("-")[:MAX_CODE_LENGTH].strip("-")
    return slug or "line"


class CodeAllocator:
    """Hands out slug codes, suffixing repeats with -2, -3, ..."""

    def __init__(self):
        self._counts: Dict[str, int] = {}

    def allocate(self, name: str) -> str:
        base = slugify_code(name)
        count = self._counts.get(base, 0)
        self._counts[base] = count + 1
        return base if count == 0 else f"{base}-{count + 1}"


def guess_column(
    headers: Sequence[str],
    hints: Sequence[str],
    exclude: Sequence[str] = (),
) -> Optional[str]:
    """First header containing any of the hints, skipping excluded headers."""
    for header in headers:
        if header in exclude:
            continue
        lower = header.lower()
        if any(hint in lower for hint in hints):
            return header
    return None


def _find_alias(headers: Sequence[str], aliases: Sequence[str], exclude: Sequence[str] = ()) -> Optional[str]:
    lookup = {header.strip().lower(): header for header in headers if header not in exclude}
    for alias in aliases:
        if alias in lookup:
            return lookup[alias]
    return None


def cell_text(cell: Any) -> str:
    """Cell value as trimmed text; whole floats lose their .0 and dates use ISO form."""
    if cell is None:
        return ""
    if isinstance(cell, datetime):
        return cell.date().isoformat()
    if isinstance(cell, date):
        return cell.isoformat()
    if isinstance(cell, float) and cell.is_integer():
        return str(int(cell))
    return str(cell).strip()


def _has_account_hint(row: Sequence[Any]) -> bool:
    for cell in row:
        value = cell_text(cell).lower()
        if value and any(hint in value for hint in ACCOUNT_HINTS):
            return True
    return False


class WorkbookParser:
    """
    Service for reading ledger exports.

    Features:
    - First sheet of Excel workbooks (cached formula values) or CSV text
    - Header-row detection that skips report titles
    - Month column detection via the period normalizer
    - Line extraction with alias and hint based column resolution
    """

    SUPPORTED_EXTENSIONS = [".xlsx", ".xlsm", ".csv"]

    def __init__(self):
        self.periods = get_period_normalizer()
        self.numbers = get_numeric_parser()

    def read_rows(self, content: bytes, file_name: str) -> List[List[Any]]:
        """
        Read the first sheet as a list of non-blank rows.

        Raises:
            UnsupportedFileTypeError: For extensions other than xlsx/xlsm/csv.
            EmptyWorkbookError: If the sheet has no non-blank rows.
        """
        extension = Path(file_name or "").suffix.lower()
        if extension not in self.SUPPORTED_EXTENSIONS:
            raise UnsupportedFileTypeError(file_name, self.SUPPORTED_EXTENSIONS)

        if extension == ".csv":
            rows = self._read_csv(content)
        else:
            rows = self._read_excel(content, file_name)

        rows = [row for row in rows if any(cell_text(cell) for cell in row)]
        if not rows:
            raise EmptyWorkbookError(file_name)
        return rows

    def _read_csv(self, content: bytes) -> List[List[Any]]:
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError:
            text = content.decode("latin-1")
        return [list(row) for row in csv.reader(io.StringIO(text))]

    def _read_excel(self, content: bytes, file_name: str) -> List[List[Any]]:
        try:
            wb = load_workbook(filename=io.BytesIO(content), read_only=True, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
            logger.warning("Failed to open workbook", file_name=file_name, error=str(e))
            raise ValidationError(
                "The uploaded file could not be read as an Excel workbook.",
                details={"file_name": file_name},
            ) from e

        try:
            if not wb.worksheets:
                return []
            ws = wb.worksheets[0]
            return [list(row) for row in ws.iter_rows(values_only=True)]
        finally:
            wb.close()

    def parse_workbook(self, content: bytes, file_name: str) -> RawTable:
        """
        Parse an uploaded file into a header-keyed table.

        Args:
            content: Raw file bytes.
            file_name: Original file name (used for the format).

        Returns:
            RawTable with detected headers and data rows.
        """
        rows = self.read_rows(content, file_name)
        headers, data_start = self.detect_header_row(rows)

        records = []
        for row in rows[data_start:]:
            record: Dict[str, Any] = {}
            for index, header in enumerate(headers):
                value = row[index] if index < len(row) else None
                if value is None:
                    value = ""
                elif isinstance(value, str):
                    value = value.strip()
                record[header] = value
            records.append(record)

        logger.info(
            "Workbook parsed",
            file_name=file_name,
            header_row=data_start - 1,
            columns=len(headers),
            rows=len(records),
        )
        return RawTable(headers=headers, rows=records, header_row_index=max(data_start - 1, 0))

    def detect_header_row(self, table: List[List[Any]]) -> Tuple[List[str], int]:
        """
        Find the header row of a sheet.

        A row is the header if it has an account-hint cell or at least two
        month cells. A month row with an empty first cell defers to the next
        row when that row has an account hint; otherwise the first such
        month-only row is used.

        Returns:
            (headers, index of the first data row)
        """
        header_index: Optional[int] = None
        month_only_candidate: Optional[int] = None

        for i, row in enumerate(table):
            if _has_account_hint(row):
                header_index = i
                break

            month_count = sum(1 for cell in row if self.periods.normalize_period_label(_period_cell(cell)))
            if month_count >= 2:
                first_cell_has_text = bool(row) and bool(cell_text(row[0]))
                if first_cell_has_text:
                    header_index = i
                    break
                if month_only_candidate is None:
                    month_only_candidate = i
                if i + 1 < len(table) and _has_account_hint(table[i + 1]):
                    header_index = i + 1
                    break

        if header_index is None:
            header_index = month_only_candidate if month_only_candidate is not None else 0

        header_row = table[header_index] if table else []
        headers = []
        for index, cell in enumerate(header_row):
            label = cell_text(cell)
            headers.append(label or f"Column {index + 1}")

        return headers, min(header_index + 1, len(table))

    def detect_month_columns(self, headers: Sequence[str]) -> List[MonthColumn]:
        """Headers that normalize to a period, in sheet order."""
        columns = []
        for header in headers:
            period = self.periods.normalize_period_label(header)
            if period:
                columns.append(MonthColumn(header=header, period=period))
        return columns

    def resolve_columns(self, headers: Sequence[str], month_headers: Sequence[str] = ()) -> ColumnMapping:
        """
        Resolve the descriptive columns of a table.

        Exact aliases win; otherwise the first header containing a hint is
        used. Month columns and already-assigned columns are never reused.
        """
        used = list(month_headers)

        line_code = _find_alias(headers, LINE_CODE_ALIASES, used)
        if line_code:
            used.append(line_code)
        line_name = _find_alias(headers, LINE_NAME_ALIASES, used)
        if line_name:
            used.append(line_name)
        statement = _find_alias(headers, STATEMENT_ALIASES, used)
        if statement:
            used.append(statement)
        subcategory = _find_alias(headers, SUBCATEGORY_ALIASES, used)
        if subcategory:
            used.append(subcategory)
        category = _find_alias(headers, CATEGORY_ALIASES, used)
        if category:
            used.append(category)

        if not line_name:
            name_candidates = [h for h in headers if not any(hint in h.lower() for hint in CODE_HINTS)]
            line_name = guess_column(name_candidates, ACCOUNT_HINTS, used)
            if not line_name:
                line_name = next((h for h in headers if h not in used), headers[0] if headers else "")
            used.append(line_name)
        if not line_code:
            line_code = guess_column(headers, CODE_HINTS, used)
            if line_code:
                used.append(line_code)
        if not statement:
            statement = guess_column(headers, STATEMENT_HINTS, used)
            if statement:
                used.append(statement)
        if not subcategory:
            subcategory = guess_column(headers, SUBCATEGORY_HINTS, used)
            if subcategory:
                used.append(subcategory)
        if not category:
            category = guess_column(headers, CATEGORY_HINTS, used)

        return ColumnMapping(
            line_name=line_name,
            line_code=line_code,
            statement=statement,
            category=category,
            subcategory=subcategory,
        )

    def extract_line_rows(self, table: RawTable, minimum_periods: Optional[int] = None) -> List[ParsedLineRow]:
        """
        Extract line rows with their non-zero monthly amounts.

        Args:
            table: Parsed table.
            minimum_periods: Minimum number of month columns required.

        Returns:
            Parsed rows in sheet order.

        Raises:
            NoMonthColumnsError: No header is a recognizable month.
            InsufficientPeriodsError: Fewer month columns than required.
            NoRowsExtractedError: No row had a name and a non-zero amount.
        """
        month_columns = self.detect_month_columns(table.headers)
        if not month_columns:
            raise NoMonthColumnsError(table.headers)
        if minimum_periods and len(month_columns) < minimum_periods:
            raise InsufficientPeriodsError(minimum_periods, len(month_columns))

        mapping = self.resolve_columns(table.headers, [m.header for m in month_columns])
        codes = CodeAllocator()
        parsed_rows: List[ParsedLineRow] = []

        for row in table.rows:
            line_name = cell_text(row.get(mapping.line_name))
            if not line_name:
                continue

            statement_type = self.periods.normalize_statement_type(
                cell_text(row.get(mapping.statement)) if mapping.statement else None
            )

            values = []
            for column in month_columns:
                amount = self.numbers.parse_amount(row.get(column.header))
                if amount != 0:
                    values.append(ParsedLineValue(period=column.period, amount=amount))
            if not values:
                continue

            line_code = cell_text(row.get(mapping.line_code)) if mapping.line_code else ""
            if not line_code:
                line_code = codes.allocate(line_name)

            parsed_rows.append(ParsedLineRow(
                statement_type=statement_type,
                line_code=line_code,
                line_name=line_name,
                line_category=(cell_text(row.get(mapping.category)) or None) if mapping.category else None,
                line_subcategory=(cell_text(row.get(mapping.subcategory)) or None) if mapping.subcategory else None,
                values=values,
            ))

        if not parsed_rows:
            raise NoRowsExtractedError()

        logger.info(
            "Line rows extracted",
            rows=len(parsed_rows),
            month_columns=len(month_columns),
            name_column=mapping.line_name,
            code_column=mapping.line_code,
        )
        return parsed_rows

    def parse_line_rows(
        self,
        content: bytes,
        file_name: str,
        minimum_periods: Optional[int] = None,
    ) -> List[ParsedLineRow]:
        """Parse a file and extract its line rows in one step."""
        table = self.parse_workbook(content, file_name)
        return self.extract_line_rows(table, minimum_periods=minimum_periods)


def _period_cell(cell: Any) -> Union[str, date, None]:
    if isinstance(cell, (datetime, date)):
        return cell
    return cell_text(cell)


def summarize_periods(rows: Sequence[ParsedLineRow]) -> Tuple[Optional[str], Optional[str]]:
    """First and last period present across all rows."""
    periods = sorted({value.period for row in rows for value in row.values})
    if not periods:
        return None, None
    return periods[0], periods[-1]


def summarize_statements(rows: Sequence[ParsedLineRow]) -> str:
    """The single statement type of the rows, or ``both``."""
    statements = {row.statement_type for row in rows}
    if len(statements) == 1:
        return next(iter(statements)).value
    return "both"


def get_workbook_parser() -> WorkbookParser:
    """Get WorkbookParser instance."""
    return WorkbookParser()
