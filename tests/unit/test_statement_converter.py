"""
Unit tests for the statement converter.
"""
import csv
import io
from datetime import date

from forecast_engine.models.line_item import StatementType
from forecast_engine.services.statement_converter import (
    SAMPLE_ROW,
    TEMPLATE_COLUMNS,
    ConverterMapping,
    ConvertedLine,
    StatementConverter,
    build_blank_template,
    build_template_csv,
    convert_rows,
    default_mapping,
    summarize_converted_lines,
    template_headers,
)
from forecast_engine.services.workbook_parser import MonthColumn, WorkbookParser

MONTHS = [MonthColumn(header="Jan 2024", period="2024-01"), MonthColumn(header="Feb 2024", period="2024-02")]


def read_csv(text: str):
    return list(csv.reader(io.StringIO(text)))


class TestDefaultMapping:
    """Tests for mapping guesses."""

    def test_guesses_columns(self):
        headers = ["Account Name", "Account Code", "Category", "Sub Type", "Jan 2024"]
        mapping = default_mapping(headers, ["Jan 2024"])

        assert mapping.line_name_column == "Account Name"
        assert mapping.line_code_column == "Account Code"
        assert mapping.category_column == "Category"
        assert mapping.subcategory_column == "Sub Type"
        assert mapping.month_headers == ["Jan 2024"]

    def test_falls_back_to_first_header(self):
        mapping = default_mapping(["Item", "Jan 2024"], ["Jan 2024"])

        assert mapping.line_name_column == "Item"


class TestConvertRows:
    """Tests for row conversion."""

    def test_skips_totals_and_zero_rows(self):
        rows = [
            {"Account": "Revenue", "Jan 2024": "1,000", "Feb 2024": "1,100"},
            {"Account": "Total Revenue", "Jan 2024": "1,000", "Feb 2024": "1,100"},
            {"Account": "Dormant", "Jan 2024": "0", "Feb 2024": ""},
            {"Account": "Net Income", "Jan 2024": "10", "Feb 2024": "20"},
            {"Account": "", "Jan 2024": "5", "Feb 2024": "5"},
        ]
        mapping = ConverterMapping(line_name_column="Account", month_headers=["Jan 2024", "Feb 2024"])
        lines = convert_rows(rows, mapping, MONTHS)

        assert [line.line_name for line in lines] == ["Revenue"]
        assert lines[0].values == {"2024-01": 1000.0, "2024-02": 1100.0}
        assert lines[0].line_code == "revenue"

    def test_keeps_totals_when_asked(self):
        rows = [{"Account": "Total Revenue", "Jan 2024": "5"}]
        mapping = ConverterMapping(
            line_name_column="Account",
            month_headers=["Jan 2024"],
            skip_total_rows=False,
        )

        assert len(convert_rows(rows, mapping, MONTHS)) == 1

    def test_statement_column_mode(self):
        rows = [
            {"Account": "Cash", "Statement": "Balance Sheet", "Jan 2024": "5"},
            {"Account": "Sales", "Statement": "P&L", "Jan 2024": "7"},
        ]
        mapping = ConverterMapping(
            line_name_column="Account",
            statement_mode="column",
            statement_column="Statement",
            month_headers=["Jan 2024"],
            default_category="General",
        )
        lines = convert_rows(rows, mapping, MONTHS)

        assert [line.statement for line in lines] == [StatementType.BALANCE_SHEET, StatementType.INCOME_STATEMENT]
        assert lines[0].category == "General"
        # Months not selected by the mapping are left out
        assert list(lines[0].values) == ["2024-01"]

    def test_duplicate_names_get_suffixes(self):
        rows = [{"Account": "Rent", "Jan 2024": "1"}, {"Account": "Rent", "Jan 2024": "2"}]
        mapping = ConverterMapping(line_name_column="Account", month_headers=["Jan 2024"])

        assert [line.line_code for line in convert_rows(rows, mapping, MONTHS)] == ["rent", "rent-2"]


class TestTemplateOutput:
    """Tests for CSV rendering."""

    def test_build_template_csv_quotes_values(self):
        lines = [
            ConvertedLine(
                statement=StatementType.INCOME_STATEMENT,
                line_code="rent",
                line_name="Rent, Office",
                category="Opex",
                values={"2024-01": 1500.0, "2024-02": 1500.5},
            )
        ]
        rows = read_csv(build_template_csv(lines, ["2024-01", "2024-02"]))

        assert rows[0] == TEMPLATE_COLUMNS + ["2024-01", "2024-02"]
        assert rows[1] == ["Income Statement", "rent", "Rent, Office", "Opex", "", "1500", "1500.5"]

    def test_template_headers(self):
        headers = template_headers(3, today=date(2024, 1, 10))

        assert headers == TEMPLATE_COLUMNS + ["2023-11", "2023-12", "2024-01"]

    def test_blank_template_has_sample_row(self):
        rows = read_csv(build_blank_template(12, today=date(2024, 6, 1)))

        assert len(rows) == 2
        assert rows[0][-1] == "2024-06"
        assert len(rows[0]) == len(TEMPLATE_COLUMNS) + 12
        assert rows[1] == SAMPLE_ROW

    def test_summary(self):
        lines = [
            ConvertedLine(StatementType.INCOME_STATEMENT, "a", "A", values={"2024-02": 1.0}),
            ConvertedLine(StatementType.INCOME_STATEMENT, "b", "B", values={"2023-12": 1.0}),
        ]
        summary = summarize_converted_lines(lines)

        assert (summary.row_count, summary.period_start, summary.period_end) == (2, "2023-12", "2024-02")
        assert summarize_converted_lines([]).row_count == 0


class TestConvertFile:
    """Tests for end-to-end conversion of a raw export."""

    def test_converted_csv_is_importable(self):
        raw = (
            "Quarterly Report,,\n"
            "Account,Jan 2024,Feb 2024\n"
            "Revenue,\"$1,000\",\"$1,200\"\n"
            "Rent,(300),(300)\n"
            "Total,700,900\n"
        ).encode("utf-8")
        converted = StatementConverter().convert_file(raw, "export.csv")

        assert converted["summary"].row_count == 2
        rows = WorkbookParser().parse_line_rows(converted["csv"].encode("utf-8"), "template.csv")
        assert [(r.line_code, r.values[0].amount) for r in rows] == [("revenue", 1000.0), ("rent", -300.0)]
