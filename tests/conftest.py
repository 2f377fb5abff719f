"""
Pytest configuration and fixtures.
"""
import csv
import io
import os
import uuid
from typing import Callable, Generator, List, Optional, Sequence

# Point the application engine at a throwaway database before it is created
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from forecast_engine import models  # noqa: F401
from forecast_engine.database import Base, get_db
from forecast_engine.main import app
from forecast_engine.models.financial_data import HistoricalAmount
from forecast_engine.models.line_item import StatementType
from forecast_engine.services.line_item_registry import LineItemRegistry
from forecast_engine.services.period_normalizer import add_months, parse_period
from forecast_engine.services.workbook_parser import ParsedLineRow, ParsedLineValue


# Create in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TEMPLATE_HEADER = ["Statement", "Line Code", "Line Name", "Category", "Subcategory"]


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def company_id() -> uuid.UUID:
    return uuid.uuid4()


def periods_from(start: str, months: int) -> List[str]:
    return [add_months(start, offset) for offset in range(months)]


@pytest.fixture
def template_csv() -> Callable[..., bytes]:
    """
    Build template-layout CSV bytes.

    Each line is (statement, code, name, category, subcategory, amounts)
    with one amount per period.
    """

    def build(lines: Sequence[Sequence], periods: Sequence[str]) -> bytes:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(TEMPLATE_HEADER + list(periods))
        for statement, code, name, category, subcategory, amounts in lines:
            writer.writerow([statement, code, name, category, subcategory] + [str(a) for a in amounts])
        return buffer.getvalue().encode("utf-8")

    return build


@pytest.fixture
def history_csv(template_csv) -> bytes:
    """Two years of revenue and cost history from January 2023."""
    periods = periods_from("2023-01", 24)
    return template_csv(
        [
            ("Income Statement", "REV_TOTAL", "Total Revenue", "Revenue", "", [50000 + 100 * i for i in range(24)]),
            ("Income Statement", "COGS", "Cost of Goods Sold", "Expenses", "", [20000 + 50 * i for i in range(24)]),
            ("Balance Sheet", "CASH", "Cash", "Assets", "Current", [90000] * 24),
        ],
        periods,
    )


def make_row(
    code: str,
    name: Optional[str] = None,
    statement: StatementType = StatementType.INCOME_STATEMENT,
    values: Optional[dict] = None,
) -> ParsedLineRow:
    """A parsed workbook row for registry and service tests."""
    return ParsedLineRow(
        statement_type=statement,
        line_code=code,
        line_name=name or code.title(),
        values=[ParsedLineValue(period=p, amount=a) for p, a in (values or {"2024-01": 1.0}).items()],
    )


@pytest.fixture
def row_factory() -> Callable[..., ParsedLineRow]:
    return make_row


@pytest.fixture
def seed_amounts(db_session: Session, company_id: uuid.UUID) -> Callable[..., None]:
    """Insert history or actuals rows directly: seed(item, {period: amount}, model=HistoricalAmount)."""

    def seed(item, amounts: dict, model=HistoricalAmount) -> None:
        for period, amount in amounts.items():
            year, month = parse_period(period)
            db_session.add(model(
                company_id=company_id,
                line_item_id=item.id,
                period_year=year,
                period_month=month,
                amount=amount,
            ))
        db_session.commit()

    return seed


@pytest.fixture
def line_items(db_session: Session, company_id: uuid.UUID) -> Callable[..., dict]:
    """Register line items by code; returns {code: ForecastLineItem}."""

    def create(*codes: str) -> dict:
        result = LineItemRegistry(db_session, company_id).ensure_line_items([make_row(code) for code in codes])
        return {item.line_code: item for item in result.line_items.values()}

    return create


@pytest.fixture
def fail_commit(db_session: Session, monkeypatch) -> Callable[..., None]:
    """
    Make a commit on the test session raise.

    fail_commit(Model, write=2) fails the second commit that carries new
    ``Model`` rows; every other commit goes through.
    """

    def install(model, write: int = 1) -> None:
        real_commit = db_session.commit
        writes = []

        def commit():
            if any(isinstance(obj, model) for obj in db_session.new):
                writes.append(model)
                if len(writes) == write:
                    raise SQLAlchemyError("disk I/O error")
            real_commit()

        monkeypatch.setattr(db_session, "commit", commit)

    return install
