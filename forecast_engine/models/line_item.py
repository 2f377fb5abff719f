"""
ForecastLineItem model: the per-company chart of forecastable accounts.

Line items are created lazily the first time an import mentions a
(statement type, line code) pair. They are never deleted, only deactivated.
"""
import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Enum as SQLEnum, Index, Integer, String, Text, UniqueConstraint

from forecast_engine.database import Base
from forecast_engine.models.types import UUID


class StatementType(str, Enum):
    """Financial statement types that carry forecastable lines."""
    INCOME_STATEMENT = "income_statement"
    BALANCE_SHEET = "balance_sheet"


class ForecastLineItem(Base):
    """
    SQLAlchemy model for a forecastable line item.

    Attributes:
        id: Unique identifier (UUID).
        company_id: Owning company.
        statement_type: Income statement or balance sheet.
        line_code: Account code, unique per company and statement.
        line_name: Display name of the account.
        line_category: Optional grouping (Revenue, COGS, Assets, ...).
        line_subcategory: Optional finer grouping.
        display_order: Insertion order within the company's chart.
        is_calculated: Subtotal/total rows.
        calculation_formula: Formula text for calculated rows.
        is_active: False once the line has been retired.
    """

    __tablename__ = "forecast_line_items"
    __table_args__ = (
        UniqueConstraint("company_id", "statement_type", "line_code", name="uq_forecast_line_item_code"),
        Index("idx_forecast_line_items_statement", "company_id", "statement_type"),
    )

    id: uuid.UUID = Column(UUID(), primary_key=True, default=uuid.uuid4, index=True)
    company_id: uuid.UUID = Column(UUID(), nullable=False, index=True)
    statement_type: StatementType = Column(SQLEnum(StatementType), nullable=False)
    line_code: str = Column(String(255), nullable=False)
    line_name: str = Column(String(500), nullable=False)
    line_category: str = Column(String(255), nullable=True)
    line_subcategory: str = Column(String(255), nullable=True)
    display_order: int = Column(Integer, default=0, nullable=False)
    is_calculated: bool = Column(Boolean, default=False, nullable=False)
    calculation_formula: str = Column(Text, nullable=True)
    is_active: bool = Column(Boolean, default=True, nullable=False)
    created_at: datetime = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: datetime = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def registry_key(self) -> str:
        """Key used to match imported rows: ``statement_type:line_code``."""
        return build_line_key(self.statement_type, self.line_code)

    def deactivate(self) -> None:
        """Retire the line without deleting its history."""
        self.is_active = False
        self.updated_at = datetime.utcnow()

    def __repr__(self) -> str:
        return f"<ForecastLineItem(id={self.id}, code='{self.line_code}', name='{self.line_name}')>"


def build_line_key(statement_type, line_code: str) -> str:
    """Case-insensitive registry key for a statement type and line code."""
    statement = statement_type.value if isinstance(statement_type, StatementType) else str(statement_type)
    return f"{statement}:{line_code.lower()}"
