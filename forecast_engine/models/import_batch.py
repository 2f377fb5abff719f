"""
ImportBatch model for tracking workbook imports.

Stores the file, period range, counts and outcome of each historical or
actuals import.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Index, Integer, String, Text

from forecast_engine.database import Base
from forecast_engine.models.types import UUID


class ImportType(str, Enum):
    """Import type enumeration."""
    HISTORICAL = "historical"  # Seed history, typically 24+ months
    ACTUALS = "actuals"        # Monthly reported results


class ImportStatementScope(str, Enum):
    """Statements covered by an import."""
    INCOME_STATEMENT = "income_statement"
    BALANCE_SHEET = "balance_sheet"
    BOTH = "both"


class ImportStatus(str, Enum):
    """Import status enumeration."""
    PENDING = "pending"        # Batch created
    PROCESSING = "processing"  # Rows being written
    COMPLETED = "completed"    # All chunks committed
    FAILED = "failed"          # Aborted with error


class ImportBatch(Base):
    """Audit record for one uploaded workbook."""

    __tablename__ = "forecast_import_batches"
    __table_args__ = (
        Index("idx_forecast_import_batches_company", "company_id", "created_at"),
    )

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(), nullable=False)

    import_type = Column(SQLEnum(ImportType), nullable=False)
    statement_type = Column(SQLEnum(ImportStatementScope), nullable=False)
    file_name = Column(String(500), nullable=False)

    # Covered range, "YYYY-MM"
    period_start = Column(String(7), nullable=True)
    period_end = Column(String(7), nullable=True)

    # Counts
    row_count = Column(Integer, default=0, nullable=False)
    inserted_records = Column(Integer, default=0, nullable=False)
    restated_records = Column(Integer, default=0, nullable=False)

    status = Column(SQLEnum(ImportStatus), default=ImportStatus.PENDING, nullable=False)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<ImportBatch {self.id} type={self.import_type} status={self.status}>"

    def mark_processing(self) -> None:
        """Mark batch as processing."""
        self.status = ImportStatus.PROCESSING

    def mark_completed(self, inserted_records: int, restated_records: int = 0) -> None:
        """Mark batch as completed with final counts."""
        self.status = ImportStatus.COMPLETED
        self.inserted_records = inserted_records
        self.restated_records = restated_records
        self.completed_at = datetime.utcnow()
        self.error_message = None

    def mark_failed(self, error_message: str, inserted_records: Optional[int] = None) -> None:
        """Mark batch as failed."""
        self.status = ImportStatus.FAILED
        self.error_message = error_message
        if inserted_records is not None:
            self.inserted_records = inserted_records
        self.completed_at = datetime.utcnow()
