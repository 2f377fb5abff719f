"""
Monthly amounts per line item: imported history and reported actuals.

Both tables hold at most one value per (company, line item, year, month);
re-imports overwrite in place. Actuals keep the value they replaced when a
re-import changes it.
"""
import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, UniqueConstraint

from forecast_engine.database import Base
from forecast_engine.models.types import UUID, Money


class HistoricalAmount(Base):
    """Historical amount used to seed forecasts (typically ~36 months)."""

    __tablename__ = "forecast_historical_data"
    __table_args__ = (
        UniqueConstraint("company_id", "line_item_id", "period_year", "period_month", name="uq_forecast_historical_period"),
        CheckConstraint("period_month BETWEEN 1 AND 12", name="ck_forecast_historical_month"),
        Index("idx_forecast_historical_period", "company_id", "period_year", "period_month"),
    )

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(), nullable=False, index=True)
    line_item_id = Column(UUID(), ForeignKey("forecast_line_items.id", ondelete="CASCADE"), nullable=False)
    period_year = Column(Integer, nullable=False)
    period_month = Column(Integer, nullable=False)
    amount = Column(Money(), nullable=False, default=0)
    import_batch_id = Column(UUID(), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def period(self) -> str:
        return f"{self.period_year}-{self.period_month:02d}"

    def __repr__(self) -> str:
        return f"<HistoricalAmount(line_item_id={self.line_item_id}, period={self.period}, amount={self.amount})>"


class ActualAmount(Base):
    """Reported actual for a period; takes precedence over history."""

    __tablename__ = "forecast_actuals"
    __table_args__ = (
        UniqueConstraint("company_id", "line_item_id", "period_year", "period_month", name="uq_forecast_actual_period"),
        CheckConstraint("period_month BETWEEN 1 AND 12", name="ck_forecast_actual_month"),
        Index("idx_forecast_actuals_period", "company_id", "period_year", "period_month"),
    )

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(), nullable=False, index=True)
    line_item_id = Column(UUID(), ForeignKey("forecast_line_items.id", ondelete="CASCADE"), nullable=False)
    period_year = Column(Integer, nullable=False)
    period_month = Column(Integer, nullable=False)
    amount = Column(Money(), nullable=False, default=0)
    import_batch_id = Column(UUID(), nullable=True)
    is_restated = Column(Boolean, default=False, nullable=False)
    prior_amount = Column(Money(), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def period(self) -> str:
        return f"{self.period_year}-{self.period_month:02d}"

    def __repr__(self) -> str:
        return (
            f"<ActualAmount(line_item_id={self.line_item_id}, period={self.period}, "
            f"amount={self.amount}, restated={self.is_restated})>"
        )
