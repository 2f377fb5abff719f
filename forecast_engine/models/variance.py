"""
VarianceRecord model: cached forecast vs. actual comparison per line and month.

The cache is disposable; it is rebuilt from projections and actuals on demand.
"""
import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, UniqueConstraint

from forecast_engine.database import Base
from forecast_engine.models.types import UUID, Money, Percent


class VarianceRecord(Base):
    """Derived variance figures for one line item and period."""

    __tablename__ = "forecast_variance_cache"
    __table_args__ = (
        UniqueConstraint("company_id", "line_item_id", "period_year", "period_month", name="uq_forecast_variance_period"),
        CheckConstraint("period_month BETWEEN 1 AND 12", name="ck_forecast_variance_month"),
        Index("idx_forecast_variance_period", "company_id", "period_year", "period_month"),
    )

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(), nullable=False)
    line_item_id = Column(UUID(), ForeignKey("forecast_line_items.id", ondelete="CASCADE"), nullable=False)
    period_year = Column(Integer, nullable=False)
    period_month = Column(Integer, nullable=False)

    # Current month
    forecast_amount = Column(Money(), nullable=True)
    actual_amount = Column(Money(), nullable=True)
    variance_amount = Column(Money(), nullable=True)
    variance_percent = Column(Percent(), nullable=True)

    # Year to date
    ytd_forecast = Column(Money(), nullable=True)
    ytd_actual = Column(Money(), nullable=True)
    ytd_variance = Column(Money(), nullable=True)
    ytd_variance_percent = Column(Percent(), nullable=True)

    # Same month, prior year
    prior_year_actual = Column(Money(), nullable=True)
    prior_year_variance = Column(Money(), nullable=True)
    prior_year_variance_percent = Column(Percent(), nullable=True)

    is_restated = Column(Boolean, default=False, nullable=False)
    calculated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    @property
    def period(self) -> str:
        return f"{self.period_year}-{self.period_month:02d}"

    def __repr__(self) -> str:
        return f"<VarianceRecord(line_item_id={self.line_item_id}, period={self.period}, variance={self.variance_amount})>"
