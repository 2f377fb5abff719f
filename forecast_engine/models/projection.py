"""
ForecastProjection model: append-only log of projected amounts.

Every orchestrator run writes its rows under a new ``forecast_version``;
rows are never updated afterwards. The current forecast for a key is the
row with the highest version.
"""
import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, Column, DateTime, Enum as SQLEnum, ForeignKey, Index, Integer, BigInteger, UniqueConstraint

from forecast_engine.database import Base
from forecast_engine.models.methodology import ForecastMethodology
from forecast_engine.models.types import UUID, JSONType, Money


class ForecastProjection(Base):
    """One projected amount for a line item, period and run version."""

    __tablename__ = "forecast_projections"
    __table_args__ = (
        UniqueConstraint(
            "company_id", "line_item_id", "period_year", "period_month", "forecast_version",
            name="uq_forecast_projection_version",
        ),
        CheckConstraint("period_month BETWEEN 1 AND 12", name="ck_forecast_projection_month"),
        Index("idx_forecast_projections_period", "company_id", "period_year", "period_month"),
        Index(
            "idx_forecast_projections_latest",
            "company_id", "line_item_id", "period_year", "period_month", "forecast_version",
        ),
        Index("idx_forecast_projections_version", "company_id", "forecast_version"),
    )

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(), nullable=False)
    line_item_id = Column(UUID(), ForeignKey("forecast_line_items.id", ondelete="CASCADE"), nullable=False)
    period_year = Column(Integer, nullable=False)
    period_month = Column(Integer, nullable=False)
    forecast_amount = Column(Money(), nullable=False, default=0)
    methodology_used = Column(SQLEnum(ForecastMethodology), nullable=False)
    methodology_params = Column(JSONType, nullable=True)
    forecast_version = Column(BigInteger, nullable=False)
    generated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    @property
    def period(self) -> str:
        return f"{self.period_year}-{self.period_month:02d}"

    def __repr__(self) -> str:
        return (
            f"<ForecastProjection(line_item_id={self.line_item_id}, period={self.period}, "
            f"version={self.forecast_version}, amount={self.forecast_amount})>"
        )
