"""
MethodologyConfig model: the forecasting method chosen for a line item.

One row per (company, line item). Parameters are stored as the flat
camelCase map the catalog declares; manual overrides are a separate
``YYYY-MM -> amount`` map that wins over any method.
"""
import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Enum as SQLEnum, ForeignKey, UniqueConstraint

from forecast_engine.database import Base
from forecast_engine.models.types import UUID, JSONType


class ForecastMethodology(str, Enum):
    """Supported forecasting methodologies."""
    STRAIGHT_LINE = "straight_line"
    LINEAR_TREND = "linear_trend"
    GROWTH_RATE = "growth_rate"
    SEASONAL = "seasonal"
    PERCENT_OF_REVENUE = "percent_of_revenue"
    DRIVER_BASED = "driver_based"
    MANUAL = "manual"
    RUN_RATE = "run_rate"
    MOVING_AVERAGE = "moving_average"


class MethodologyConfig(Base):
    """Per-line methodology selection and parameters."""

    __tablename__ = "forecast_methodologies"
    __table_args__ = (
        UniqueConstraint("company_id", "line_item_id", name="uq_forecast_methodology_line"),
    )

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(), nullable=False, index=True)
    line_item_id = Column(UUID(), ForeignKey("forecast_line_items.id", ondelete="CASCADE"), nullable=False)
    methodology = Column(SQLEnum(ForecastMethodology), nullable=False)
    parameters = Column(JSONType, nullable=False, default=dict)
    manual_overrides = Column(JSONType, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<MethodologyConfig(line_item_id={self.line_item_id}, methodology={self.methodology})>"
