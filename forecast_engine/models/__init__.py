"""Models package."""
from forecast_engine.models.line_item import ForecastLineItem, StatementType, build_line_key
from forecast_engine.models.financial_data import ActualAmount, HistoricalAmount
from forecast_engine.models.methodology import ForecastMethodology, MethodologyConfig
from forecast_engine.models.projection import ForecastProjection
from forecast_engine.models.import_batch import ImportBatch, ImportStatementScope, ImportStatus, ImportType
from forecast_engine.models.variance import VarianceRecord

__all__ = [
    "ForecastLineItem",
    "StatementType",
    "build_line_key",
    "HistoricalAmount",
    "ActualAmount",
    "ForecastMethodology",
    "MethodologyConfig",
    "ForecastProjection",
    "ImportBatch",
    "ImportStatementScope",
    "ImportStatus",
    "ImportType",
    "VarianceRecord",
]
