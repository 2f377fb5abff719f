"""
Pydantic schemas for forecast engine API endpoints.

Defines request and response models for imports, methodologies, forecast
runs and variance reports.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ==================== Line items ====================

class LineItemResponse(BaseModel):
    """Response model for a chart-of-accounts line."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(..., description="Line item identifier")
    statement_type: str = Field(..., description="income_statement or balance_sheet")
    line_code: str = Field(..., description="Code unique within the statement")
    line_name: str = Field(..., description="Display name")
    line_category: Optional[str] = Field(None, description="Category label")
    line_subcategory: Optional[str] = Field(None, description="Subcategory label")
    display_order: int = Field(0, description="Position in the chart")
    is_active: bool = Field(True, description="Whether the line is forecast")


# ==================== Methodologies ====================

class MethodologyDefinitionResponse(BaseModel):
    """Catalog entry for a methodology."""

    id: str
    name: str
    description: str
    formula_summary: str
    best_for: List[str]
    parameters: List[Dict[str, Any]]


class MethodologyConfigRequest(BaseModel):
    """Request model for saving a line item's methodology."""

    methodology: str = Field(..., description="Methodology id, e.g. run_rate")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Flat parameter map")
    manual_overrides: Optional[Dict[str, Any]] = Field(None, description="YYYY-MM -> amount")
    is_active: bool = Field(True, description="Whether this configuration is used")


class MethodologyConfigResponse(BaseModel):
    """Response model for a saved methodology configuration."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    line_item_id: UUID
    methodology: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    manual_overrides: Optional[Dict[str, float]] = None
    is_active: bool
    updated_at: Optional[datetime] = None


# ==================== Forecast runs ====================

class ForecastRunRequest(BaseModel):
    """Request model for a forecast run."""

    line_item_ids: Optional[List[UUID]] = Field(None, description="Lines to run; all active lines when omitted")
    months: Optional[int] = Field(None, description="Horizon in months (1-120)")
    persist: bool = Field(True, description="Store projections under a new version")


class ForecastPointResponse(BaseModel):
    period: str = Field(..., description="YYYY-MM")
    value: float
    source: str = "forecast"


class ForecastRunSummaryResponse(BaseModel):
    line_count: int
    point_count: int
    persisted: bool
    rows_written: int
    chunks_written: int
    processing_order: List[UUID]
    cyclic_lines: List[UUID]
    cycle_dependents: List[UUID] = Field(default_factory=list)
    missing_drivers: List[UUID]


class ForecastRunResponse(BaseModel):
    """Response model for a forecast run."""

    version: int = Field(..., description="Version the run was stored under")
    results: Dict[str, List[ForecastPointResponse]] = Field(..., description="Points per line item id")
    notes: Dict[str, List[str]] = Field(default_factory=dict, description="Notes per line item id")
    summary: ForecastRunSummaryResponse


class ForecastVersionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    version: int
    generated_at: Optional[datetime] = None
    line_count: int
    point_count: int


class ProjectionResponse(BaseModel):
    """Response model for a stored projection."""

    model_config = ConfigDict(from_attributes=True)

    line_item_id: UUID
    period: str
    forecast_amount: float
    methodology_used: str
    methodology_params: Optional[Dict[str, Any]] = None
    forecast_version: int
    generated_at: datetime


# ==================== Imports ====================

class ImportResultResponse(BaseModel):
    """Response model for a completed import."""

    batch_id: UUID
    import_type: str
    processed_rows: int
    created_line_items: int
    existing_line_items: int
    inserted_records: int
    restated_records: int
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    statement_type: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class ImportBatchResponse(BaseModel):
    """Response model for an import batch record."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    import_type: str
    statement_type: str
    file_name: str
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    row_count: int
    inserted_records: int
    restated_records: int
    status: str
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class ConversionSummaryResponse(BaseModel):
    row_count: int
    period_start: Optional[str] = None
    period_end: Optional[str] = None


class ConvertResponse(BaseModel):
    """Response model for a raw export conversion."""

    csv: str = Field(..., description="Template CSV text")
    mapping: Dict[str, Any] = Field(..., description="Column mapping that was applied")
    summary: ConversionSummaryResponse


# ==================== Variance ====================

class VarianceRowResponse(BaseModel):
    """Variance of one line item for one month."""

    line_item_id: UUID
    line_code: Optional[str] = None
    line_name: Optional[str] = None
    period: str
    forecast_amount: Optional[float] = None
    actual_amount: Optional[float] = None
    variance_amount: Optional[float] = None
    variance_percent: Optional[float] = None
    ytd_forecast: Optional[float] = None
    ytd_actual: Optional[float] = None
    ytd_variance: Optional[float] = None
    ytd_variance_percent: Optional[float] = None
    prior_year_actual: Optional[float] = None
    prior_year_variance: Optional[float] = None
    prior_year_variance_percent: Optional[float] = None
    is_restated: bool = False
    calculated_at: Optional[datetime] = None


class VarianceSummaryResponse(BaseModel):
    forecast_total: float
    actual_total: float
    variance_total: float
    variance_percent: Optional[float] = None
    ytd_forecast_total: float
    ytd_actual_total: float
    ytd_variance_total: float
    ytd_variance_percent: Optional[float] = None
    restated_count: int
    line_count: int


class VarianceReportResponse(BaseModel):
    """Response model for a variance report."""

    period: str
    rows: List[VarianceRowResponse]
    summary: VarianceSummaryResponse


class ErrorResponse(BaseModel):
    """Response model for API errors."""

    error: bool = Field(True, description="Always true")
    error_code: str = Field(..., description="Error code, e.g. FVE-101")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
