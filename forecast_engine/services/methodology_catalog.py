"""
Methodology catalog.

Static definitions of the nine forecasting methodologies (display metadata
plus parameter descriptors) and a typed pydantic model per methodology used
to validate stored parameter maps. Parameter maps are flat and camelCase;
unknown keys are ignored and missing keys take their defaults.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Type, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from forecast_engine.exceptions import ParameterValidationError, UnknownMethodologyError
from forecast_engine.models.methodology import ForecastMethodology

logger = structlog.get_logger(__name__)


# ==================== Parameter models ====================

class MethodParameters(BaseModel):
    """Base for methodology parameter models."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_params(self) -> Dict[str, Any]:
        """Flat camelCase map as stored on the methodology config."""
        return self.model_dump(by_alias=True)


class StraightLineParameters(MethodParameters):
    lookback_months: int = Field(12, alias="lookbackMonths", ge=3, le=36)


class RunRateParameters(MethodParameters):
    lookback_months: int = Field(3, alias="lookbackMonths", ge=1, le=12)


class MovingAverageParameters(MethodParameters):
    window: int = Field(6, ge=3, le=12)


class LinearTrendParameters(MethodParameters):
    lookback_months: int = Field(18, alias="lookbackMonths", ge=6, le=36)


class GrowthRateParameters(MethodParameters):
    annual_rate: float = Field(5.0, alias="annualRate", ge=-50, le=200)
    compounding: Literal["monthly", "annual"] = "monthly"


class SeasonalParameters(MethodParameters):
    seasonality_years: int = Field(3, alias="seasonalityYears", ge=1, le=5)
    seasonal_growth: float = Field(0.0, alias="seasonalGrowth", ge=-50, le=100)


class PercentOfRevenueParameters(MethodParameters):
    # None means "derive the ratio from history"
    percentage: Optional[float] = Field(None, ge=0, le=100)
    revenue_line_code: str = Field("REV_TOTAL", alias="revenueLineCode", min_length=1)

    @field_validator("percentage", mode="before")
    @classmethod
    def blank_percentage_is_auto(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class DriverBasedParameters(MethodParameters):
    base_units: float = Field(10.0, alias="baseUnits", ge=0)
    unit_growth: float = Field(0.0, alias="unitGrowth", ge=-50, le=100)
    rate_per_unit: float = Field(5000.0, alias="ratePerUnit", ge=0)


class ManualParameters(MethodParameters):
    monthly_value: float = Field(0.0, alias="monthlyValue")
    notes: str = ""


PARAMETER_MODELS: Dict[ForecastMethodology, Type[MethodParameters]] = {
    ForecastMethodology.STRAIGHT_LINE: StraightLineParameters,
    ForecastMethodology.RUN_RATE: RunRateParameters,
    ForecastMethodology.MOVING_AVERAGE: MovingAverageParameters,
    ForecastMethodology.LINEAR_TREND: LinearTrendParameters,
    ForecastMethodology.GROWTH_RATE: GrowthRateParameters,
    ForecastMethodology.SEASONAL: SeasonalParameters,
    ForecastMethodology.PERCENT_OF_REVENUE: PercentOfRevenueParameters,
    ForecastMethodology.DRIVER_BASED: DriverBasedParameters,
    ForecastMethodology.MANUAL: ManualParameters,
}


# ==================== Display definitions ====================

@dataclass
class ParameterOption:
    label: str
    value: str


@dataclass
class ParameterDescriptor:
    """One editable parameter of a methodology."""

    key: str
    label: str
    type: str  # number | percent | select | text
    default_value: Union[float, int, str, None]
    helper_text: Optional[str] = None
    options: List[ParameterOption] = field(default_factory=list)
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None


@dataclass
class MethodDefinition:
    """Catalog entry for a methodology."""

    id: ForecastMethodology
    name: str
    description: str
    formula_summary: str
    best_for: List[str]
    parameters: List[ParameterDescriptor]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["id"] = self.id.value
        return data


METHOD_DEFINITIONS: Dict[ForecastMethodology, MethodDefinition] = {
    ForecastMethodology.STRAIGHT_LINE: MethodDefinition(
        id=ForecastMethodology.STRAIGHT_LINE,
        name="Straight-Line Average",
        description="Uses the average of the last N months to project a flat run-rate.",
        formula_summary="forecast = avg(last N months)",
        best_for=["Stable expense lines", "Fixed monthly fees"],
        parameters=[
            ParameterDescriptor(
                key="lookbackMonths", label="Lookback Months", type="number", default_value=12,
                helper_text="How many historical months to average.", min=3, max=36, step=1,
            ),
        ],
    ),
    ForecastMethodology.LINEAR_TREND: MethodDefinition(
        id=ForecastMethodology.LINEAR_TREND,
        name="Linear Trend",
        description="Fits a best-fit line through recent history to capture gradual growth or decline.",
        formula_summary="forecast = intercept + slope * month_index",
        best_for=["Overhead accounts with gradual change", "Labor costs"],
        parameters=[
            ParameterDescriptor(
                key="lookbackMonths", label="Lookback Months", type="number", default_value=18,
                helper_text="More months smooths noise, fewer months react faster.", min=6, max=36, step=1,
            ),
        ],
    ),
    ForecastMethodology.GROWTH_RATE: MethodDefinition(
        id=ForecastMethodology.GROWTH_RATE,
        name="Fixed Growth Rate",
        description="Applies a compounding monthly or annual growth rate to the latest actual.",
        formula_summary="forecast = last_actual * (1 + rate) ^ periods",
        best_for=["Revenue projections", "Intentional ramp-up/down scenarios"],
        parameters=[
            ParameterDescriptor(
                key="annualRate", label="Annual Growth %", type="percent", default_value=5,
                helper_text="Positive or negative percentage applied annually.", min=-50, max=200, step=0.5,
            ),
            ParameterDescriptor(
                key="compounding", label="Compounding", type="select", default_value="monthly",
                helper_text="Monthly spreads the annual rate across the twelve months.",
                options=[ParameterOption("Monthly", "monthly"), ParameterOption("Annual", "annual")],
            ),
        ],
    ),
    ForecastMethodology.SEASONAL: MethodDefinition(
        id=ForecastMethodology.SEASONAL,
        name="Seasonal Pattern",
        description="Uses prior-year seasonality for each calendar month with optional growth overlay.",
        formula_summary="forecast = avg(same month prior years) * (1 + growth)",
        best_for=["Revenue tied to seasonality", "Fuel, utility, or insurance peaks"],
        parameters=[
            ParameterDescriptor(
                key="seasonalityYears", label="Seasons to Average", type="number", default_value=3,
                helper_text="Number of prior years per month to include.", min=1, max=5, step=1,
            ),
            ParameterDescriptor(
                key="seasonalGrowth", label="Seasonal Growth %", type="percent", default_value=0,
                helper_text="Optional uplift applied to every month.", min=-50, max=100, step=0.5,
            ),
        ],
    ),
    ForecastMethodology.PERCENT_OF_REVENUE: MethodDefinition(
        id=ForecastMethodology.PERCENT_OF_REVENUE,
        name="Percent of Revenue",
        description="Keeps the line proportional to forecasted revenue or another driver.",
        formula_summary="forecast = revenue_forecast * pct",
        best_for=["Variable SG&A", "Commissions", "Job-cost buckets tied to sales"],
        parameters=[
            ParameterDescriptor(
                key="percentage", label="Percentage of Revenue", type="percent", default_value=None,
                helper_text="Auto-derived from history if left blank.", min=0, max=100, step=0.5,
            ),
            ParameterDescriptor(
                key="revenueLineCode", label="Revenue Line Code", type="text", default_value="REV_TOTAL",
                helper_text="Used to link the driver line for ratio calculations.",
            ),
        ],
    ),
    ForecastMethodology.DRIVER_BASED: MethodDefinition(
        id=ForecastMethodology.DRIVER_BASED,
        name="Driver-Based",
        description="Forecasts units * rate, ideal for headcount or production-driven costs.",
        formula_summary="forecast = (base_units * (1 + growth)^t) * rate",
        best_for=["Headcount-driven costs", "Equipment hours", "Production-based revenue"],
        parameters=[
            ParameterDescriptor(
                key="baseUnits", label="Current Units", type="number", default_value=10,
                helper_text="Starting driver units (people, hours, etc.).", min=0, step=1,
            ),
            ParameterDescriptor(
                key="unitGrowth", label="Unit Growth % (Monthly)", type="percent", default_value=0,
                helper_text="Monthly growth/decline in driver units.", min=-50, max=100, step=0.5,
            ),
            ParameterDescriptor(
                key="ratePerUnit", label="Rate per Unit", type="number", default_value=5000,
                helper_text="Cost or revenue per driver unit.", min=0, step=100,
            ),
        ],
    ),
    ForecastMethodology.MANUAL: MethodDefinition(
        id=ForecastMethodology.MANUAL,
        name="Manual / Override",
        description="Allows explicit monthly values or a fixed override per period.",
        formula_summary="forecast = user-supplied monthly value",
        best_for=["One-off adjustments", "Known contract schedules"],
        parameters=[
            ParameterDescriptor(
                key="monthlyValue", label="Monthly Value", type="number", default_value=0,
                helper_text="Applies the same amount every month unless overrides are provided.", step=100,
            ),
            ParameterDescriptor(
                key="notes", label="Assumption Notes", type="text", default_value="",
                helper_text="Document manual rationale.",
            ),
        ],
    ),
    ForecastMethodology.RUN_RATE: MethodDefinition(
        id=ForecastMethodology.RUN_RATE,
        name="Run-Rate (Last N Months)",
        description="Averages the most recent months to capture current run-rate.",
        formula_summary="forecast = avg(last N actuals)",
        best_for=["Payroll", "Subscriptions", "Recurring expenses"],
        parameters=[
            ParameterDescriptor(
                key="lookbackMonths", label="Recent Months", type="number", default_value=3,
                helper_text="Focus on the freshest data.", min=1, max=12, step=1,
            ),
        ],
    ),
    ForecastMethodology.MOVING_AVERAGE: MethodDefinition(
        id=ForecastMethodology.MOVING_AVERAGE,
        name="Moving Average",
        description="Uses a rolling average that updates each forecast month to smooth volatility.",
        formula_summary="forecast(t) = avg(previous window)",
        best_for=["Material costs", "Volatile utilities", "Fuel"],
        parameters=[
            ParameterDescriptor(
                key="window", label="Window (Months)", type="number", default_value=6,
                helper_text="Number of months in each moving window.", min=3, max=12, step=1,
            ),
        ],
    ),
}


# ==================== Lookups ====================

def coerce_methodology(method: Union[str, ForecastMethodology]) -> ForecastMethodology:
    """
    Convert a methodology id to the enum.

    Raises:
        UnknownMethodologyError: If the id is not in the catalog.
    """
    if isinstance(method, ForecastMethodology):
        return method
    try:
        return ForecastMethodology(str(method).strip().lower())
    except ValueError:
        raise UnknownMethodologyError(str(method))


def get_method_definition(method: Union[str, ForecastMethodology]) -> MethodDefinition:
    """Catalog entry for a methodology."""
    return METHOD_DEFINITIONS[coerce_methodology(method)]


def list_method_definitions() -> List[MethodDefinition]:
    """All catalog entries."""
    return list(METHOD_DEFINITIONS.values())


def get_default_parameters(method: Union[str, ForecastMethodology]) -> Dict[str, Any]:
    """Default parameter map for a methodology."""
    return PARAMETER_MODELS[coerce_methodology(method)]().to_params()


def resolve_parameters(
    method: Union[str, ForecastMethodology],
    raw: Optional[Mapping[str, Any]] = None,
) -> MethodParameters:
    """
    Validate a raw parameter map against the methodology's model.

    Args:
        method: Methodology id.
        raw: Flat parameter map; unknown keys are ignored.

    Returns:
        Typed parameter model with defaults filled in.

    Raises:
        ParameterValidationError: If a value is out of bounds or the wrong type.
    """
    methodology = coerce_methodology(method)
    model = PARAMETER_MODELS[methodology]
    try:
        return model.model_validate(dict(raw or {}))
    except PydanticValidationError as e:
        errors = [
            {
                "field": ".".join(str(part) for part in err["loc"]),
                "message": err["msg"],
                "type": err["type"],
            }
            for err in e.errors()
        ]
        logger.warning("Invalid methodology parameters", methodology=methodology.value, errors=errors)
        raise ParameterValidationError(methodology.value, errors=errors) from e
