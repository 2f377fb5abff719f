"""
Forecast calculator.

Pure functions that project one line item forward with a catalog
methodology. No database access; sparse or degenerate input degrades to
zero-valued points with an explanatory note rather than an exception.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Any, List, Mapping, Optional, Sequence, Union

import structlog

from forecast_engine.models.methodology import ForecastMethodology
from forecast_engine.services.methodology_catalog import (
    DriverBasedParameters,
    GrowthRateParameters,
    LinearTrendParameters,
    ManualParameters,
    MethodParameters,
    MovingAverageParameters,
    PercentOfRevenueParameters,
    SeasonalParameters,
    coerce_methodology,
    get_method_definition,
    resolve_parameters,
)
from forecast_engine.services.period_normalizer import add_months, current_period, parse_period

logger = structlog.get_logger(__name__)


@dataclass
class HistoricalPoint:
    """A known monthly amount."""

    period: str  # YYYY-MM
    amount: float


@dataclass
class ForecastPoint:
    """A projected monthly amount."""

    period: str
    value: float
    source: str = "forecast"


@dataclass
class ForecastComputation:
    """Projected points plus any notes raised while computing them."""

    points: List[ForecastPoint] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    def add_note(self, note: str) -> None:
        if note and note not in self.notes:
            self.notes.append(note)


def sort_history(history: Sequence[HistoricalPoint]) -> List[HistoricalPoint]:
    """History in ascending period order."""
    return sorted(history, key=lambda point: point.period)


def average(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def future_periods(start_period: str, months: int) -> List[str]:
    """``months`` consecutive periods beginning at ``start_period``."""
    return [add_months(start_period, offset) for offset in range(months)]


def resolve_start_period(
    history: Sequence[HistoricalPoint],
    start_period: Optional[str] = None,
    today: Optional[date] = None,
) -> str:
    """First projected period: explicit, else the month after the last history point."""
    if start_period is not None:
        parse_period(start_period)
        return start_period
    if history:
        last_period = max(point.period for point in history)
    else:
        last_period = current_period(today)
    return add_months(last_period, 1)


def seasonal_average(history: Sequence[HistoricalPoint], target_month: int, years: int) -> Optional[float]:
    """Average of the last ``years`` amounts for a calendar month, or None."""
    matching = [p.amount for p in sort_history(history) if parse_period(p.period)[1] == target_month]
    if not matching:
        return None
    return average(matching[-years:])


@dataclass
class TrendLine:
    slope: float
    intercept: float
    last_index: int


def linear_trend(history: Sequence[HistoricalPoint], lookback: int) -> TrendLine:
    """Ordinary least squares over the last ``lookback`` points, x = 0..n-1."""
    values = [p.amount for p in sort_history(history)[-lookback:]]
    n = len(values)
    if n == 0:
        return TrendLine(slope=0.0, intercept=0.0, last_index=0)

    xs = range(n)
    sum_x = sum(xs)
    sum_y = sum(values)
    sum_xy = sum(x * y for x, y in zip(xs, values))
    sum_xx = sum(x * x for x in xs)

    denominator = n * sum_xx - sum_x * sum_x
    slope = 0.0 if denominator == 0 else (n * sum_xy - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / n
    return TrendLine(slope=slope, intercept=intercept, last_index=n - 1)


def derive_ratio(
    line_history: Sequence[HistoricalPoint],
    driver_history: Optional[Sequence[HistoricalPoint]],
) -> Optional[float]:
    """
    Average line/driver ratio over overlapping periods, as a percentage.

    Periods where the driver is zero are skipped. Returns None when no
    overlapping period has a usable driver amount.
    """
    if not driver_history:
        return None
    driver_by_period = {p.period: p.amount for p in driver_history}
    ratios = [
        point.amount / driver_by_period[point.period]
        for point in line_history
        if driver_by_period.get(point.period)
    ]
    if not ratios:
        return None
    return average(ratios) * 100


def _format_value(value: Any) -> str:
    if value is None:
        return "auto"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def summarize_parameters(method: ForecastMethodology, params: MethodParameters) -> str:
    """One-line description of the method and parameters applied."""
    definition = get_method_definition(method)
    values = params.to_params()
    parts = [f"{p.label}: {_format_value(values.get(p.key, p.default_value))}" for p in definition.parameters]
    return f"{definition.name} using {', '.join(parts)}"


def calculate_line_forecast(
    method: Union[str, ForecastMethodology],
    parameters: Union[Mapping[str, Any], MethodParameters, None],
    history: Sequence[HistoricalPoint],
    months: int = 12,
    start_period: Optional[str] = None,
    driver_history: Optional[Sequence[HistoricalPoint]] = None,
    driver_forecast: Optional[Sequence[Optional[float]]] = None,
    manual_overrides: Optional[Mapping[str, float]] = None,
    today: Optional[date] = None,
) -> ForecastComputation:
    """
    Project a line item forward.

    Args:
        method: Methodology id.
        parameters: Raw parameter map or an already-resolved model.
        history: Known amounts (any order).
        months: Number of periods to project.
        start_period: First projected period; defaults to the month after the
            last history point, or after the current month with no history.
        driver_history: Driver line amounts (percent_of_revenue).
        driver_forecast: Driver projections aligned to this line's periods;
            a None entry falls back to the driver's last historical amount.
        manual_overrides: ``YYYY-MM -> amount``; wins for every method.

    Returns:
        ForecastComputation with one point per period.

    Raises:
        ParameterValidationError: If ``parameters`` fails validation.
    """
    methodology = coerce_methodology(method)
    if isinstance(parameters, MethodParameters):
        params = parameters
    else:
        params = resolve_parameters(methodology, parameters)

    sorted_history = sort_history(history)
    amounts = [p.amount for p in sorted_history]
    overrides = dict(manual_overrides or {})
    sorted_driver = sort_history(driver_history or [])

    periods = future_periods(resolve_start_period(sorted_history, start_period, today), months)

    result = ForecastComputation()
    needs_history = methodology not in (
        ForecastMethodology.DRIVER_BASED,
        ForecastMethodology.MANUAL,
        ForecastMethodology.PERCENT_OF_REVENUE,
    )
    if needs_history and not sorted_history and len(overrides) < len(periods):
        result.add_note("No history available; forecast defaults to 0")

    # percent_of_revenue ratio is resolved once per line
    ratio_pct = 0.0
    if isinstance(params, PercentOfRevenueParameters):
        if params.percentage is not None:
            ratio_pct = params.percentage
        else:
            derived = derive_ratio(sorted_history, sorted_driver)
            if derived is None:
                result.add_note("Could not derive ratio from history (no overlapping non-zero driver data); using 0%")
            else:
                ratio_pct = derived
                result.add_note(f"Auto-derived ratio {derived:.1f}% from history")

    trend = None
    if isinstance(params, LinearTrendParameters):
        trend = linear_trend(sorted_history, params.lookback_months)

    for index, period in enumerate(periods):
        if period in overrides:
            value = float(overrides[period])
        elif methodology in (ForecastMethodology.STRAIGHT_LINE, ForecastMethodology.RUN_RATE):
            value = average(amounts[-params.lookback_months:])
        elif isinstance(params, MovingAverageParameters):
            combined = amounts + [point.value for point in result.points]
            value = average(combined[-params.window:])
        elif trend is not None:
            value = trend.intercept + trend.slope * (trend.last_index + index + 1)
        elif isinstance(params, GrowthRateParameters):
            last_value = amounts[-1] if amounts else 0.0
            rate = params.annual_rate / 100
            if params.compounding == "monthly":
                monthly_rate = (1 + rate) ** (1 / 12) - 1
            else:
                monthly_rate = rate / 12
            value = last_value * (1 + monthly_rate) ** (index + 1)
        elif isinstance(params, SeasonalParameters):
            seasonal = seasonal_average(sorted_history, parse_period(period)[1], params.seasonality_years)
            base = seasonal if seasonal is not None else average(amounts)
            value = base * (1 + params.seasonal_growth / 100)
        elif isinstance(params, PercentOfRevenueParameters):
            driver_value = None
            if driver_forecast is not None and index < len(driver_forecast):
                driver_value = driver_forecast[index]
            if driver_value is None:
                driver_value = sorted_driver[-1].amount if sorted_driver else 0.0
            value = driver_value * ratio_pct / 100
        elif isinstance(params, DriverBasedParameters):
            units = params.base_units * (1 + params.unit_growth / 100) ** (index + 1)
            value = units * params.rate_per_unit
        elif isinstance(params, ManualParameters):
            value = params.monthly_value
        else:
            value = 0.0

        result.points.append(ForecastPoint(period=period, value=value))

    if isinstance(params, ManualParameters) and params.notes:
        result.add_note(params.notes)
    result.add_note(summarize_parameters(methodology, params))
    return result
