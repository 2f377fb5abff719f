"""
Variance cache service.

Compares the current forecast of each line item with its reported actual
for a month, year-to-date, and against the same month of the prior year.
Figures are computed by a pure function and cached per (line, period);
the cache is rebuilt when a read finds it empty.
"""
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import structlog
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from forecast_engine.exceptions import StorageError
from forecast_engine.models.financial_data import ActualAmount
from forecast_engine.models.variance import VarianceRecord
from forecast_engine.services.forecast_service import ForecastService
from forecast_engine.services.line_item_registry import LineItemRegistry
from forecast_engine.services.period_normalizer import format_period, parse_period

logger = structlog.get_logger(__name__)

# (line_item_id, year, month)
PeriodKey = Tuple[uuid.UUID, int, int]


@dataclass
class ActualValue:
    amount: float
    is_restated: bool = False


@dataclass
class VarianceFigures:
    """Variance of one line item for one month."""

    line_item_id: uuid.UUID
    period_year: int
    period_month: int
    forecast_amount: Optional[float]
    actual_amount: Optional[float]
    variance_amount: Optional[float]
    variance_percent: Optional[float]
    ytd_forecast: Optional[float]
    ytd_actual: Optional[float]
    ytd_variance: Optional[float]
    ytd_variance_percent: Optional[float]
    prior_year_actual: Optional[float]
    prior_year_variance: Optional[float]
    prior_year_variance_percent: Optional[float]
    is_restated: bool
    calculated_at: datetime
    line_code: Optional[str] = None
    line_name: Optional[str] = None

    @property
    def period(self) -> str:
        return format_period(self.period_year, self.period_month)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["period"] = self.period
        return data


@dataclass
class VarianceSummary:
    """Totals across all lines of a report."""

    forecast_total: float = 0.0
    actual_total: float = 0.0
    variance_total: float = 0.0
    variance_percent: Optional[float] = None
    ytd_forecast_total: float = 0.0
    ytd_actual_total: float = 0.0
    ytd_variance_total: float = 0.0
    ytd_variance_percent: Optional[float] = None
    restated_count: int = 0
    line_count: int = 0


@dataclass
class VarianceReport:
    period: str
    rows: List[VarianceFigures] = field(default_factory=list)
    summary: VarianceSummary = field(default_factory=VarianceSummary)


def _money(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(value, 2)


def _percent(numerator: Optional[float], denominator: Optional[float]) -> Optional[float]:
    if numerator is None or not denominator:
        return None
    return round(numerator / denominator * 100, 4)


def compute_variance_records(
    line_item_ids: Sequence[uuid.UUID],
    year: int,
    month: int,
    forecasts: Mapping[PeriodKey, float],
    actuals: Mapping[PeriodKey, ActualValue],
    calculated_at: datetime,
) -> List[VarianceFigures]:
    """
    Compute variance figures for each line, in the order given.

    Args:
        line_item_ids: Lines to report on.
        year, month: Reporting period.
        forecasts: Current projected amount per (line, year, month); a
            missing entry counts as 0.
        actuals: Reported actual per (line, year, month); a missing entry
            means no actual.
        calculated_at: Timestamp stamped on every record.
    """
    records = []
    for line_id in line_item_ids:
        forecast = forecasts.get((line_id, year, month), 0.0)
        actual = actuals.get((line_id, year, month))
        actual_amount = actual.amount if actual is not None else None
        variance = actual_amount - forecast if actual_amount is not None else None

        ytd_forecast = sum(forecasts.get((line_id, year, m), 0.0) for m in range(1, month + 1))
        ytd_values = [actuals[(line_id, year, m)].amount for m in range(1, month + 1) if (line_id, year, m) in actuals]
        ytd_actual = sum(ytd_values) if ytd_values else None
        ytd_variance = ytd_actual - ytd_forecast if ytd_actual is not None else None

        prior = actuals.get((line_id, year - 1, month))
        prior_amount = prior.amount if prior is not None else None
        prior_variance = (
            actual_amount - prior_amount if actual_amount is not None and prior_amount is not None else None
        )

        records.append(VarianceFigures(
            line_item_id=line_id,
            period_year=year,
            period_month=month,
            forecast_amount=_money(forecast),
            actual_amount=_money(actual_amount),
            variance_amount=_money(variance),
            variance_percent=_percent(variance, forecast),
            ytd_forecast=_money(ytd_forecast),
            ytd_actual=_money(ytd_actual),
            ytd_variance=_money(ytd_variance),
            ytd_variance_percent=_percent(ytd_variance, ytd_forecast),
            prior_year_actual=_money(prior_amount),
            prior_year_variance=_money(prior_variance),
            prior_year_variance_percent=_percent(prior_variance, prior_amount),
            is_restated=bool(actual.is_restated) if actual is not None else False,
            calculated_at=calculated_at,
        ))
    return records


def summarize_variance(rows: Sequence[VarianceFigures]) -> VarianceSummary:
    """Current-month and YTD totals plus the restated count."""
    summary = VarianceSummary(line_count=len(rows))
    for row in rows:
        summary.forecast_total += row.forecast_amount or 0.0
        summary.actual_total += row.actual_amount or 0.0
        summary.variance_total += row.variance_amount or 0.0
        summary.ytd_forecast_total += row.ytd_forecast or 0.0
        summary.ytd_actual_total += row.ytd_actual or 0.0
        summary.ytd_variance_total += row.ytd_variance or 0.0
        if row.is_restated:
            summary.restated_count += 1

    for name in (
        "forecast_total", "actual_total", "variance_total",
        "ytd_forecast_total", "ytd_actual_total", "ytd_variance_total",
    ):
        setattr(summary, name, round(getattr(summary, name), 2))
    summary.variance_percent = _percent(summary.variance_total, summary.forecast_total)
    summary.ytd_variance_percent = _percent(summary.ytd_variance_total, summary.ytd_forecast_total)
    return summary


class VarianceService:
    """Service for the company's variance cache."""

    def __init__(self, db: Session, company_id: uuid.UUID):
        self.db = db
        self.company_id = company_id
        self.registry = LineItemRegistry(db, company_id)

    def refresh(self, period: str) -> VarianceReport:
        """
        Variance report for a period, rebuilding the cache on a miss.

        A period whose cached rows do not cover every active line counts
        as a miss.

        Raises:
            InvalidPeriodError: If ``period`` is not ``YYYY-MM``.
        """
        year, month = parse_period(period)
        rows = self._read(year, month)
        active_ids = {item.id for item in self.registry.list_line_items()}
        if not rows or not active_ids <= {row.line_item_id for row in rows}:
            self.rebuild(period)
            rows = self._read(year, month)
        return VarianceReport(period=period, rows=rows, summary=summarize_variance(rows))

    def rebuild(self, period: str) -> List[VarianceFigures]:
        """
        Recompute and upsert the cache rows of a period.

        This is the only writer of the cache.
        """
        year, month = parse_period(period)
        line_items = self.registry.list_line_items()
        line_ids = [item.id for item in line_items]

        forecasts = {
            (line_id, year, m): amount
            for (line_id, m), amount in ForecastService(self.db, self.company_id)
            .latest_projections_for_year(year)
            .items()
            if m <= month
        }
        actuals = self._load_actuals(year, month)
        records = compute_variance_records(line_ids, year, month, forecasts, actuals, datetime.utcnow())

        existing = {
            row.line_item_id: row
            for row in self.db.query(VarianceRecord).filter(
                VarianceRecord.company_id == self.company_id,
                VarianceRecord.period_year == year,
                VarianceRecord.period_month == month,
            )
        }
        try:
            for record in records:
                row = existing.get(record.line_item_id)
                if row is None:
                    row = VarianceRecord(
                        company_id=self.company_id,
                        line_item_id=record.line_item_id,
                        period_year=year,
                        period_month=month,
                    )
                    self.db.add(row)
                for name in _CACHED_FIELDS:
                    setattr(row, name, getattr(record, name))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("variance_rebuild_failed", company_id=str(self.company_id), period=period, error=str(e))
            raise StorageError("rebuild_variance", details={"period": period}) from e

        logger.info(
            "variance_rebuilt",
            company_id=str(self.company_id),
            period=period,
            lines=len(records),
            restated=sum(1 for r in records if r.is_restated),
        )
        return records

    def invalidate(self, years: Optional[Iterable[int]] = None) -> int:
        """Delete cached rows, optionally only for some years. Returns rows deleted."""
        query = self.db.query(VarianceRecord).filter(VarianceRecord.company_id == self.company_id)
        if years is not None:
            years = sorted(set(years))
            if not years:
                return 0
            query = query.filter(VarianceRecord.period_year.in_(years))
        try:
            deleted = query.delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError("invalidate_variance", details={"years": years}) from e

        logger.info("variance_invalidated", company_id=str(self.company_id), years=years, deleted=deleted)
        return deleted

    def _load_actuals(self, year: int, month: int) -> Dict[PeriodKey, ActualValue]:
        rows = (
            self.db.query(ActualAmount)
            .filter(
                ActualAmount.company_id == self.company_id,
                or_(
                    (ActualAmount.period_year == year) & (ActualAmount.period_month <= month),
                    (ActualAmount.period_year == year - 1) & (ActualAmount.period_month == month),
                ),
            )
            .all()
        )
        return {
            (row.line_item_id, row.period_year, row.period_month): ActualValue(
                amount=float(row.amount or 0), is_restated=bool(row.is_restated)
            )
            for row in rows
        }

    def _read(self, year: int, month: int) -> List[VarianceFigures]:
        """Cached rows of a period in display order."""
        items = {item.id: item for item in self.registry.list_line_items(include_inactive=True)}
        rows = (
            self.db.query(VarianceRecord)
            .filter(
                VarianceRecord.company_id == self.company_id,
                VarianceRecord.period_year == year,
                VarianceRecord.period_month == month,
            )
            .all()
        )
        figures = []
        for row in rows:
            item = items.get(row.line_item_id)
            values = {name: getattr(row, name) for name in _CACHED_FIELDS}
            figures.append(VarianceFigures(
                line_item_id=row.line_item_id,
                period_year=row.period_year,
                period_month=row.period_month,
                line_code=item.line_code if item else None,
                line_name=item.line_name if item else None,
                **values,
            ))
        order = {line_id: index for index, line_id in enumerate(items)}
        figures.sort(key=lambda f: (order.get(f.line_item_id, len(order)), str(f.line_item_id)))
        return figures


_CACHED_FIELDS = (
    "forecast_amount",
    "actual_amount",
    "variance_amount",
    "variance_percent",
    "ytd_forecast",
    "ytd_actual",
    "ytd_variance",
    "ytd_variance_percent",
    "prior_year_actual",
    "prior_year_variance",
    "prior_year_variance_percent",
    "is_restated",
    "calculated_at",
)
