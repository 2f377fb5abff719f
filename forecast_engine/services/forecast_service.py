"""
Forecast run orchestrator.

Runs the calculator over a set of line items, resolving percent-of-revenue
driver references as a dependency graph so drivers are always projected
before the lines that depend on them, and appends the results to the
projection log under a fresh version.
"""
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

import structlog
from sqlalchemy import and_, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from forecast_engine.config import get_settings
from forecast_engine.exceptions import ForecastVersionNotFoundError, StorageError, ValidationError
from forecast_engine.middleware.logging import log_performance
from forecast_engine.models.financial_data import ActualAmount, HistoricalAmount
from forecast_engine.models.line_item import ForecastLineItem
from forecast_engine.models.methodology import MethodologyConfig
from forecast_engine.models.projection import ForecastProjection
from forecast_engine.services.forecast_calculator import (
    ForecastPoint,
    HistoricalPoint,
    calculate_line_forecast,
    future_periods,
    resolve_start_period,
)
from forecast_engine.services.line_item_registry import LineItemRegistry
from forecast_engine.services.methodology_catalog import PercentOfRevenueParameters
from forecast_engine.services.methodology_service import MethodologyService, ResolvedMethodology, resolve_config
from forecast_engine.services.period_normalizer import format_period, parse_period

logger = structlog.get_logger(__name__)

MAX_FORECAST_MONTHS = 120


@dataclass
class ForecastRunSummary:
    """Counts reported for a run."""

    line_count: int = 0
    point_count: int = 0
    persisted: bool = False
    rows_written: int = 0
    chunks_written: int = 0
    processing_order: List[uuid.UUID] = field(default_factory=list)
    cyclic_lines: List[uuid.UUID] = field(default_factory=list)
    cycle_dependents: List[uuid.UUID] = field(default_factory=list)
    missing_drivers: List[uuid.UUID] = field(default_factory=list)


@dataclass
class ForecastRunResult:
    """Projections produced by one run, keyed by line item id."""

    version: int
    results: Dict[uuid.UUID, List[ForecastPoint]] = field(default_factory=dict)
    notes: Dict[uuid.UUID, List[str]] = field(default_factory=dict)
    summary: ForecastRunSummary = field(default_factory=ForecastRunSummary)


@dataclass
class ForecastVersionInfo:
    version: int
    generated_at: Optional[datetime]
    line_count: int
    point_count: int


@dataclass
class DriverPlan:
    """How a line's driver was resolved."""

    driver: Optional[ForecastLineItem] = None
    in_run: bool = False
    note: Optional[str] = None


def stable_topological_order(
    nodes: Sequence[uuid.UUID],
    edges: Mapping[uuid.UUID, uuid.UUID],
) -> Tuple[List[uuid.UUID], List[uuid.UUID]]:
    """
    Order nodes so that each node's driver comes first.

    Kahn's algorithm that always releases the earliest ready node in the
    given order, so independent lines keep their original order.

    Args:
        nodes: Line ids in caller order.
        edges: dependent id -> driver id (both in ``nodes``).

    Returns:
        (ordered ids, ids left in cycles). Cyclic ids keep caller order.
    """
    position = {node: index for index, node in enumerate(nodes)}
    dependents: Dict[uuid.UUID, List[uuid.UUID]] = defaultdict(list)
    in_degree = {node: 0 for node in nodes}
    for dependent, driver in edges.items():
        dependents[driver].append(dependent)
        in_degree[dependent] += 1

    ready = sorted((n for n in nodes if in_degree[n] == 0), key=position.get)
    ordered: List[uuid.UUID] = []
    while ready:
        node = ready.pop(0)
        ordered.append(node)
        for dependent in dependents[node]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                ready.append(dependent)
        ready.sort(key=position.get)

    placed = set(ordered)
    cyclic = [node for node in nodes if node not in placed]
    return ordered, cyclic


def split_cyclic(
    cyclic: Sequence[uuid.UUID],
    edges: Mapping[uuid.UUID, uuid.UUID],
) -> Tuple[List[uuid.UUID], List[uuid.UUID]]:
    """
    Separate lines on a driver cycle from lines that only depend on one.

    Every line has at most one driver, so following the driver chain from a
    line either comes back to it (a member) or enters a cycle elsewhere (a
    dependent).

    Returns:
        (members in caller order, dependents ordered drivers first)
    """
    remaining = set(cyclic)
    members = []
    for node in cyclic:
        seen = set()
        current = edges.get(node)
        while current in remaining and current not in seen and current != node:
            seen.add(current)
            current = edges.get(current)
        if current == node:
            members.append(node)

    member_set = set(members)
    dependents = [node for node in cyclic if node not in member_set]
    dependent_set = set(dependents)
    dependent_edges = {
        node: edges[node] for node in dependents if edges.get(node) in dependent_set
    }
    ordered, _ = stable_topological_order(dependents, dependent_edges)
    return members, ordered


class ForecastService:
    """Service for running and reading forecasts for one company."""

    def __init__(self, db: Session, company_id: uuid.UUID):
        self.db = db
        self.company_id = company_id
        self.settings = get_settings()
        self.registry = LineItemRegistry(db, company_id)

    # ==================== Runs ====================

    @log_performance("forecast_run")
    def run_forecast(
        self,
        line_items: Optional[Sequence[ForecastLineItem]] = None,
        configs: Optional[Mapping[uuid.UUID, Union[ResolvedMethodology, MethodologyConfig, None]]] = None,
        months: Optional[int] = None,
        persist: bool = True,
        today: Optional[date] = None,
    ) -> ForecastRunResult:
        """
        Project every line item and optionally store the results.

        Args:
            line_items: Lines to run; defaults to all active lines.
            configs: Methodology per line id; missing entries use the saved
                configuration or the default methodology.
            months: Horizon (1-120); defaults to the configured value.
            persist: Append the projections under the run's version.

        Returns:
            ForecastRunResult with one entry per line in caller order.

        Raises:
            ValidationError: If ``months`` is out of range.
            StorageError: If a chunk fails to commit. Earlier chunks stay.
        """
        months = months if months is not None else self.settings.default_forecast_months
        if not 1 <= months <= MAX_FORECAST_MONTHS:
            raise ValidationError(
                f"Forecast horizon must be between 1 and {MAX_FORECAST_MONTHS} months",
                errors=[{"field": "months", "message": f"got {months}"}],
            )

        if line_items is None:
            line_items = self.registry.list_line_items()
        line_items = list({item.id: item for item in line_items}.values())
        run_ids = [item.id for item in line_items]
        methods = self._resolve_methods(run_ids, configs or {})

        plans = self._plan_drivers(line_items, methods)
        edges = {line_id: plan.driver.id for line_id, plan in plans.items() if plan.in_run}
        ordered, cyclic = stable_topological_order(run_ids, edges)
        cycle_members, cycle_dependents = split_cyclic(cyclic, edges)
        processing_order = ordered + cycle_members + cycle_dependents

        series_ids = set(run_ids) | {plan.driver.id for plan in plans.values() if plan.driver is not None}
        series = self._load_series(series_ids)

        version = self._next_version()
        result = ForecastRunResult(version=version)
        computed: Dict[uuid.UUID, Dict[str, float]] = {}
        items_by_id = {item.id: item for item in line_items}

        for line_id in processing_order:
            method = methods[line_id]
            history = series.get(line_id, [])
            warnings: List[str] = []
            driver_history = None
            driver_forecast = None

            plan = plans.get(line_id)
            if plan is not None:
                if plan.note:
                    warnings.append(plan.note)
                if plan.driver is not None:
                    driver_history = series.get(plan.driver.id, [])
                    if line_id in cycle_members:
                        warnings.append(
                            f"Circular driver reference through '{plan.driver.line_code}'; "
                            "using the driver's last historical amount"
                        )
                    elif plan.in_run:
                        if line_id in cycle_dependents:
                            warnings.append(
                                f"Driver line '{plan.driver.line_code}' is in or downstream of a driver cycle; "
                                "using its fallback projection"
                            )
                        periods = future_periods(resolve_start_period(history, today=today), months)
                        driver_points = computed.get(plan.driver.id, {})
                        driver_forecast = [driver_points.get(period) for period in periods]

            computation = calculate_line_forecast(
                method.methodology,
                method.parameters,
                history,
                months=months,
                driver_history=driver_history,
                driver_forecast=driver_forecast,
                manual_overrides=method.manual_overrides,
                today=today,
            )
            notes = warnings + computation.notes

            computed[line_id] = {point.period: point.value for point in computation.points}
            result.results[line_id] = computation.points
            result.notes[line_id] = notes
            for warning in warnings:
                logger.warning(
                    "forecast_driver_fallback",
                    company_id=str(self.company_id),
                    line_code=items_by_id[line_id].line_code,
                    note=warning,
                )

        # Caller order for the result map
        result.results = {line_id: result.results[line_id] for line_id in run_ids}
        result.notes = {line_id: result.notes[line_id] for line_id in run_ids}
        result.summary.line_count = len(run_ids)
        result.summary.point_count = sum(len(points) for points in result.results.values())
        result.summary.processing_order = processing_order
        result.summary.cyclic_lines = cycle_members
        result.summary.cycle_dependents = cycle_dependents
        result.summary.missing_drivers = [
            line_id for line_id, plan in plans.items() if plan.driver is None
        ]

        if persist:
            self._persist(result, methods)

        logger.info(
            "forecast_run_completed",
            company_id=str(self.company_id),
            version=version,
            lines=result.summary.line_count,
            points=result.summary.point_count,
            persisted=persist,
            cycles=len(cycle_members),
        )
        return result

    def _resolve_methods(
        self,
        run_ids: Sequence[uuid.UUID],
        configs: Mapping[uuid.UUID, Union[ResolvedMethodology, MethodologyConfig, None]],
    ) -> Dict[uuid.UUID, ResolvedMethodology]:
        missing = [line_id for line_id in run_ids if line_id not in configs]
        saved = MethodologyService(self.db, self.company_id).get_configs_map(missing) if missing else {}

        methods = {}
        for line_id in run_ids:
            config = configs.get(line_id, saved.get(line_id))
            if isinstance(config, ResolvedMethodology):
                methods[line_id] = config
            else:
                methods[line_id] = resolve_config(config)
        return methods

    def _plan_drivers(
        self,
        line_items: Sequence[ForecastLineItem],
        methods: Mapping[uuid.UUID, ResolvedMethodology],
    ) -> Dict[uuid.UUID, DriverPlan]:
        """Resolve driver codes: run set first, then the registry; exact, then case-insensitive."""
        run_ids = {item.id for item in line_items}
        registry_items = [item for item in self.registry.list_line_items() if item.id not in run_ids]
        lookups = []
        for items in (line_items, registry_items):
            exact: Dict[str, ForecastLineItem] = {}
            lower: Dict[str, ForecastLineItem] = {}
            for item in items:
                exact.setdefault(item.line_code, item)
                lower.setdefault(item.line_code.lower(), item)
            lookups.append((exact, lower))

        def find(code: str) -> Optional[ForecastLineItem]:
            for exact, _ in lookups:
                if code in exact:
                    return exact[code]
            for _, lower in lookups:
                if code.lower() in lower:
                    return lower[code.lower()]
            return None

        plans: Dict[uuid.UUID, DriverPlan] = {}
        for item in line_items:
            params = methods[item.id].parameters
            if not isinstance(params, PercentOfRevenueParameters):
                continue
            code = params.revenue_line_code
            driver = find(code)
            if driver is None:
                plans[item.id] = DriverPlan(note=f"Driver line '{code}' not found; driver amount defaults to 0")
            elif driver.id == item.id:
                plans[item.id] = DriverPlan(
                    driver=driver,
                    note=f"Driver line '{code}' refers to the line itself; using its last historical amount",
                )
            elif driver.id in run_ids:
                plans[item.id] = DriverPlan(driver=driver, in_run=True)
            else:
                plans[item.id] = DriverPlan(
                    driver=driver,
                    note=f"Driver line '{code}' is not part of this run; using its last historical amount",
                )
        return plans

    def _next_version(self) -> int:
        latest = self.latest_version()
        now = int(time.time())
        return max(now, latest + 1) if latest is not None else now

    def _persist(self, result: ForecastRunResult, methods: Mapping[uuid.UUID, ResolvedMethodology]) -> None:
        generated_at = datetime.utcnow()
        rows = []
        row_years = []
        for line_id, points in result.results.items():
            method = methods[line_id]
            params = method.parameters.to_params()
            for point in points:
                year, month = parse_period(point.period)
                row_years.append(year)
                rows.append(ForecastProjection(
                    company_id=self.company_id,
                    line_item_id=line_id,
                    period_year=year,
                    period_month=month,
                    forecast_amount=round(point.value, 2),
                    methodology_used=method.methodology,
                    methodology_params=params,
                    forecast_version=result.version,
                    generated_at=generated_at,
                ))

        chunk_size = self.settings.write_chunk_size
        written = 0
        chunks = 0
        for start in range(0, len(rows), chunk_size):
            chunk = rows[start:start + chunk_size]
            try:
                self.db.add_all(chunk)
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(
                    "forecast_persist_failed",
                    company_id=str(self.company_id),
                    version=result.version,
                    chunks_committed=chunks,
                    error=str(e),
                )
                # Committed chunks are already the current projection for their periods
                if written:
                    self._invalidate_variance(row_years[:written])
                raise StorageError(
                    "persist_projections",
                    f"Failed to store forecast version {result.version} after {chunks} committed chunk(s)",
                    details={
                        "version": result.version,
                        "chunks_committed": chunks,
                        "rows_committed": written,
                        "total_rows": len(rows),
                    },
                ) from e
            written += len(chunk)
            chunks += 1

        result.summary.persisted = True
        result.summary.rows_written = written
        result.summary.chunks_written = chunks
        self._invalidate_variance(row_years)

    def _invalidate_variance(self, years: Sequence[int]) -> None:
        """Drop cached variance for the years a new version touched."""
        # variance_service reads projections through this module
        from forecast_engine.services.variance_service import VarianceService

        VarianceService(self.db, self.company_id).invalidate(set(years))

    # ==================== Series ====================

    def _load_series(self, line_item_ids: Set[uuid.UUID]) -> Dict[uuid.UUID, List[HistoricalPoint]]:
        """History merged with actuals per line; actuals win for a shared period."""
        if not line_item_ids:
            return {}
        ids = list(line_item_ids)
        merged: Dict[uuid.UUID, Dict[str, float]] = defaultdict(dict)

        for model in (HistoricalAmount, ActualAmount):
            rows = (
                self.db.query(model.line_item_id, model.period_year, model.period_month, model.amount)
                .filter(model.company_id == self.company_id, model.line_item_id.in_(ids))
                .all()
            )
            for line_item_id, year, month, amount in rows:
                merged[line_item_id][format_period(year, month)] = float(amount or 0)

        return {
            line_id: [HistoricalPoint(period=p, amount=a) for p, a in sorted(values.items())]
            for line_id, values in merged.items()
        }

    def get_series_for_line(self, line_item_id: uuid.UUID) -> List[HistoricalPoint]:
        """Combined history/actuals series of one line, ascending."""
        self.registry.get_line_item(line_item_id)
        return self._load_series({line_item_id}).get(line_item_id, [])

    # ==================== Versions & projections ====================

    def latest_version(self) -> Optional[int]:
        return (
            self.db.query(func.max(ForecastProjection.forecast_version))
            .filter(ForecastProjection.company_id == self.company_id)
            .scalar()
        )

    def list_versions(self, limit: int = 50) -> List[ForecastVersionInfo]:
        """Stored versions, newest first."""
        rows = (
            self.db.query(
                ForecastProjection.forecast_version,
                func.max(ForecastProjection.generated_at),
                func.count(func.distinct(ForecastProjection.line_item_id)),
                func.count(ForecastProjection.id),
            )
            .filter(ForecastProjection.company_id == self.company_id)
            .group_by(ForecastProjection.forecast_version)
            .order_by(ForecastProjection.forecast_version.desc())
            .limit(limit)
            .all()
        )
        return [
            ForecastVersionInfo(version=v, generated_at=g, line_count=lines, point_count=points)
            for v, g, lines, points in rows
        ]

    def _current_query(self, year: Optional[int] = None):
        """Rows holding the highest version for each (line, year, month)."""
        latest = self.db.query(
            ForecastProjection.line_item_id.label("line_item_id"),
            ForecastProjection.period_year.label("period_year"),
            ForecastProjection.period_month.label("period_month"),
            func.max(ForecastProjection.forecast_version).label("max_version"),
        ).filter(ForecastProjection.company_id == self.company_id)
        if year is not None:
            latest = latest.filter(ForecastProjection.period_year == year)
        latest = latest.group_by(
            ForecastProjection.line_item_id,
            ForecastProjection.period_year,
            ForecastProjection.period_month,
        ).subquery()

        return (
            self.db.query(ForecastProjection)
            .join(
                latest,
                and_(
                    ForecastProjection.line_item_id == latest.c.line_item_id,
                    ForecastProjection.period_year == latest.c.period_year,
                    ForecastProjection.period_month == latest.c.period_month,
                    ForecastProjection.forecast_version == latest.c.max_version,
                ),
            )
            .filter(ForecastProjection.company_id == self.company_id)
        )

    def get_projections(
        self,
        version: Optional[int] = None,
        line_item_ids: Optional[Sequence[uuid.UUID]] = None,
    ) -> List[ForecastProjection]:
        """
        Projections of one version, or the current projection per period.

        Raises:
            ForecastVersionNotFoundError: If ``version`` has no rows.
        """
        if version is None:
            query = self._current_query()
        else:
            query = self.db.query(ForecastProjection).filter(
                ForecastProjection.company_id == self.company_id,
                ForecastProjection.forecast_version == version,
            )
        if line_item_ids is not None:
            query = query.filter(ForecastProjection.line_item_id.in_(list(line_item_ids)))

        rows = query.order_by(
            ForecastProjection.line_item_id,
            ForecastProjection.period_year,
            ForecastProjection.period_month,
        ).all()
        if version is not None and not rows:
            raise ForecastVersionNotFoundError(version)
        return rows

    def latest_projections_for_year(self, year: int) -> Dict[Tuple[uuid.UUID, int], float]:
        """Current projected amount per (line id, month) within a year."""
        return {
            (row.line_item_id, row.period_month): float(row.forecast_amount or 0)
            for row in self._current_query(year).all()
        }
