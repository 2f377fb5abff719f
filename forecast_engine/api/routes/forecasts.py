"""
Forecast API routes.

Provides endpoints for running forecasts and reading stored versions.
"""
import uuid
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from forecast_engine.database import get_db
from forecast_engine.schemas.forecast import (
    ErrorResponse,
    ForecastPointResponse,
    ForecastRunRequest,
    ForecastRunResponse,
    ForecastRunSummaryResponse,
    ForecastVersionResponse,
    ProjectionResponse,
)
from forecast_engine.services.forecast_service import ForecastRunResult, ForecastService
from forecast_engine.services.line_item_registry import LineItemRegistry

logger = structlog.get_logger(__name__)

router = APIRouter()


def convert_run_to_response(result: ForecastRunResult) -> ForecastRunResponse:
    """Convert a ForecastRunResult to its API schema."""
    summary = result.summary
    return ForecastRunResponse(
        version=result.version,
        results={
            str(line_id): [
                ForecastPointResponse(period=p.period, value=p.value, source=p.source) for p in points
            ]
            for line_id, points in result.results.items()
        },
        notes={str(line_id): notes for line_id, notes in result.notes.items()},
        summary=ForecastRunSummaryResponse(
            line_count=summary.line_count,
            point_count=summary.point_count,
            persisted=summary.persisted,
            rows_written=summary.rows_written,
            chunks_written=summary.chunks_written,
            processing_order=summary.processing_order,
            cyclic_lines=summary.cyclic_lines,
            cycle_dependents=summary.cycle_dependents,
            missing_drivers=summary.missing_drivers,
        ),
    )


@router.post(
    "/companies/{company_id}/forecasts/run",
    response_model=ForecastRunResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid horizon"},
        404: {"model": ErrorResponse, "description": "Line item not found"},
        500: {"model": ErrorResponse, "description": "Projections could not be stored"},
    },
    summary="Run a forecast",
    description="Project the requested (or all active) line items and append them under a new version.",
)
async def run_forecast(
    company_id: uuid.UUID,
    request: ForecastRunRequest,
    db: Session = Depends(get_db),
) -> ForecastRunResponse:
    line_items = None
    if request.line_item_ids is not None:
        line_items = LineItemRegistry(db, company_id).get_line_items(request.line_item_ids)

    result = ForecastService(db, company_id).run_forecast(
        line_items=line_items,
        months=request.months,
        persist=request.persist,
    )
    return convert_run_to_response(result)


@router.get(
    "/companies/{company_id}/forecasts/versions",
    response_model=List[ForecastVersionResponse],
    summary="List forecast versions",
)
async def list_versions(
    company_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> List[ForecastVersionResponse]:
    versions = ForecastService(db, company_id).list_versions(limit=limit)
    return [ForecastVersionResponse.model_validate(info) for info in versions]


@router.get(
    "/companies/{company_id}/forecasts/projections",
    response_model=List[ProjectionResponse],
    responses={404: {"model": ErrorResponse, "description": "Version not found"}},
    summary="Get projections",
)
async def get_projections(
    company_id: uuid.UUID,
    version: Optional[int] = Query(None, description="Stored version; current projections when omitted"),
    line_item_id: Optional[List[uuid.UUID]] = Query(None),
    db: Session = Depends(get_db),
) -> List[ProjectionResponse]:
    """
    Projections of one version, or the latest projection of every
    (line, month) when no version is given.
    """
    rows = ForecastService(db, company_id).get_projections(version=version, line_item_ids=line_item_id)
    return [ProjectionResponse.model_validate(row) for row in rows]
