"""
Variance API routes.

Provides forecast-vs-actual variance reports backed by the variance cache.
"""
import uuid
from dataclasses import asdict

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from forecast_engine.database import get_db
from forecast_engine.schemas.forecast import (
    ErrorResponse,
    VarianceReportResponse,
    VarianceRowResponse,
    VarianceSummaryResponse,
)
from forecast_engine.services.variance_service import VarianceReport, VarianceService

logger = structlog.get_logger(__name__)

router = APIRouter()

PERIOD_QUERY = Query(..., description="Reporting month, YYYY-MM", examples=["2024-06"])


def convert_report_to_response(report: VarianceReport) -> VarianceReportResponse:
    """Convert a VarianceReport to its API schema."""
    return VarianceReportResponse(
        period=report.period,
        rows=[VarianceRowResponse(**row.to_dict()) for row in report.rows],
        summary=VarianceSummaryResponse(**asdict(report.summary)),
    )


@router.get(
    "/companies/{company_id}/variance",
    response_model=VarianceReportResponse,
    responses={400: {"model": ErrorResponse, "description": "Invalid period"}},
    summary="Get variance report",
    description="Forecast vs. actual for a month, year-to-date and prior year. Built on first read.",
)
async def get_variance(
    company_id: uuid.UUID,
    period: str = PERIOD_QUERY,
    db: Session = Depends(get_db),
) -> VarianceReportResponse:
    report = VarianceService(db, company_id).refresh(period)
    return convert_report_to_response(report)


@router.post(
    "/companies/{company_id}/variance/rebuild",
    response_model=VarianceReportResponse,
    responses={400: {"model": ErrorResponse, "description": "Invalid period"}},
    summary="Rebuild variance report",
)
async def rebuild_variance(
    company_id: uuid.UUID,
    period: str = PERIOD_QUERY,
    db: Session = Depends(get_db),
) -> VarianceReportResponse:
    """Recompute the cached variance of a period from current forecasts and actuals."""
    service = VarianceService(db, company_id)
    service.rebuild(period)
    logger.info("variance_rebuild_requested", company_id=str(company_id), period=period)
    return convert_report_to_response(service.refresh(period))
