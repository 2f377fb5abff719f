"""
Import API routes.

Provides endpoints for uploading historical and actuals workbooks, the
blank import template, and raw export conversion.
"""
import uuid
from dataclasses import asdict
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, File, Query, UploadFile
from fastapi.responses import Response
from sqlalchemy.orm import Session

from forecast_engine.config import get_settings
from forecast_engine.database import get_db
from forecast_engine.exceptions import FileTooLargeError
from forecast_engine.schemas.forecast import (
    ConversionSummaryResponse,
    ConvertResponse,
    ErrorResponse,
    ImportBatchResponse,
    ImportResultResponse,
)
from forecast_engine.services.import_service import ImportResult, ImportService
from forecast_engine.services.statement_converter import build_blank_template, get_statement_converter

logger = structlog.get_logger(__name__)
settings = get_settings()

router = APIRouter()

UPLOAD_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid file"},
    413: {"model": ErrorResponse, "description": "File too large"},
    422: {"model": ErrorResponse, "description": "No usable rows or periods"},
    500: {"model": ErrorResponse, "description": "Storage error"},
}


async def read_upload(file: UploadFile) -> bytes:
    """
    Read an uploaded file, enforcing the size limit.

    Raises:
        FileTooLargeError: If the file exceeds ``max_upload_size_mb``.
    """
    content = await file.read()
    if len(content) > settings.max_upload_size_bytes:
        raise FileTooLargeError(len(content), settings.max_upload_size_bytes)
    return content


def convert_result_to_response(result: ImportResult) -> ImportResultResponse:
    data = asdict(result)
    data["import_type"] = result.import_type.value
    return ImportResultResponse(**data)


@router.post(
    "/companies/{company_id}/imports/historical",
    response_model=ImportResultResponse,
    responses=UPLOAD_RESPONSES,
    summary="Import historical data",
    description="Upload a workbook with at least 24 months of history per line item.",
)
async def import_historical(
    company_id: uuid.UUID,
    file: UploadFile = File(..., description=".xlsx, .xlsm or .csv file"),
    db: Session = Depends(get_db),
) -> ImportResultResponse:
    content = await read_upload(file)
    result = ImportService(db, company_id).import_historical(content, file.filename or "upload.csv")
    return convert_result_to_response(result)


@router.post(
    "/companies/{company_id}/imports/actuals",
    response_model=ImportResultResponse,
    responses=UPLOAD_RESPONSES,
    summary="Import actuals",
    description="Upload reported monthly results. Changed values are flagged as restated.",
)
async def import_actuals(
    company_id: uuid.UUID,
    file: UploadFile = File(..., description=".xlsx, .xlsm or .csv file"),
    db: Session = Depends(get_db),
) -> ImportResultResponse:
    content = await read_upload(file)
    result = ImportService(db, company_id).import_actuals(content, file.filename or "upload.csv")
    return convert_result_to_response(result)


@router.get(
    "/companies/{company_id}/imports/batches",
    response_model=List[ImportBatchResponse],
    summary="List import batches",
)
async def list_import_batches(
    company_id: uuid.UUID,
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
) -> List[ImportBatchResponse]:
    batches = ImportService(db, company_id).list_batches(limit=limit)
    return [ImportBatchResponse.model_validate(batch) for batch in batches]


@router.get(
    "/imports/template",
    summary="Download import template",
    description="Blank CSV template with trailing month columns ending at the current month.",
    response_class=Response,
)
async def download_template(
    months: Optional[int] = Query(None, ge=1, le=120, description="Number of month columns"),
) -> Response:
    content = build_blank_template(months or settings.template_months)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="forecast_import_template.csv"'},
    )


@router.post(
    "/imports/convert",
    response_model=ConvertResponse,
    responses=UPLOAD_RESPONSES,
    summary="Convert a raw export",
    description="Convert a raw accounting export into the import template layout.",
)
async def convert_export(
    file: UploadFile = File(..., description="Raw .xlsx, .xlsm or .csv export"),
) -> ConvertResponse:
    content = await read_upload(file)
    converted = get_statement_converter().convert_file(content, file.filename or "upload.csv")

    mapping = asdict(converted["mapping"])
    mapping["single_statement"] = converted["mapping"].single_statement.value
    summary = converted["summary"]
    return ConvertResponse(
        csv=converted["csv"],
        mapping=mapping,
        summary=ConversionSummaryResponse(
            row_count=summary.row_count,
            period_start=summary.period_start,
            period_end=summary.period_end,
        ),
    )
