"""
Methodology and line item API routes.

Provides the methodology catalog, the company's chart of line items, and
per-line methodology configuration.
"""
import uuid
from typing import Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from forecast_engine.database import get_db
from forecast_engine.models.line_item import StatementType
from forecast_engine.schemas.forecast import (
    ErrorResponse,
    LineItemResponse,
    MethodologyConfigRequest,
    MethodologyConfigResponse,
    MethodologyDefinitionResponse,
)
from forecast_engine.services.line_item_registry import LineItemRegistry
from forecast_engine.services.methodology_catalog import list_method_definitions
from forecast_engine.services.methodology_service import MethodologyService
from forecast_engine.services.period_normalizer import get_period_normalizer

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/methodologies",
    response_model=List[MethodologyDefinitionResponse],
    summary="List forecast methodologies",
    description="Catalog of methodologies with their parameters and defaults.",
)
async def list_methodologies() -> List[MethodologyDefinitionResponse]:
    return [MethodologyDefinitionResponse(**definition.to_dict()) for definition in list_method_definitions()]


@router.get(
    "/companies/{company_id}/line-items",
    response_model=List[LineItemResponse],
    summary="List line items",
)
async def list_line_items(
    company_id: uuid.UUID,
    statement_type: Optional[str] = Query(None, description="income_statement or balance_sheet"),
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db),
) -> List[LineItemResponse]:
    """List the company's line items in display order."""
    statement: Optional[StatementType] = None
    if statement_type:
        statement = get_period_normalizer().normalize_statement_type(statement_type)
    items = LineItemRegistry(db, company_id).list_line_items(
        statement_type=statement,
        include_inactive=include_inactive,
    )
    return [LineItemResponse.model_validate(item) for item in items]


@router.get(
    "/companies/{company_id}/line-items/by-statement",
    response_model=Dict[str, List[LineItemResponse]],
    summary="List line items grouped by statement",
)
async def list_line_items_by_statement(
    company_id: uuid.UUID,
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db),
) -> Dict[str, List[LineItemResponse]]:
    """Income statement and balance sheet lines, each in display order."""
    items = LineItemRegistry(db, company_id).list_line_items(include_inactive=include_inactive)
    grouped = LineItemRegistry.group_by_statement(items)
    return {
        statement.value: [LineItemResponse.model_validate(item) for item in statement_items]
        for statement, statement_items in grouped.items()
    }


@router.post(
    "/companies/{company_id}/line-items/{line_item_id}/deactivate",
    response_model=LineItemResponse,
    responses={404: {"model": ErrorResponse, "description": "Line item not found"}},
    summary="Deactivate a line item",
)
async def deactivate_line_item(
    company_id: uuid.UUID,
    line_item_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> LineItemResponse:
    """Exclude a line from future runs. History and projections are kept."""
    item = LineItemRegistry(db, company_id).deactivate(line_item_id)
    return LineItemResponse.model_validate(item)


@router.get(
    "/companies/{company_id}/methodologies",
    response_model=List[MethodologyConfigResponse],
    summary="List methodology configurations",
)
async def list_methodology_configs(
    company_id: uuid.UUID,
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db),
) -> List[MethodologyConfigResponse]:
    configs = MethodologyService(db, company_id).list_configs(include_inactive=include_inactive)
    return [MethodologyConfigResponse.model_validate(config) for config in configs]


@router.put(
    "/companies/{company_id}/methodologies/{line_item_id}",
    response_model=MethodologyConfigResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid methodology or parameters"},
        404: {"model": ErrorResponse, "description": "Line item not found"},
    },
    summary="Save a line item's methodology",
)
async def save_methodology_config(
    company_id: uuid.UUID,
    line_item_id: uuid.UUID,
    request: MethodologyConfigRequest,
    db: Session = Depends(get_db),
) -> MethodologyConfigResponse:
    """
    Create or replace the methodology of a line item.

    Parameters are validated against the methodology and stored with
    defaults filled in.
    """
    config = MethodologyService(db, company_id).save_config(
        line_item_id,
        request.methodology,
        parameters=request.parameters,
        manual_overrides=request.manual_overrides,
        is_active=request.is_active,
    )
    return MethodologyConfigResponse.model_validate(config)
