"""
Line item registry service.

Keeps the per-company chart of forecastable line items in step with
imported workbooks. Keys are ``statement_type:line_code`` with the code
lowercased, so re-importing a file never creates duplicates.
"""
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import structlog
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from forecast_engine.exceptions import LineItemNotFoundError, StorageError
from forecast_engine.models.line_item import ForecastLineItem, StatementType, build_line_key
from forecast_engine.services.workbook_parser import ParsedLineRow

logger = structlog.get_logger(__name__)


@dataclass
class EnsureLineItemsResult:
    """Registry entries for an import's keys plus created/existing counts."""

    line_items: Dict[str, ForecastLineItem] = field(default_factory=dict)
    created: int = 0
    existing: int = 0


class LineItemRegistry:
    """Service for the company's forecast line items."""

    def __init__(self, db: Session, company_id: uuid.UUID):
        self.db = db
        self.company_id = company_id

    def ensure_line_items(self, rows: Sequence[ParsedLineRow]) -> EnsureLineItemsResult:
        """
        Make sure every row has a registry entry.

        New keys are inserted in first-seen order with display orders
        continuing after the company's current maximum.

        Args:
            rows: Parsed workbook rows.

        Returns:
            EnsureLineItemsResult keyed by ``statement_type:line_code``.
        """
        first_seen: "OrderedDict[str, ParsedLineRow]" = OrderedDict()
        for row in rows:
            first_seen.setdefault(build_line_key(row.statement_type, row.line_code), row)

        if not first_seen:
            return EnsureLineItemsResult()

        registry = self.get_key_map(include_inactive=True)
        result = EnsureLineItemsResult()
        pending = []

        for key, row in first_seen.items():
            if key in registry:
                result.line_items[key] = registry[key]
                result.existing += 1
            else:
                pending.append((key, row))

        if pending:
            next_order = self._max_display_order() + 1
            try:
                for offset, (key, row) in enumerate(pending):
                    item = ForecastLineItem(
                        company_id=self.company_id,
                        statement_type=row.statement_type,
                        line_code=row.line_code,
                        line_name=row.line_name,
                        line_category=row.line_category,
                        line_subcategory=row.line_subcategory,
                        display_order=next_order + offset,
                    )
                    self.db.add(item)
                    result.line_items[key] = item
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error("line_item_insert_failed", company_id=str(self.company_id), error=str(e))
                raise StorageError("ensure_line_items", details={"pending": len(pending)}) from e

            for item in result.line_items.values():
                self.db.refresh(item)
            result.created = len(pending)

        logger.info(
            "line_items_ensured",
            company_id=str(self.company_id),
            created=result.created,
            existing=result.existing,
        )
        return result

    def _max_display_order(self) -> int:
        value = (
            self.db.query(func.max(ForecastLineItem.display_order))
            .filter(ForecastLineItem.company_id == self.company_id)
            .scalar()
        )
        return value if value is not None else -1

    def list_line_items(
        self,
        statement_type: Optional[StatementType] = None,
        include_inactive: bool = False,
    ) -> List[ForecastLineItem]:
        """Line items in display order."""
        query = self.db.query(ForecastLineItem).filter(ForecastLineItem.company_id == self.company_id)
        if statement_type is not None:
            query = query.filter(ForecastLineItem.statement_type == statement_type)
        if not include_inactive:
            query = query.filter(ForecastLineItem.is_active == True)  # noqa: E712
        return query.order_by(ForecastLineItem.display_order, ForecastLineItem.line_code).all()

    def get_key_map(self, include_inactive: bool = False) -> Dict[str, ForecastLineItem]:
        """All line items keyed by registry key."""
        return {item.registry_key: item for item in self.list_line_items(include_inactive=include_inactive)}

    def get_line_item(self, line_item_id: uuid.UUID) -> ForecastLineItem:
        """
        Fetch one line item.

        Raises:
            LineItemNotFoundError: If the id is not in this company's chart.
        """
        item = (
            self.db.query(ForecastLineItem)
            .filter(
                ForecastLineItem.company_id == self.company_id,
                ForecastLineItem.id == line_item_id,
            )
            .first()
        )
        if not item:
            raise LineItemNotFoundError(str(line_item_id))
        return item

    def get_line_items(self, line_item_ids: Sequence[uuid.UUID]) -> List[ForecastLineItem]:
        """Fetch several line items, preserving the requested order."""
        if not line_item_ids:
            return []
        items = (
            self.db.query(ForecastLineItem)
            .filter(
                ForecastLineItem.company_id == self.company_id,
                ForecastLineItem.id.in_(list(line_item_ids)),
            )
            .all()
        )
        by_id = {item.id: item for item in items}
        missing = [str(i) for i in line_item_ids if i not in by_id]
        if missing:
            raise LineItemNotFoundError(missing[0])
        return [by_id[i] for i in line_item_ids]

    def deactivate(self, line_item_id: uuid.UUID) -> ForecastLineItem:
        """Retire a line item; its history and projections are kept."""
        item = self.get_line_item(line_item_id)
        item.deactivate()
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError("deactivate_line_item", details={"line_item_id": str(line_item_id)}) from e
        self.db.refresh(item)

        logger.info("line_item_deactivated", company_id=str(self.company_id), line_item_id=str(line_item_id))
        return item

    @staticmethod
    def group_by_statement(items: Sequence[ForecastLineItem]) -> Dict[StatementType, List[ForecastLineItem]]:
        """Split line items by statement, keeping their order."""
        grouped: Dict[StatementType, List[ForecastLineItem]] = {
            StatementType.INCOME_STATEMENT: [],
            StatementType.BALANCE_SHEET: [],
        }
        for item in items:
            grouped[StatementType(item.statement_type)].append(item)
        return grouped
