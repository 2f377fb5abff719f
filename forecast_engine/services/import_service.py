"""
Import pipeline service.

Loads historical and actuals workbooks: parse, register line items, then
upsert monthly amounts in committed chunks under an ImportBatch record.
Actuals imports flag values that change a previously reported amount as
restated and drop the variance cache for the affected years.
"""
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Type, Union

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from forecast_engine.config import get_settings
from forecast_engine.exceptions import (
    FileTooLargeError,
    ImportBatchNotFoundError,
    NoRowsExtractedError,
    StorageError,
)
from forecast_engine.middleware.logging import log_performance
from forecast_engine.models.financial_data import ActualAmount, HistoricalAmount
from forecast_engine.models.import_batch import ImportBatch, ImportStatementScope, ImportType
from forecast_engine.services.line_item_registry import LineItemRegistry
from forecast_engine.services.period_normalizer import parse_period
from forecast_engine.services.variance_service import VarianceService
from forecast_engine.services.workbook_parser import (
    ParsedLineRow,
    get_workbook_parser,
    summarize_periods,
    summarize_statements,
)

logger = structlog.get_logger(__name__)

# (line_item_id, year, month)
ValueKey = Tuple[uuid.UUID, int, int]


@dataclass
class ImportResult:
    """Outcome of a completed import."""

    batch_id: uuid.UUID
    import_type: ImportType
    processed_rows: int = 0
    created_line_items: int = 0
    existing_line_items: int = 0
    inserted_records: int = 0
    restated_records: int = 0
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    statement_type: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


def amounts_differ(previous: Optional[float], current: float) -> bool:
    """Compare two amounts at cent precision."""
    if previous is None:
        return False
    return round(float(previous), 2) != round(float(current), 2)


class ImportService:
    """Service for importing workbooks for one company."""

    def __init__(self, db: Session, company_id: uuid.UUID):
        self.db = db
        self.company_id = company_id
        self.settings = get_settings()
        self.parser = get_workbook_parser()
        self.registry = LineItemRegistry(db, company_id)

    @log_performance("import_historical")
    def import_historical(self, content: bytes, file_name: str) -> ImportResult:
        """Import a history workbook (at least ``historical_min_periods`` months)."""
        return self._import(ImportType.HISTORICAL, content, file_name, self.settings.historical_min_periods)

    @log_performance("import_actuals")
    def import_actuals(self, content: bytes, file_name: str) -> ImportResult:
        """Import reported actuals (at least ``actuals_min_periods`` months)."""
        return self._import(ImportType.ACTUALS, content, file_name, self.settings.actuals_min_periods)

    def _import(
        self,
        import_type: ImportType,
        content: bytes,
        file_name: str,
        minimum_periods: int,
    ) -> ImportResult:
        if len(content) > self.settings.max_upload_size_bytes:
            raise FileTooLargeError(len(content), self.settings.max_upload_size_bytes)

        rows = self.parser.parse_line_rows(content, file_name, minimum_periods=minimum_periods)
        if not sum(len(row.values) for row in rows):
            raise NoRowsExtractedError("No historical amounts were extracted from the file.")

        ensured = self.registry.ensure_line_items(rows)
        period_start, period_end = summarize_periods(rows)
        statement_type = summarize_statements(rows)

        batch = ImportBatch(
            company_id=self.company_id,
            import_type=import_type,
            statement_type=ImportStatementScope(statement_type),
            file_name=file_name,
            period_start=period_start,
            period_end=period_end,
            row_count=len(rows),
        )
        batch.mark_processing()
        self._commit_batch(batch)

        warnings: List[str] = []
        values = self._collect_values(rows, ensured.line_items, warnings)

        logger.info(
            "import_started",
            company_id=str(self.company_id),
            batch_id=str(batch.id),
            import_type=import_type.value,
            file_name=file_name,
            rows=len(rows),
            values=len(values),
        )

        model = ActualAmount if import_type == ImportType.ACTUALS else HistoricalAmount
        try:
            inserted, restated = self._write_values(model, values, batch.id)
        except StorageError as e:
            batch.mark_failed(e.message, inserted_records=e.details.get("rows_committed"))
            try:
                self.db.add(batch)
                self.db.commit()
            except SQLAlchemyError as finalize_error:
                self.db.rollback()
                logger.error(
                    "import_batch_finalize_failed",
                    batch_id=str(batch.id),
                    error=str(finalize_error),
                )
            raise

        batch.mark_completed(inserted, restated)
        self._commit_batch(batch)

        if restated:
            warnings.append(f"{restated} actual value(s) differ from previously imported amounts and were marked restated")
            logger.warning("actuals_restated", company_id=str(self.company_id), batch_id=str(batch.id), restated=restated)

        if import_type == ImportType.ACTUALS:
            years = {year for _, year, _ in values}
            VarianceService(self.db, self.company_id).invalidate(years)

        result = ImportResult(
            batch_id=batch.id,
            import_type=import_type,
            processed_rows=len(rows),
            created_line_items=ensured.created,
            existing_line_items=ensured.existing,
            inserted_records=inserted,
            restated_records=restated,
            period_start=period_start,
            period_end=period_end,
            statement_type=statement_type,
            warnings=warnings,
        )
        logger.info(
            "import_completed",
            company_id=str(self.company_id),
            batch_id=str(batch.id),
            inserted=inserted,
            restated=restated,
            created_line_items=ensured.created,
        )
        return result

    def _collect_values(
        self,
        rows: List[ParsedLineRow],
        line_items: Dict,
        warnings: List[str],
    ) -> Dict[ValueKey, float]:
        """Flatten rows into one amount per (line, year, month); later rows win."""
        values: Dict[ValueKey, float] = {}
        seen_keys = set()
        for row in rows:
            item = line_items[row.key]
            if row.key in seen_keys:
                warnings.append(
                    f"Line '{row.line_code}' appears more than once; later values replace earlier ones"
                )
            seen_keys.add(row.key)
            for value in row.values:
                year, month = parse_period(value.period)
                values[(item.id, year, month)] = value.amount
        return values

    def _write_values(
        self,
        model: Type[Union[HistoricalAmount, ActualAmount]],
        values: Dict[ValueKey, float],
        batch_id: uuid.UUID,
    ) -> Tuple[int, int]:
        """
        Upsert values in committed chunks.

        Returns:
            (records written, records restated)

        Raises:
            StorageError: On the first failing chunk; earlier chunks stay committed.
        """
        if not values:
            return 0, 0

        keys = sorted(values, key=lambda k: (k[1], k[2], str(k[0])))
        years = [year for _, year, _ in keys]
        line_ids = list({line_id for line_id, _, _ in keys})
        existing = {
            (row.line_item_id, row.period_year, row.period_month): row
            for row in self.db.query(model).filter(
                model.company_id == self.company_id,
                model.period_year >= min(years),
                model.period_year <= max(years),
                model.line_item_id.in_(line_ids),
            )
        }

        is_actuals = model is ActualAmount
        chunk_size = self.settings.write_chunk_size
        written = 0
        restated = 0
        chunks = 0

        for start in range(0, len(keys), chunk_size):
            chunk = keys[start:start + chunk_size]
            chunk_restated = 0
            try:
                for key in chunk:
                    amount = round(values[key], 2)
                    row = existing.get(key)
                    if row is None:
                        line_id, year, month = key
                        row = model(
                            company_id=self.company_id,
                            line_item_id=line_id,
                            period_year=year,
                            period_month=month,
                        )
                        self.db.add(row)
                        if is_actuals:
                            row.is_restated = False
                            row.prior_amount = None
                    elif is_actuals:
                        if amounts_differ(row.amount, amount):
                            row.is_restated = True
                            row.prior_amount = row.amount
                            chunk_restated += 1
                        else:
                            row.is_restated = False
                            row.prior_amount = None
                    row.amount = amount
                    row.import_batch_id = batch_id
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(
                    "import_chunk_failed",
                    company_id=str(self.company_id),
                    batch_id=str(batch_id),
                    chunks_committed=chunks,
                    error=str(e),
                )
                raise StorageError(
                    "upsert_amounts",
                    f"Import failed after {chunks} committed chunk(s): {e.__class__.__name__}",
                    details={"chunks_committed": chunks, "rows_committed": written, "total_rows": len(keys)},
                ) from e
            written += len(chunk)
            restated += chunk_restated
            chunks += 1

        return written, restated

    def _commit_batch(self, batch: ImportBatch) -> None:
        try:
            self.db.add(batch)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError("save_import_batch", details={"batch_id": str(batch.id)}) from e
        self.db.refresh(batch)

    def list_batches(self, limit: int = 20) -> List[ImportBatch]:
        """Most recent import batches first."""
        return (
            self.db.query(ImportBatch)
            .filter(ImportBatch.company_id == self.company_id)
            .order_by(ImportBatch.created_at.desc())
            .limit(limit)
            .all()
        )

    def get_batch(self, batch_id: uuid.UUID) -> ImportBatch:
        """
        Raises:
            ImportBatchNotFoundError: If the batch does not belong to the company.
        """
        batch = (
            self.db.query(ImportBatch)
            .filter(ImportBatch.company_id == self.company_id, ImportBatch.id == batch_id)
            .first()
        )
        if not batch:
            raise ImportBatchNotFoundError(str(batch_id))
        return batch
