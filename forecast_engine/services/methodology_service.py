"""
Methodology configuration service.

Stores the methodology, parameters and manual overrides chosen for each
line item. Lines without a saved configuration forecast with the default
methodology and its default parameters.
"""
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from forecast_engine.config import get_settings
from forecast_engine.exceptions import StorageError, ValidationError
from forecast_engine.models.methodology import ForecastMethodology, MethodologyConfig
from forecast_engine.services.line_item_registry import LineItemRegistry
from forecast_engine.services.methodology_catalog import MethodParameters, coerce_methodology, resolve_parameters
from forecast_engine.services.period_normalizer import parse_period

logger = structlog.get_logger(__name__)


@dataclass
class ResolvedMethodology:
    """Methodology settings ready for the calculator."""

    methodology: ForecastMethodology
    parameters: MethodParameters
    manual_overrides: Dict[str, float] = field(default_factory=dict)
    is_default: bool = False


def normalize_overrides(overrides: Optional[Mapping[str, Any]]) -> Dict[str, float]:
    """
    Validate a manual override map.

    Raises:
        InvalidPeriodError: If a key is not ``YYYY-MM``.
        ValidationError: If a value is not numeric.
    """
    normalized: Dict[str, float] = {}
    for period, value in (overrides or {}).items():
        parse_period(period)
        try:
            normalized[period] = float(value)
        except (TypeError, ValueError):
            raise ValidationError(
                "Manual override values must be numeric",
                errors=[{"field": period, "message": f"not a number: {value!r}"}],
            )
    return normalized


def default_resolution() -> ResolvedMethodology:
    """Settings used for lines with no saved configuration."""
    methodology = coerce_methodology(get_settings().default_methodology)
    return ResolvedMethodology(
        methodology=methodology,
        parameters=resolve_parameters(methodology, {}),
        is_default=True,
    )


def resolve_config(config: Optional[MethodologyConfig]) -> ResolvedMethodology:
    """Typed settings for a stored configuration (or the default)."""
    if config is None or not config.is_active:
        return default_resolution()
    methodology = coerce_methodology(config.methodology)
    return ResolvedMethodology(
        methodology=methodology,
        parameters=resolve_parameters(methodology, config.parameters or {}),
        manual_overrides=normalize_overrides(config.manual_overrides),
    )


class MethodologyService:
    """Service for per-line methodology configuration."""

    def __init__(self, db: Session, company_id: uuid.UUID):
        self.db = db
        self.company_id = company_id
        self.registry = LineItemRegistry(db, company_id)

    def list_configs(self, include_inactive: bool = False) -> List[MethodologyConfig]:
        """Saved configurations for the company."""
        query = self.db.query(MethodologyConfig).filter(MethodologyConfig.company_id == self.company_id)
        if not include_inactive:
            query = query.filter(MethodologyConfig.is_active == True)  # noqa: E712
        return query.all()

    def get_config(self, line_item_id: uuid.UUID) -> Optional[MethodologyConfig]:
        return (
            self.db.query(MethodologyConfig)
            .filter(
                MethodologyConfig.company_id == self.company_id,
                MethodologyConfig.line_item_id == line_item_id,
            )
            .first()
        )

    def get_configs_map(
        self,
        line_item_ids: Optional[Sequence[uuid.UUID]] = None,
    ) -> Dict[uuid.UUID, MethodologyConfig]:
        """Active configurations keyed by line item id."""
        query = self.db.query(MethodologyConfig).filter(
            MethodologyConfig.company_id == self.company_id,
            MethodologyConfig.is_active == True,  # noqa: E712
        )
        if line_item_ids is not None:
            query = query.filter(MethodologyConfig.line_item_id.in_(list(line_item_ids)))
        return {config.line_item_id: config for config in query.all()}

    def save_config(
        self,
        line_item_id: uuid.UUID,
        methodology: Union[str, ForecastMethodology],
        parameters: Optional[Mapping[str, Any]] = None,
        manual_overrides: Optional[Mapping[str, Any]] = None,
        is_active: bool = True,
    ) -> MethodologyConfig:
        """
        Create or replace the configuration of a line item.

        Parameters are validated against the methodology's model and stored
        with defaults filled in.

        Raises:
            LineItemNotFoundError: If the line item is not in the company's chart.
            ParameterValidationError: If parameters are out of bounds.
            InvalidPeriodError: If an override key is malformed.
        """
        self.registry.get_line_item(line_item_id)
        method = coerce_methodology(methodology)
        resolved = resolve_parameters(method, parameters)
        overrides = normalize_overrides(manual_overrides)

        config = self.get_config(line_item_id)
        if config is None:
            config = MethodologyConfig(company_id=self.company_id, line_item_id=line_item_id)
            self.db.add(config)

        config.methodology = method
        config.parameters = resolved.to_params()
        config.manual_overrides = overrides or None
        config.is_active = is_active

        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("methodology_save_failed", line_item_id=str(line_item_id), error=str(e))
            raise StorageError("save_methodology", details={"line_item_id": str(line_item_id)}) from e
        self.db.refresh(config)

        logger.info(
            "methodology_saved",
            company_id=str(self.company_id),
            line_item_id=str(line_item_id),
            methodology=method.value,
            overrides=len(overrides),
        )
        return config

    def resolve_for_lines(self, line_item_ids: Sequence[uuid.UUID]) -> Dict[uuid.UUID, ResolvedMethodology]:
        """Typed settings for each line, defaulting where nothing is saved."""
        configs = self.get_configs_map(line_item_ids)
        return {line_item_id: resolve_config(configs.get(line_item_id)) for line_item_id in line_item_ids}
