"""
Database type utilities for cross-database compatibility.

Provides SQLite-compatible versions of PostgreSQL types used by the
forecast tables.
"""
import uuid as uuid_module

from sqlalchemy import JSON, Numeric, String, TypeDecorator
from sqlalchemy.dialects.postgresql import JSONB


class UUID(TypeDecorator):
    """
    Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise
    stores as a 36-character string (with dashes).
    """

    impl = String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import UUID as PG_UUID
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if not isinstance(value, uuid_module.UUID):
            value = uuid_module.UUID(str(value))
        if dialect.name == "postgresql":
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid_module.UUID):
            return value
        return uuid_module.UUID(value)


# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def Money() -> Numeric:
    """Monetary column type: DECIMAL(18,2) read back as float."""
    return Numeric(precision=18, scale=2, asdecimal=False)


def Percent() -> Numeric:
    """Percentage column type: DECIMAL(12,4) read back as float."""
    return Numeric(precision=12, scale=4, asdecimal=False)
