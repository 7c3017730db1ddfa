"""
Database type utilities for cross-database compatibility.

Provides SQLite-compatible versions of PostgreSQL types and the shared
numeric column types used by money and metric columns.
"""
import uuid as uuid_module
from datetime import datetime, timezone

from sqlalchemy import Numeric, String, TypeDecorator


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
        if value is None or isinstance(value, uuid_module.UUID):
            return value
        return uuid_module.UUID(value)


# Money columns hold cents precision; metric columns keep three decimals
Money = Numeric(18, 2, asdecimal=True)
MetricNumber = Numeric(18, 3, asdecimal=True)
Ratio = Numeric(9, 4, asdecimal=True)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)
