"""Base class for SQLAlchemy models"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import Enum as SQLEnum
from sqlalchemy import String, TypeDecorator
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def generate_uuid() -> str:
    """Generate a new UUID string"""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DatabaseAgnosticEnum(TypeDecorator):
    """
    Database-agnostic Enum type.
    Uses native ENUM for PostgreSQL, String for other databases.
    """

    impl = String
    cache_ok = True

    def __init__(self, enum_class, *args, **kwargs):
        self.enum_class = enum_class
        super().__init__(*args, **kwargs)

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(
                SQLEnum(self.enum_class, values_callable=lambda e: [m.value for m in e])
            )
        max_len = max(len(item.value) for item in self.enum_class)
        return dialect.type_descriptor(String(max_len))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, self.enum_class):
            return value.value
        # Validates raw strings against the enum before they reach the column
        return self.enum_class(value).value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return self.enum_class(value)
