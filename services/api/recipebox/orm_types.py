# recipebox/orm_types.py
from sqlalchemy.types import TypeDecorator, JSON
from sqlalchemy.dialects.postgresql import JSONB


class JSONDocument(TypeDecorator):
    """Platform-independent JSON document.

    - PostgreSQL: JSONB
    - SQLite (tests): JSON
    """
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value, dialect):
        if value is None:
            return {}
        return value

    def process_result_value(self, value, dialect):
        return value if value is not None else {}
