"""Database persistence layer on SQLAlchemy 2.x async ORM."""

from irdesk.db.models import Base, IncidentRecord
from irdesk.db.repository import SqlIncidentStore
from irdesk.db.session import create_async_engine, create_schema, create_session_factory

__all__ = [
    "Base",
    "IncidentRecord",
    "SqlIncidentStore",
    "create_async_engine",
    "create_schema",
    "create_session_factory",
]
