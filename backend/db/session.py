"""
ShelfSync Database Session Management

Declarative base and dialect-aware upsert helper.
"""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass


def upsert(db: AsyncSession, model):
    """Return a dialect-specific INSERT supporting ``on_conflict_do_update``.

    Production runs on PostgreSQL; tests run on SQLite. Both dialects expose the
    same ``on_conflict_do_update(index_elements=..., set_=...)`` API.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upsert not supported for dialect {dialect!r}")
