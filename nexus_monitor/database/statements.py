"""
Dialect-aware DML helpers

INSERT .. ON CONFLICT is spelled the same way by the PostgreSQL and SQLite
dialects, but each dialect ships its own ``insert`` construct.
"""

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def upsert_insert(session: AsyncSession, model: Any):
    """
    Return an ``insert(model)`` that supports ``on_conflict_do_*``.

    Raises:
        NotImplementedError: For dialects without ON CONFLICT support
    """
    dialect = session.get_bind().dialect.name
    try:
        return _INSERTS[dialect](model)
    except KeyError:
        raise NotImplementedError(f"ON CONFLICT inserts not supported for dialect: {dialect}") from None
