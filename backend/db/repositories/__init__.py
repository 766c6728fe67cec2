"""Repository package for database access."""

from .sessions import SqliteSessionRepository
from .work_units import SqliteWorkUnitRepository

__all__ = [
    "SqliteSessionRepository",
    "SqliteWorkUnitRepository",
]
