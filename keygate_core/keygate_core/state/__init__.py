"""State persistence layer: SQLAlchemy and in-memory backends."""

from keygate_core.state.database import create_tables, get_engine, get_session, get_session_factory
from keygate_core.state.memory import MemoryRepository
from keygate_core.state.protocols import DuplicateEntityError, Repository, RepositoryError
from keygate_core.state.repository import SqlRepository

__all__ = [
    "DuplicateEntityError",
    "MemoryRepository",
    "Repository",
    "RepositoryError",
    "SqlRepository",
    "create_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
