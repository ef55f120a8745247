"""Repository package for database access."""

from .organizations import SqliteOrganizationRepository
from .projects import SqliteProjectRepository

__all__ = [
    "SqliteOrganizationRepository",
    "SqliteProjectRepository",
]
