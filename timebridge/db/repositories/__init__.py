"""Repository package for database access."""

from .identity import (
    SqliteCursorRepository,
    SqliteMappingRepository,
    SqliteOutcomeRepository,
    SqliteWorklogLedgerRepository,
)

__all__ = [
    "SqliteCursorRepository",
    "SqliteMappingRepository",
    "SqliteOutcomeRepository",
    "SqliteWorklogLedgerRepository",
]
