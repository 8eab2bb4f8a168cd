"""Read-only access to the migration control tables."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any


class NoRowsError(LookupError):
    """A query that expects a row found none."""

    def __init__(self, message: str = "no rows in result set") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class DbMigration:
    """A migration job: move databases named in ``[start, end)`` to ``url``."""

    id: uuid.UUID
    status: str
    start: str
    end: str
    url: str


@dataclass(frozen=True)
class DbMapping:
    """Databases named from ``start`` onward live at ``url``."""

    id: uuid.UUID
    start: str
    url: str


def _parse_uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except (ValueError, TypeError, AttributeError) as exc:
        raise ValueError(f"could not parse uuid ({value})") from exc


class Reader:
    """Runs read queries, each in its own transaction.

    ``pool`` provides ``begin()``, a context manager yielding a connection that
    commits on success and rolls back on error (a SQLAlchemy engine does).
    ``queries`` provides ``get_migration_job(conn, worker_id)``,
    ``get_db_mappings(conn)`` and ``check_in_table(conn, worker_id)``, raising
    NoRowsError when nothing matches.
    """

    def __init__(self, pool: Any, queries: Any, logger: logging.Logger | None = None) -> None:
        self.pool = pool
        self.queries = queries
        self.logger = logger or logging.getLogger(__name__)

    def get_migration_job(self, worker_id: str) -> DbMigration:
        """Return the job assigned to the worker with this id."""
        parsed = _parse_uuid(worker_id)
        with self.pool.begin() as conn:
            job = self.queries.get_migration_job(conn, parsed)
        self.logger.debug("successfully got migration job")
        return job

    def get_all_mappings(self) -> list[DbMapping]:
        """Return every range-to-instance mapping."""
        with self.pool.begin() as conn:
            mappings = list(self.queries.get_db_mappings(conn))
        self.logger.debug("successfully got db mappings, count=%d", len(mappings))
        return mappings

    def do_i_exist(self, worker_id: str) -> bool:
        """Return whether the worker is still listed in the workers table."""
        parsed = _parse_uuid(worker_id)
        try:
            with self.pool.begin() as conn:
                self.queries.check_in_table(conn, parsed)
        except NoRowsError:
            self.logger.debug("worker %s is not in the migration worker table", worker_id)
            return False
        return True