"""Write access to the migration control tables."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from .dbutils import JobStatus, must
from .errors import DbError


def _parse_uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except (ValueError, TypeError, AttributeError) as exc:
        raise DbError(f"could not parse uuid ({value}): {exc}", reconcilable=False) from exc


class Writer:
    """Runs write statements, each in its own transaction.

    Every failure is raised as DbError. Statements that touch no rows and
    unparsable ids are not reconcilable; driver and transaction failures are.
    ``queries`` methods take the connection first and return the number of
    rows affected.
    """

    def __init__(self, pool: Any, queries: Any, logger: logging.Logger | None = None) -> None:
        self.pool = pool
        self.queries = queries
        self.logger = logger or logging.getLogger(__name__)

    def _execute(self, description: str, statement: Callable[[Any], int]) -> None:
        try:
            with self.pool.begin() as conn:
                try:
                    rows = statement(conn)
                except Exception as exc:
                    raise DbError(f"execution error occurred: {exc}", reconcilable=True) from exc
                must(rows, description)
        except DbError:
            raise
        except Exception as exc:
            raise DbError(f"transaction failed: {exc}", reconcilable=True) from exc

    def heartbeat(self, worker_id: str, interval: timedelta) -> None:
        """Record a heartbeat now and add ``interval`` to the worker's uptime."""
        parsed = _parse_uuid(worker_id)
        now = datetime.now(timezone.utc)
        self._execute(
            "heartbeat",
            lambda conn: self.queries.heartbeat(conn, parsed, now, interval),
        )

    def update_job_status(self, worker_id: str, status: JobStatus) -> None:
        """Set the status of the job held by this worker."""
        parsed = _parse_uuid(worker_id)
        value = JobStatus(status).value
        self._execute(
            "change job status",
            lambda conn: self.queries.change_job_status(conn, parsed, value),
        )
        self.logger.debug("successfully changed status of %s to %s", worker_id, value)

    def remove_job(self, worker_id: str) -> None:
        """Delete the job held by this worker."""
        parsed = _parse_uuid(worker_id)
        self._execute("delete job", lambda conn: self.queries.delete_job(conn, parsed))
        self.logger.debug("successfully deleted migration job of %s", worker_id)

    def delete_worker_job_join(self, worker_id: str) -> None:
        """Delete the link between this worker and its job."""
        parsed = _parse_uuid(worker_id)
        self._execute(
            "delete worker job join",
            lambda conn: self.queries.delete_worker_job_join(conn, parsed),
        )
        self.logger.debug("successfully deleted worker job join of %s", worker_id)

    def add_db_mapping(self, start: str, url: str) -> None:
        """Map databases named from ``start`` onward to ``url``."""
        self._execute(
            "add db mapping",
            lambda conn: self.queries.add_db_mapping(conn, start, url),
        )
        self.logger.debug("successfully added db mapping from=%s url=%s", start, url)

    def remove_db_mapping(self, mapping_id: str) -> None:
        """Delete the mapping with this id."""
        parsed = _parse_uuid(mapping_id)
        self._execute(
            "delete db mapping",
            lambda conn: self.queries.delete_db_mapping(conn, parsed),
        )
        self.logger.debug("successfully removed db mapping %s", mapping_id)

    def remove_self(self, worker_id: str) -> None:
        """Delete this worker from the workers table."""
        parsed = _parse_uuid(worker_id)
        self._execute("remove self", lambda conn: self.queries.remove_self(conn, parsed))
        self.logger.debug("successfully removed self from table, workerID=%s", worker_id)