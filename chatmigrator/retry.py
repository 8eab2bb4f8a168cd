"""Retrying wrappers around the control-table reader and writer."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Iterator, TypeVar

from .dbutils import JobStatus
from .envutils import parse_env_duration, parse_env_string_with_default
from .errors import DbError, UnreachableCodeError
from .reader import DbMapping, DbMigration, NoRowsError, Reader
from .writer import Writer

T = TypeVar("T")

DEFAULT_INITIAL_BACKOFF = timedelta(milliseconds=15)
DEFAULT_MAX_BACKOFF = timedelta(minutes=5)
DEFAULT_BACKOFF_TYPE = "exp"

_BACKOFF_TYPES = {"exp": "exponential", "lin": "linear"}

_MILLISECOND = timedelta(milliseconds=1)


@dataclass(frozen=True)
class BackoffPolicy:
    """How long to wait between attempts.

    After the n-th failure the wait becomes the previous wait in milliseconds
    raised to the power n; once that passes ``maximum`` the wait stays at
    ``maximum``. No attempt is made at all when ``initial`` exceeds ``maximum``.
    """

    initial: timedelta = DEFAULT_INITIAL_BACKOFF
    maximum: timedelta = DEFAULT_MAX_BACKOFF
    backoff_type: str = "exponential"

    @staticmethod
    def from_env(logger: logging.Logger) -> "BackoffPolicy":
        """Build a policy from INIT_RETRY_BACKOFF, MAX_BACKOFF and BACKOFF_TYPE."""
        initial = parse_env_duration("INIT_RETRY_BACKOFF", DEFAULT_INITIAL_BACKOFF, logger)
        maximum = parse_env_duration("MAX_BACKOFF", DEFAULT_MAX_BACKOFF, logger)
        requested = parse_env_string_with_default("BACKOFF_TYPE", DEFAULT_BACKOFF_TYPE, logger)
        backoff_type = _BACKOFF_TYPES.get(requested)
        if backoff_type is None:
            logger.warning("invalid backoff strategy provided, setting default: %s", requested)
            backoff_type = DEFAULT_BACKOFF_TYPE
        return BackoffPolicy(initial=initial, maximum=maximum, backoff_type=backoff_type)

    @property
    def allows_attempts(self) -> bool:
        """Whether any attempt is made under this policy."""
        return self.initial <= self.maximum

    def delays(self) -> Iterator[timedelta]:
        """Yield the wait after each failed attempt, without end."""
        if not self.allows_attempts:
            return
        backoff_ms = self.initial // _MILLISECOND
        max_ms = self.maximum // _MILLISECOND
        count = 1
        while True:
            new_ms = backoff_ms**count
            if new_ms > max_ms:
                backoff_ms = max_ms
                yield self.maximum
                continue
            backoff_ms = new_ms
            count += 1
            yield timedelta(milliseconds=new_ms)


def _retry(
    policy: BackoffPolicy,
    sleep: Callable[[float], None],
    logger: logging.Logger,
    name: str,
    attempt: Callable[[], T],
    is_permanent: Callable[[Exception], bool],
) -> T:
    if not policy.allows_attempts:
        error = UnreachableCodeError()
        logger.warning("%s: %s", name, error)
        raise error
    delays = policy.delays()
    while True:
        try:
            return attempt()
        except Exception as exc:
            if is_permanent(exc):
                raise
            delay = next(delays)
            logger.debug("%s retrying in %s after error: %s", name, delay, exc)
            sleep(max(delay.total_seconds(), 0.0))


def _reader_error_is_permanent(exc: Exception) -> bool:
    return isinstance(exc, (NoRowsError, ValueError))


def _writer_error_is_permanent(exc: Exception) -> bool:
    return not (isinstance(exc, DbError) and exc.reconcilable)


class RetryingReader:
    """A Reader whose queries are retried until they succeed or fail for good."""

    def __init__(
        self,
        reader: Reader,
        policy: BackoffPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.reader = reader
        self.policy = policy if policy is not None else BackoffPolicy.from_env(reader.logger)
        self.sleep = sleep

    def get_migration_job(self, worker_id: str) -> DbMigration:
        """Return the worker's job; NoRowsError when it has none."""
        return _retry(
            self.policy,
            self.sleep,
            self.reader.logger,
            "getMigrationJob",
            lambda: self.reader.get_migration_job(worker_id),
            _reader_error_is_permanent,
        )

    def get_all_mappings(self) -> list[DbMapping]:
        """Return every range-to-instance mapping."""
        return _retry(
            self.policy,
            self.sleep,
            self.reader.logger,
            "getDbMappings",
            self.reader.get_all_mappings,
            _reader_error_is_permanent,
        )


class RetryingWriter:
    """A Writer whose statements are retried while their errors are reconcilable."""

    def __init__(
        self,
        writer: Writer,
        policy: BackoffPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.writer = writer
        self.policy = policy if policy is not None else BackoffPolicy.from_env(writer.logger)
        self.sleep = sleep

    def _run(self, name: str, attempt: Callable[[], None]) -> None:
        _retry(
            self.policy,
            self.sleep,
            self.writer.logger,
            name,
            attempt,
            _writer_error_is_permanent,
        )

    def heartbeat(self, worker_id: str, interval: timedelta) -> None:
        """Record a heartbeat, adding ``interval`` to the uptime."""
        self._run("heartbeat", lambda: self.writer.heartbeat(worker_id, interval))

    def update_job_status(self, worker_id: str, status: JobStatus) -> None:
        """Set the status of the worker's job."""
        self._run("updateJobStatus", lambda: self.writer.update_job_status(worker_id, status))

    def remove_job(self, worker_id: str) -> None:
        """Remove the worker's job, trying the worker-job link first."""
        logger = self.writer.logger
        logger.debug(
            "removeJob workerId=%s initialBackoff=%s maxBackoff=%s",
            worker_id,
            self.policy.initial,
            self.policy.maximum,
        )

        def attempt() -> None:
            try:
                self.writer.delete_worker_job_join(worker_id)
            except DbError as exc:
                if not exc.reconcilable:
                    logger.error("removeJob failed for %s: %s", worker_id, exc)
                    raise
            else:
                logger.debug("removeJob successful for %s", worker_id)
                return
            try:
                self.writer.remove_job(worker_id)
            except DbError as exc:
                if not exc.reconcilable:
                    logger.error("removeJob failed for %s: %s", worker_id, exc)
                raise
            logger.debug("removeJob successful for %s", worker_id)

        self._run("removeJob", attempt)

    def remove_db_mapping(self, mapping_id: str) -> None:
        """Delete the mapping with this id."""
        self._run("removeDbMapping", lambda: self.writer.remove_db_mapping(mapping_id))

    def add_db_mapping(self, start: str, url: str) -> None:
        """Map databases named from ``start`` onward to ``url``."""
        self._run("addDbMapping", lambda: self.writer.add_db_mapping(start, url))

    def remove_self(self, worker_id: str) -> None:
        """Delete this worker from the workers table."""
        self._run("removeSelf", lambda: self.writer.remove_self(worker_id))