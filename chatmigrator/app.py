"""Command entry point: sets up logging and the database layer, then runs one job."""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import sys
import threading
import time
import uuid
from datetime import datetime, timedelta
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Mapping

from sqlalchemy import text

from .dbutils import JobStatus, setup_pg_conn
from .envutils import parse_env_string_required, parse_env_string_with_default
from .reader import DbMapping, DbMigration, NoRowsError, Reader
from .retry import RetryingReader, RetryingWriter
from .worker import MigrationWorker
from .writer import Writer

LOGGER_NAME = "chatmigrator"
LOG_FILE = Path("logs") / "app.log"
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 3
LOG_MAX_AGE = timedelta(days=7)
DELETION_CHECK_INTERVAL = timedelta(seconds=2)


class _JsonFormatter(logging.Formatter):
    def __init__(self, time_key: str = "timestamp") -> None:
        super().__init__()
        self.time_key = time_key

    def format(self, record: logging.LogRecord) -> str:
        moment = datetime.fromtimestamp(record.created).astimezone()
        entry = {
            "level": record.levelname.lower(),
            self.time_key: moment.isoformat(timespec="milliseconds"),
            "logger": record.name,
            "caller": f"{record.filename}:{record.lineno}",
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["stacktrace"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class _SamplingFilter(logging.Filter):
    """Per second, let the first ``first`` copies of a message through, then every ``thereafter``-th."""

    def __init__(
        self,
        tick: float = 1.0,
        first: int = 10,
        thereafter: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        self._tick = tick
        self._first = first
        self._thereafter = thereafter
        self._clock = clock
        self._counts: dict[tuple[int, str], tuple[int, int]] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        key = (record.levelno, str(record.msg))
        window = int(self._clock() // self._tick)
        seen_window, count = self._counts.get(key, (window, 0))
        if seen_window != window:
            count = 0
        count += 1
        self._counts[key] = (window, count)
        return count <= self._first or (count - self._first) % self._thereafter == 0


def _fresh_logger(level: int) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)
    logger.propagate = False
    return logger


def _prune_old_backups(path: Path, max_age: timedelta) -> None:
    cutoff = time.time() - max_age.total_seconds()
    for backup in path.parent.glob(path.name + ".*"):
        if backup.stat().st_mtime < cutoff:
            backup.unlink()


def create_production_logger() -> logging.Logger:
    """Log INFO and up to stdout (sampled) and as JSON lines to a rotating file."""
    LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
    _prune_old_backups(LOG_FILE, LOG_MAX_AGE)
    logger = _fresh_logger(logging.INFO)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter("%(asctime)s\t%(levelname)s\t%(name)s\t%(message)s"))
    console.addFilter(_SamplingFilter())
    logger.addHandler(console)

    file_handler = RotatingFileHandler(
        LOG_FILE, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8"
    )
    file_handler.setFormatter(_JsonFormatter("timestamp"))
    logger.addHandler(file_handler)

    logger.info("Production logger created")
    return logger


def create_development_logger() -> logging.Logger:
    """Log everything from DEBUG up as JSON lines to stderr."""
    logger = _fresh_logger(logging.DEBUG)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter("timestamp"))
    logger.addHandler(handler)
    logger.info("Development logger created")
    return logger


_QUERY_HEADER = re.compile(r"^--\s*name:\s*(\w+)\s*:\w+\s*$", re.MULTILINE)
_POSITIONAL = re.compile(r"\$(\d+)")


def _parse_named_queries(content: str) -> dict[str, str]:
    matches = list(_QUERY_HEADER.finditer(content))
    statements = {}
    for match, following in zip(matches, [*matches[1:], None]):
        end = following.start() if following is not None else len(content)
        statements[match.group(1)] = content[match.end():end].strip().rstrip(";").strip()
    return statements


class _SqlFileQueries:
    """Control-table queries loaded from a file of ``-- name: <Name> :<kind>`` blocks.

    Statements use ``$1``, ``$2``... for their parameters.
    """

    REQUIRED = (
        "GetMigrationJob",
        "GetDBMappings",
        "CheckInTable",
        "Heartbeat",
        "ChangeJobStatus",
        "DeleteJob",
        "DeleteWorkerJobJoin",
        "AddDbMapping",
        "DeleteDbMapping",
        "RemoveSelf",
    )

    def __init__(self, statements: Mapping[str, str]) -> None:
        missing = [name for name in self.REQUIRED if name not in statements]
        if missing:
            raise ValueError(f"query file lacks statements: {', '.join(missing)}")
        self._statements = {
            name: text(_POSITIONAL.sub(r"(:p\1)", sql)) for name, sql in statements.items()
        }

    @classmethod
    def from_file(cls, path: str | os.PathLike[str]) -> "_SqlFileQueries":
        return cls(_parse_named_queries(Path(path).read_text(encoding="utf-8")))

    def _execute(self, conn: Any, name: str, *params: Any) -> Any:
        bound = {f"p{index}": value for index, value in enumerate(params, start=1)}
        return conn.execute(self._statements[name], bound)

    def _one(self, conn: Any, name: str, *params: Any) -> Mapping[str, Any]:
        row = self._execute(conn, name, *params).mappings().first()
        if row is None:
            raise NoRowsError()
        return row

    def get_migration_job(self, conn: Any, worker_id: uuid.UUID) -> DbMigration:
        row = self._one(conn, "GetMigrationJob", str(worker_id))
        return DbMigration(
            id=uuid.UUID(str(row["id"])),
            status=str(row["status"]),
            start=row["from"],
            end=row["to"],
            url=row["url"],
        )

    def get_db_mappings(self, conn: Any) -> list[DbMapping]:
        rows = self._execute(conn, "GetDBMappings").mappings()
        return [
            DbMapping(id=uuid.UUID(str(row["id"])), start=row["from"], url=row["url"])
            for row in rows
        ]

    def check_in_table(self, conn: Any, worker_id: uuid.UUID) -> None:
        self._one(conn, "CheckInTable", str(worker_id))

    def heartbeat(self, conn: Any, worker_id: uuid.UUID, now: datetime, uptime: timedelta) -> int:
        return self._execute(conn, "Heartbeat", str(worker_id), now, uptime).rowcount

    def change_job_status(self, conn: Any, worker_id: uuid.UUID, status: str) -> int:
        return self._execute(conn, "ChangeJobStatus", str(worker_id), status).rowcount

    def delete_job(self, conn: Any, worker_id: uuid.UUID) -> int:
        return self._execute(conn, "DeleteJob", str(worker_id)).rowcount

    def delete_worker_job_join(self, conn: Any, worker_id: uuid.UUID) -> int:
        return self._execute(conn, "DeleteWorkerJobJoin", str(worker_id)).rowcount

    def add_db_mapping(self, conn: Any, start: str, url: str) -> int:
        return self._execute(conn, "AddDbMapping", start, url).rowcount

    def delete_db_mapping(self, conn: Any, mapping_id: uuid.UUID) -> int:
        return self._execute(conn, "DeleteDbMapping", str(mapping_id)).rowcount

    def remove_self(self, conn: Any, worker_id: uuid.UUID) -> int:
        return self._execute(conn, "RemoveSelf", str(worker_id)).rowcount


def setup_worker(pool: Any, queries: Any, logger: logging.Logger) -> MigrationWorker:
    """Build a worker whose id comes from the ``UUID`` environment variable."""
    reader = Reader(pool, queries, logger)
    writer = Writer(pool, queries, logger)
    return MigrationWorker(
        uuid=parse_env_string_required("UUID", logger),
        logger=logger,
        reader=reader,
        writer=writer,
        retrying_reader=RetryingReader(reader),
        retrying_writer=RetryingWriter(writer),
    )


def run_migration(worker: MigrationWorker) -> None:
    """Fetch the worker's job, run it and record the new range mappings."""
    logger = worker.logger
    try:
        job = worker.retrying_reader.get_migration_job(worker.uuid)
    except NoRowsError:
        logger.info("there is no available job for this migration worker %s", worker.uuid)
        logger.error("could not get migration job")
        raise
    except Exception as exc:
        logger.error("could not get migration job, but error was not 'no rows': %s", exc)
        raise

    logger.info(
        "got a job jobId=%s workerId=%s jobStatus=%s jobFrom=%s jobTo=%s jobUrl=%s",
        job.id, worker.uuid, job.status, job.start, job.end, job.url,
    )

    # A job that is failed, done but not removed, or running elsewhere is resumed carefully.
    if job.status != "waiting":
        worker.failure_mode = True

    try:
        worker.retrying_writer.update_job_status(worker.uuid, JobStatus.RUNNING)
    except Exception:
        logger.error("migration worker took job but could not update the db state")
        raise

    try:
        origin_client, dest_client = worker.prepare_migration(job)
    except Exception as exc:
        logger.error("preparing migration %s failed: %s", job.id, exc)
        raise

    try:
        worker.migrate(origin_client, dest_client, job)
    except Exception as exc:
        logger.error("error occurred running the migration %s: %s", job.id, exc)

    logger.info("migration worker finished running the migration %s", job.id)

    try:
        worker.retrying_writer.remove_job(worker.uuid)
    except Exception:
        logger.error("could not update the job status to new state for job %s", job.id)
        raise

    logger.info("migration worker successfully removed the job %s", job.id)

    try:
        worker.calculate_new_mappings(job)
    except Exception as exc:
        logger.error("could not calculate new mappings for job %s: %s", job.id, exc)


def check_deleted(worker: MigrationWorker, interval: timedelta = DELETION_CHECK_INTERVAL) -> None:
    """Raise SystemExit(1) as soon as the worker is gone from the workers table."""
    while not worker.stop_event.is_set():
        try:
            exists = worker.reader.do_i_exist(worker.uuid)
        except Exception as exc:
            worker.logger.error("could not check worker existence: %s", exc)
            exists = False
        if not exists:
            worker.logger.critical(
                "the worker does not exist in the migration workers table anymore, exiting..."
            )
            raise SystemExit(1)
        worker.stop_event.wait(interval.total_seconds())


def _flush(logger: logging.Logger) -> None:
    for handler in logger.handlers:
        try:
            handler.flush()
        except Exception:
            print("Error closing the logger", file=sys.stderr)


def _exit_process_on_failure(target: Callable[[], None], logger: logging.Logger) -> None:
    try:
        target()
    except SystemExit as exc:
        _flush(logger)
        os._exit(exc.code if isinstance(exc.code, int) else 1)
    except Exception:
        logger.exception("background task failed")
        _flush(logger)
        os._exit(1)


def _run(logger: logging.Logger) -> int:
    try:
        engine = setup_pg_conn(logger)
    except Exception as exc:
        logger.critical("establishing connection to database failed, stopping: %s", exc)
        return 1

    try:
        queries = _SqlFileQueries.from_file(
            parse_env_string_with_default("QUERIES_FILE", "queries.sql", logger)
        )
    except (OSError, ValueError) as exc:
        logger.critical("could not load the control-table queries: %s", exc)
        return 1

    worker = setup_worker(engine, queries, logger)

    for target in (lambda: check_deleted(worker), worker.heartbeat_forever):
        threading.Thread(
            target=_exit_process_on_failure, args=(target, logger), daemon=True
        ).start()

    try:
        run_migration(worker)
    except Exception as exc:
        logger.critical("the migration loop failed and emitted an error: %s", exc)
        return 1

    try:
        worker.retrying_writer.remove_self(worker.uuid)
    except Exception as exc:
        logger.critical("could not remove self from the migration workers table: %s", exc)
        return 1

    worker.stop_event.set()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run one migration job; the environment is picked by ``APP_ENV``."""
    argparse.ArgumentParser(
        prog="chatmigrator",
        description="Move a range of chat databases to another MongoDB instance.",
    ).parse_args(argv)

    env = parse_env_string_required("APP_ENV", logging.getLogger(LOGGER_NAME + ".setup"))
    factories = {"prod": create_production_logger, "dev": create_development_logger}
    factory = factories.get(env)
    if factory is None:
        print(
            "Logger creation failed, since an invalid app environment was specified: " + env
        )
        return 1

    logger = factory()
    logger.info("Logger initialized, environment=%s", env)
    try:
        return _run(logger)
    finally:
        _flush(logger)


if __name__ == "__main__":
    sys.exit(main())