"""The migration worker: moves chat databases from one MongoDB instance to another."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable

from pymongo.errors import PyMongoError

from .collections_info import (
    COLLECTION_PREFIX,
    create_collection_structs,
    get_max_coll_for_db,
    get_origin_url,
)
from .dbutils import setup_mongo_conn
from .envutils import parse_env_duration
from .preparation import prepare_db_for_migration
from .reader import DbMigration

DEFAULT_HEARTBEAT_INTERVAL = timedelta(seconds=3)
SYSTEM_DATABASES = frozenset({"admin", "config", "local"})


def _in_range(name: str, job: DbMigration) -> bool:
    return job.start <= name < job.end


@dataclass
class MigrationWorker:
    """One worker instance, identified by ``uuid``, that runs a single migration job.

    ``retrying_reader`` and ``retrying_writer`` reach the control tables;
    ``connect`` opens a MongoDB client for a uri. ``stop_event`` ends the
    background loops when set.
    """

    uuid: str
    logger: logging.Logger
    reader: Any
    writer: Any
    retrying_reader: Any
    retrying_writer: Any
    failure_mode: bool = False
    heartbeat_interval: timedelta | None = None
    connect: Callable[[logging.Logger, str], Any] = setup_mongo_conn
    stop_event: threading.Event = field(default_factory=threading.Event)

    def heartbeat_forever(self) -> None:
        """Send heartbeats until stopped.

        When a heartbeat fails the worker removes itself from the workers
        table and raises SystemExit(0); if that fails too, SystemExit(1).
        """
        interval = self.heartbeat_interval
        if interval is None:
            interval = parse_env_duration(
                "HEARTBEAT_BACKOFF", DEFAULT_HEARTBEAT_INTERVAL, self.logger
            )

        while not self.stop_event.is_set():
            started = time.monotonic()
            try:
                self.retrying_writer.heartbeat(self.uuid, interval)
            except Exception as exc:
                self.logger.error("could not heartbeat, trying to remove self from table: %s", exc)
                try:
                    self.retrying_writer.remove_self(self.uuid)
                except Exception as remove_exc:
                    self.logger.critical(
                        "could not remove self from table, exiting with status code 1: %s",
                        remove_exc,
                    )
                    raise SystemExit(1) from remove_exc
                raise SystemExit(0) from exc

            self.logger.debug("successfully heartbeat")
            elapsed = time.monotonic() - started
            self.stop_event.wait(max(interval.total_seconds() - elapsed, 0.0))

    def prepare_migration(self, job: DbMigration) -> tuple[Any, Any]:
        """Connect to origin and destination and copy the metadata over.

        Returns the origin and destination clients.
        """
        mappings = self.retrying_reader.get_all_mappings()
        origin_url = get_origin_url(mappings, job, self.logger)
        if not origin_url:
            raise LookupError(
                "there was no mapping with a matching range to be chosen as an origin "
                "for the migration"
            )

        origin_client = self.connect(self.logger, origin_url)
        dest_client = self.connect(self.logger, job.url)

        try:
            prepare_db_for_migration(
                origin_client, dest_client, job, self.logger, self.failure_mode
            )
        except Exception as exc:
            raise RuntimeError(
                f"error occurred preparing the metadata for the new database: {exc}"
            ) from exc
        return origin_client, dest_client

    def migrate(self, origin_client: Any, dest_client: Any, job: DbMigration) -> None:
        """Move every database in the job's range, collection by collection.

        A database whose transfer hits a MongoDB error is logged and left
        behind; the remaining databases are still moved.
        """
        for name in sorted(origin_client.list_database_names()):
            if not _in_range(name, job) or name in SYSTEM_DATABASES:
                continue
            try:
                self._migrate_database(origin_client, dest_client, name)
            except PyMongoError as exc:
                self.logger.error("migrating database %s stopped: %s", name, exc)
            self.logger.debug("database %s is done, continuing", name)

    def _migrate_database(self, origin_client: Any, dest_client: Any, name: str) -> None:
        origin_db = origin_client[name]
        dest_db = dest_client[name]

        collections = list(reversed(create_collection_structs(origin_db, self.logger)))

        try:
            maximum = get_max_coll_for_db(dest_db)
        except ValueError as exc:
            self.logger.error("could not find highest collection in destination %s: %s", name, exc)
            return

        for info in collections:
            self.logger.debug("moving collection %s for database %s", info.name, name)
            documents = origin_db[info.name].find({})

            existing = dest_db.list_collection_names()
            if self.failure_mode and info.name in existing:
                dest_db[info.name].drop()

            if info.number > maximum:
                target = dest_db[f"{COLLECTION_PREFIX}{maximum}"]
            else:
                target = dest_db[info.name]

            moved = 0
            for document in documents:
                target.insert_one(dict(document))
                moved += 1
            self.logger.debug("inserted %d documents for collection %s", moved, info.name)

            origin_db[info.name].drop()

        self.logger.debug("done migrating the database %s", name)
        origin_client.drop_database(name)
        self.logger.debug("successfully dropped database %s", name)

    def cleanup_migration(self, origin_client: Any, job: DbMigration) -> None:
        """Drop every database in the job's range from the origin instance."""
        self.logger.debug("starting cleanup of migration %s", job.id)
        for name in sorted(origin_client.list_database_names()):
            if not _in_range(name, job) or name in SYSTEM_DATABASES:
                continue
            try:
                origin_client.drop_database(name)
            except Exception as exc:
                raise RuntimeError(f"could not drop database {name}: {exc}") from exc
            self.logger.debug("successfully dropped database %s", name)

    def calculate_new_mappings(self, job: DbMigration) -> None:
        """Point the job's range at the destination and its end back at the origin."""
        mappings = self.retrying_reader.get_all_mappings()
        self.retrying_writer.add_db_mapping(job.start, job.url)
        origin_url = get_origin_url(mappings, job, self.logger)
        self.retrying_writer.add_db_mapping(job.end, origin_url)