"""Job states and connection helpers for the control and chat databases."""

from __future__ import annotations

import enum
import logging

import pymongo
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from .envutils import parse_env_string_required
from .errors import DbError


class JobStatus(str, enum.Enum):
    """States a migration job can be in."""

    RUNNING = "running"
    WAITING = "wating"
    FAILED = "failed"
    DONE = "done"

    def is_valid(self) -> bool:
        """Return whether this status is one of the known states."""
        return self in type(self)


def _sqlalchemy_url(conn_string: str) -> str:
    if conn_string.startswith("postgres://"):
        return "postgresql://" + conn_string[len("postgres://"):]
    return conn_string


def setup_pg_conn(logger: logging.Logger) -> Engine:
    """Connect to the database named by ``PG_CONN`` and check that it answers."""
    conn_string = parse_env_string_required("PG_CONN", logger)
    logger.debug("Connecting to database")
    try:
        engine = create_engine(_sqlalchemy_url(conn_string), pool_pre_ping=True)
    except Exception as exc:
        logger.error("Unable to connect to database: %s", exc)
        raise
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Unable to ping database: %s", exc)
        engine.dispose()
        raise
    logger.info("Connected to PG database")
    return engine


def setup_mongo_conn(logger: logging.Logger, uri: str) -> pymongo.MongoClient:
    """Create a client for the MongoDB instance at ``uri``."""
    try:
        return pymongo.MongoClient(uri)
    except Exception:
        logger.error("could not connect to database, mongoUri=%s", uri)
        raise


def must(rows_affected: int, description: str) -> None:
    """Raise an unreconcilable DbError when a statement touched no rows."""
    if rows_affected == 0:
        raise DbError(
            f"no execution error but no rows affected: {description}",
            reconcilable=False,
        )