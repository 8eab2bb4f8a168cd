"""Copying metadata and starting collections to the destination instance."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from .collections_info import COLLECTION_PREFIX, _collection_number, sort_collections_by_name
from .reader import DbMigration

METADATA_COLLECTION = "chat_0"
PLACEHOLDER_DOCUMENT = {"dont_delete_me": True}

_SKIPPED_DATABASES = frozenset({"admin", "config", "date"})


@dataclass(frozen=True)
class DatabaseInfo:
    """What the destination needs to know about one origin database."""

    name: str
    highest_collection: int
    metadata: Mapping[str, Any]


def collect_database_info(
    origin_client: Any, migration: DbMigration, logger: logging.Logger
) -> list[DatabaseInfo]:
    """Read the metadata and next collection number of every database in range.

    Raises LookupError when a database has no metadata document and ValueError
    when its collections do not follow the ``chat_<n>`` naming.
    """
    names = origin_client.list_database_names()
    logger.debug("got all databases, count=%d", len(names))

    infos = []
    for name in names:
        if name >= migration.end or name < migration.start:
            logger.debug(
                "database %s does not belong to range [%s, %s)",
                name,
                migration.start,
                migration.end,
            )
            continue
        if name in _SKIPPED_DATABASES:
            continue

        database = origin_client[name]
        metadata = database[METADATA_COLLECTION].find_one()
        if metadata is None:
            raise LookupError(
                f"could not find metadata document with name '{METADATA_COLLECTION}' for db {name}"
            )

        ordered = sort_collections_by_name(database.list_collection_names())
        if not ordered:
            raise ValueError(
                f"there are no collections with the right schema in this database: {name} "
                f"-> (specifically {METADATA_COLLECTION} is missing)"
            )
        highest = _collection_number(ordered[-1]) + 1

        infos.append(DatabaseInfo(name=name, highest_collection=highest, metadata=dict(metadata)))
        logger.debug("collected info for %s, next collection %d", name, highest)
    return infos


def prepare_db_for_migration(
    origin_client: Any,
    goal_client: Any,
    migration: DbMigration,
    logger: logging.Logger,
    failure_mode: bool,
) -> None:
    """Write each in-range database's metadata and an empty next collection to the goal.

    In failure mode a metadata collection left behind by an earlier attempt
    is dropped first, since it is unknown whether that attempt completed.
    """
    infos = collect_database_info(origin_client, migration, logger)
    logger.info("successfully read all metadata from origin, writing to destination now")

    goal_names = goal_client.list_database_names()
    for info in infos:
        database = goal_client[info.name]

        if failure_mode and info.name in goal_names:
            logger.warning("in failure mode and database %s was already transferred", info.name)
            database[METADATA_COLLECTION].drop()

        database[METADATA_COLLECTION].insert_one(dict(info.metadata))
        logger.debug("inserted metadata document into %s", info.name)

        highest_name = f"{COLLECTION_PREFIX}{info.highest_collection}"
        if highest_name not in database.list_collection_names():
            database[highest_name].insert_one(dict(PLACEHOLDER_DOCUMENT))
            logger.debug("inserted starting collection %s into %s", highest_name, info.name)