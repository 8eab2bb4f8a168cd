"""Naming rules for the numbered chat collections and range lookups."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from .reader import DbMapping, DbMigration

COLLECTION_PREFIX = "chat_"
IGNORED_COLLECTION = "delete_me"

_INTEGER = re.compile(r"[+-]?[0-9]+")


@dataclass(frozen=True)
class CollectionInfo:
    """A chat collection and the number in its name."""

    number: int
    name: str


def _collection_number(name: str) -> int:
    if not name.startswith(COLLECTION_PREFIX):
        raise ValueError(f"prefix '{COLLECTION_PREFIX}' not found in {name}")
    digits = name[len(COLLECTION_PREFIX):]
    if not _INTEGER.fullmatch(digits):
        raise ValueError(f"invalid collection number {digits!r} in {name}")
    return int(digits)


def sort_collections_by_name(names: Iterable[str]) -> list[str]:
    """Return the chat collection names ordered by their number.

    The ``delete_me`` collection is left out; any other name without the
    ``chat_`` prefix or with a non-numeric suffix raises ValueError.
    """
    numbers = sorted(
        _collection_number(name) for name in names if name != IGNORED_COLLECTION
    )
    return [f"{COLLECTION_PREFIX}{number}" for number in numbers]


def get_origin_url(
    mappings: Sequence[DbMapping], job: DbMigration, logger: logging.Logger
) -> str:
    """Return the url of the instance holding the start of the job's range.

    That is the url of the mapping just before the first one starting after
    the job. An empty string means no mapping starts after the job; a job
    starting before the first mapping raises ValueError.
    """
    previous: DbMapping | None = None
    for mapping in mappings:
        logger.debug("comparing mapping mpFrom=%s jobFrom=%s", mapping.start, job.start)
        if mapping.start > job.start:
            if previous is None:
                raise ValueError(
                    "the beginning of the range to migrate lies before the first mapping"
                )
            return previous.url
        previous = mapping
    return ""


def get_max_coll_for_db(database: Any) -> int:
    """Return the highest number among the database's chat collections, or 0."""
    numbers = (
        _collection_number(name)
        for name in database.list_collection_names()
        if name.startswith(COLLECTION_PREFIX)
    )
    return max(numbers, default=0)


def create_collection_structs(database: Any, logger: logging.Logger) -> list[CollectionInfo]:
    """List the database's chat collections in ascending order, without ``chat_0``.

    ``chat_0`` holds the metadata, which is moved separately.
    """
    ordered = sort_collections_by_name(database.list_collection_names())
    logger.debug("successfully sorted collections for db %s", database.name)
    infos = []
    for name in ordered:
        number = _collection_number(name)
        if number == 0:
            continue
        infos.append(CollectionInfo(number=number, name=name))
        logger.debug("appended collection %s with number %d", name, number)
    return infos