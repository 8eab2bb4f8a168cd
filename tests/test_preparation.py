import logging
import uuid

import pytest

from chatmigrator.preparation import (
    DatabaseInfo,
    collect_database_info,
    prepare_db_for_migration,
)
from chatmigrator.reader import DbMigration

LOGGER = logging.getLogger("test_preparation")


class FakeCollection:
    def __init__(self, database, name):
        self.database = database
        self.name = name

    def find_one(self):
        docs = self.database.collections.get(self.name, [])
        return dict(docs[0]) if docs else None

    def insert_one(self, document):
        self.database.collections.setdefault(self.name, []).append(dict(document))

    def drop(self):
        self.database.collections.pop(self.name, None)


class FakeDatabase:
    def __init__(self, name):
        self.name = name
        self.collections = {}

    def list_collection_names(self):
        return list(self.collections)

    def __getitem__(self, name):
        return FakeCollection(self, name)


class FakeClient:
    def __init__(self):
        self.databases = {}

    def list_database_names(self):
        return [name for name, db in self.databases.items() if db.collections]

    def __getitem__(self, name):
        return self.databases.setdefault(name, FakeDatabase(name))

    def add(self, name, collections):
        db = self[name]
        db.collections = {key: [dict(doc) for doc in docs] for key, docs in collections.items()}
        return db


def migration(start="a", end="c"):
    return DbMigration(
        id=uuid.uuid4(), status="waiting", start=start, end=end, url="mongodb://dest.example.com"
    )


ALICE_META = {"_id": 1, "owner": "alice"}
BOB_META = {"_id": 2, "owner": "bob"}


def make_origin():
    origin = FakeClient()
    origin.add("alice", {"chat_0": [ALICE_META], "chat_1": [{"m": 1}], "chat_4": [{"m": 2}]})
    origin.add("bob", {"chat_0": [BOB_META]})
    origin.add("zed", {"chat_0": [{"_id": 3}]})
    origin.add("admin", {"system": [{"x": 1}]})
    return origin


def test_collect_only_databases_in_range():
    infos = collect_database_info(make_origin(), migration(), LOGGER)
    assert [info.name for info in infos] == ["alice", "bob"]


def test_collect_next_collection_number_and_metadata():
    infos = collect_database_info(make_origin(), migration(), LOGGER)
    assert infos[0] == DatabaseInfo(name="alice", highest_collection=5, metadata=ALICE_META)
    assert infos[1] == DatabaseInfo(name="bob", highest_collection=1, metadata=BOB_META)


def test_collect_missing_metadata_raises():
    origin = FakeClient()
    origin.add("alice", {"chat_1": [{"m": 1}]})
    with pytest.raises(LookupError):
        collect_database_info(origin, migration(), LOGGER)


def test_collect_foreign_collection_raises():
    origin = FakeClient()
    origin.add("alice", {"chat_0": [ALICE_META], "users": [{"u": 1}]})
    with pytest.raises(ValueError):
        collect_database_info(origin, migration(), LOGGER)


def test_prepare_writes_metadata_and_starting_collection():
    goal = FakeClient()
    prepare_db_for_migration(make_origin(), goal, migration(), LOGGER, failure_mode=False)
    assert sorted(goal.list_database_names()) == ["alice", "bob"]
    assert goal.databases["alice"].collections["chat_0"] == [ALICE_META]
    assert goal.databases["alice"].collections["chat_5"] == [{"dont_delete_me": True}]
    assert goal.databases["bob"].collections["chat_1"] == [{"dont_delete_me": True}]


def test_prepare_leaves_origin_untouched():
    origin = make_origin()
    prepare_db_for_migration(origin, FakeClient(), migration(), LOGGER, failure_mode=False)
    assert origin.databases["alice"].collections["chat_0"] == [ALICE_META]
    assert sorted(origin.databases["alice"].collections) == ["chat_0", "chat_1", "chat_4"]


def test_prepare_keeps_existing_starting_collection():
    goal = FakeClient()
    goal.add("bob", {"chat_1": [{"m": "already moved"}]})
    prepare_db_for_migration(make_origin(), goal, migration(), LOGGER, failure_mode=False)
    assert goal.databases["bob"].collections["chat_1"] == [{"m": "already moved"}]


def test_prepare_failure_mode_replaces_metadata():
    goal = FakeClient()
    goal.add("alice", {"chat_0": [{"_id": 1, "owner": "stale"}]})
    prepare_db_for_migration(make_origin(), goal, migration(), LOGGER, failure_mode=True)
    assert goal.databases["alice"].collections["chat_0"] == [ALICE_META]


def test_prepare_without_failure_mode_appends_metadata():
    goal = FakeClient()
    stale = {"_id": 9, "owner": "stale"}
    goal.add("alice", {"chat_0": [stale]})
    prepare_db_for_migration(make_origin(), goal, migration(), LOGGER, failure_mode=False)
    assert goal.databases["alice"].collections["chat_0"] == [stale, ALICE_META]


def test_prepare_empty_range_writes_nothing():
    goal = FakeClient()
    prepare_db_for_migration(make_origin(), goal, migration("n", "o"), LOGGER, failure_mode=False)
    assert goal.list_database_names() == []