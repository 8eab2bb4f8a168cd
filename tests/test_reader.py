import logging
import uuid
from contextlib import contextmanager

import pytest

from chatmigrator.reader import DbMapping, DbMigration, NoRowsError, Reader


class FakePool:
    def __init__(self):
        self.events = []
        self.connection = object()

    @contextmanager
    def begin(self):
        self.events.append("begin")
        try:
            yield self.connection
        except BaseException:
            self.events.append("rollback")
            raise
        self.events.append("commit")


class FakeQueries:
    def __init__(self, job=None, mappings=(), error=None):
        self.job = job
        self.mappings = list(mappings)
        self.error = error
        self.calls = []

    def _maybe_fail(self):
        if self.error is not None:
            raise self.error

    def get_migration_job(self, conn, worker_id):
        self.calls.append(("get_migration_job", conn, worker_id))
        self._maybe_fail()
        return self.job

    def get_db_mappings(self, conn):
        self.calls.append(("get_db_mappings", conn))
        self._maybe_fail()
        return iter(self.mappings)

    def check_in_table(self, conn, worker_id):
        self.calls.append(("check_in_table", conn, worker_id))
        self._maybe_fail()
        return worker_id


def make_reader(queries):
    pool = FakePool()
    return pool, Reader(pool, queries, logging.getLogger("test-reader"))


def test_get_migration_job_returns_job():
    worker_id = uuid.uuid4()
    job = DbMigration(uuid.uuid4(), "waiting", "a", "m", "mongodb://localhost:27017")
    queries = FakeQueries(job=job)
    pool, reader = make_reader(queries)
    assert reader.get_migration_job(str(worker_id)) == job
    assert queries.calls == [("get_migration_job", pool.connection, worker_id)]
    assert pool.events == ["begin", "commit"]


def test_get_migration_job_no_rows():
    queries = FakeQueries(error=NoRowsError())
    pool, reader = make_reader(queries)
    with pytest.raises(NoRowsError):
        reader.get_migration_job(str(uuid.uuid4()))
    assert pool.events == ["begin", "rollback"]


def test_get_migration_job_bad_uuid():
    queries = FakeQueries()
    pool, reader = make_reader(queries)
    with pytest.raises(ValueError, match="could not parse uuid"):
        reader.get_migration_job("not-a-uuid")
    assert queries.calls == []
    assert pool.events == []


def test_get_all_mappings_returns_list():
    mappings = [
        DbMapping(uuid.uuid4(), "a", "mongodb://localhost:27017"),
        DbMapping(uuid.uuid4(), "n", "mongodb://localhost:27018"),
    ]
    pool, reader = make_reader(FakeQueries(mappings=mappings))
    assert reader.get_all_mappings() == mappings
    assert pool.events == ["begin", "commit"]


def test_get_all_mappings_propagates_error():
    pool, reader = make_reader(FakeQueries(error=ConnectionError("gone")))
    with pytest.raises(ConnectionError, match="gone"):
        reader.get_all_mappings()
    assert pool.events == ["begin", "rollback"]


def test_do_i_exist_true():
    worker_id = uuid.uuid4()
    queries = FakeQueries()
    pool, reader = make_reader(queries)
    assert reader.do_i_exist(str(worker_id)) is True
    assert queries.calls[0][2] == worker_id


def test_do_i_exist_false_when_missing():
    _, reader = make_reader(FakeQueries(error=NoRowsError()))
    assert reader.do_i_exist(str(uuid.uuid4())) is False


def test_do_i_exist_other_error_raised():
    _, reader = make_reader(FakeQueries(error=ConnectionError("down")))
    with pytest.raises(ConnectionError):
        reader.do_i_exist(str(uuid.uuid4()))


def test_no_rows_default_message():
    assert str(NoRowsError()) == "no rows in result set"