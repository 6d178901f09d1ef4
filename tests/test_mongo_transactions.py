import pytest
from pymongo.errors import PyMongoError

from transcription_service.db.mongo import MongoDBManager


class FakeSession:
    """Stands in for a motor session; retries like `with_transaction` does."""

    def __init__(self, max_attempts=3):
        self.max_attempts = max_attempts
        self.attempts = 0
        self.ended = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.ended = True

    async def with_transaction(self, callback):
        while True:
            self.attempts += 1
            try:
                return await callback(self)
            except PyMongoError as exc:
                if exc.has_error_label("TransientTransactionError") and self.attempts < self.max_attempts:
                    continue
                raise


class FakeClient:
    def __init__(self):
        self.sessions = []

    async def start_session(self):
        session = FakeSession()
        self.sessions.append(session)
        return session


class FakeDatabase:
    def __init__(self):
        self.client = FakeClient()

    def with_options(self, **options):
        return self


def _write_conflict():
    return PyMongoError("WriteConflict", error_labels=["TransientTransactionError"])


@pytest.mark.asyncio
async def test_work_is_retried_after_a_write_conflict():
    database = FakeDatabase()
    manager = MongoDBManager(database, use_transactions=True)
    seen = []

    async def work():
        seen.append(MongoDBManager._session())
        if len(seen) == 1:
            raise _write_conflict()
        return "settled"

    assert await manager.run_in_transaction(work) == "settled"

    [session] = database.client.sessions
    assert session.attempts == 2
    assert seen == [session, session]
    assert session.ended
    assert MongoDBManager._session() is None


@pytest.mark.asyncio
async def test_non_transient_errors_are_not_retried():
    database = FakeDatabase()
    manager = MongoDBManager(database, use_transactions=True)

    async def work():
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await manager.run_in_transaction(work)
    assert database.client.sessions[0].attempts == 1
    assert MongoDBManager._session() is None


@pytest.mark.asyncio
async def test_nested_units_join_the_open_session():
    database = FakeDatabase()
    manager = MongoDBManager(database, use_transactions=True)

    async def inner():
        return MongoDBManager._session()

    async def outer():
        return MongoDBManager._session(), await manager.run_in_transaction(inner)

    outer_session, inner_session = await manager.run_in_transaction(outer)

    assert outer_session is inner_session
    assert len(database.client.sessions) == 1


@pytest.mark.asyncio
async def test_without_transactions_work_runs_directly():
    database = FakeDatabase()
    manager = MongoDBManager(database, use_transactions=False)

    async def work():
        return MongoDBManager._session()

    assert await manager.run_in_transaction(work) is None
    assert database.client.sessions == []
