import pytest
import pytest_asyncio

from fitness_outbox.consumers.registry import HandlerRegistry
from fitness_outbox.core.config import OutboxProcessorSettings
from fitness_outbox.core.db import close_db, init_db
from fitness_outbox.events.outbox_writer import OutboxWriter
from fitness_outbox.testing.testing_mocks import FakeClock, SequenceCounter

TEST_DB_URL = "sqlite://:memory:"


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database per test."""
    await init_db(db_url=TEST_DB_URL, extra_modules=["fitness_outbox.testing.models"])
    yield
    await close_db()


@pytest.fixture
def counter():
    return SequenceCounter()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return HandlerRegistry()


@pytest.fixture
def settings():
    return OutboxProcessorSettings(interval_seconds=1, max_retry_attempts=3, batch_size=50)


@pytest.fixture
def append(db, counter):
    """Appends `n` messages of one event type outside any business transaction."""
    async def _append(event_type="workout.completed.v1", n=1, **kwargs):
        writer = OutboxWriter()
        return [
            await writer.append(event_type, {"seq": counter.next()}, **kwargs)
            for _ in range(n)
        ]
    return _append
