"""
Shared fixtures: a fresh SQLite database per test, a hand-driven clock and an
in-process backend wired to the same change feed.
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from ephemera.api.deps import get_clock, get_feed, get_object_store
from ephemera.client.backend import LocalBackend
from ephemera.core import procedures
from ephemera.core.clock import ManualClock
from ephemera.core.config import Settings, get_settings
from ephemera.core.database import Base, create_db_engine, get_db, init_db
from ephemera.core.feed import ChangeFeed
from ephemera.core.object_store import LocalObjectStore
from ephemera.main import app
from ephemera.schemas.message import parse_message


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Override settings for testing."""
    return Settings(
        database_url=f"sqlite:///{tmp_path}/test_ephemera.db",
        media_dir=str(tmp_path / "media"),
        public_base_url="http://testserver",
        log_level="DEBUG",
        log_format="text",
        # Tests drive the countdown by calling tick() themselves
        countdown_interval_seconds=3600,
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def object_store(settings) -> LocalObjectStore:
    return LocalObjectStore(settings.media_dir, settings.public_base_url)


@pytest.fixture
def engine(settings):
    """Create a fresh test database for each test."""
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def backend(session_factory, feed, clock, object_store, settings) -> LocalBackend:
    return LocalBackend(session_factory, feed, clock, object_store=object_store, settings=settings)


@pytest.fixture
def direct_conversation(db, clock) -> str:
    """Id of a direct conversation between alice and bob."""
    return procedures.create_conversation(db, ["alice", "bob"], clock.now()).id


@pytest.fixture
def group_conversation(db, clock) -> str:
    """Id of a group conversation between alice, bob and carol."""
    return procedures.create_conversation(
        db, ["alice", "bob", "carol"], clock.now(), is_group=True, name="study group"
    ).id


@pytest.fixture
def client(session_factory, settings, feed, clock, object_store):
    """Create a test client with every collaborator overridden."""

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_feed] = lambda: feed
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_object_store] = lambda: object_store

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def make_message(clock):
    """Factory for message variants as the client sees them."""
    counter = iter(range(1, 10_000))

    def factory(**overrides):
        data = {
            "id": f"{next(counter):032x}",
            "conversation_id": "c1",
            "sender_id": "alice",
            "receiver_id": "bob",
            "message_type": "text",
            "content": "hello",
            "is_ephemeral": False,
            "created_at": clock.now(),
        }
        data.update(overrides)
        return parse_message(data)

    return factory
