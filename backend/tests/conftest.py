"""Pytest fixtures: file-backed SQLite shared by sync and async sessions, fakes, app client."""
import os
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("CRON_SECRET", "cron-test-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from mailmirror.main import app
from mailmirror.database import get_db, get_sync_db
from mailmirror.models import Base
from mailmirror.repository import MailRepository
from mailmirror.routers.sync import get_blobs, get_client_factory

from fakes import FakeMailboxClient, InMemoryBlobStore


@pytest.fixture
def db_urls(tmp_path):
    """
    Use a file-based sqlite DB so sync setup code (tests) and async app sessions
    can see the same data.
    """
    db_path = tmp_path / "test.db"
    sync_url = f"sqlite:///{db_path}"
    async_url = f"sqlite+aiosqlite:///{db_path}"
    return sync_url, async_url


@pytest.fixture
def db_engine(db_urls):
    sync_url, _ = db_urls
    engine = create_engine(sync_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def db_session(db_engine):
    Session = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def repo(db_session):
    return MailRepository(db_session)


@pytest.fixture
def fake_client():
    return FakeMailboxClient()


@pytest.fixture
def blobs():
    return InMemoryBlobStore()


@pytest.fixture
def client_factory(fake_client):
    return lambda user: fake_client


@pytest.fixture
def client(db_urls, db_engine, blobs, fake_client):
    _, async_url = db_urls
    async_engine = create_async_engine(
        async_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False, autoflush=False)
    SyncSession = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)

    async def override_get_db():
        async with AsyncSessionLocal() as session:
            yield session

    def override_get_sync_db():
        db = SyncSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sync_db] = override_get_sync_db
    app.dependency_overrides[get_blobs] = lambda: blobs
    app.dependency_overrides[get_client_factory] = lambda: (lambda user: fake_client)
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
