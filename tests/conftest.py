import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("WEBHOOK_VERIFY_TOKEN", "verify-me")

from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from social_inbox import models  # noqa: F401
from social_inbox.config import Settings, settings
from social_inbox.database import Base, build_engine, get_db
from social_inbox.main import app
from social_inbox.services.dedup_cache import DedupCache
from social_inbox.services.graph_client import MetaGraphClient
from social_inbox.services.page_token_cache import PageTokenCache
from social_inbox.services.realtime import Broadcaster
from social_inbox.services.receipt_service import ReceiptTracker

ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}
FB_PAGE = "100"
IG_PAGE = "200"


def seller_headers(seller_id: str) -> dict:
    return {"X-Seller-Id": seller_id}


class RecordingPublisher:
    """EventPublisher that remembers every (room, event, payload) it was handed."""

    def __init__(self):
        self.published = []

    async def publish(self, room, event, payload):
        self.published.append((room, event, payload))

    def rooms(self, event=None):
        return [room for room, ev, _ in self.published if event is None or ev == event]


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(engine):
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def token_cache():
    config = Settings(page_tokens='{"100": "fb-token"}', ig_business_id=IG_PAGE, ig_user_access_token="ig-token")
    return PageTokenCache(config=config)


@pytest.fixture
def graph():
    client = Mock(spec=MetaGraphClient)
    client.send_text = AsyncMock(return_value={"message_id": "m_1"})
    client.upload_attachment = AsyncMock(return_value="att-1")
    client.send_attachment_by_id = AsyncMock(return_value={})
    client.send_attachment_by_url = AsyncMock(return_value={})
    client.send_instagram_attachment = AsyncMock(return_value={})
    client.fetch_facebook_profile = AsyncMock(return_value=None)
    client.fetch_instagram_profile = AsyncMock(return_value=None)
    client.fetch_participant_name = AsyncMock(return_value=None)
    client.fetch_content_type = AsyncMock(return_value="")
    return client


@pytest.fixture
def receipts():
    return ReceiptTracker()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    path = tmp_path / "uploads"
    path.mkdir()
    monkeypatch.setattr(settings, "upload_dir", str(path))
    monkeypatch.setattr(settings, "public_base_url", "https://inbox.example.com")
    return path


@pytest.fixture
def client(db_session, token_cache, graph, publisher, receipts, upload_dir):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.state.dedup_cache = DedupCache()
    app.state.token_cache = token_cache
    app.state.graph_client = graph
    app.state.broadcaster = Broadcaster(publisher)
    app.state.receipt_tracker = receipts
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        for name in ("dedup_cache", "token_cache", "graph_client", "broadcaster", "receipt_tracker"):
            delattr(app.state, name)
