import io
import os
import pytest
from unittest.mock import MagicMock
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ["AI_MODE"] = "mock"

from recipebox.main import app
from recipebox.db import Base, get_db, get_session_factory
from recipebox.routers import imports as imports_router
from recipebox.storage.s3_compat import get_store

# --- Test Database Setup ---

SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool  # One shared connection so request and background sessions see the same data
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

USER_ID = "11111111-1111-4111-8111-111111111111"
OTHER_USER_ID = "22222222-2222-4222-8222-222222222222"


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


def override_get_session_factory():
    return TestingSessionLocal


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test, drop after."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def disable_rate_limits():
    imports_router.limiter.enabled = False
    yield
    imports_router.limiter.enabled = True


@pytest.fixture
def mock_store():
    store = MagicMock()
    store.signed_url.side_effect = lambda key, expires_in=None: f"https://signed.example/{key}?sig=test"
    store.healthcheck.return_value = True
    return store


@pytest.fixture
def client(mock_store):
    """Test client with DB, session factory and object store overrides."""
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = override_get_session_factory
    app.dependency_overrides[get_store] = lambda: mock_store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def db_session():
    """Direct database session for setup and assertions."""
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def user_headers():
    return {"X-User-Id": USER_ID}


@pytest.fixture
def other_user_headers():
    return {"X-User-Id": OTHER_USER_ID}


def make_image_bytes(fmt: str = "PNG", size=(8, 6)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color=(200, 120, 40)).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def png_bytes():
    return make_image_bytes("PNG")


@pytest.fixture
def jpeg_bytes():
    return make_image_bytes("JPEG", size=(10, 4))


@pytest.fixture
def corrupt_png_bytes():
    """A PNG whose IDAT chunk fails its CRC check."""
    data = bytearray(make_image_bytes("PNG"))
    idx = data.index(b"IDAT")
    length = int.from_bytes(data[idx - 4:idx], "big")
    data[idx + 4 + length] ^= 0xFF
    return bytes(data)


import fakeredis
import fakeredis.aioredis
from recipebox.infra import redis_client


@pytest.fixture(autouse=True)
def mock_redis():
    server = fakeredis.FakeServer()
    async_redis = fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)

    # Force the client into the infra module
    redis_client._redis_async = async_redis

    yield async_redis

    redis_client._redis_async = None
