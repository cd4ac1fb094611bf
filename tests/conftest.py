import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from learnchat.config import Settings
from learnchat.database import create_all_tables, create_engine, create_sessionmaker
from learnchat.main import create_app
from learnchat.services.messaging import MessagingService

SECRET = "test-secret-key"


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite+aiosqlite://",
        database_create_tables=True,
        secret_key=SECRET,
        pubsub_backend="memory",
        rate_limit_backend="memory",
        redis_url="",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_token(user_id: UUID, secret: str = SECRET) -> str:
    return jwt.encode({"sub": str(user_id)}, secret, algorithm="HS256")


def auth(user_id: UUID) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


@pytest.fixture
async def engine():
    engine = create_engine("sqlite+aiosqlite://")
    await create_all_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return create_sessionmaker(engine)


@pytest.fixture
async def db(sessionmaker):
    async with sessionmaker() as session:
        yield session


@pytest.fixture
def service(db):
    return MessagingService(db)


@pytest.fixture
def alice():
    return uuid4()


@pytest.fixture
def bob():
    return uuid4()


@pytest.fixture
def carol():
    return uuid4()


@pytest.fixture
def client():
    app = create_app(make_settings())
    with TestClient(app) as test_client:
        yield test_client
