import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from media_request_service.app.db import Base
from media_request_service.app.main import create_app, get_session
from media_request_service.app.models import User
from media_request_service.app.settings import Settings

ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}


def user_headers(user_id: str) -> dict:
    return {"X-User-Id": user_id, "X-User-Role": "user"}


class RecordingNotifier:
    """Notifier double: records sends, optionally fails for given addresses."""

    def __init__(self, fail_for=(), reject_for=()):
        self.sent = []
        self.fail_for = set(fail_for)
        self.reject_for = set(reject_for)

    async def send(self, address: str, message: str) -> bool:
        if address in self.fail_for:
            raise RuntimeError("gateway down")
        if address in self.reject_for:
            return False
        self.sent.append((address, message))
        return True


@pytest.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(bind=engine, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest.fixture
async def users(session_factory):
    async with session_factory() as s:
        s.add_all(
            [
                User(id="u1", name="Ana", email="ana@gmail.com", whatsapp="+5511900000001"),
                User(id="u2", name="Bruno", email="bruno@gmail.com", whatsapp="+5511900000002"),
                User(id="u3", name="Carla", email="carla@gmail.com", whatsapp=None),
                User(id="admin-1", name="Admin", email="admin@gmail.com", role="admin"),
            ]
        )
        await s.commit()


@pytest.fixture
def test_settings():
    return Settings(
        environment="test",
        low_demand_sweep_enabled=False,
        low_demand_rejection_hours=24,
        high_demand_threshold=4,
        low_demand_rejection_message="Baixa demanda",
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def app(session_factory, notifier, test_settings):
    app = create_app(test_settings, session_factory=session_factory, notifier=notifier)

    async def _get_session():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = _get_session
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
