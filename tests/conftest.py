"""Shared test fixtures and configuration."""

import os
import tempfile
import uuid
from pathlib import Path

from cryptography.fernet import Fernet

# Settings are read at import time, so the environment goes first
_DB_DIR = tempfile.mkdtemp(prefix="firstuser-tests-")
os.environ["ENVIRONMENT"] = "testing"
os.environ["DB_URL"] = f"sqlite+aiosqlite:///{Path(_DB_DIR) / 'app.db'}"
os.environ["SECRET_KEY"] = "test-secret-key-for-widget-tokens-0123456789"
os.environ["INTEGRATION_ENCRYPTION_KEY"] = Fernet.generate_key().decode("utf-8")
os.environ["INTEGRATION_ADMIN_TOKEN"] = "test-admin-token"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["PUBLIC_BASE_URL"] = "https://firstuser.test"
os.environ["CORS_ENABLED"] = "false"

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.database import Base, get_db
from app.models import IntegrationApp, User, WaitlistMember
from app.schemas.integration import IntegrationAppCreateRequest
from app.services.access_code_service import access_code_service
from app.services.api_key_service import api_key_service
from app.services.integration_app_service import integration_app_service
from app.services.webhook_service import WebhookService
from main import app as fastapi_app


@pytest.fixture
async def engine(tmp_path):
    """Fresh SQLite database file per test."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def enqueued(monkeypatch):
    """Collect delivery ids instead of sending them to Celery."""
    delivery_ids = []

    def fake_enqueue(delivery_id):
        delivery_ids.append(delivery_id)
        return True

    monkeypatch.setattr(WebhookService, "enqueue_delivery", staticmethod(fake_enqueue))
    return delivery_ids


@pytest.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    fastapi_app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=fastapi_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def make_app(db):
    """Create an integration app; returns (app, webhook_secret)."""

    async def _make_app(**overrides):
        data = {
            "app_space_id": uuid.uuid4(),
            "public_app_id": f"app_{uuid.uuid4().hex[:10]}",
            "name": "Acme Notes",
            "redirect_enabled": True,
            "embedded_enabled": True,
            "web_redirect_url": "https://partner.example.com/firstuser/callback",
            "mobile_deep_link_url": "acmenotes://firstuser",
            "allowed_origins": ["https://app.partner.example.com"],
        }
        data.update(overrides)
        return await integration_app_service.create_app(data=IntegrationAppCreateRequest(**data), db=db)

    return _make_app


@pytest.fixture
def make_api_key(db):
    async def _make_api_key(app: IntegrationApp, name: str = "Test key") -> str:
        plain_key, _ = await api_key_service.create_key(
            integration_app_id=app.integration_app_id, name=name, db=db
        )
        return plain_key

    return _make_api_key


@pytest.fixture
def make_member(db):
    """Create a user on the app's waitlist; returns the user."""

    async def _make_member(app: IntegrationApp, email: str = None, status: str = "pending") -> User:
        user = User(
            email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
            display_name="Test User",
        )
        db.add(user)
        await db.flush()
        db.add(WaitlistMember(app_space_id=app.app_space_id, user_id=user.user_id, status=status))
        await db.commit()
        return user

    return _make_member


@pytest.fixture
def issue_code(db):
    async def _issue_code(app: IntegrationApp, user: User, now=None) -> str:
        raw_code, _ = await access_code_service.issue(
            integration_app_id=app.integration_app_id,
            user_id=user.user_id,
            app_space_id=app.app_space_id,
            db=db,
            now=now,
        )
        return raw_code

    return _issue_code


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": os.environ["INTEGRATION_ADMIN_TOKEN"]}
