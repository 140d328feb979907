"""
Shared fixtures: throwaway SQLite databases, an in-memory abuse guard,
fake WebSockets and a fake SMTP sender.
"""

from __future__ import annotations

import os
from pathlib import Path

# Settings are read at import time; configure before importing the app.
os.environ["ENVIRONMENT"] = "testing"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_campus_safety.db"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-key-for-testing"
os.environ["CAMPUS_TOKEN_SECRET"] = "test-campus-token-secret"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["SMTP_HOST"] = ""
os.environ["ADMIN_EMAILS"] = ""

import pytest
from httpx import ASGITransport, AsyncClient

from limits.aio.storage import MemoryStorage

from backend.app.alerts.abuse_guard import AbuseGuard
from backend.app.alerts.channels.email_alert import EmailEscalation
from backend.app.alerts.fanout import NotificationFanout
from backend.app.alerts.lifecycle import AlertLifecycleController
from backend.app.alerts.store import AlertStore
from backend.app.core.database import build_engine, build_session_factory, close_db, init_db

from tests.factories import FakeSender, email_settings


@pytest.fixture(scope="session", autouse=True)
def _app_database_file():
    """The app lifespan creates its own SQLite file; start and finish clean."""
    path = Path("test_campus_safety.db")
    path.unlink(missing_ok=True)
    yield
    path.unlink(missing_ok=True)


@pytest.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'alerts.db'}", echo=False)
    await init_db(eng)
    yield eng
    await close_db(eng)


@pytest.fixture
def store(engine) -> AlertStore:
    return AlertStore(build_session_factory(engine))


@pytest.fixture
def guard() -> AbuseGuard:
    return AbuseGuard(MemoryStorage())


@pytest.fixture
async def fanout():
    fo = NotificationFanout(queue_size=100, send_timeout=1.0)
    await fo.start()
    yield fo
    await fo.stop()


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def email(sender) -> EmailEscalation:
    return EmailEscalation(config=email_settings(), sender=sender)


@pytest.fixture
def controller(store, guard, fanout, email) -> AlertLifecycleController:
    return AlertLifecycleController(store=store, guard=guard, fanout=fanout, email=email)


@pytest.fixture
async def client(controller):
    """HTTP client over ASGI, wired to the per-test controller."""
    from backend.app.main import app

    app.state.controller = controller
    app.state.fanout = controller.fanout
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await controller.drain()
