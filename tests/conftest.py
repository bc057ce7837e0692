import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import app.models  # noqa: F401
from app.core.config import settings
from app.core.security import create_access_token
from app.db.session import build_session_factory
from app.main import app
from app.models.user import User

_OVERRIDDEN_SETTINGS = (
    "secret_key",
    "db_create_all",
    "dispatch_batch_delay_seconds",
    "messaging_simulated_success_rate",
    "messaging_simulated_seed",
    "ai_provider",
    "empty_rule_group_matches",
)


@pytest.fixture()
def anyio_backend():
    return "asyncio"


@pytest.fixture()
def test_context(tmp_path):
    originals = {name: getattr(settings, name) for name in _OVERRIDDEN_SETTINGS}
    settings.secret_key = "test-secret-key"
    settings.db_create_all = True
    settings.dispatch_batch_delay_seconds = 0
    settings.messaging_simulated_success_rate = 1.0
    settings.messaging_simulated_seed = 7
    settings.ai_provider = "stub"

    # File-backed so background dispatch runs get their own connections.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'crm-test.db'}")
    session_local = build_session_factory(engine)
    app.state.session_factory = session_local

    with TestClient(app) as client:
        yield client, session_local
        client.portal.call(engine.dispose)

    del app.state.session_factory
    for name, value in originals.items():
        setattr(settings, name, value)


@pytest.fixture()
def make_user(test_context):
    client, session_local = test_context

    async def _insert(email: str, display_name: str) -> int:
        async with session_local() as db:
            user = User(email=email, display_name=display_name)
            db.add(user)
            await db.commit()
            return user.id

    def _make(email: str = "owner@example.com", display_name: str = "Owner") -> tuple[int, dict[str, str]]:
        user_id = client.portal.call(_insert, email, display_name)
        return user_id, {"Authorization": f"Bearer {create_access_token(user_id)}"}

    return _make


@pytest.fixture()
def wait_for_background(test_context):
    client, _ = test_context

    def _wait() -> None:
        client.portal.call(app.state.runtime.join)

    return _wait
