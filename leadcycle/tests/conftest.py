from datetime import datetime

import pytest
import pytest_asyncio

from leadcycle import db

T0 = datetime(2026, 3, 2, 9, 0, 0)


@pytest_asyncio.fixture
async def database(monkeypatch, tmp_path):
    db_path = tmp_path / "leadcycle_test.db"

    monkeypatch.setenv("SENTRY_DSN", "")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    # Keep message analysis on the deterministic keyword path
    monkeypatch.setattr("leadcycle.agents.analysis._get_client", lambda: None)

    db.configure_engine(f"sqlite+aiosqlite:///{db_path}")
    await db.init_db()
    try:
        yield db
    finally:
        await db.engine.dispose()


@pytest.fixture
def now():
    return T0


@pytest.fixture
def make_lead(database):
    async def _make(session_id: str = "session-1", **values):
        values.setdefault("created_at", T0)
        values.setdefault("updated_at", T0)
        values.setdefault("last_interaction", T0)
        lead = db.Lead(session_id=session_id, **values)
        async with db.get_session() as session:
            session.add(lead)
            await session.commit()
            await session.refresh(lead)
        return lead

    return _make
