import os
import tempfile

# main.py binds its services to DATABASE_URL at import time
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{tempfile.mkdtemp()}/api.db"
os.environ.pop("GEMINI_API_KEY", None)

import pytest

from billing import PlanLedger, QuotaGuard
from database import init_db, make_session_factory
from models import Interview
from vapi_session import SessionController


class FakeEntitlements:
    """Stands in for the identity provider's plan membership lookup."""

    def __init__(self, plans=None):
        self.plans = dict(plans or {})

    async def has_plan(self, user_id, plan):
        return self.plans.get(user_id) == plan


@pytest.fixture
async def session_factory(tmp_path):
    engine, factory = make_session_factory(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await init_db(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
def entitlements():
    return FakeEntitlements({"u_hustle": "hustle", "u_prepped": "prepped", "u_hired": "hired"})


@pytest.fixture
def ledger(session_factory, entitlements):
    return PlanLedger(session_factory, entitlements)


@pytest.fixture
def guard(ledger):
    return QuotaGuard(ledger)


@pytest.fixture
async def controller(session_factory, ledger, guard):
    c = SessionController(session_factory, ledger, guard, webhook_billing=True)
    yield c
    await c.shutdown()


@pytest.fixture
def add_interview(session_factory):
    async def _add(interview_id="iv1", user_id="u_hustle", questions=None, level="mid"):
        async with session_factory() as db:
            db.add(Interview(
                id=interview_id,
                user_id=user_id,
                questions=questions or ["Tell me about yourself", "Describe a hard bug you fixed"],
                role="Backend Engineer",
                level=level,
            ))
            await db.commit()
        return interview_id
    return _add
