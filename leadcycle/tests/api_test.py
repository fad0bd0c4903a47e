import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

pytestmark = pytest.mark.asyncio

BUYING_MESSAGE = (
    "I want to join and signup, then register for membership. What's the price and cost? "
    "I'm interested to buy or purchase, please contact me with a quote and a demo."
)


class DummyScheduler:
    def __init__(self):
        self.running = False
        self.jobs = {}

    def start(self):
        self.running = True

    def add_job(self, func, trigger, id=None, **kwargs):
        self.jobs[id] = {"trigger": trigger, **kwargs}

    def get_job(self, job_id):
        return self.jobs.get(job_id)

    def shutdown(self, wait=False):
        self.running = False


@pytest_asyncio.fixture
async def app_context(database, monkeypatch):
    import leadcycle.main as main

    scheduler = DummyScheduler()
    monkeypatch.setattr(main, "scheduler", scheduler)

    transport = ASGITransport(app=main.app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield {"client": client, "main": main, "scheduler": scheduler}


async def test_startup_registers_cron_jobs(app_context):
    main = app_context["main"]
    scheduler = app_context["scheduler"]

    await main.on_startup()
    await main.on_startup()

    assert scheduler.running is True
    assert scheduler.jobs["followup-dispatch"] == {"trigger": "cron", "minute": 0}
    assert scheduler.jobs["followup-purge"] == {"trigger": "cron", "hour": 0, "minute": 0}

    await main.on_shutdown()
    assert scheduler.running is False


async def test_lead_lifecycle(app_context):
    client = app_context["client"]

    health = await client.get("/healthz")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert set(health.json()["integrations"]) == {"mailgun", "openai"}

    browsing = await client.post("/api/chat", json={"session_id": "visitor-1", "message": "Just browsing, thanks"})
    assert browsing.status_code == 200
    body = browsing.json()
    assert body["score_delta"] == 0
    assert body["status"] == "info_only"
    assert body["membership_prompt"] is None

    buying = await client.post("/api/chat", json={"session_id": "visitor-1", "message": BUYING_MESSAGE})
    assert buying.status_code == 200
    body = buying.json()
    assert body["score_delta"] == 36
    assert body["intent_score"] == 36
    assert body["status"] == "high_intent"
    assert body["membership_prompt"]["cta"] == {"text": "Join Free", "url": "/signup"}

    again = await client.post("/api/chat", json={"session_id": "visitor-1", "message": "What is the price?"})
    assert again.json()["membership_prompt"] is None

    reply = await client.post(
        "/api/chat",
        json={"session_id": "visitor-1", "message": "Our membership starts at $20", "sender": "assistant"},
    )
    assert reply.status_code == 200
    assert reply.json()["score_delta"] == 0

    lead = (await client.get("/api/leads/visitor-1")).json()
    assert lead["total_interactions"] == 3
    assert lead["intent_score"] == 41
    assert lead["membership_prompted"] is True

    signup = await client.post("/api/email-signup", json={"session_id": "visitor-1", "email": "visitor@example.com"})
    assert signup.status_code == 200
    assert signup.json() == {
        "lead_status": "high_intent",
        "intent_score": 41,
        "email_scheduled": True,
        "reason": None,
    }

    repeat = await client.post("/api/email-signup", json={"session_id": "visitor-1", "email": "visitor@example.com"})
    assert repeat.json()["email_scheduled"] is False
    assert repeat.json()["reason"] == "already_scheduled"

    schedule = (await client.get("/api/email-schedule/visitor-1")).json()
    assert schedule["has_email"] is True
    assert schedule["followup_scheduled"] is True
    assert [entry["type"] for entry in schedule["schedules"]] == ["day3", "day7", "day14"]
    assert {entry["state"] for entry in schedule["schedules"]} == {"pending"}

    personalization = await client.get("/api/memory/visitor-1/personalization")
    assert personalization.status_code == 200
    assert personalization.json()["greeting"] == "Hello"
    assert "cost" in personalization.json()["pain_points"]

    cancel = await client.post("/api/cancel-emails/visitor-1")
    assert cancel.json() == {"cancelled_count": 3}
    schedule = (await client.get("/api/email-schedule/visitor-1")).json()
    assert {entry["state"] for entry in schedule["schedules"]} == {"sent"}

    converted = await client.post("/api/leads/visitor-1/convert")
    assert converted.status_code == 200
    assert converted.json()["status"] == "converted"


async def test_low_intent_signup_is_not_scheduled(app_context):
    client = app_context["client"]

    await client.post("/api/chat", json={"session_id": "visitor-2", "message": "What is the price?"})
    signup = await client.post("/api/email-signup", json={"session_id": "visitor-2", "email": "low@example.com"})

    assert signup.status_code == 200
    assert signup.json()["email_scheduled"] is False
    assert signup.json()["reason"] == "intent_too_low"

    schedule = (await client.get("/api/email-schedule/visitor-2")).json()
    assert schedule == {
        "has_email": True,
        "email": "low@example.com",
        "followup_scheduled": False,
        "schedules": [],
    }


async def test_errors(app_context):
    client = app_context["client"]

    assert (await client.get("/api/leads/nobody")).status_code == 404
    assert (await client.get("/api/email-schedule/nobody")).status_code == 404
    assert (await client.post("/api/cancel-emails/nobody")).status_code == 404
    assert (await client.get("/api/memory/nobody/personalization")).status_code == 404

    missing = await client.post("/api/email-signup", json={"session_id": "nobody", "email": "a@example.com"})
    assert missing.status_code == 404
    assert missing.json()["detail"] == "Lead with id 'nobody' not found"

    orphan_reply = await client.post(
        "/api/chat", json={"session_id": "nobody", "message": "Hi!", "sender": "assistant"}
    )
    assert orphan_reply.status_code == 404

    assert (await client.post("/api/chat", json={"session_id": "x", "message": "   "})).status_code == 422
    invalid = await client.post("/api/email-signup", json={"session_id": "x", "email": "not-an-email"})
    assert invalid.status_code == 422

    typo = await client.post("/api/chat", json={"session_id": "x", "message": "hi", "sender": "usr"})
    assert typo.status_code == 422


async def test_health_reports_integrations(app_context, monkeypatch):
    monkeypatch.setenv("MAILGUN_API_KEY", "key-test")
    monkeypatch.setenv("MAILGUN_DOMAIN", "mg.example.com")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    health = await app_context["client"].get("/healthz")

    assert health.json()["integrations"] == {"mailgun": True, "openai": False}


async def test_location_update(app_context):
    client = app_context["client"]
    point = {"type": "Point", "coordinates": [13.405, 52.52]}

    missing = await client.post("/api/location", json={"session_id": "visitor-3", "location": point})
    assert missing.status_code == 404

    await client.post("/api/chat", json={"session_id": "visitor-3", "message": "Any wind farms near me?"})
    updated = await client.post("/api/location", json={"session_id": "visitor-3", "location": point})

    assert updated.status_code == 200
    assert updated.json() == {"message": "Location updated successfully", "coordinates": [13.405, 52.52]}
    lead = (await client.get("/api/leads/visitor-3")).json()
    assert lead["location"] == point

    out_of_range = {"type": "Point", "coordinates": [13.405, 152.52]}
    rejected = await client.post("/api/location", json={"session_id": "visitor-3", "location": out_of_range})
    assert rejected.status_code == 422
    no_location = await client.post("/api/location", json={"session_id": "visitor-3"})
    assert no_location.status_code == 422


async def test_periodic_failures_are_captured(app_context, monkeypatch):
    main = app_context["main"]
    captured = []
    monkeypatch.setattr(main.monitoring, "capture_exception", lambda exc, **tags: captured.append((exc, tags)))

    async def broken_tick():
        raise RuntimeError("store offline")

    await main.run_periodic("followup-dispatch", broken_tick)

    assert len(captured) == 1
    assert str(captured[0][0]) == "store offline"
    assert captured[0][1] == {"periodic_job": "followup-dispatch"}
