"""FastAPI application exposing the lead lifecycle endpoints."""

import asyncio
import os

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from leadcycle import monitoring
from leadcycle.db import init_db
from leadcycle.exceptions import ConcurrentUpdateError, NotFoundError
from leadcycle.integrations import mailgun
from leadcycle.jobs import DispatchWorker
from leadcycle.leads import LeadService
from leadcycle.memory.context import ConversationMemoryAggregator
from leadcycle.schemas import (
    CancelOut,
    ChatIn,
    ChatOut,
    EmailScheduleOut,
    EmailSignupIn,
    EmailSignupOut,
    LeadOut,
    LocationIn,
    LocationOut,
    PersonalizationOut,
)

API_PORT = int(os.getenv("API_PORT", "8000"))

monitoring.init_monitoring()

scheduler = AsyncIOScheduler()
aggregator = ConversationMemoryAggregator()
lead_service = LeadService(aggregator=aggregator)
dispatcher = DispatchWorker(aggregator=aggregator)

app = FastAPI(title="Leadcycle API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": exc.message})


@app.exception_handler(ConcurrentUpdateError)
async def conflict_handler(request: Request, exc: ConcurrentUpdateError):
    return JSONResponse(status_code=409, content={"detail": exc.message})


async def run_periodic(name: str, step) -> None:
    """Run a scheduled coroutine, reporting failures instead of dropping them."""
    try:
        await step()
    except Exception as exc:
        monitoring.capture_exception(exc, periodic_job=name)


@app.on_event("startup")
async def on_startup():
    await init_db()
    if not scheduler.running:
        scheduler.start()
    if not scheduler.get_job("followup-dispatch"):
        scheduler.add_job(
            lambda: asyncio.create_task(run_periodic("followup-dispatch", dispatcher.tick)),
            "cron",
            minute=0,
            id="followup-dispatch",
        )
    if not scheduler.get_job("followup-purge"):
        scheduler.add_job(
            lambda: asyncio.create_task(run_periodic("followup-purge", dispatcher.purge)),
            "cron",
            hour=0,
            minute=0,
            id="followup-purge",
        )


@app.on_event("shutdown")
async def on_shutdown():
    if scheduler.running:
        scheduler.shutdown(wait=False)


@app.get("/healthz")
async def health_check():
    return {
        "status": "ok",
        "integrations": {
            "mailgun": mailgun.is_configured(),
            "openai": bool(os.getenv("OPENAI_API_KEY")),
        },
    }


@app.post("/api/chat", response_model=ChatOut)
async def chat(payload: ChatIn):
    """Record a chat message against its session's lead.

    Args:
        payload: Session id, message text and sender.

    Returns:
        ChatOut: Score change, current status and an optional membership prompt.
    """
    result = await lead_service.record_message(payload.session_id, payload.message, payload.sender)
    return ChatOut(
        session_id=result.session_id,
        score_delta=result.score_delta,
        status=result.status,
        intent_score=result.intent_score,
        matched_keywords=result.matched_keywords,
        membership_prompt=result.membership_prompt,
    )


@app.get("/api/leads/{session_id}", response_model=LeadOut)
async def get_lead(session_id: str):
    lead = await lead_service.get_lead(session_id)
    return LeadOut(
        id=lead.id,
        session_id=lead.session_id,
        intent_score=lead.intent_score,
        status=lead.status,
        total_interactions=lead.total_interactions,
        email=lead.email,
        followup_scheduled=lead.followup_scheduled,
        membership_prompted=lead.membership_prompted,
        last_interaction=lead.last_interaction,
        location=lead.location,
    )


@app.post("/api/location", response_model=LocationOut)
async def update_location(payload: LocationIn):
    lead = await lead_service.update_location(payload.session_id, payload.location.model_dump(mode="json"))
    return LocationOut(message="Location updated successfully", coordinates=lead.location["coordinates"])


@app.post("/api/email-signup", response_model=EmailSignupOut)
async def email_signup(payload: EmailSignupIn):
    """Save the visitor's email and schedule follow-ups when the lead qualifies.

    Args:
        payload: Session id and email address.

    Returns:
        EmailSignupOut: Lead status, score and whether the drip was scheduled.
    """
    result = await lead_service.register_email(payload.session_id, str(payload.email))
    return EmailSignupOut(
        lead_status=result.lead.status,
        intent_score=result.lead.intent_score,
        email_scheduled=result.schedule.scheduled,
        reason=result.schedule.reason,
    )


@app.get("/api/email-schedule/{session_id}", response_model=EmailScheduleOut)
async def email_schedule(session_id: str):
    return await lead_service.get_schedule(session_id)


@app.post("/api/cancel-emails/{session_id}", response_model=CancelOut)
async def cancel_emails(session_id: str):
    cancelled = await lead_service.cancel_followups(session_id)
    return CancelOut(cancelled_count=cancelled)


@app.post("/api/leads/{session_id}/convert", response_model=LeadOut)
async def convert_lead(session_id: str):
    await lead_service.mark_converted(session_id)
    return await get_lead(session_id)


@app.get("/api/memory/{session_id}/personalization", response_model=PersonalizationOut)
async def personalization(session_id: str):
    snapshot = await aggregator.get_personalization_snapshot(session_id)
    return PersonalizationOut(**snapshot.to_dict())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=API_PORT)
