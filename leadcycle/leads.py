import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from leadcycle import monitoring
from leadcycle.agents.analysis import MessageAnalysis, analyze
from leadcycle.agents.intent import CONVERTED, HIGH_INTENT, INTERESTED, apply_intent, classify, status_rank
from leadcycle.concurrency import cas_update, run_serialized
from leadcycle.db import EmailSchedule, Lead, get_session
from leadcycle.drip import DripScheduler, ScheduleResult
from leadcycle.exceptions import NotFoundError
from leadcycle.memory.context import ConversationMemoryAggregator

logger = logging.getLogger(__name__)

USER = "user"

MEMBERSHIP_PROMPT: Dict[str, Any] = {
    "type": "membership_prompt",
    "message": (
        "I notice you're interested in our services! Would you like to create a free account "
        "to access more features and connect with cleantech companies?"
    ),
    "cta": {"text": "Join Free", "url": "/signup"},
}

Analyzer = Callable[[str], Awaitable[MessageAnalysis]]


@dataclass
class RecordResult:
    session_id: str
    score_delta: int
    status: str
    intent_score: int
    matched_keywords: List[str] = field(default_factory=list)
    tier: Optional[str] = None
    membership_prompt: Optional[Dict[str, Any]] = None


@dataclass
class SignupResult:
    lead: Lead
    schedule: ScheduleResult


def job_state(job: EmailSchedule) -> str:
    """Distinguish terminal failures from delivered or cancelled jobs."""
    if not job.sent:
        return "pending"
    if job.error:
        return "failed"
    return "sent"


class LeadService:
    """Entry points used by the chat and signup endpoints."""

    def __init__(
        self,
        *,
        analyzer: Analyzer = analyze,
        aggregator: Optional[ConversationMemoryAggregator] = None,
        scheduler: Optional[DripScheduler] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.analyzer = analyzer
        self.clock = clock
        self.aggregator = aggregator or ConversationMemoryAggregator(clock=clock)
        self.scheduler = scheduler or DripScheduler(clock=clock)

    @staticmethod
    async def _find(session: AsyncSession, session_id: str) -> Optional[Lead]:
        return (await session.exec(select(Lead).where(Lead.session_id == session_id))).first()

    async def get_lead(self, session_id: str) -> Lead:
        async with get_session() as session:
            lead = await self._find(session, session_id)
        if not lead:
            raise NotFoundError("Lead", session_id)
        return lead

    async def _analyze(self, message: str) -> MessageAnalysis:
        try:
            return await self.analyzer(message)
        except Exception as exc:
            monitoring.capture_exception(exc)
            return MessageAnalysis()

    async def record_message(self, session_id: str, message: str, sender: str = USER) -> RecordResult:
        """Classify a chat message and fold it into the lead and its memory.

        User messages create the lead on first contact and move its score;
        other senders only feed the conversation memory and require an
        existing lead. Lead and memory are written in one transaction.

        Raises:
            NotFoundError: Non-user message for a session without a lead.
            ConcurrentUpdateError: Write conflicts outlasted the retry budget.
        """
        analysis = await self._analyze(message)
        now = self.clock()

        async def _write() -> RecordResult:
            async with get_session() as session:
                lead = await self._find(session, session_id)
                if lead is None:
                    if sender != USER:
                        raise NotFoundError("Lead", session_id)
                    lead = Lead(session_id=session_id, created_at=now, updated_at=now, last_interaction=now)
                    session.add(lead)
                    await session.flush()
                    logger.info("Created lead %s for session %s", lead.id, session_id)

                result = RecordResult(
                    session_id=session_id,
                    score_delta=0,
                    status=lead.status,
                    intent_score=lead.intent_score,
                )
                if sender == USER:
                    intent = classify(message)
                    changes = apply_intent(
                        intent_score=lead.intent_score,
                        status=lead.status,
                        interactions=lead.interactions,
                        total_interactions=lead.total_interactions,
                        message=message,
                        result=intent,
                        now=now,
                    )
                    if not lead.membership_prompted and changes["status"] in (INTERESTED, HIGH_INTENT):
                        changes["membership_prompted"] = True
                        result.membership_prompt = dict(MEMBERSHIP_PROMPT)
                    await cas_update(session, Lead, lead.id, lead.version, {**changes, "updated_at": now})
                    result.score_delta = intent.score_delta
                    result.status = changes["status"]
                    result.intent_score = changes["intent_score"]
                    result.matched_keywords = intent.matched_keywords
                    result.tier = intent.tier

                await self.aggregator.apply(
                    session, lead, message=message, sender=sender, analysis=analysis, now=now
                )
                await session.commit()
                return result

        result = await run_serialized(session_id, _write, resource="Lead")
        logger.info(
            "Recorded %s message for %s: +%s -> %s (%s)",
            sender,
            session_id,
            result.score_delta,
            result.intent_score,
            result.status,
        )
        return result

    async def register_email(self, session_id: str, email: str) -> SignupResult:
        """Store the lead's email and start the drip campaign when it qualifies."""
        now = self.clock()

        async def _write() -> Lead:
            async with get_session() as session:
                lead = await self._find(session, session_id)
                if not lead:
                    raise NotFoundError("Lead", session_id)
                await cas_update(
                    session,
                    Lead,
                    lead.id,
                    lead.version,
                    {"email": email, "last_interaction": now, "updated_at": now},
                )
                await session.commit()
                return lead

        lead = await run_serialized(session_id, _write, resource="Lead")
        schedule = ScheduleResult(scheduled=False, reason="already_scheduled")
        if not lead.followup_scheduled:
            schedule = await self.scheduler.schedule_followups(lead.id, email, now=now)
        return SignupResult(lead=await self.get_lead(session_id), schedule=schedule)

    async def update_location(self, session_id: str, location: Dict[str, Any]) -> Lead:
        """Store the visitor's GeoJSON point on the lead.

        Raises:
            NotFoundError: No lead exists for ``session_id``.
        """
        now = self.clock()

        async def _write() -> None:
            async with get_session() as session:
                lead = await self._find(session, session_id)
                if not lead:
                    raise NotFoundError("Lead", session_id)
                await cas_update(session, Lead, lead.id, lead.version, {"location": location, "updated_at": now})
                await session.commit()

        await run_serialized(session_id, _write, resource="Lead")
        logger.info("Location updated for session %s", session_id)
        return await self.get_lead(session_id)

    async def cancel_followups(self, session_id: str) -> int:
        lead = await self.get_lead(session_id)
        return await self.scheduler.cancel_followups(lead.id, now=self.clock())

    async def mark_converted(self, session_id: str) -> Lead:
        """Move a lead to ``converted``; pending follow-ups are then skipped."""
        now = self.clock()

        async def _write() -> None:
            async with get_session() as session:
                lead = await self._find(session, session_id)
                if not lead:
                    raise NotFoundError("Lead", session_id)
                if status_rank(lead.status) >= status_rank(CONVERTED):
                    return
                await cas_update(session, Lead, lead.id, lead.version, {"status": CONVERTED, "updated_at": now})
                await session.commit()

        await run_serialized(session_id, _write, resource="Lead")
        logger.info("Lead for session %s converted", session_id)
        return await self.get_lead(session_id)

    async def get_schedule(self, session_id: str) -> Dict[str, Any]:
        lead = await self.get_lead(session_id)
        jobs = await self.scheduler.jobs_for_lead(lead.id)
        return {
            "has_email": bool(lead.email),
            "email": lead.email,
            "followup_scheduled": lead.followup_scheduled,
            "schedules": [
                {
                    "type": job.schedule_type,
                    "scheduled_for": job.scheduled_for,
                    "sent": job.sent,
                    "sent_at": job.sent_at,
                    "retry_count": job.retry_count,
                    "state": job_state(job),
                }
                for job in jobs
            ],
        }
