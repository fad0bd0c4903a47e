import asyncio
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from sqlalchemy import delete, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from leadcycle import monitoring
from leadcycle.agents.intent import CONVERTED
from leadcycle.db import EmailSchedule, Lead, get_session
from leadcycle.exceptions import NotFoundError
from leadcycle.integrations.mailgun import send_email as mailgun_send_email
from leadcycle.memory.context import ConversationMemoryAggregator, PersonalizationSnapshot
from leadcycle.templates import personalized_content

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
STALE_LEAD_DAYS = 30
RETENTION_DAYS = 30
SEND_DELAY_SECONDS = float(os.getenv("DISPATCH_SEND_DELAY_SECONDS", "2"))
LEASE_MINUTES = int(os.getenv("DISPATCH_LEASE_MINUTES", "10"))

SENT = "sent"
SKIPPED = "skipped"
RETRY = "retry"
FAILED = "failed"
CONTENDED = "contended"

SendEmail = Callable[[str, str, Mapping[str, Any]], Awaitable[Any]]


@dataclass
class TickResult:
    due: int = 0
    sent: int = 0
    skipped: int = 0
    retried: int = 0
    failed: int = 0
    contended: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def build_email_context(job: EmailSchedule, lead: Lead, snapshot: PersonalizationSnapshot) -> Dict[str, Any]:
    context = snapshot.to_dict()
    context.update(
        {
            "session_id": lead.session_id,
            "lead_status": lead.status,
            "intent_score": lead.intent_score,
            "schedule_type": job.schedule_type,
            "personalized_content": personalized_content(job.schedule_type, context),
        }
    )
    return context


class DispatchWorker:
    """Sends due follow-up jobs and purges old ones.

    ``tick`` is meant to run hourly and ``purge`` daily; both take the
    reference time as an argument so callers control the clock.
    """

    def __init__(
        self,
        send: SendEmail = mailgun_send_email,
        aggregator: Optional[ConversationMemoryAggregator] = None,
        *,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        send_delay: float = SEND_DELAY_SECONDS,
        lease: timedelta = timedelta(minutes=LEASE_MINUTES),
    ) -> None:
        self.send = send
        self.aggregator = aggregator or ConversationMemoryAggregator(clock=clock)
        self.clock = clock
        self.sleep = sleep
        self.send_delay = send_delay
        self.lease = lease

    async def tick(self, now: Optional[datetime] = None) -> TickResult:
        now = now or self.clock()
        logger.info("Checking for scheduled emails at %s", now.isoformat())

        async with get_session() as session:
            due = (
                await session.exec(
                    select(EmailSchedule.id)
                    .where(
                        EmailSchedule.scheduled_for <= now,
                        EmailSchedule.sent.is_(False),
                        or_(EmailSchedule.claimed_until.is_(None), EmailSchedule.claimed_until <= now),
                    )
                    .order_by(EmailSchedule.scheduled_for, EmailSchedule.id)
                )
            ).all()

        result = TickResult(due=len(due))
        logger.info("Found %s emails to send", len(due))

        for job_id in due:
            try:
                outcome = await self._process(job_id, now, pace=result.sent > 0)
            except SQLAlchemyError as exc:
                result.errors += 1
                logger.error("Store error while dispatching job %s; leaving it for the next tick", job_id)
                monitoring.capture_exception(exc, job_id=job_id)
                continue
            if outcome == SENT:
                result.sent += 1
            elif outcome == SKIPPED:
                result.skipped += 1
            elif outcome == RETRY:
                result.retried += 1
            elif outcome == FAILED:
                result.failed += 1
            else:
                result.contended += 1

        logger.info(
            "Email processing complete: %s sent, %s skipped, %s retrying, %s failed, %s errors",
            result.sent,
            result.skipped,
            result.retried,
            result.failed,
            result.errors,
        )
        return result

    async def purge(self, now: Optional[datetime] = None) -> int:
        """Delete sent jobs whose ``sent_at`` is older than the retention window."""
        now = now or self.clock()
        cutoff = now - timedelta(days=RETENTION_DAYS)
        async with get_session() as session:
            conn = await session.connection()
            result = await conn.execute(
                delete(EmailSchedule).where(EmailSchedule.sent.is_(True), EmailSchedule.sent_at < cutoff)
            )
            await session.commit()
        logger.info("Cleaned up %s old email records", result.rowcount)
        return result.rowcount

    async def _process(self, job_id: int, now: datetime, *, pace: bool) -> str:
        if not await self._claim(job_id, now):
            return CONTENDED

        async with get_session() as session:
            job = await session.get(EmailSchedule, job_id)
            lead = await session.get(Lead, job.lead_id) if job else None
        if job is None:
            return CONTENDED

        if lead is None:
            logger.warning("Lead %s for job %s no longer exists, skipping", job.lead_id, job_id)
            await self._finish(job_id, now)
            return SKIPPED
        if lead.status == CONVERTED:
            logger.info("Lead already converted, skipping email to %s", job.email)
            await self._finish(job_id, now)
            return SKIPPED
        inactive = now - lead.last_interaction
        if inactive > timedelta(days=STALE_LEAD_DAYS):
            logger.info("Lead inactive for %s days, skipping email to %s", inactive.days, job.email)
            await self._finish(job_id, now)
            return SKIPPED

        snapshot = await self._snapshot(lead.session_id)
        if pace and self.send_delay:
            await self.sleep(self.send_delay)

        logger.info("Sending %s email to %s", job.schedule_type, job.email)
        try:
            context = build_email_context(job, lead, snapshot)
            await self.send(job.email, job.schedule_type, context)
        except Exception as exc:
            return await self._record_failure(job, now, exc)

        await self._finish(job_id, now)
        logger.info("Email sent successfully to %s", job.email)
        return SENT

    async def _snapshot(self, session_id: str) -> PersonalizationSnapshot:
        try:
            return await self.aggregator.get_personalization_snapshot(session_id)
        except NotFoundError:
            return PersonalizationSnapshot()

    async def _claim(self, job_id: int, now: datetime) -> bool:
        return await self._update_job(
            job_id,
            {"claimed_until": now + self.lease},
            or_(EmailSchedule.claimed_until.is_(None), EmailSchedule.claimed_until <= now),
        )

    async def _finish(self, job_id: int, now: datetime) -> bool:
        return await self._update_job(job_id, {"sent": True, "sent_at": now, "claimed_until": None})

    async def _record_failure(self, job: EmailSchedule, now: datetime, exc: Exception) -> str:
        retry_count = job.retry_count + 1
        logger.error("Error sending email to %s: %s", job.email, exc)
        values: Dict[str, Any] = {"retry_count": retry_count, "claimed_until": None}
        if retry_count >= MAX_RETRIES:
            values.update({"sent": True, "sent_at": now, "error": str(exc)[:1024]})
        await self._update_job(job.id, values)
        if retry_count >= MAX_RETRIES:
            logger.warning("Max retries reached for %s, marking as failed", job.email)
            monitoring.capture_exception(exc, job_id=job.id, schedule_type=job.schedule_type)
            return FAILED
        return RETRY

    @staticmethod
    async def _update_job(job_id: int, values: Dict[str, Any], *conditions) -> bool:
        """Apply ``values`` to a still-unsent job; False when nothing matched."""
        async with get_session() as session:
            conn = await session.connection()
            result = await conn.execute(
                update(EmailSchedule)
                .where(EmailSchedule.id == job_id, EmailSchedule.sent.is_(False), *conditions)
                .values(**values)
            )
            await session.commit()
        return result.rowcount == 1
