"""Drip campaign scheduling for qualified leads."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from leadcycle.db import EmailSchedule, Lead, get_session
from leadcycle.exceptions import NotFoundError

logger = logging.getLogger(__name__)

# Compared against the cumulative intent score, which the classifier moves
# to high_intent at 6.
FOLLOWUP_MIN_INTENT_SCORE = 30

FOLLOWUP_SEQUENCE = (
    ("day3", 3),
    ("day7", 7),
    ("day14", 14),
)


@dataclass
class ScheduleResult:
    scheduled: bool
    jobs: List[EmailSchedule] = field(default_factory=list)
    reason: Optional[str] = None  # intent_too_low, already_scheduled


class DripScheduler:
    """Creates and cancels the 3/7/14 day follow-up jobs of a lead."""

    def __init__(self, clock: Callable[[], datetime] = datetime.utcnow) -> None:
        self.clock = clock

    async def schedule_followups(self, lead_id: int, email: str, now: Optional[datetime] = None) -> ScheduleResult:
        """Create the follow-up batch for a lead, at most once.

        Args:
            lead_id: Lead primary key.
            email: Address the follow-ups go to.
            now: Scheduling reference time; defaults to the clock.

        Returns:
            ScheduleResult: ``scheduled=False`` with a reason when the lead
            does not qualify or already has a batch.

        Raises:
            NotFoundError: Unknown lead.
        """
        now = now or self.clock()
        async with get_session() as session:
            lead = await session.get(Lead, lead_id)
            if not lead:
                raise NotFoundError("Lead", str(lead_id))

            if lead.intent_score < FOLLOWUP_MIN_INTENT_SCORE:
                logger.info("Lead intent too low (%s), skipping email scheduling", lead.intent_score)
                return ScheduleResult(scheduled=False, reason="intent_too_low")

            existing = (
                await session.exec(select(EmailSchedule.id).where(EmailSchedule.lead_id == lead_id).limit(1))
            ).first()
            if existing is not None or lead.followup_scheduled:
                logger.info("Emails already scheduled for lead %s", lead_id)
                return ScheduleResult(scheduled=False, reason="already_scheduled")

            conn = await session.connection()
            claimed = await conn.execute(
                update(Lead)
                .where(Lead.id == lead_id, Lead.followup_scheduled.is_(False))
                .values(followup_scheduled=True, version=Lead.version + 1, updated_at=now)
            )
            if claimed.rowcount != 1:
                await session.rollback()
                logger.info("Lost scheduling race for lead %s", lead_id)
                return ScheduleResult(scheduled=False, reason="already_scheduled")

            jobs = [
                EmailSchedule(
                    lead_id=lead_id,
                    email=email,
                    schedule_type=schedule_type,
                    scheduled_for=now + timedelta(days=days),
                    lead_status=lead.status,
                    intent_score=lead.intent_score,
                    created_at=now,
                )
                for schedule_type, days in FOLLOWUP_SEQUENCE
            ]
            session.add_all(jobs)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("Follow-up batch for lead %s already exists", lead_id)
                return ScheduleResult(scheduled=False, reason="already_scheduled")

        logger.info("Follow-up emails scheduled for lead %s (%s)", lead_id, email)
        for job in jobs:
            logger.info("- %s follow-up: %s", job.schedule_type, job.scheduled_for.isoformat())
        return ScheduleResult(scheduled=True, jobs=jobs)

    async def cancel_followups(self, lead_id: int, now: Optional[datetime] = None) -> int:
        """Soft-cancel every unsent job of a lead.

        Returns:
            int: Number of jobs changed.

        Raises:
            NotFoundError: Unknown lead.
        """
        now = now or self.clock()
        async with get_session() as session:
            lead = await session.get(Lead, lead_id)
            if not lead:
                raise NotFoundError("Lead", str(lead_id))
            conn = await session.connection()
            result = await conn.execute(
                update(EmailSchedule)
                .where(EmailSchedule.lead_id == lead_id, EmailSchedule.sent.is_(False))
                .values(sent=True, sent_at=now, claimed_until=None)
            )
            await session.commit()
        logger.info("Cancelled %s pending emails for lead %s", result.rowcount, lead_id)
        return result.rowcount

    async def jobs_for_lead(self, lead_id: int) -> List[EmailSchedule]:
        async with get_session() as session:
            return list(
                (
                    await session.exec(
                        select(EmailSchedule)
                        .where(EmailSchedule.lead_id == lead_id)
                        .order_by(EmailSchedule.scheduled_for)
                    )
                ).all()
            )
