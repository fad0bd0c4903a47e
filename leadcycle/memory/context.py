import copy
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from leadcycle.agents.analysis import MessageAnalysis
from leadcycle.concurrency import cas_update, run_serialized
from leadcycle.db import ConversationMemory, Lead, get_session
from leadcycle.exceptions import NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_GREETING = "Hello"
DEFAULT_TONE = "professional"
DEFAULT_ENGAGEMENT = "medium"
DEFAULT_URGENCY = "medium"

HIGH_ENGAGEMENT_MIN_MESSAGES = 10
LOW_ENGAGEMENT_MAX_MESSAGES = 3
RECENT_WINDOW = 3

SECTOR_RECOMMENDATIONS: Dict[str, str] = {
    "renewable energy": "Verified solar and wind developers in our directory",
    "water treatment": "Filtration and desalination technology providers",
    "waste management": "Recycling and circular-economy operators",
    "smart cities": "IoT and urban infrastructure integrators",
    "agriculture": "Precision farming and agtech startups",
    "transportation": "EV and clean logistics companies",
}

NEED_ACTIONS: Dict[str, str] = {
    "suppliers": "Request quotes from shortlisted suppliers",
    "partnerships": "Book an introduction call with a potential partner",
    "funding": "Review cleantech investors active in your sector",
    "technology": "Compare technology providers side by side",
    "networking": "Join the member community to meet peers",
}

MEMBERSHIP_ACTION = "Create a free account to save your searches"


def default_memory_state(now: datetime) -> Dict[str, Any]:
    return {
        "interests": {
            "sectors": [],
            "technologies": [],
            "business_needs": [],
            "location": "",
            "company_size": "",
            "timeline": "",
        },
        "user_profile": {
            "role": "",
            "industry": "",
            "communication_style": DEFAULT_TONE,
            "preferred_language": "en",
        },
        "conversation_flow": {
            "main_topics": [],
            "questions_asked": [],
            "action_items": [],
        },
        "engagement": {
            "message_count": 0,
            "last_active_at": now.isoformat(),
            "engagement_level": DEFAULT_ENGAGEMENT,
        },
        "raw_messages": [],
        "analysis": {
            "primary_intent": "information",
            "urgency_level": DEFAULT_URGENCY,
            "pain_points": [],
        },
    }


def memory_state(memory: ConversationMemory) -> Dict[str, Any]:
    return {
        "interests": memory.interests,
        "user_profile": memory.user_profile,
        "conversation_flow": memory.conversation_flow,
        "engagement": memory.engagement,
        "raw_messages": memory.raw_messages,
        "analysis": memory.analysis,
    }


def _union(existing: Optional[List[str]], incoming: Optional[List[str]]) -> List[str]:
    return list(dict.fromkeys([*(existing or []), *(incoming or [])]))


def engagement_level(message_count: int, raw_messages: List[Dict[str, Any]], current: str) -> str:
    recent = [entry.get("sentiment") for entry in raw_messages[-RECENT_WINDOW:]]
    positive = recent.count("positive")
    if message_count > HIGH_ENGAGEMENT_MIN_MESSAGES and positive >= 2:
        return "high"
    if message_count < LOW_ENGAGEMENT_MAX_MESSAGES or positive == 0:
        return "low"
    return current or DEFAULT_ENGAGEMENT


def fold_message(
    state: Dict[str, Any],
    *,
    message: str,
    sender: str,
    analysis: MessageAnalysis,
    now: datetime,
) -> Dict[str, Any]:
    """Merge one message and its analysis into a memory state.

    The input state is not modified; a new state is returned.
    """
    state = copy.deepcopy(state)
    interests = state["interests"]
    profile = state["user_profile"]
    flow = state["conversation_flow"]
    engagement = state["engagement"]
    summary = state["analysis"]

    state["raw_messages"].append(
        {
            "message": message,
            "sender": sender,
            "timestamp": now.isoformat(),
            "language": analysis.language or "en",
            "sentiment": analysis.sentiment or "neutral",
            "topics": list(analysis.topics),
        }
    )
    engagement["message_count"] = int(engagement.get("message_count", 0)) + 1
    engagement["last_active_at"] = now.isoformat()

    if sender == "user" and analysis.topics:
        flow["main_topics"] = _union(flow.get("main_topics"), analysis.topics)
    if sender == "user" and message.strip().endswith("?"):
        flow["questions_asked"] = _union(flow.get("questions_asked"), [message.strip()])

    interests["sectors"] = _union(interests.get("sectors"), analysis.sectors)
    interests["technologies"] = _union(interests.get("technologies"), analysis.technologies)
    interests["business_needs"] = _union(interests.get("business_needs"), analysis.business_needs)
    summary["pain_points"] = _union(summary.get("pain_points"), analysis.pain_points)

    if analysis.urgency:
        summary["urgency_level"] = analysis.urgency
    if analysis.role:
        profile["role"] = analysis.role

    engagement["engagement_level"] = engagement_level(
        engagement["message_count"],
        state["raw_messages"],
        engagement.get("engagement_level", DEFAULT_ENGAGEMENT),
    )
    return state


def derive_followup_context(state: Dict[str, Any]) -> Dict[str, Any]:
    interests = state["interests"]
    profile = state["user_profile"]
    sectors = interests.get("sectors") or []
    needs = interests.get("business_needs") or []

    recommendations = [SECTOR_RECOMMENDATIONS[s] for s in sectors if s in SECTOR_RECOMMENDATIONS]
    actions = [NEED_ACTIONS[n] for n in needs if n in NEED_ACTIONS]
    if not actions:
        actions = [MEMBERSHIP_ACTION]
    return {
        "personalized_greeting": DEFAULT_GREETING,
        "relevant_topics": _union(sectors, state["conversation_flow"].get("main_topics")),
        "preferred_communication_tone": profile.get("communication_style") or DEFAULT_TONE,
        "next_best_actions": actions,
        "custom_recommendations": recommendations,
    }


@dataclass
class PersonalizationSnapshot:
    greeting: str = DEFAULT_GREETING
    interests: List[str] = field(default_factory=list)
    business_needs: List[str] = field(default_factory=list)
    urgency: str = DEFAULT_URGENCY
    role: Optional[str] = None
    pain_points: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    next_actions: List[str] = field(default_factory=list)
    tone: str = DEFAULT_TONE

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def personalization_from_state(state: Dict[str, Any]) -> PersonalizationSnapshot:
    followup = derive_followup_context(state)
    interests = state["interests"]
    return PersonalizationSnapshot(
        greeting=followup["personalized_greeting"],
        interests=list(interests.get("sectors") or [])[:3],
        business_needs=list(interests.get("business_needs") or []),
        urgency=state["analysis"].get("urgency_level") or DEFAULT_URGENCY,
        role=state["user_profile"].get("role") or None,
        pain_points=list(state["analysis"].get("pain_points") or [])[:2],
        recommendations=followup["custom_recommendations"],
        next_actions=followup["next_best_actions"],
        tone=followup["preferred_communication_tone"],
    )


class ConversationMemoryAggregator:
    """Folds per-message signals into the durable context of a chat session."""

    def __init__(self, clock: Callable[[], datetime] = datetime.utcnow) -> None:
        self.clock = clock

    @staticmethod
    async def load(session: AsyncSession, session_id: str) -> Optional[ConversationMemory]:
        return (
            await session.exec(select(ConversationMemory).where(ConversationMemory.session_id == session_id))
        ).first()

    async def apply(
        self,
        session: AsyncSession,
        lead: Lead,
        *,
        message: str,
        sender: str,
        analysis: MessageAnalysis,
        now: datetime,
    ) -> Dict[str, Any]:
        """Stage the memory write for ``lead`` inside an open transaction.

        Returns the new memory state. The caller commits.
        """
        memory = await self.load(session, lead.session_id)
        if memory is None:
            state = fold_message(
                default_memory_state(now), message=message, sender=sender, analysis=analysis, now=now
            )
            session.add(
                ConversationMemory(session_id=lead.session_id, lead_id=lead.id, created_at=now, updated_at=now, **state)
            )
            await session.flush()
            logger.info("Provisioned conversation memory for session %s", lead.session_id)
            return state

        state = fold_message(memory_state(memory), message=message, sender=sender, analysis=analysis, now=now)
        await cas_update(session, ConversationMemory, memory.id, memory.version, {**state, "updated_at": now})
        return state

    async def update(
        self,
        session_id: str,
        message: str,
        sender: str = "user",
        analysis: Optional[MessageAnalysis] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Record a message in the session's memory.

        Raises:
            NotFoundError: No lead exists for ``session_id``.
        """
        analysis = analysis or MessageAnalysis()
        now = now or self.clock()

        async def _write() -> Dict[str, Any]:
            async with get_session() as session:
                lead = (await session.exec(select(Lead).where(Lead.session_id == session_id))).first()
                if not lead:
                    raise NotFoundError("Lead", session_id)
                state = await self.apply(session, lead, message=message, sender=sender, analysis=analysis, now=now)
                await session.commit()
                return state

        return await run_serialized(session_id, _write, resource="ConversationMemory")

    async def get_personalization_snapshot(self, session_id: str) -> PersonalizationSnapshot:
        """Build the personalization view from the memory as it is right now.

        Raises:
            NotFoundError: The session has no conversation memory.
        """
        async with get_session() as session:
            memory = await self.load(session, session_id)
        if memory is None:
            raise NotFoundError("ConversationMemory", session_id)
        return personalization_from_state(memory_state(memory))
