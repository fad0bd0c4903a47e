"""Message analysis feeding the conversation memory."""

import asyncio
import json
import os
import re
from dataclasses import asdict, dataclass, field, fields
from functools import lru_cache
from typing import Any, Dict, List, Optional

from openai import OpenAI

from leadcycle import monitoring

ANALYSIS_MODEL = os.getenv("OPENAI_ANALYSIS_MODEL", "gpt-4o-mini")

SENTIMENTS = ("positive", "neutral", "negative")
URGENCY_LEVELS = ("high", "medium", "low")
LIST_FIELDS = ("topics", "sectors", "technologies", "business_needs", "pain_points")

POSITIVE_WORDS = (
    "great", "excellent", "perfect", "amazing", "helpful",
    "thank you", "thanks", "good", "yes", "interested",
)
NEGATIVE_WORDS = (
    "bad", "terrible", "useless", "disappointed", "frustrated",
    "no", "not interested", "waste",
)

SECTOR_KEYWORDS: Dict[str, tuple] = {
    "renewable energy": ("solar", "wind", "renewable", "clean energy", "green energy", "photovoltaic", "turbine"),
    "water treatment": ("water", "wastewater", "filtration", "purification", "desalination"),
    "waste management": ("waste", "recycling", "circular economy", "disposal", "composting"),
    "smart cities": ("smart city", "iot", "urban", "infrastructure", "sensors"),
    "agriculture": ("agriculture", "farming", "agtech", "precision farming", "crops"),
    "transportation": ("electric vehicle", "ev", "mobility", "transportation", "logistics"),
}

TECHNOLOGY_KEYWORDS: Dict[str, tuple] = {
    "solar panels": ("solar panel", "photovoltaic", "pv module"),
    "energy storage": ("battery", "batteries", "energy storage"),
    "heat pumps": ("heat pump",),
    "carbon capture": ("carbon capture", "ccs", "direct air capture"),
    "hydrogen": ("hydrogen", "electrolyzer", "fuel cell"),
    "ai optimization": ("ai", "machine learning", "optimization"),
}

NEED_KEYWORDS: Dict[str, tuple] = {
    "suppliers": ("supplier", "vendor", "procurement", "sourcing", "buy", "purchase"),
    "partnerships": ("partner", "collaboration", "joint venture", "alliance", "work together"),
    "funding": ("funding", "investment", "investor", "capital", "finance", "money"),
    "technology": ("technology", "solution", "innovation", "research", "development"),
    "networking": ("network", "connect", "meet", "contact", "introduction"),
}

ROLE_KEYWORDS: Dict[str, tuple] = {
    "CEO": ("ceo", "chief executive", "founder", "president"),
    "CTO": ("cto", "chief technology", "technical director"),
    "Procurement Manager": ("procurement", "purchasing", "buyer", "sourcing"),
    "Investor": ("investor", "investment", "fund", "venture capital"),
    "Consultant": ("consultant", "consulting", "advisor"),
    "Engineer": ("engineer", "technical", "developer"),
}

URGENT_KEYWORDS = ("urgent", "asap", "immediately", "quickly", "deadline", "rush")
TIMEFRAME_KEYWORDS = ("this week", "this month", "soon", "within")

PAIN_POINT_KEYWORDS: Dict[str, tuple] = {
    "cost": ("expensive", "cost", "budget", "affordable", "price"),
    "complexity": ("complex", "complicated", "difficult", "hard to understand"),
    "time": ("time-consuming", "slow", "takes too long", "delay"),
    "reliability": ("unreliable", "trust", "proven", "track record"),
    "scalability": ("scale", "growth", "expand", "larger"),
}


@dataclass
class MessageAnalysis:
    sentiment: str = "neutral"
    topics: List[str] = field(default_factory=list)
    sectors: List[str] = field(default_factory=list)
    technologies: List[str] = field(default_factory=list)
    business_needs: List[str] = field(default_factory=list)
    pain_points: List[str] = field(default_factory=list)
    urgency: Optional[str] = None
    role: Optional[str] = None
    language: str = "en"

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MessageAnalysis":
        """Build an analysis from loosely shaped data, ignoring unknown keys."""
        data = data or {}
        values: Dict[str, Any] = {}
        for item in fields(cls):
            if item.name not in data or data[item.name] is None:
                continue
            value = data[item.name]
            if item.name in LIST_FIELDS:
                if isinstance(value, str):
                    value = [value]
                value = [str(entry).strip() for entry in value if str(entry).strip()]
            else:
                value = str(value).strip() or None
            values[item.name] = value
        analysis = cls(**values)
        analysis.sentiment = (analysis.sentiment or "").lower()
        if analysis.sentiment not in SENTIMENTS:
            analysis.sentiment = "neutral"
        if analysis.urgency is not None:
            analysis.urgency = analysis.urgency.lower()
            if analysis.urgency not in URGENCY_LEVELS:
                analysis.urgency = None
        if not analysis.language:
            analysis.language = "en"
        return analysis

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _contains(text: str, keyword: str) -> bool:
    return re.search(rf"\b{re.escape(keyword)}(?:s|es)?\b", text) is not None


def _labels(text: str, table: Dict[str, tuple]) -> List[str]:
    return [label for label, keywords in table.items() if any(_contains(text, k) for k in keywords)]


def keyword_analysis(message: str) -> MessageAnalysis:
    """Deterministic heuristic when the LLM is unavailable."""
    text = (message or "").lower()
    analysis = MessageAnalysis()

    has_positive = any(_contains(text, word) for word in POSITIVE_WORDS)
    has_negative = any(_contains(text, word) for word in NEGATIVE_WORDS)
    if has_positive and not has_negative:
        analysis.sentiment = "positive"
    elif has_negative and not has_positive:
        analysis.sentiment = "negative"

    analysis.sectors = _labels(text, SECTOR_KEYWORDS)
    analysis.technologies = _labels(text, TECHNOLOGY_KEYWORDS)
    analysis.business_needs = _labels(text, NEED_KEYWORDS)
    analysis.pain_points = _labels(text, PAIN_POINT_KEYWORDS)
    analysis.topics = list(dict.fromkeys(analysis.sectors + analysis.technologies))

    roles = _labels(text, ROLE_KEYWORDS)
    analysis.role = roles[0] if roles else None

    if any(_contains(text, word) for word in URGENT_KEYWORDS):
        analysis.urgency = "high"
    elif any(_contains(text, word) for word in TIMEFRAME_KEYWORDS):
        analysis.urgency = "medium"
    return analysis


@lru_cache(maxsize=1)
def _get_client() -> Optional[OpenAI]:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None
    try:
        return OpenAI(api_key=api_key)
    except Exception as exc:
        monitoring.capture_exception(exc)
        return None


def _extract_analysis(raw: str) -> Optional[MessageAnalysis]:
    raw = (raw or "").strip()
    if raw.startswith("```"):
        raw = raw.strip("`")
        raw = raw[raw.find("{"):]
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    return MessageAnalysis.from_dict(data)


async def analyze(message: str) -> MessageAnalysis:
    """Extract sentiment, interests and profile hints from a chat message.

    Args:
        message: Raw message text.

    Returns:
        MessageAnalysis: LLM output when a client is configured and answers
        with valid JSON, otherwise the keyword heuristic.
    """
    client = _get_client()
    if not client:
        return keyword_analysis(message)

    prompt = (
        "You analyze messages sent to a cleantech directory assistant. "
        "Return only JSON with the keys sentiment (positive|neutral|negative), topics, sectors, "
        "technologies, business_needs, pain_points (lists of short lowercase strings), "
        "urgency (high|medium|low|null), role (job title or null) and language (ISO 639-1).\n\n"
        f"Message: {message}"
    )

    try:
        response = await asyncio.to_thread(client.responses.create, model=ANALYSIS_MODEL, input=prompt)
        parsed = _extract_analysis(response.output_text)
        if parsed is not None:
            return parsed
    except Exception as exc:
        monitoring.capture_exception(exc)

    return keyword_analysis(message)
