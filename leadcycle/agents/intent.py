"""Keyword intent classifier for inbound chat messages."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Sequence, Tuple

INFO_ONLY = "info_only"
INTERESTED = "interested"
HIGH_INTENT = "high_intent"
CONVERTED = "converted"

# Forward-only ordering; a lead never moves to an earlier entry.
STATUS_ORDER = (INFO_ONLY, INTERESTED, HIGH_INTENT, CONVERTED)

# Cumulative score -> status, checked highest first.
STATUS_THRESHOLDS: Tuple[Tuple[int, str], ...] = ((6, HIGH_INTENT), (3, INTERESTED))


@dataclass(frozen=True)
class KeywordBucket:
    name: str
    weight: int
    keywords: Tuple[str, ...]


INTENT_BUCKETS: Tuple[KeywordBucket, ...] = (
    KeywordBucket(
        name=HIGH_INTENT,
        weight=3,
        keywords=(
            "join", "signup", "register", "price", "cost",
            "membership", "interested", "buy", "purchase",
            "contact", "quote", "demo",
        ),
    ),
    KeywordBucket(
        name=INTERESTED,
        weight=2,
        keywords=(
            "more info", "learn", "tell me", "how does",
            "what is", "features", "benefits", "details",
        ),
    ),
    KeywordBucket(
        name=INFO_ONLY,
        weight=0,
        keywords=("just looking", "browsing", "thanks", "ok", "got it", "understand"),
    ),
)


@dataclass
class IntentResult:
    score_delta: int
    matched_keywords: List[str]
    tier: str


def classify(message: str, buckets: Sequence[KeywordBucket] = INTENT_BUCKETS) -> IntentResult:
    """Score a message against the keyword buckets.

    Matching is a case-insensitive substring test and every distinct keyword
    counts once, however often it appears.

    Args:
        message: Raw message text.
        buckets: Keyword table to match against.

    Returns:
        IntentResult: Weighted score delta, hits in table order, and the tier
        of the heaviest bucket that matched (``info_only`` when none did).
    """
    text = (message or "").lower()
    matched: List[str] = []
    score_delta = 0
    tier = INFO_ONLY
    tier_weight = -1
    for bucket in buckets:
        hits = [keyword for keyword in dict.fromkeys(bucket.keywords) if keyword in text]
        if not hits:
            continue
        matched.extend(hits)
        score_delta += bucket.weight * len(hits)
        if bucket.weight > tier_weight:
            tier, tier_weight = bucket.name, bucket.weight
    return IntentResult(score_delta=score_delta, matched_keywords=matched, tier=tier)


def status_rank(status: str) -> int:
    return STATUS_ORDER.index(status)


def status_for_score(score: int, current: str = INFO_ONLY) -> str:
    """Return the status implied by ``score`` without ever downgrading ``current``."""
    candidate = current
    for threshold, status in STATUS_THRESHOLDS:
        if score >= threshold:
            candidate = status
            break
    return max(current, candidate, key=status_rank)


def score_from_interactions(interactions: Iterable[Dict[str, Any]]) -> int:
    return sum(int(item.get("score", 0)) for item in interactions or [])


def apply_intent(
    *,
    intent_score: int,
    status: str,
    interactions: List[Dict[str, Any]],
    total_interactions: int,
    message: str,
    result: IntentResult,
    now: datetime,
) -> Dict[str, Any]:
    """Fold one classified message into a lead's state.

    Returns the new column values; the inputs are left untouched.
    """
    new_score = intent_score + result.score_delta
    record = {
        "message": message,
        "timestamp": now.isoformat(),
        "keywords": list(result.matched_keywords),
        "score": result.score_delta,
    }
    return {
        "intent_score": new_score,
        "status": status_for_score(new_score, status),
        "interactions": list(interactions or []) + [record],
        "total_interactions": total_interactions + 1,
        "last_interaction": now,
    }
