from datetime import datetime

from leadcycle.agents.intent import (
    CONVERTED,
    HIGH_INTENT,
    INFO_ONLY,
    INTERESTED,
    KeywordBucket,
    apply_intent,
    classify,
    score_from_interactions,
    status_for_score,
)

T0 = datetime(2026, 3, 2, 9, 0, 0)


def test_classify_counts_each_keyword_once():
    result = classify("PRICE? price, price... and the Cost please")

    assert result.matched_keywords == ["price", "cost"]
    assert result.score_delta == 6
    assert result.tier == HIGH_INTENT


def test_classify_mixed_buckets_uses_heaviest_tier():
    result = classify("Tell me more about the features, I might want a demo")

    assert set(result.matched_keywords) == {"tell me", "features", "demo"}
    assert result.score_delta == 2 + 2 + 3
    assert result.tier == HIGH_INTENT


def test_classify_neutral_words_score_nothing():
    result = classify("thanks, I am browsing")

    assert result.score_delta == 0
    assert result.matched_keywords == ["browsing", "thanks"]
    assert result.tier == INFO_ONLY


def test_classify_empty_message():
    result = classify("")

    assert result.score_delta == 0
    assert result.matched_keywords == []
    assert result.tier == INFO_ONLY


def test_classify_accepts_custom_table():
    buckets = (KeywordBucket(name="solar", weight=5, keywords=("panel", "inverter")),)

    result = classify("Which inverter pairs with this panel?", buckets)

    assert result.score_delta == 10
    assert result.tier == "solar"


def test_status_thresholds():
    assert status_for_score(0) == INFO_ONLY
    assert status_for_score(2) == INFO_ONLY
    assert status_for_score(3) == INTERESTED
    assert status_for_score(5) == INTERESTED
    assert status_for_score(6) == HIGH_INTENT


def test_status_never_moves_backwards():
    assert status_for_score(0, HIGH_INTENT) == HIGH_INTENT
    assert status_for_score(4, HIGH_INTENT) == HIGH_INTENT
    assert status_for_score(100, CONVERTED) == CONVERTED


def test_apply_intent_appends_interaction_and_keeps_inputs():
    interactions = [{"message": "hi", "timestamp": T0.isoformat(), "keywords": [], "score": 0}]
    result = classify("How much does membership cost?")

    changes = apply_intent(
        intent_score=0,
        status=INFO_ONLY,
        interactions=interactions,
        total_interactions=1,
        message="How much does membership cost?",
        result=result,
        now=T0,
    )

    assert len(interactions) == 1
    assert changes["intent_score"] == 6
    assert changes["status"] == HIGH_INTENT
    assert changes["total_interactions"] == 2
    assert changes["last_interaction"] == T0
    assert changes["interactions"][-1] == {
        "message": "How much does membership cost?",
        "timestamp": T0.isoformat(),
        "keywords": ["cost", "membership"],
        "score": 6,
    }
    assert score_from_interactions(changes["interactions"]) == changes["intent_score"]


def test_buying_question_reaches_high_intent_at_once():
    result = classify("I want to join and get a price quote")

    assert result.matched_keywords == ["join", "price", "quote"]
    assert result.score_delta == 9
    assert status_for_score(result.score_delta) == HIGH_INTENT
