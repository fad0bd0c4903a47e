import pytest

from leadcycle.agents import analysis
from leadcycle.agents.analysis import MessageAnalysis, keyword_analysis


def test_keyword_analysis_extracts_interests_and_profile():
    result = keyword_analysis("As CTO I need solar panels and battery storage suppliers, it's urgent")

    assert result.sectors == ["renewable energy"]
    assert result.technologies == ["solar panels", "energy storage"]
    assert "suppliers" in result.business_needs
    assert result.topics == ["renewable energy", "solar panels", "energy storage"]
    assert result.role == "CTO"
    assert result.urgency == "high"


def test_keyword_analysis_matches_whole_words_only():
    result = keyword_analysis("We never thought about it")

    assert result.sectors == []
    assert result.sentiment == "neutral"


def test_keyword_analysis_sentiment():
    assert keyword_analysis("This is great, thanks").sentiment == "positive"
    assert keyword_analysis("Honestly this was useless").sentiment == "negative"
    assert keyword_analysis("Great, but no").sentiment == "neutral"


def test_from_dict_normalizes_loose_payloads():
    result = MessageAnalysis.from_dict(
        {
            "sentiment": "POSITIVE",
            "topics": "wind",
            "sectors": ["renewable energy", " "],
            "urgency": "whenever",
            "role": "",
            "unexpected": "ignored",
        }
    )

    assert result.sentiment == "positive"
    assert result.topics == ["wind"]
    assert result.sectors == ["renewable energy"]
    assert result.urgency is None
    assert result.role is None
    assert result.language == "en"


def test_from_dict_rejects_unknown_sentiment():
    assert MessageAnalysis.from_dict({"sentiment": "ecstatic"}).sentiment == "neutral"
    assert MessageAnalysis.from_dict(None) == MessageAnalysis()


def test_extract_analysis_handles_fenced_json():
    raw = '```json\n{"sentiment": "negative", "pain_points": ["cost"], "urgency": "Low"}\n```'

    result = analysis._extract_analysis(raw)

    assert result.sentiment == "negative"
    assert result.pain_points == ["cost"]
    assert result.urgency == "low"
    assert analysis._extract_analysis("not json") is None
    assert analysis._extract_analysis("[1, 2]") is None


@pytest.mark.asyncio
async def test_analyze_without_client_uses_keywords(monkeypatch):
    monkeypatch.setattr(analysis, "_get_client", lambda: None)

    result = await analysis.analyze("Looking for wastewater filtration partners")

    assert result.sectors == ["water treatment"]
    assert result.business_needs == ["partnerships"]


@pytest.mark.asyncio
async def test_analyze_falls_back_when_llm_fails(monkeypatch):
    class FailingResponses:
        def create(self, **kwargs):
            raise RuntimeError("llm offline")

    class FailingClient:
        responses = FailingResponses()

    monkeypatch.setattr(analysis, "_get_client", lambda: FailingClient())

    result = await analysis.analyze("Any hydrogen fuel cell vendors?")

    assert result.technologies == ["hydrogen"]
    assert result.business_needs == ["suppliers"]


@pytest.mark.asyncio
async def test_analyze_uses_llm_json(monkeypatch):
    calls = []

    class Response:
        output_text = '{"sentiment": "positive", "sectors": ["agriculture"], "role": "Founder"}'

    class Responses:
        def create(self, **kwargs):
            calls.append(kwargs)
            return Response()

    class Client:
        responses = Responses()

    monkeypatch.setattr(analysis, "_get_client", lambda: Client())

    result = await analysis.analyze("We run a farm")

    assert calls and calls[0]["model"] == analysis.ANALYSIS_MODEL
    assert result.sectors == ["agriculture"]
    assert result.role == "Founder"
