"""Tests for the AI assistant: dossier builders, output normalization and fallbacks.

The LLM is always mocked; ``client.call`` is an ``AsyncMock``.
"""
from __future__ import annotations

from datetime import date, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from rapport import insights
from rapport.insights import LLMCallError, LLMClient
from rapport.models import Contact, Interaction


@pytest.fixture()
def contact() -> Contact:
    c = Contact(
        full_name="Grace Hopper", company="Navy", company_role="Rear Admiral",
        tags_json='["vip", "compilers"]', role_tags_json="[]",
        hobbies="Sailing", value_category="AB", importance_level="A",
        heat_status="yellow", heat_index=0.55, attention_level=6,
        desired_frequency_days=30, last_contact_date=date(2026, 3, 1),
    )
    c.interactions = [
        Interaction(occurred_on=date(2026, 3, 1), type="meeting", channel="offline",
                    note="Talked about COBOL", is_meaningful=True),
        Interaction(occurred_on=date(2026, 2, 1), type="message", channel="email",
                    note="", is_meaningful=False),
    ]
    return c


def _summary(name, status, heat, overdue=0, importance="B", category="BB"):
    return {
        "full_name": name, "company": "", "heat_status": status, "heat_index": heat,
        "importance_level": importance, "value_category": category,
        "last_contact_date": None, "desired_frequency_days": 30, "days_overdue": overdue,
    }


def _client(payload=None, error=None) -> MagicMock:
    client = MagicMock(spec=LLMClient)
    client.model = "test-model"
    client.call = AsyncMock(return_value=payload or {}, side_effect=error)
    return client


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


class TestContactDossier:
    def test_header_and_fields(self, contact):
        dossier = insights.build_contact_dossier(contact)
        assert dossier.startswith("CONTACT: Grace Hopper")
        assert "COMPANY: Navy" in dossier
        assert "TAGS: vip, compilers" in dossier
        assert "ROLES" not in dossier

    def test_interactions_section(self, contact):
        dossier = insights.build_contact_dossier(contact)
        assert "--- INTERACTIONS (2 most recent) ---" in dossier
        assert "2026-03-01 meeting via offline [meaningful]: Talked about COBOL" in dossier
        assert "2026-02-01 message via email" in dossier

    def test_without_interactions(self, contact):
        dossier = insights.build_contact_dossier(contact, include_interactions=False)
        assert "INTERACTIONS" not in dossier

    def test_limit(self, contact):
        dossier = insights.build_contact_dossier(contact, limit=1)
        assert "(1 most recent)" in dossier
        assert "2026-02-01" not in dossier


class TestPortfolioOverview:
    def test_counts_and_overdue(self):
        summaries = [
            _summary("Red A", "red", 0.1, overdue=40, importance="A"),
            _summary("Yellow C", "yellow", 0.5, overdue=5, importance="C"),
            _summary("Green B", "green", 0.9),
        ]
        text = insights.build_portfolio_overview(summaries)
        assert "TOTAL CONTACTS: 3" in text
        assert "RED (overdue): 1" in text
        assert "AVERAGE HEAT INDEX: 0.50" in text
        assert "Red A: red, importance A, 40 days overdue" in text
        assert "Green B" not in text.split("--- MOST OVERDUE ---")[1]


class TestTimeOfDay:
    @pytest.mark.parametrize("hour,label", [
        (6, "morning"), (12, "afternoon"), (18, "evening"), (23, "night"), (3, "night"),
    ])
    def test_buckets(self, hour, label):
        assert insights.time_of_day(datetime(2026, 1, 1, hour)) == label


class TestModelInfo:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("LLM_PROVIDER", raising=False)
        monkeypatch.delenv("LLM_MODEL", raising=False)
        assert insights.model_info() == {"provider": "anthropic", "model": insights.DEFAULT_MODELS["anthropic"]}

    def test_override(self, monkeypatch):
        monkeypatch.setenv("LLM_PROVIDER", "openai")
        monkeypatch.setenv("LLM_MODEL", "gpt-test")
        assert insights.model_info() == {"provider": "openai", "model": "gpt-test"}


class TestLLMClient:
    def test_unknown_provider(self):
        with pytest.raises(LLMCallError) as exc_info:
            LLMClient(provider="carrier-pigeon")
        assert exc_info.value.retryable is False
        assert "carrier-pigeon" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_non_object_json_rejected(self):
        client = LLMClient(provider="anthropic", api_key="test")
        response = MagicMock()
        response.content = [MagicMock(text="[1, 2, 3]")]
        with patch.object(client._client.messages, "create", new=AsyncMock(return_value=response)):
            with pytest.raises(LLMCallError) as exc_info:
                await client.call("system", "user")
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_fenced_json_parsed(self):
        client = LLMClient(provider="anthropic", api_key="test")
        response = MagicMock()
        response.content = [MagicMock(text='```json\n{"hint": "Call"}\n```')]
        with patch.object(client._client.messages, "create", new=AsyncMock(return_value=response)):
            assert await client.call("system", "user") == {"hint": "Call"}

    @pytest.mark.asyncio
    async def test_api_failure_is_retryable(self):
        client = LLMClient(provider="anthropic", api_key="test")
        with patch.object(client._client.messages, "create", new=AsyncMock(side_effect=RuntimeError("503"))):
            with pytest.raises(LLMCallError) as exc_info:
                await client.call("system", "user")
        assert exc_info.value.retryable is True


# ---------------------------------------------------------------------------
# Per-contact operations
# ---------------------------------------------------------------------------


class TestContactInsights:
    @pytest.mark.asyncio
    async def test_normalizes_output(self, contact):
        client = _client({
            "summary": " Close collaborator. ", "key_points": "Invented the compiler",
            "risk_factors": None, "opportunities": ["Keynote", ""],
        })
        result = await insights.generate_contact_insights(contact, client)
        assert result == {
            "summary": "Close collaborator.",
            "key_points": ["Invented the compiler"],
            "relationship_strength": "unknown",
            "risk_factors": [],
            "opportunities": ["Keynote"],
        }
        system, user = client.call.await_args.args[:2]
        assert system == insights.INSIGHTS_PROMPT
        assert user.startswith("CONTACT: Grace Hopper")

    @pytest.mark.asyncio
    async def test_recommendations_priority_defaults(self, contact):
        client = _client({"next_actions": [
            {"action": "Send article", "priority": "URGENT"},
            {"priority": "high"},
            "not a dict",
        ]})
        result = await insights.generate_recommendations(contact, client)
        assert result["next_actions"] == [
            {"action": "Send article", "priority": "medium", "reason": "", "suggested_date": ""},
        ]
        assert result["gift_ideas"] == []

    @pytest.mark.asyncio
    async def test_summary_without_interactions_skips_llm(self, contact):
        contact.interactions = []
        client = _client()
        result = await insights.summarize_interactions(contact, client)
        assert result == {"summary": "No interactions recorded yet."}
        client.call.assert_not_called()


class TestContactHint:
    @pytest.mark.asyncio
    async def test_green_is_fixed(self):
        client = _client()
        hint, from_llm = await insights.generate_contact_hint(_summary("G", "green", 0.9), client)
        assert hint == insights.GREEN_HINT
        assert from_llm is False
        client.call.assert_not_called()

    @pytest.mark.asyncio
    async def test_truncated(self):
        client = _client({"hint": "x" * 200})
        hint, from_llm = await insights.generate_contact_hint(_summary("Y", "yellow", 0.5), client)
        assert len(hint) == insights.HINT_MAX_CHARS
        assert from_llm is True

    @pytest.mark.asyncio
    async def test_fallbacks(self):
        client = _client(error=LLMCallError("down"))
        red, _ = await insights.generate_contact_hint(_summary("R", "red", 0.1), client)
        yellow, _ = await insights.generate_contact_hint(_summary("Y", "yellow", 0.5), client)
        assert red == "Reach out urgently"
        assert yellow == "Keep in touch"

    @pytest.mark.asyncio
    async def test_empty_hint_falls_back(self):
        hint, from_llm = await insights.generate_contact_hint(
            _summary("Y", "yellow", 0.5), _client({"hint": "  "}))
        assert hint == "Keep in touch"
        assert from_llm is False


# ---------------------------------------------------------------------------
# Portfolio operations
# ---------------------------------------------------------------------------


class TestDashboard:
    def test_fallback_picks_most_overdue_red(self):
        summaries = [
            _summary("R1", "red", 0.1, overdue=10),
            _summary("R2", "red", 0.2, overdue=50),
            _summary("R3", "red", 0.3, overdue=30),
            _summary("R4", "red", 0.3, overdue=5),
            _summary("G", "green", 0.9),
        ]
        result = insights.fallback_dashboard(summaries, now=datetime(2026, 1, 1, 9))
        assert result["greeting"] == "Good morning!"
        assert [p["contact_name"] for p in result["top_priorities"]] == ["R2", "R3", "R1"]
        assert all(p["urgency"] == "critical" for p in result["top_priorities"])
        assert result["network_health"] == {"status": "Critical", "score": 36, "trend": "stable"}
        assert result["source"] == "fallback"

    @pytest.mark.asyncio
    async def test_empty_portfolio(self):
        client = _client()
        result = await insights.generate_daily_dashboard([], client)
        assert result["source"] == "empty"
        client.call.assert_not_called()

    @pytest.mark.asyncio
    async def test_llm_error_uses_fallback(self):
        client = _client(error=LLMCallError("down", retryable=True))
        result = await insights.generate_daily_dashboard([_summary("R", "red", 0.1, overdue=3)], client)
        assert result["source"] == "fallback"
        assert result["top_priorities"][0]["contact_name"] == "R"

    @pytest.mark.asyncio
    async def test_llm_output_normalized(self):
        client = _client({
            "greeting": "Good evening!",
            "top_priorities": [
                {"contact_name": "Y", "action": "Call", "reason": "Birthday", "urgency": "whenever"},
                {"action": "No name"},
            ],
        })
        result = await insights.generate_daily_dashboard(
            [_summary("Y", "yellow", 0.8)], client, now=datetime(2026, 1, 1, 19))
        assert result["source"] == "llm"
        assert result["top_priorities"] == [
            {"contact_name": "Y", "action": "Call", "reason": "Birthday", "urgency": "medium"},
        ]
        assert result["network_health"]["status"] == "Good"
        system = client.call.await_args.args[0]
        assert "It is currently evening." in system


class TestAnalytics:
    @pytest.mark.asyncio
    async def test_empty(self):
        result = await insights.generate_portfolio_analytics([], _client())
        assert result == insights.empty_analytics()

    @pytest.mark.asyncio
    async def test_error_propagates(self):
        with pytest.raises(LLMCallError):
            await insights.generate_portfolio_analytics(
                [_summary("A", "red", 0.1)], _client(error=LLMCallError("down")))

    @pytest.mark.asyncio
    async def test_normalized(self):
        result = await insights.generate_portfolio_analytics(
            [_summary("A", "red", 0.1)], _client({"trends": "Fewer calls", "summary": ""}))
        assert result["trends"] == ["Fewer calls"]
        assert result["summary"] == "Analysis unavailable"
