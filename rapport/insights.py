"""AI assistant: prompt builders and output normalization over a unified LLM client.

Architecture
------------
The assistant is an external collaborator.  Every operation builds a plain-text
dossier from stored contact data, sends it with a task-specific system prompt,
and normalizes the JSON that comes back:

- **Contact insights**: ``summary``, ``key_points``, ``relationship_strength``,
  ``risk_factors``, ``opportunities``.
- **Recommendations**: ``next_actions`` (action / priority / reason /
  suggested_date), ``conversation_starters``, ``gift_ideas``,
  ``warning_signals``.
- **Interaction summary**: a short narrative of the interaction log.
- **Daily dashboard**: top priorities across the whole portfolio.  When the
  LLM fails the dashboard is built deterministically from the red contacts.
- **Portfolio analytics**: trends, strengths, weaknesses and strategy.
- **Card hint**: one short line per contact; green contacts get a fixed hint
  without calling the LLM.

Payloads are opaque to the store: nothing here feeds back into scoring.
"""
from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime
from typing import Any

from rapport.models import Contact
from rapport.utils import json_list

log = logging.getLogger(__name__)


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


DEFAULT_MODELS = {
    "anthropic": "claude-haiku-4-5-20251001",
    "openai": "gpt-4o-mini",
    "openai_compatible": "gpt-4o-mini",
}

GREEN_HINT = "Relationship on track"
HINT_MAX_CHARS = 80
VALID_PRIORITIES = ("high", "medium", "low")
VALID_URGENCIES = ("critical", "high", "medium")


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        try:
            self._init_client()
        except LLMCallError:
            raise
        except Exception as exc:
            # e.g. the OpenAI SDK refuses to build a client without a key
            raise LLMCallError(f"LLM client unavailable: {exc}", retryable=False) from exc

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or DEFAULT_MODELS["anthropic"]
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or DEFAULT_MODELS[self.provider]
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise LLMCallError(f"Unknown LLM provider: {self.provider!r}", retryable=False)

    async def call(self, system: str, user: str, max_tokens: int = 2048) -> dict[str, Any]:
        """Send system+user message to the LLM, return parsed JSON."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = response.content[0].text.strip()
                m = re.search(r'```(?:json)?\s*(\{.*\})\s*```', text, re.DOTALL)
                if m:
                    text = m.group(1)
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                text = response.choices[0].message.content or "{}"
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMCallError(
                f"LLM returned invalid JSON: {text[:200]}", retryable=False,
            ) from exc
        if not isinstance(parsed, dict):
            raise LLMCallError("LLM returned JSON that is not an object", retryable=False)
        return parsed


def model_info() -> dict[str, str]:
    """Configured provider and model, read from the environment without connecting."""
    provider = os.environ.get("LLM_PROVIDER", "anthropic")
    return {
        "provider": provider,
        "model": os.environ.get("LLM_MODEL") or DEFAULT_MODELS.get(provider, ""),
    }


# ---------------------------------------------------------------------------
# System prompts
# ---------------------------------------------------------------------------

_ASSISTANT_ROLE = (
    "You are a personal relationship-management assistant. You help the user keep "
    "in touch with the people who matter to them. Be concise and practical."
)

INSIGHTS_PROMPT = f"""\
{_ASSISTANT_ROLE}

Analyse the contact dossier below and describe the state of the relationship.

Respond with ONLY valid JSON:
{{
  "summary": "<2-3 sentences about the relationship>",
  "key_points": ["<fact worth remembering>", "..."],
  "relationship_strength": "<strong|stable|weakening|at_risk>",
  "risk_factors": ["<what could damage the relationship>", "..."],
  "opportunities": ["<how the relationship could grow>", "..."]
}}
"""

RECOMMENDATIONS_PROMPT = f"""\
{_ASSISTANT_ROLE}

Based on the contact dossier below, recommend concrete next steps.
Priorities are high, medium or low. Suggested dates use YYYY-MM-DD.

Respond with ONLY valid JSON:
{{
  "next_actions": [
    {{"action": "<what to do>", "priority": "<high|medium|low>",
      "reason": "<why>", "suggested_date": "<YYYY-MM-DD or empty>"}}
  ],
  "conversation_starters": ["<opener>", "..."],
  "gift_ideas": ["<idea that fits their preferences>", "..."],
  "warning_signals": ["<sign the relationship is cooling>", "..."]
}}
"""

SUMMARY_PROMPT = f"""\
{_ASSISTANT_ROLE}

Summarize the interaction history in the dossier below in 3-5 sentences:
how often you talk, through which channels, and what the recent themes were.

Respond with ONLY valid JSON:
{{"summary": "<text>"}}
"""

DASHBOARD_PROMPT = f"""\
{_ASSISTANT_ROLE}
It is currently {{time_of_day}}.

From the portfolio overview below, pick at most five people to contact today.
Urgency is critical, high or medium.

Respond with ONLY valid JSON:
{{{{
  "greeting": "<short greeting>",
  "top_priorities": [
    {{{{"contact_name": "<name>", "action": "<what to do>",
       "reason": "<why today>", "urgency": "<critical|high|medium>"}}}}
  ],
  "daily_tip": "<one practical tip>",
  "network_health": {{{{"status": "<label>", "score": <0-100>, "trend": "<improving|stable|declining>"}}}}
}}}}
"""

ANALYTICS_PROMPT = """\
You are a CRM analyst and networking expert. Analyse the contact portfolio
below and give strategic advice.

Respond with ONLY valid JSON:
{
  "summary": "<3-4 sentences>",
  "trends": ["<trend>", "..."],
  "strength_areas": ["<strength>", "..."],
  "weakness_areas": ["<weakness>", "..."],
  "strategic_recommendations": ["<recommendation>", "..."]
}
"""

HINT_PROMPT = """\
You are a CRM assistant. Give ONE short hint (at most 50 characters) about what
to do next with this contact.

Respond with ONLY valid JSON:
{"hint": "<text>"}
"""


# ---------------------------------------------------------------------------
# Dossier builders
# ---------------------------------------------------------------------------

# (label, attribute_name)
_CONTACT_FIELDS: list[tuple[str, str]] = [
    ("COMPANY", "company"),
    ("ROLE", "company_role"),
    ("VALUE CATEGORY", "value_category"),
    ("IMPORTANCE", "importance_level"),
    ("ATTENTION LEVEL", "attention_level"),
    ("HEAT STATUS", "heat_status"),
    ("HEAT INDEX", "heat_index"),
    ("LAST CONTACT", "last_contact_date"),
    ("DESIRED FREQUENCY (days)", "desired_frequency_days"),
    ("HOBBIES", "hobbies"),
    ("PREFERENCES", "preferences"),
    ("GIFT PREFERENCES", "gift_preferences"),
    ("FAMILY", "family_notes"),
]


def build_contact_dossier(contact: Contact, include_interactions: bool = True, limit: int = 20) -> str:
    sections: list[str] = [f"CONTACT: {contact.full_name}"]
    for label, attr in _CONTACT_FIELDS:
        val = getattr(contact, attr, None)
        if val not in (None, ""):
            sections.append(f"{label}: {val}")
    tags = json_list(contact.tags_json)
    if tags:
        sections.append(f"TAGS: {', '.join(tags)}")
    roles = json_list(contact.role_tags_json)
    if roles:
        sections.append(f"ROLES: {', '.join(roles)}")

    if include_interactions:
        interactions = list(contact.interactions)[:limit]
        sections.append(f"\n--- INTERACTIONS ({len(interactions)} most recent) ---")
        if not interactions:
            sections.append("None recorded.")
        for i in interactions:
            marker = " [meaningful]" if i.is_meaningful else ""
            line = f"{i.occurred_on.isoformat()} {i.type} via {i.channel}{marker}"
            if i.note:
                line += f": {i.note}"
            sections.append(line)
    return "\n".join(sections)


def build_portfolio_overview(summaries: list[dict]) -> str:
    """Aggregate counts plus the most overdue contacts, for portfolio-level prompts."""
    by_status = {s: 0 for s in ("red", "yellow", "green")}
    by_importance: dict[str, int] = {}
    by_category: dict[str, int] = {}
    for s in summaries:
        by_status[s["heat_status"]] = by_status.get(s["heat_status"], 0) + 1
        by_importance[s["importance_level"]] = by_importance.get(s["importance_level"], 0) + 1
        by_category[s["value_category"]] = by_category.get(s["value_category"], 0) + 1
    avg = average_heat(summaries)
    lines = [
        f"TOTAL CONTACTS: {len(summaries)}",
        f"RED (overdue): {by_status['red']}",
        f"YELLOW (needs attention): {by_status['yellow']}",
        f"GREEN (fine): {by_status['green']}",
        f"AVERAGE HEAT INDEX: {avg:.2f}",
        "IMPORTANCE: " + ", ".join(f"{k}={v}" for k, v in sorted(by_importance.items())),
        "VALUE CATEGORIES: " + ", ".join(f"{k}={v}" for k, v in sorted(by_category.items())),
        "\n--- MOST OVERDUE ---",
    ]
    overdue = sorted(
        (s for s in summaries if s["heat_status"] != "green"),
        key=lambda s: (s["importance_level"], -s["days_overdue"]),
    )[:15]
    for s in overdue:
        company = f" ({s['company']})" if s.get("company") else ""
        lines.append(
            f"{s['full_name']}{company}: {s['heat_status']}, importance {s['importance_level']}, "
            f"{s['days_overdue']} days overdue"
        )
    return "\n".join(lines)


def average_heat(summaries: list[dict]) -> float:
    if not summaries:
        return 0.0
    return sum(s["heat_index"] for s in summaries) / len(summaries)


def time_of_day(now: datetime | None = None) -> str:
    hour = (now or datetime.now()).hour
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 22:
        return "evening"
    return "night"


# ---------------------------------------------------------------------------
# Output normalization
# ---------------------------------------------------------------------------


def _str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    return []


def _choice(value: Any, allowed: tuple[str, ...], default: str) -> str:
    v = str(value or "").strip().lower()
    if v not in allowed:
        log.warning("Unexpected value %r, defaulting to %s", value, default)
        return default
    return v


def _normalize_actions(value: Any) -> list[dict[str, str]]:
    actions: list[dict[str, str]] = []
    for item in value if isinstance(value, list) else []:
        if not isinstance(item, dict) or not item.get("action"):
            continue
        actions.append({
            "action": str(item["action"]).strip(),
            "priority": _choice(item.get("priority"), VALID_PRIORITIES, "medium"),
            "reason": str(item.get("reason") or "").strip(),
            "suggested_date": str(item.get("suggested_date") or "").strip(),
        })
    return actions


def _health_label(avg: float) -> str:
    if avg >= 0.7:
        return "Good"
    if avg >= 0.4:
        return "Needs attention"
    return "Critical"


# ---------------------------------------------------------------------------
# Per-contact operations
# ---------------------------------------------------------------------------


async def generate_contact_insights(contact: Contact, client: LLMClient) -> dict[str, Any]:
    raw = await client.call(INSIGHTS_PROMPT, build_contact_dossier(contact))
    return {
        "summary": str(raw.get("summary") or "").strip(),
        "key_points": _str_list(raw.get("key_points")),
        "relationship_strength": str(raw.get("relationship_strength") or "unknown").strip(),
        "risk_factors": _str_list(raw.get("risk_factors")),
        "opportunities": _str_list(raw.get("opportunities")),
    }


async def generate_recommendations(contact: Contact, client: LLMClient) -> dict[str, Any]:
    raw = await client.call(RECOMMENDATIONS_PROMPT, build_contact_dossier(contact))
    return {
        "next_actions": _normalize_actions(raw.get("next_actions")),
        "conversation_starters": _str_list(raw.get("conversation_starters")),
        "gift_ideas": _str_list(raw.get("gift_ideas")),
        "warning_signals": _str_list(raw.get("warning_signals")),
    }


async def summarize_interactions(contact: Contact, client: LLMClient) -> dict[str, Any]:
    if not contact.interactions:
        return {"summary": "No interactions recorded yet."}
    raw = await client.call(SUMMARY_PROMPT, build_contact_dossier(contact), max_tokens=1024)
    return {"summary": str(raw.get("summary") or "").strip()}


async def generate_contact_hint(summary: dict, client: LLMClient) -> tuple[str, bool]:
    """Return ``(hint, from_llm)``; never raises on LLM failure."""
    if summary["heat_status"] == "green":
        return GREEN_HINT, False
    user = (
        f"Contact: {summary['full_name']}, status: {summary['heat_status']}, "
        f"days overdue: {summary['days_overdue']}, importance: {summary['importance_level']}."
    )
    try:
        raw = await client.call(HINT_PROMPT, user, max_tokens=100)
        hint = str(raw.get("hint") or "").strip()
        if hint:
            return hint[:HINT_MAX_CHARS], True
    except LLMCallError as exc:
        log.warning("Hint generation failed for %s: %s", summary["full_name"], exc)
    return fallback_hint(summary), False


def fallback_hint(summary: dict) -> str:
    if summary["heat_status"] == "green":
        return GREEN_HINT
    return "Reach out urgently" if summary["heat_status"] == "red" else "Keep in touch"


# ---------------------------------------------------------------------------
# Portfolio operations
# ---------------------------------------------------------------------------


def empty_dashboard() -> dict[str, Any]:
    return {
        "greeting": "Welcome to Rapport!",
        "top_priorities": [],
        "daily_tip": "Add contacts to get personal recommendations.",
        "network_health": {"status": "No data", "score": 0, "trend": "stable"},
        "source": "empty",
    }


def fallback_dashboard(summaries: list[dict], now: datetime | None = None) -> dict[str, Any]:
    """Deterministic dashboard built from the red contacts."""
    avg = average_heat(summaries)
    red = sorted(
        (s for s in summaries if s["heat_status"] == "red"),
        key=lambda s: -s["days_overdue"],
    )
    return {
        "greeting": f"Good {time_of_day(now)}!",
        "top_priorities": [
            {"contact_name": s["full_name"], "action": "Get in touch",
             "reason": f"Overdue by {s['days_overdue']} days", "urgency": "critical"}
            for s in red[:3]
        ],
        "daily_tip": "Start with the contacts in the red zone.",
        "network_health": {"status": _health_label(avg), "score": round(avg * 100), "trend": "stable"},
        "source": "fallback",
    }


async def generate_daily_dashboard(summaries: list[dict], client: LLMClient,
                                   now: datetime | None = None) -> dict[str, Any]:
    if not summaries:
        return empty_dashboard()
    avg = average_heat(summaries)
    system = DASHBOARD_PROMPT.format(time_of_day=time_of_day(now))
    try:
        raw = await client.call(system, build_portfolio_overview(summaries), max_tokens=1500)
    except LLMCallError as exc:
        log.warning("Dashboard generation failed, using fallback: %s", exc)
        return fallback_dashboard(summaries, now)

    priorities = []
    for item in raw.get("top_priorities") or []:
        if not isinstance(item, dict) or not item.get("contact_name"):
            continue
        priorities.append({
            "contact_name": str(item["contact_name"]).strip(),
            "action": str(item.get("action") or "").strip(),
            "reason": str(item.get("reason") or "").strip(),
            "urgency": _choice(item.get("urgency"), VALID_URGENCIES, "medium"),
        })
    health = raw.get("network_health")
    if not isinstance(health, dict):
        health = {"status": _health_label(avg), "score": round(avg * 100), "trend": "stable"}
    return {
        "greeting": str(raw.get("greeting") or "Hello!").strip(),
        "top_priorities": priorities,
        "daily_tip": str(raw.get("daily_tip") or "Keep regular contact with the people who matter.").strip(),
        "network_health": health,
        "source": "llm",
    }


def empty_analytics() -> dict[str, Any]:
    return {
        "summary": "No data to analyse",
        "trends": [],
        "strength_areas": [],
        "weakness_areas": [],
        "strategic_recommendations": ["Add contacts to get analytics"],
    }


async def generate_portfolio_analytics(summaries: list[dict], client: LLMClient) -> dict[str, Any]:
    """Portfolio-wide analysis. LLM failures propagate as ``LLMCallError``."""
    if not summaries:
        return empty_analytics()
    raw = await client.call(ANALYTICS_PROMPT, build_portfolio_overview(summaries))
    return {
        "summary": str(raw.get("summary") or "Analysis unavailable").strip(),
        "trends": _str_list(raw.get("trends")),
        "strength_areas": _str_list(raw.get("strength_areas")),
        "weakness_areas": _str_list(raw.get("weakness_areas")),
        "strategic_recommendations": _str_list(raw.get("strategic_recommendations")),
    }
