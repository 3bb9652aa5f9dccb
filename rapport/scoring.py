"""Scoring engine: relationship heat, value classes and attention gap.

Architecture
------------
Every contact carries a handful of user-entered inputs (slider values, dates,
frequencies).  All derived fields are computed here, in one place, by pure
functions with no I/O:

- **Heat**: recency decay combined with response quality, relationship
  energy and attention trend into a ``heat_index`` in [0, 1], then bucketed
  into ``green`` / ``yellow`` / ``red``.
- **Contribution**: financial / network / trust sub-scores (0-3 each) summed
  to 0-9 and graded A-D.
- **Potential**: personal / resources / network / synergy / system_role
  sub-scores (0-3 each) summed to 0-15 and graded A-D.
- **Value & importance**: the two class letters form the ``value_category``
  (e.g. ``"AB"``) and are looked up in a fixed table to get the A/B/C
  ``importance_level`` and the recommended attention level.
- **Attention gap**: recommended minus actual attention level, bucketed.

Heat formula
------------
::

    R = clamp(1 - days / (2 * frequency), 0, 1)
    E = (relationship_energy - 1) / 4
    Q = response_quality / 3
    T = {-1: 0.0, 0: 0.5, 1: 1.0}[attention_trend]
    heat_index = round(0.4*R + 0.3*E + 0.2*Q + 0.1*T, 2)

A ``desired_frequency_days`` of zero means "always overdue" and yields the
lowest heat index (0.0).  Out-of-range inputs are clamped; pass
``strict=True`` to get a :class:`ScoreValidationError` instead.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date
from types import MappingProxyType
from typing import Any, Mapping


class ScoreValidationError(ValueError):
    """A scoring input is outside its allowed range (strict mode only)."""

    def __init__(self, field: str, value: Any, low: float, high: float):
        super().__init__(f"{field} must be between {low} and {high}, got {value!r}")
        self.field = field
        self.value = value


# ---------------------------------------------------------------------------
# Constant tables
# ---------------------------------------------------------------------------

SUBSCORE_RANGE = (0, 3)
RESPONSE_QUALITY_RANGE = (0, 3)
RELATIONSHIP_ENERGY_RANGE = (1, 5)
ATTENTION_RANGE = (1, 10)
TREND_RANGE = (-1, 1)

CONTRIBUTION_KEYS = ("financial", "network", "trust")
POTENTIAL_KEYS = ("personal", "resources", "network", "synergy", "system_role")

HEAT_WEIGHTS: Mapping[str, float] = MappingProxyType({
    "recency": 0.4,
    "energy": 0.3,
    "quality": 0.2,
    "trend": 0.1,
})
# Recency reaches zero at this multiple of the desired contact frequency.
RECENCY_HORIZON = 2.0
TREND_VALUES: Mapping[int, float] = MappingProxyType({-1: 0.0, 0: 0.5, 1: 1.0})

# (minimum heat index, status), checked top-down; anything lower is red.
HEAT_STATUS_THRESHOLDS: tuple[tuple[float, str], ...] = ((0.70, "green"), (0.40, "yellow"))
COLDEST_STATUS = "red"
HEAT_STATUSES = ("green", "yellow", "red")

# (minimum total, class), checked top-down; anything lower is D.
CONTRIBUTION_CLASS_THRESHOLDS: tuple[tuple[int, str], ...] = ((7, "A"), (5, "B"), (2, "C"))
POTENTIAL_CLASS_THRESHOLDS: tuple[tuple[int, str], ...] = ((12, "A"), (8, "B"), (4, "C"))
LOWEST_CLASS = "D"
SCORE_CLASSES = ("A", "B", "C", "D")

# (contribution class + potential class) -> importance level.  Total over all 16 pairs.
IMPORTANCE_BY_VALUE_CATEGORY: Mapping[str, str] = MappingProxyType({
    "AA": "A", "AB": "A", "BA": "A",
    "AC": "B", "AD": "B", "BB": "B", "BC": "B", "CA": "B", "CB": "B", "DA": "B",
    "BD": "C", "CC": "C", "CD": "C", "DB": "C", "DC": "C", "DD": "C",
})
IMPORTANCE_LEVELS = ("A", "B", "C")

RECOMMENDED_ATTENTION_BY_IMPORTANCE: Mapping[str, int] = MappingProxyType({"A": 8, "B": 5, "C": 3})

# (minimum gap, status), checked top-down; gap <= 0 is green.
ATTENTION_GAP_THRESHOLDS: tuple[tuple[int, str], ...] = ((3, "red"), (1, "yellow"))

# Aggregate records -> contribution sub-scores.
FINANCIAL_AMOUNT_TIERS: tuple[tuple[float, int], ...] = ((100_000, 3), (10_000, 2))
RECORD_COUNT_TIERS: tuple[tuple[int, int], ...] = ((4, 3), (2, 2), (1, 1))


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HeatResult:
    heat_index: float
    heat_status: str


@dataclass(frozen=True)
class ScoreResult:
    score: int
    score_class: str


@dataclass(frozen=True)
class AttentionGap:
    gap: int
    status: str


@dataclass(frozen=True)
class ContactMetrics:
    """Every derived field of a contact, computed in a single pass."""
    contribution_details: dict[str, int]
    potential_details: dict[str, int]
    contribution_score: int
    contribution_class: str
    potential_score: int
    potential_class: str
    value_category: str
    importance_level: str
    attention_level: int
    recommended_attention_level: int
    attention_gap: int
    attention_gap_status: str
    days_since_last_contact: int
    heat_index: float
    heat_status: str

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Input normalization
# ---------------------------------------------------------------------------


def clamp(value: Any, low: int, high: int, field: str = "value", strict: bool = False) -> int:
    """Clamp *value* into ``[low, high]``; ``None`` counts as *low*.

    In strict mode an out-of-range value raises :class:`ScoreValidationError`.
    """
    if value is None:
        return low
    if strict and not low <= value <= high:
        raise ScoreValidationError(field, value, low, high)
    return int(max(low, min(high, value)))


def _normalize_trend(value: Any, strict: bool = False) -> int:
    if strict and value not in TREND_VALUES:
        raise ScoreValidationError("attention_trend", value, *TREND_RANGE)
    if not value:
        return 0
    return 1 if value > 0 else -1


def clamp_details(details: Mapping[str, Any] | None, keys: tuple[str, ...],
                  strict: bool = False) -> dict[str, int]:
    """Return a full sub-score dict for *keys*, each clamped to [0, 3]."""
    details = details or {}
    return {k: clamp(details.get(k), *SUBSCORE_RANGE, field=k, strict=strict) for k in keys}


# ---------------------------------------------------------------------------
# Heat
# ---------------------------------------------------------------------------


def days_since_last_contact(
    last_contact_date: date | None, desired_frequency_days: int, today: date | None = None,
) -> int:
    """Days since the last contact; never-contacted counts as exactly one period."""
    if last_contact_date is None:
        return desired_frequency_days
    today = today or date.today()
    return (today - last_contact_date).days


def heat_status_for(heat_index: float) -> str:
    for threshold, status in HEAT_STATUS_THRESHOLDS:
        if heat_index >= threshold:
            return status
    return COLDEST_STATUS


def compute_heat(
    days_since_last_contact: float,
    desired_frequency_days: float,
    response_quality: float,
    relationship_energy: float,
    attention_trend: int,
    *,
    strict: bool = False,
) -> HeatResult:
    quality = clamp(response_quality, *RESPONSE_QUALITY_RANGE, field="response_quality", strict=strict)
    energy = clamp(relationship_energy, *RELATIONSHIP_ENERGY_RANGE, field="relationship_energy", strict=strict)
    trend = _normalize_trend(attention_trend, strict=strict)

    if not desired_frequency_days or desired_frequency_days <= 0:
        return HeatResult(0.0, heat_status_for(0.0))

    days = max(0.0, days_since_last_contact or 0)
    recency = 1.0 - days / (RECENCY_HORIZON * desired_frequency_days)
    recency = max(0.0, min(1.0, recency))

    raw = (
        HEAT_WEIGHTS["recency"] * recency
        + HEAT_WEIGHTS["energy"] * (energy - 1) / 4.0
        + HEAT_WEIGHTS["quality"] * quality / 3.0
        + HEAT_WEIGHTS["trend"] * TREND_VALUES[trend]
    )
    heat_index = round(max(0.0, min(1.0, raw)), 2)
    return HeatResult(heat_index, heat_status_for(heat_index))


# ---------------------------------------------------------------------------
# Contribution / potential
# ---------------------------------------------------------------------------


def _class_for(total: int, thresholds: tuple[tuple[int, str], ...]) -> str:
    for minimum, letter in thresholds:
        if total >= minimum:
            return letter
    return LOWEST_CLASS


def compute_contribution_score(financial: Any, network: Any, trust: Any, *, strict: bool = False) -> ScoreResult:
    details = clamp_details(
        {"financial": financial, "network": network, "trust": trust}, CONTRIBUTION_KEYS, strict,
    )
    total = sum(details.values())
    return ScoreResult(total, _class_for(total, CONTRIBUTION_CLASS_THRESHOLDS))


def compute_potential_score(
    personal: Any, resources: Any, network: Any, synergy: Any, system_role: Any, *, strict: bool = False,
) -> ScoreResult:
    details = clamp_details(
        {"personal": personal, "resources": resources, "network": network,
         "synergy": synergy, "system_role": system_role},
        POTENTIAL_KEYS, strict,
    )
    total = sum(details.values())
    return ScoreResult(total, _class_for(total, POTENTIAL_CLASS_THRESHOLDS))


def value_category(contribution_class: str, potential_class: str) -> str:
    return f"{contribution_class}{potential_class}"


def importance_level(contribution_class: str, potential_class: str) -> str:
    return IMPORTANCE_BY_VALUE_CATEGORY[value_category(contribution_class, potential_class)]


def recommended_attention_level(importance: str) -> int:
    return RECOMMENDED_ATTENTION_BY_IMPORTANCE[importance]


def _tier(value: float, tiers: tuple[tuple[float, int], ...], floor: int) -> int:
    for minimum, points in tiers:
        if value >= minimum:
            return points
    return floor


def contribution_subscores_from_totals(totals: Mapping[str, Mapping[str, Any]]) -> dict[str, int]:
    """Map per-criterion aggregates (``total_amount``, ``count``) to 0-3 sub-scores.

    Financial is graded by summed amount (any amount below 10k scores 1);
    network and trust by the number of recorded contributions.
    """
    financial = totals.get("financial") or {}
    amount = financial.get("total_amount") or 0
    if amount > 0:
        financial_points = _tier(amount, FINANCIAL_AMOUNT_TIERS, 1)
    else:
        financial_points = _tier(financial.get("count") or 0, ((1, 1),), 0)
    result = {"financial": financial_points}
    for key in ("network", "trust"):
        count = (totals.get(key) or {}).get("count") or 0
        result[key] = _tier(count, RECORD_COUNT_TIERS, 0)
    return result


# ---------------------------------------------------------------------------
# Attention gap
# ---------------------------------------------------------------------------


def compute_attention_gap(actual: Any, recommended: Any, *, strict: bool = False) -> AttentionGap:
    actual = clamp(actual, *ATTENTION_RANGE, field="attention_level", strict=strict)
    recommended = clamp(recommended, *ATTENTION_RANGE, field="recommended_attention_level", strict=strict)
    gap = recommended - actual
    for minimum, status in ATTENTION_GAP_THRESHOLDS:
        if gap >= minimum:
            return AttentionGap(gap, status)
    return AttentionGap(gap, "green")


# ---------------------------------------------------------------------------
# Whole-contact evaluation
# ---------------------------------------------------------------------------


def evaluate_contact(
    *,
    contribution_details: Mapping[str, Any] | None,
    potential_details: Mapping[str, Any] | None,
    attention_level: Any,
    last_contact_date: date | None,
    desired_frequency_days: int,
    response_quality: Any,
    relationship_energy: Any,
    attention_trend: Any,
    today: date | None = None,
) -> ContactMetrics:
    """Compute every derived field of a contact from its raw inputs."""
    contribution = clamp_details(contribution_details, CONTRIBUTION_KEYS)
    potential = clamp_details(potential_details, POTENTIAL_KEYS)
    c = compute_contribution_score(**contribution)
    p = compute_potential_score(**potential)
    importance = importance_level(c.score_class, p.score_class)
    recommended = recommended_attention_level(importance)
    actual = clamp(attention_level, *ATTENTION_RANGE, field="attention_level")
    gap = compute_attention_gap(actual, recommended)

    days = days_since_last_contact(last_contact_date, desired_frequency_days, today)
    heat = compute_heat(days, desired_frequency_days, response_quality, relationship_energy, attention_trend)

    return ContactMetrics(
        contribution_details=contribution,
        potential_details=potential,
        contribution_score=c.score,
        contribution_class=c.score_class,
        potential_score=p.score,
        potential_class=p.score_class,
        value_category=value_category(c.score_class, p.score_class),
        importance_level=importance,
        attention_level=actual,
        recommended_attention_level=recommended,
        attention_gap=gap.gap,
        attention_gap_status=gap.status,
        days_since_last_contact=max(0, days),
        heat_index=heat.heat_index,
        heat_status=heat.heat_status,
    )
