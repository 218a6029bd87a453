"""Deterministic scoring engine.

Architecture
------------
An opportunity's score is the weighted sum of a fixed set of drivers:

- **Pain Intensity** (0.25)
- **Willingness to Pay Signal** (0.20)
- **Competitive Gap Signal** (0.25)
- **Time to Value** (0.15)
- **Strategic Leverage** (0.15)

Each driver value in ``[0, 1]`` comes from a :class:`DriverScorer`.  The
default :class:`PlaceholderDriverScorer` derives it from citation volume and
source-type diversity only; swap in a different scorer to change how values
are estimated without touching gating or validation.

- ``total``         = ``sum(weight * value) * 100``, halves rounded up
- ``whyThisRanks``  = top three drivers by contribution, ties broken by
  driver order

The module also holds the deterministic helpers that recompute JTBD
opportunity scores and competitor scorecard totals.  Models never supply a
number that is stored as-is.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from plinth.artifacts import CompetitorScore, Criterion, OpportunityJtbd, Recommendation, ScoreDriver, Scores
from plinth.citations import Citation
from plinth.gate import distinct_source_types
from plinth.utils import round_half_up

log = logging.getLogger(__name__)


class UnknownDriverError(KeyError):
    """A driver key outside SCORING_DRIVERS; a programming error, never recovered."""


# ---------------------------------------------------------------------------
# Driver table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DriverDefinition:
    key: str
    label: str
    weight: float


SCORING_DRIVERS: tuple[DriverDefinition, ...] = (
    DriverDefinition("pain_intensity", "Pain Intensity", 0.25),
    DriverDefinition("willingness_to_pay_signal", "Willingness to Pay Signal", 0.20),
    DriverDefinition("competitive_gap_signal", "Competitive Gap Signal", 0.25),
    DriverDefinition("time_to_value", "Time to Value", 0.15),
    DriverDefinition("strategic_leverage", "Strategic Leverage", 0.15),
)
_DRIVERS_BY_KEY = {d.key: d for d in SCORING_DRIVERS}

MAX_WHY_THIS_RANKS = 3


@dataclass(frozen=True)
class ScoringContext:
    citations: list[Citation]
    opportunity_title: str = ""
    jtbd: OpportunityJtbd | None = None
    why_competitors_miss_it: str = ""
    recommendation: Recommendation | None = None

    @property
    def citation_count(self) -> int:
        return len(self.citations)

    @property
    def type_count(self) -> int:
        return len(distinct_source_types(self.citations))


class DriverScorer(Protocol):
    def value(self, driver: DriverDefinition, context: ScoringContext) -> float: ...


class PlaceholderDriverScorer:
    """Volume and diversity bonus over a 0.5 baseline, identical for every driver."""

    def value(self, driver: DriverDefinition, context: ScoringContext) -> float:
        raw = 0.5 + min(context.citation_count / 10, 0.3) + min(context.type_count / 5, 0.2)
        return clamp01(raw)


DEFAULT_SCORER: DriverScorer = PlaceholderDriverScorer()


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def _strength(value: float) -> str:
    if value >= 0.7:
        return "strong"
    if value >= 0.4:
        return "moderate"
    return "limited"


def _rationale(key: str, value: float, n: int, t: int) -> str:
    v = _strength(value)
    if key == "pain_intensity":
        return f"Pain intensity is {v} based on {n} evidence sources across {t} types indicating customer struggles."
    if key == "willingness_to_pay_signal":
        return f"Willingness to pay signals are {v} with {n} sources suggesting pricing sensitivity or purchase intent."
    if key == "competitive_gap_signal":
        return f"Competitive gap is {v} with evidence from {t} source types showing differentiation opportunities."
    if key == "time_to_value":
        return f"Time to value is {v} based on {n} sources indicating implementation complexity or user onboarding signals."
    if key == "strategic_leverage":
        return f"Strategic leverage is {v} with {n} sources across {t} types suggesting market positioning impact."
    return f"Score: {value:.2f} based on {n} citations across {t} evidence types."


# ---------------------------------------------------------------------------
# Opportunity scoring
# ---------------------------------------------------------------------------


def compute_driver_score(
    driver_key: str, context: ScoringContext, scorer: DriverScorer | None = None,
) -> ScoreDriver:
    definition = _DRIVERS_BY_KEY.get(driver_key)
    if definition is None:
        raise UnknownDriverError(f"Unknown scoring driver: {driver_key!r}")
    value = clamp01((scorer or DEFAULT_SCORER).value(definition, context))
    return ScoreDriver(
        key=definition.key,
        label=definition.label,
        weight=definition.weight,
        value=value,
        rationale=_rationale(definition.key, value, context.citation_count, context.type_count),
        citations_used=[c.evidence_id for c in context.citations],
    )


def compute_all_driver_scores(
    context: ScoringContext, scorer: DriverScorer | None = None,
) -> list[ScoreDriver]:
    return [compute_driver_score(d.key, context, scorer) for d in SCORING_DRIVERS]


def compute_total_score(drivers: list[ScoreDriver]) -> int:
    weighted = sum(d.weight * d.value for d in drivers)
    return max(0, min(100, round_half_up(weighted * 100)))


def generate_why_this_ranks(drivers: list[ScoreDriver]) -> list[str]:
    # sorted() is stable, so equal contributions keep driver-table order
    ranked = sorted(drivers, key=lambda d: d.weight * d.value, reverse=True)
    return [
        f"{d.label}: {d.rationale} ({round_half_up(d.weight * d.value * 100)}% contribution)"
        for d in ranked[:MAX_WHY_THIS_RANKS]
    ]


def compute_opportunity_scores(
    context: ScoringContext, scorer: DriverScorer | None = None,
) -> tuple[Scores, list[str]]:
    """Score one opportunity. Same context in, identical result out."""
    drivers = compute_all_driver_scores(context, scorer)
    scores = Scores(total=compute_total_score(drivers), drivers=drivers)
    return scores, generate_why_this_ranks(drivers)


# ---------------------------------------------------------------------------
# JTBD and scorecard helpers
# ---------------------------------------------------------------------------


def compute_jtbd_opportunity_score(importance: float, satisfaction: float) -> int:
    """High importance and low satisfaction score highest (0-100)."""
    raw = round_half_up(importance * 20 + (5 - satisfaction) * 20)
    return max(0, min(100, round_half_up(raw / 2)))


def compute_weighted_competitor_scores(
    criteria: list[Criterion], scores: list[CompetitorScore],
) -> dict[str, float]:
    """Weighted 0-100 total per competitor; weights are normalized to sum to 1."""
    total_weight = sum(c.weight for c in criteria)
    if total_weight <= 0:
        return {}
    weights = {c.id: c.weight / total_weight for c in criteria}

    totals: dict[str, float] = {}
    for s in scores:
        w = weights.get(s.criteria_id)
        if w is None:
            log.warning("Score for %s references unknown criterion %r", s.competitor_name, s.criteria_id)
            continue
        normalized = (s.score - 1) / 4 * 100
        totals[s.competitor_name] = totals.get(s.competitor_name, 0.0) + normalized * w
    return {name: round_half_up(max(0.0, min(100.0, v)), 2) for name, v in totals.items()}
