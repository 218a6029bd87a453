"""Quality guardrails that discount scores before they are persisted or shown.

Two evidence policies coexist on purpose:

- per opportunity, insufficient evidence blocks the opportunity (the gate in
  :mod:`plinth.gate` fails closed);
- per run, weak evidence only discounts (:func:`check_evidence_quality` fails
  open and feeds :func:`apply_score_ceiling`).
"""
from __future__ import annotations

import logging
import math
import re
import statistics
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Iterable, Literal

from plinth.citations import EvidenceItem, normalize_source_type
from plinth.utils import parse_timestamp, round_half_up

log = logging.getLogger(__name__)

QualityLevel = Literal["high", "medium", "low"]

FRESH_WINDOW_HOURS = 24
MIN_TYPES_PER_COMPETITOR = 2
MIN_SOURCES_PER_COMPETITOR = 3

CEILING_HIGH = 100
CEILING_MEDIUM = 90
CEILING_LOW = 85

CLUSTER_MARGIN = 5

BANNED_VAGUE_VERBS = (
    "optimize", "streamline", "leverage", "enhance", "improve", "better",
    "maximize", "minimize", "elevate", "amplify", "enable", "empower", "facilitate",
)

BANNED_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bguarantee(?:d|s)?\b", re.I),
    re.compile(r"\balways\b", re.I),
    re.compile(r"\bnever fails?\b", re.I),
    re.compile(r"\b100\s?%", re.I),
    re.compile(r"\bno competitors?\b", re.I),
    re.compile(r"\bthe only\b", re.I),
    re.compile(r"\bdefinitely\b", re.I),
    re.compile(r"\bcertainly\b", re.I),
    re.compile(r"\brisk[- ]free\b", re.I),
    re.compile(r"\bproven to\b", re.I),
    *(re.compile(rf"\b{verb}\b", re.I) for verb in BANNED_VAGUE_VERBS),
)
PENALTY_PER_MATCH = 0.1


# ---------------------------------------------------------------------------
# Evidence quality and decay
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EvidenceQualityCheck:
    passes: bool
    confidence: QualityLevel
    decay_factor: float
    reason: str | None = None


def compute_decay_factor(
    timestamps: Iterable[str | datetime | None],
    ttl_hours: float,
    now: datetime | None = None,
) -> float:
    """Freshness multiplier in (0, 1] driven by the oldest evidence timestamp."""
    parsed = [dt for dt in (parse_timestamp(t) for t in timestamps) if dt is not None]
    if not parsed:
        return 0.5
    now = now or datetime.now(UTC)
    age_hours = max(0.0, (now - min(parsed)).total_seconds() / 3600)

    if age_hours <= FRESH_WINDOW_HOURS:
        return 1.0
    if age_hours <= ttl_hours:
        span = max(ttl_hours - FRESH_WINDOW_HOURS, 1e-9)
        return 1.0 - 0.5 * (age_hours - FRESH_WINDOW_HOURS) / span
    excess = age_hours - ttl_hours
    return 0.5 * math.exp(-excess / (2 * ttl_hours))


def check_evidence_quality(
    competitor_evidence: dict[str, list[EvidenceItem]],
    ttl_hours: float,
    now: datetime | None = None,
) -> EvidenceQualityCheck:
    """Run-level evidence check. Never blocks a run; only discounts it.

    *competitor_evidence* must hold every competitor, including those with an
    empty list, since the averages divide by the competitor count.
    """
    if not competitor_evidence:
        return EvidenceQualityCheck(
            passes=False, confidence="low", decay_factor=0.0,
            reason="No competitors found",
        )

    n = len(competitor_evidence)
    avg_types = sum(
        len({normalize_source_type(i.type) for i in items}) for items in competitor_evidence.values()
    ) / n
    avg_sources = sum(len(items) for items in competitor_evidence.values()) / n

    diversity_ok = avg_types >= MIN_TYPES_PER_COMPETITOR
    volume_ok = avg_sources >= MIN_SOURCES_PER_COMPETITOR
    if diversity_ok and volume_ok:
        confidence: QualityLevel = "high"
    elif diversity_ok or volume_ok:
        confidence = "medium"
    else:
        confidence = "low"

    decay = compute_decay_factor(
        (i.retrieved_at for items in competitor_evidence.values() for i in items),
        ttl_hours, now,
    )
    passes = diversity_ok or volume_ok
    reason = None
    if not passes:
        reason = (
            f"Average of {avg_types:.1f} source types and {avg_sources:.1f} sources per "
            f"competitor is below {MIN_TYPES_PER_COMPETITOR} types or {MIN_SOURCES_PER_COMPETITOR} sources"
        )
        log.warning("Evidence quality check failed (continuing with discount): %s", reason)
    return EvidenceQualityCheck(passes=passes, confidence=confidence, decay_factor=decay, reason=reason)


# ---------------------------------------------------------------------------
# Banned patterns
# ---------------------------------------------------------------------------


def detect_banned_patterns(text: str) -> list[str]:
    """Return the matched phrase for every banned-pattern hit, in text order."""
    hits: list[tuple[int, str]] = []
    for pattern in BANNED_PATTERNS:
        hits.extend((m.start(), m.group(0).lower()) for m in pattern.finditer(text or ""))
    return [phrase for _, phrase in sorted(hits)]


def compute_banned_pattern_penalty(text: str) -> float:
    return min(1.0, PENALTY_PER_MATCH * len(detect_banned_patterns(text)))


# ---------------------------------------------------------------------------
# Ceiling and confidence band
# ---------------------------------------------------------------------------


def _score_ceiling(quality: str, decay_factor: float, repair_count: int, penalty: float) -> int:
    if quality == "high" and (decay_factor >= 0.8 or repair_count <= 1) and penalty <= 0.2:
        return CEILING_HIGH
    if quality in ("high", "medium"):
        return CEILING_MEDIUM
    return CEILING_LOW


def apply_score_ceiling(
    raw_score: float,
    *,
    evidence_quality: str,
    decay_factor: float,
    repair_count: int,
    banned_pattern_penalty: float,
) -> int:
    """Cap a raw 0-100 score at the ceiling the run's signals allow.

    Repairs and banned-language penalty only act by lowering the ceiling
    tier, so a score already under the ceiling passes through unchanged.
    Non-increasing in both, never raised by worse quality or decay, and
    always within [0, 100].
    """
    repairs = max(0, repair_count)
    penalty = max(0.0, min(1.0, banned_pattern_penalty))
    ceiling = _score_ceiling(evidence_quality, decay_factor, repairs, penalty)
    return max(0, min(100, round_half_up(min(raw_score, ceiling))))


def compute_confidence_band(
    avg_score: float,
    *,
    evidence_quality: str,
    decay_factor: float,
    repair_count: int,
    banned_pattern_penalty: float,
) -> QualityLevel:
    if (
        evidence_quality == "high"
        and decay_factor >= 0.8
        and repair_count <= 1
        and banned_pattern_penalty <= 0.2
        and avg_score >= 70
    ):
        return "high"
    if (
        evidence_quality in ("high", "medium")
        and (decay_factor >= 0.8 or repair_count <= 1)
        and avg_score >= 50
    ):
        return "medium"
    return "low"


# ---------------------------------------------------------------------------
# Distribution check
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DistributionCheck:
    mean: float
    std_dev: float
    min: float
    max: float
    flags: list[str] = field(default_factory=list)


def check_score_distribution(scores: list[float], ceiling: float = CEILING_HIGH) -> DistributionCheck:
    """Flag degenerate score distributions. Flags are signals, never failures."""
    if not scores:
        return DistributionCheck(mean=0.0, std_dev=0.0, min=0.0, max=0.0, flags=["empty_scores"])

    mean = statistics.fmean(scores)
    std = statistics.pstdev(scores)
    lo, hi = min(scores), max(scores)
    spread = hi - lo
    flags: list[str] = []

    if len(scores) >= 2 and spread == 0:
        flags.append("all_identical")
    if len(scores) >= 2 and lo >= ceiling - CLUSTER_MARGIN:
        flags.append("clustered_at_ceiling")
    if spread > 0 and std < 0.1 * spread:
        flags.append("flat_distribution")
    if std > 0 and any(abs(s - mean) > 3 * std for s in scores):
        flags.append("extreme_outliers")

    return DistributionCheck(mean=mean, std_dev=std, min=lo, max=hi, flags=flags)
