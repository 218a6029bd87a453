"""Evidence gate: decides whether a set of citations may support a claim at all.

The gate fails closed.  A claim whose citations do not clear every rule is
dropped, and every violated rule is reported so callers can show all
deficiencies at once.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from plinth.citations import MIN_EXCERPT_LENGTH, Citation

MIN_CITATIONS = 3
MIN_SOURCE_TYPES = 2

ConfidenceTier = Literal["exploratory", "directional", "investment_ready"]


@dataclass(frozen=True)
class GateResult:
    ok: bool
    reasons: list[str] = field(default_factory=list)


def distinct_source_types(citations: list[Citation]) -> list[str]:
    """Distinct source types in first-seen order."""
    seen: list[str] = []
    for c in citations:
        if c.source_type not in seen:
            seen.append(c.source_type)
    return seen


def has_minimum_evidence_for_opportunity(citations: list[Citation]) -> GateResult:
    reasons: list[str] = []

    if len(citations) < MIN_CITATIONS:
        reasons.append(
            f"Insufficient citations: {len(citations)} found, at least {MIN_CITATIONS} required"
        )

    types = distinct_source_types(citations)
    if len(types) < MIN_SOURCE_TYPES:
        reasons.append(
            f"Insufficient evidence diversity: {len(types)} source type(s) found, "
            f"at least {MIN_SOURCE_TYPES} required"
        )

    bad_urls = [c.evidence_id for c in citations if not (c.url or "").strip()]
    if bad_urls:
        reasons.append(f"Citations missing a URL: {', '.join(bad_urls)}")

    short = [c.evidence_id for c in citations if len(c.excerpt or "") < MIN_EXCERPT_LENGTH]
    if short:
        reasons.append(
            f"Citations with excerpts shorter than {MIN_EXCERPT_LENGTH} characters: {', '.join(short)}"
        )

    return GateResult(ok=not reasons, reasons=reasons)


def derive_confidence_from_evidence(citations: list[Citation]) -> ConfidenceTier:
    """Coarse confidence tier from citation volume and diversity.

    Callers must gate first: this does not re-check the gate, so ungated
    evidence can receive an optimistic label.
    """
    count = len(citations)
    types = len(distinct_source_types(citations))
    if count >= 10 and types >= 4:
        return "investment_ready"
    if count >= 6 and types >= 3:
        return "directional"
    return "exploratory"
