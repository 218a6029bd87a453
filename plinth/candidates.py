"""Template-driven opportunity candidates built from selected citations.

Candidates are rule-based, not model-generated.  Every narrative field is
assembled from the evidence counts and the project context so each claim can
be traced back to the citations that justify it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from pydantic import BaseModel

from plinth.artifacts import OpportunityJtbd, Recommendation
from plinth.citations import Citation, EvidenceItem
from plinth.gate import MIN_CITATIONS, MIN_SOURCE_TYPES, distinct_source_types
from plinth.selector import select_best_citations

log = logging.getLogger(__name__)

# Extra richness bar for the adoption wedge
CANDIDATE_B_MIN_CITATIONS = 4


class ProjectContext(BaseModel):
    market: str = ""
    target_customer: str = ""
    your_product: str | None = None
    business_goal: str | None = None
    geography: str | None = None


@dataclass(frozen=True)
class OpportunityCandidate:
    title: str
    jtbd: OpportunityJtbd
    for_whom: str
    why_competitors_miss_it: str
    recommendation: Recommendation
    citations: list[Citation] = field(default_factory=list)
    assumptions: list[str] = field(default_factory=list)


def _differentiation_wedge(
    citations: list[Citation], types: list[str], ctx: ProjectContext,
) -> OpportunityCandidate:
    n, t = len(citations), len(types)
    types_text = ", ".join(types)
    market = ctx.market or "this market"
    customer = ctx.target_customer or "target customers"
    constraints = f"Must serve the business goal: {ctx.business_goal}" if ctx.business_goal else None
    assumptions = [
        f"The {n} cited sources are representative of what {customer} experience",
        "Observed gaps reflect unmet needs rather than deliberate competitor trade-offs",
    ]
    if ctx.geography:
        assumptions.append(f"Evidence applies to buyers in {ctx.geography}")
    return OpportunityCandidate(
        title=f"Differentiation wedge in {market}: close gaps documented across {types_text} evidence",
        jtbd=OpportunityJtbd(
            job=f"Choose a {market} product that covers the gaps current competitors leave open",
            context=(
                f"{n} citations across {t} evidence types ({types_text}) "
                "show where current offerings fall short"
            ),
            constraints=constraints,
        ),
        for_whom=customer,
        why_competitors_miss_it=(
            f"The gap only becomes visible when {t} source types ({types_text}) "
            "are read together; each signal alone looks minor"
        ),
        recommendation=Recommendation(
            what_to_do=(
                f"Position {ctx.your_product or 'the product'} for {customer} around the "
                f"gaps documented in {n} cited sources"
            ),
            why_now=f"{n} citations across {t} evidence types show the gap is observable today",
            expected_impact=f"Sharper differentiation against incumbents in {market}",
            risks=[
                f"Evidence spans only {t} source types; the gap may be narrower than it appears",
                "Competitors may close the gap before a response ships",
            ],
        ),
        citations=list(citations),
        assumptions=assumptions,
    )


def _adoption_wedge(
    citations: list[Citation], types: list[str], ctx: ProjectContext,
) -> OpportunityCandidate:
    n, t = len(citations), len(types)
    types_text = ", ".join(types)
    market = ctx.market or "this market"
    customer = ctx.target_customer or "target customers"
    return OpportunityCandidate(
        title=f"Adoption wedge for {customer}: shorten time to value in {market}",
        jtbd=OpportunityJtbd(
            job=f"Get first value from a {market} product without a long rollout",
            context=(
                f"{n} citations across {t} evidence types ({types_text}) "
                "describe onboarding and setup effort"
            ),
            constraints=f"Must work for buyers in {ctx.geography}" if ctx.geography else None,
        ),
        for_whom=customer,
        why_competitors_miss_it=(
            f"Competitors are documented in {t} source types ({types_text}) "
            "competing on features, not on how quickly buyers reach value"
        ),
        recommendation=Recommendation(
            what_to_do=(
                f"Design a guided first-week path for {customer} that removes the setup "
                f"steps raised in {n} cited sources"
            ),
            why_now=f"{n} citations show adoption friction is a current, observable complaint",
            expected_impact="Faster activation and fewer stalled trials",
            risks=[
                "Faster onboarding may not outweigh missing capabilities",
                f"Only {n} citations support the friction claim",
            ],
        ),
        citations=list(citations),
        assumptions=[
            f"Setup effort described across {n} sources is a buying criterion for {customer}",
            "A shorter path to value can be delivered without new integrations",
        ],
    )


def generate_candidate_opportunities(
    evidence_items: list[EvidenceItem], context: ProjectContext | None = None,
) -> list[OpportunityCandidate]:
    """Produce zero, one or two candidates from an evidence pool."""
    ctx = context or ProjectContext()
    citations = select_best_citations(evidence_items)
    types = distinct_source_types(citations)
    if len(citations) < MIN_CITATIONS or len(types) < MIN_SOURCE_TYPES:
        log.info("No candidates: %d evidence items yielded %d citations",
                 len(evidence_items), len(citations))
        return []

    candidates = [_differentiation_wedge(citations, types, ctx)]
    if len(citations) >= CANDIDATE_B_MIN_CITATIONS:
        candidates.append(_adoption_wedge(citations, types, ctx))
    return candidates
