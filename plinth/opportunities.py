"""Opportunities artifact (v1): gated, scored, fail-closed.

An opportunity is published only when its citations clear the evidence gate.
When nothing clears it, the artifact is still valid: ``opportunities`` is
empty and ``generation_notes`` explains why.
"""
from __future__ import annotations

import dataclasses
import logging
import uuid
from datetime import UTC, datetime
from typing import Callable

from pydantic import ValidationError

from plinth.artifacts import (
    EvidenceStats,
    EvidenceSummary,
    GenerationNotes,
    Job,
    OpportunitiesArtifact,
    OpportunityJtbd,
    OpportunityRefinement,
    OpportunityRefinementItem,
    OpportunityV1,
    Recommendation,
)
from plinth.candidates import OpportunityCandidate, ProjectContext, generate_candidate_opportunities
from plinth.citations import EvidenceItem, evidence_item_to_citation
from plinth.gate import derive_confidence_from_evidence, distinct_source_types, has_minimum_evidence_for_opportunity
from plinth.scoring import DriverScorer, ScoringContext, compute_opportunity_scores

log = logging.getLogger(__name__)


def build_opportunity(
    candidate: OpportunityCandidate, scorer: DriverScorer | None = None,
) -> tuple[OpportunityV1 | None, list[str]]:
    """Gate, score and validate one candidate. Returns (opportunity, drop reasons)."""
    gate = has_minimum_evidence_for_opportunity(candidate.citations)
    if not gate.ok:
        return None, gate.reasons

    scores, why_this_ranks = compute_opportunity_scores(
        ScoringContext(
            citations=candidate.citations,
            opportunity_title=candidate.title,
            jtbd=candidate.jtbd,
            why_competitors_miss_it=candidate.why_competitors_miss_it,
            recommendation=candidate.recommendation,
        ),
        scorer,
    )
    try:
        opp = OpportunityV1(
            id=str(uuid.uuid4()),
            title=candidate.title,
            jtbd=candidate.jtbd,
            for_whom=candidate.for_whom,
            why_competitors_miss_it=candidate.why_competitors_miss_it,
            recommendation=candidate.recommendation,
            citations=candidate.citations,
            evidence_summary=EvidenceSummary(
                total_citations=len(candidate.citations),
                evidence_types_present=distinct_source_types(candidate.citations),
            ),
            scores=scores,
            why_this_ranks=why_this_ranks,
            assumptions=candidate.assumptions,
            confidence=derive_confidence_from_evidence(candidate.citations),
        )
    except ValidationError as exc:
        return None, [f"Schema validation failed: {exc.error_count()} error(s)"]
    return opp, []


def apply_refinements(
    candidates: list[OpportunityCandidate],
    refinement: OpportunityRefinement,
    jobs: list[Job] | None = None,
) -> list[OpportunityCandidate]:
    """Overlay model-written narrative onto candidates.

    Citations, assumptions and audience always stay as selected from the
    evidence pool, and any score the model supplied is ignored.
    """
    by_index: dict[int, OpportunityRefinementItem] = {}
    for item in refinement.opportunities:
        if not 0 <= item.candidate_index < len(candidates):
            log.warning("Ignoring refinement for unknown candidate index %d", item.candidate_index)
            continue
        if item.score is not None:
            log.debug("Discarding model-supplied score %.1f for candidate %d", item.score, item.candidate_index)
        by_index.setdefault(item.candidate_index, item)

    refined: list[OpportunityCandidate] = []
    for idx, candidate in enumerate(candidates):
        item = by_index.get(idx)
        if item is None:
            refined.append(candidate)
            continue
        jtbd = candidate.jtbd
        job = _linked_job(item.job_link, jobs or [])
        if job is not None:
            jtbd = OpportunityJtbd(job=job.job_statement, context=job.context or jtbd.context,
                                   constraints=jtbd.constraints)
        refined.append(dataclasses.replace(
            candidate,
            title=item.title,
            jtbd=jtbd,
            why_competitors_miss_it=item.why_competitors_miss_it,
            recommendation=Recommendation(
                what_to_do=item.what_to_do,
                why_now=item.why_now,
                expected_impact=item.expected_impact,
                risks=item.risks or candidate.recommendation.risks,
            ),
        ))
    return refined


def _linked_job(job_link: int | str | None, jobs: list[Job]) -> Job | None:
    if job_link is None:
        return None
    try:
        index = int(job_link) - 1
    except (TypeError, ValueError):
        return None
    if 0 <= index < len(jobs):
        return jobs[index]
    return None


def _evidence_stats(items: list[EvidenceItem], competitor_count: int | None) -> EvidenceStats:
    types: list[str] = []
    for item in items:
        if item.type not in types:
            types.append(item.type)
    return EvidenceStats(
        total_evidence_items=len(items),
        evidence_types_present=types,
        competitor_count=competitor_count,
    )


def _pool_reasons(items: list[EvidenceItem]) -> list[str]:
    """Gate reasons for the whole pool, explaining why no candidate could form."""
    citations = [c for c in (evidence_item_to_citation(i, idx) for idx, i in enumerate(items)) if c]
    return has_minimum_evidence_for_opportunity(citations).reasons


def build_opportunities_artifact(
    *,
    project_run_id: str,
    pipeline_version: str,
    input_version: int,
    evidence_items: list[EvidenceItem],
    candidates: list[OpportunityCandidate],
    competitor_count: int | None = None,
    scorer: DriverScorer | None = None,
    generated_at: str | None = None,
) -> OpportunitiesArtifact:
    generated_at = generated_at or datetime.now(UTC).isoformat()
    stats = _evidence_stats(evidence_items, competitor_count)

    def envelope(opps: list[OpportunityV1], notes: GenerationNotes) -> OpportunitiesArtifact:
        return OpportunitiesArtifact(
            project_run_id=project_run_id,
            pipeline_version=pipeline_version,
            input_version=input_version,
            generated_at=generated_at,
            opportunities=opps,
            generation_notes=notes,
        )

    if not evidence_items:
        return envelope([], GenerationNotes(
            failed_closed=True, reasons=["No evidence items available"], evidence_stats=stats,
        ))

    if not candidates:
        reasons = ["No candidate opportunities passed citation selection"]
        reasons += _pool_reasons(evidence_items) or [
            "Selected citations did not span at least 2 evidence types",
        ]
        log.warning("Opportunities failed closed for run %s: %s", project_run_id, "; ".join(reasons))
        return envelope([], GenerationNotes(failed_closed=True, reasons=reasons, evidence_stats=stats))

    opportunities: list[OpportunityV1] = []
    dropped: list[str] = []
    for candidate in candidates:
        opp, reasons = build_opportunity(candidate, scorer)
        if opp is None:
            dropped.append(f'Candidate "{candidate.title}" dropped: {"; ".join(reasons)}')
        else:
            opportunities.append(opp)

    if not opportunities:
        log.warning("Every candidate failed the evidence gate for run %s", project_run_id)
        return envelope([], GenerationNotes(failed_closed=True, reasons=dropped, evidence_stats=stats))
    return envelope(opportunities, GenerationNotes(
        failed_closed=False, reasons=dropped or None, evidence_stats=stats,
    ))


def cap_opportunity_scores(
    artifact: OpportunitiesArtifact, cap: Callable[[int], int],
) -> OpportunitiesArtifact:
    """Replace each total with ``cap(total)``, keeping the driver sum as ``rawTotal``."""
    capped: list[OpportunityV1] = []
    for opp in artifact.opportunities:
        raw = opp.scores.raw_total if opp.scores.raw_total is not None else opp.scores.total
        scores = opp.scores.model_copy(update={"total": cap(raw), "raw_total": raw})
        capped.append(opp.model_copy(update={"scores": scores}))
    return artifact.model_copy(update={"opportunities": capped})


def generate_opportunities_v1(
    *,
    project_run_id: str,
    pipeline_version: str,
    input_version: int,
    evidence_items: list[EvidenceItem],
    context: ProjectContext | None = None,
    competitor_count: int | None = None,
    scorer: DriverScorer | None = None,
) -> OpportunitiesArtifact:
    """Deterministic, model-free opportunities artifact for an evidence pool."""
    candidates = generate_candidate_opportunities(evidence_items, context)
    return build_opportunities_artifact(
        project_run_id=project_run_id,
        pipeline_version=pipeline_version,
        input_version=input_version,
        evidence_items=evidence_items,
        candidates=candidates,
        competitor_count=competitor_count,
        scorer=scorer,
    )
