"""Results generation: one run from stored inputs to four persisted artifacts.

Phases, strictly in order::

    load_input -> evidence_quality_check
      -> jobs_generate -> jobs_validate
      -> scorecard_generate -> scorecard_validate
      -> opportunities_generate -> opportunities_validate
      -> strategic_bets_generate -> strategic_bets_validate
      -> scoring_compute -> save_artifacts -> finalize

Precondition failures stop the run before any model call.  A stage whose
output still fails validation after its single repair stops the run with that
stage's failure code.  Nothing raises across :func:`generate_results`: every
outcome is a :class:`RunSuccess` or a :class:`RunFailure`.
"""
from __future__ import annotations

import json
import logging
import statistics
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from plinth import services
from plinth.artifacts import (
    RUN_OUTPUT_TYPES,
    ArtifactMeta,
    CompetitorSummary,
    JtbdContent,
    OpportunitiesArtifact,
    OpportunityRefinement,
    ProfilesContent,
    ScoringMatrixContent,
    StrategicBetsContent,
)
from plinth.candidates import generate_candidate_opportunities
from plinth.config import Settings, get_settings
from plinth.guardrails import (
    EvidenceQualityCheck,
    apply_score_ceiling,
    check_evidence_quality,
    check_score_distribution,
    compute_banned_pattern_penalty,
    compute_confidence_band,
)
from plinth.llm import LLMCallError, LLMClient
from plinth.opportunities import apply_refinements, build_opportunities_artifact, cap_opportunity_scores
from plinth.prompts import (
    JTBD_SCHEMA_SHAPE,
    OPPORTUNITY_REFINEMENT_SCHEMA_SHAPE,
    SCORING_MATRIX_SCHEMA_SHAPE,
    STRATEGIC_BETS_SCHEMA_SHAPE,
    build_jtbd_messages,
    build_opportunity_messages,
    build_scoring_messages,
    build_strategic_bets_messages,
)
from plinth.repair import StageFailure, StageSpec, generate_validated
from plinth.scoring import compute_jtbd_opportunity_score, compute_weighted_competitor_scores
from plinth.utils import round_half_up, utc_now_iso

log = logging.getLogger(__name__)

LLM_CALLS_TOTAL = 4
WRITES_TOTAL = len(RUN_OUTPUT_TYPES)
RESULTS_SCHEMA_VERSION = 2

JTBD_STAGE = StageSpec(
    phase="jobs", failure_code="JTBD_VALIDATION_FAILED", model=JtbdContent,
    schema_name="JtbdArtifactContent", schema_shape=JTBD_SCHEMA_SHAPE, label="JTBD",
)
SCORING_STAGE = StageSpec(
    phase="scorecard", failure_code="SCORING_VALIDATION_FAILED", model=ScoringMatrixContent,
    schema_name="ScoringMatrixArtifactContent", schema_shape=SCORING_MATRIX_SCHEMA_SHAPE,
    label="scoring matrix",
)
OPPORTUNITIES_STAGE = StageSpec(
    phase="opportunities", failure_code="OPPORTUNITIES_VALIDATION_FAILED", model=OpportunityRefinement,
    schema_name="OpportunityRefinement", schema_shape=OPPORTUNITY_REFINEMENT_SCHEMA_SHAPE,
    label="opportunities",
)
STRATEGIC_BETS_STAGE = StageSpec(
    phase="strategic_bets", failure_code="STRATEGIC_BETS_VALIDATION_FAILED", model=StrategicBetsContent,
    schema_name="StrategicBetsArtifactContent", schema_shape=STRATEGIC_BETS_SCHEMA_SHAPE,
    label="strategic bets",
)


# ---------------------------------------------------------------------------
# Run state, progress and results
# ---------------------------------------------------------------------------


@dataclass
class RunContext:
    """Mutable state owned by one run; never shared between runs."""
    run_id: str
    generated_at: str
    repair_count: int = 0
    llm_calls_done: int = 0
    started: float = field(default_factory=time.perf_counter)

    @property
    def elapsed_ms(self) -> int:
        return round((time.perf_counter() - self.started) * 1000)


@dataclass(frozen=True)
class ProgressEvent:
    run_id: str
    phase: str
    message: str
    detail: str | None = None
    meta: dict[str, Any] | None = None
    timestamp: str = field(default_factory=utc_now_iso)

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {"run_id": self.run_id, "phase": self.phase, "message": self.message,
                                "timestamp": self.timestamp}
        if self.detail is not None:
            data["detail"] = self.detail
        if self.meta is not None:
            data["meta"] = self.meta
        return data


ProgressCallback = Callable[[ProgressEvent], None]


def make_progress_event(
    run_id: str, phase: str, message: str, *, detail: str | None = None,
    meta: dict[str, Any] | None = None,
) -> ProgressEvent:
    return ProgressEvent(run_id=run_id, phase=phase, message=message, detail=detail, meta=meta)


@dataclass(frozen=True)
class RunSuccess:
    run_id: str
    artifact_ids: list[int]
    signals: dict[str, Any]
    ok: bool = True


@dataclass(frozen=True)
class RunFailure:
    code: str
    message: str
    details: dict[str, Any] | None = None
    ok: bool = False

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ok": False, "error": {"code": self.code, "message": self.message}}
        if self.details is not None:
            data["details"] = self.details
        return data


RunResult = RunSuccess | RunFailure


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _mean(values: list[float]) -> float:
    return statistics.fmean(values) if values else 0.0


def _stage_failure(failure: StageFailure) -> RunFailure:
    return RunFailure(code=failure.code, message=failure.message, details=failure.details)


@dataclass
class _Guard:
    """Run-level inputs shared by every score ceiling."""
    quality: EvidenceQualityCheck
    ctx: RunContext

    def cap(self, raw: float, penalty: float) -> int:
        return apply_score_ceiling(
            raw,
            evidence_quality=self.quality.confidence,
            decay_factor=self.quality.decay_factor,
            repair_count=self.ctx.repair_count,
            banned_pattern_penalty=penalty,
        )


def _meta(ctx: RunContext, model: str, schema_version: int = RESULTS_SCHEMA_VERSION) -> ArtifactMeta:
    return ArtifactMeta(generated_at=ctx.generated_at, model=model or None, run_id=ctx.run_id,
                        schema_version=schema_version)


def _score_jobs(jtbd: JtbdContent, guard: _Guard, penalty: float) -> JtbdContent:
    jobs = [
        job.model_copy(update={"opportunity_score": float(guard.cap(
            compute_jtbd_opportunity_score(job.importance_score, job.satisfaction_score), penalty,
        ))})
        for job in jtbd.jobs
    ]
    return jtbd.model_copy(update={"jobs": jobs})


def _score_matrix(scoring: ScoringMatrixContent, guard: _Guard, penalty: float) -> ScoringMatrixContent:
    totals = compute_weighted_competitor_scores(scoring.criteria, scoring.scores)
    summary: list[CompetitorSummary] = []
    seen: set[str] = set()
    for entry in scoring.summary:
        raw = totals.get(entry.competitor_name, 0.0)
        summary.append(entry.model_copy(update={"total_weighted_score": float(guard.cap(raw, penalty))}))
        seen.add(entry.competitor_name)
    for name, raw in totals.items():
        if name not in seen:
            summary.append(CompetitorSummary(competitor_name=name, total_weighted_score=float(guard.cap(raw, penalty))))
    return scoring.model_copy(update={"summary": summary})


def compute_run_signals(
    *,
    jtbd: JtbdContent,
    opportunities: OpportunitiesArtifact,
    scoring: ScoringMatrixContent,
    quality: EvidenceQualityCheck,
    repair_count: int,
    banned_pattern_penalty: float,
) -> dict[str, Any]:
    """Quality signals embedded into every artifact a run writes."""
    opp_scores = [float(o.scores.total) for o in opportunities.opportunities]
    job_scores = [float(j.opportunity_score) for j in jtbd.jobs]
    competitor_scores = [s.total_weighted_score for s in scoring.summary]

    flags = check_score_distribution(competitor_scores).flags + check_score_distribution(opp_scores).flags
    avg_opp = _mean(opp_scores)
    avg_jobs = _mean(job_scores)
    penalty = round_half_up(banned_pattern_penalty, 2)
    return {
        "jobsCount": len(jtbd.jobs),
        "avgJtbdOpportunityScore": round_half_up(avg_jobs, 2),
        "opportunitiesCount": len(opportunities.opportunities),
        "avgOpportunityScore": round_half_up(avg_opp, 2),
        "criteriaCount": len(scoring.criteria),
        "competitorsScored": len(scoring.summary),
        "repairCount": repair_count,
        "evidenceQuality": quality.confidence,
        "evidenceDecayFactor": round_half_up(quality.decay_factor, 2),
        "bannedPatternPenalty": penalty,
        "scoreDistributionFlags": flags,
        "confidenceBand": compute_confidence_band(
            (avg_opp + avg_jobs) / 2,
            evidence_quality=quality.confidence,
            decay_factor=quality.decay_factor,
            repair_count=repair_count,
            banned_pattern_penalty=penalty,
        ),
    }


def _dump(model: Any) -> str:
    return json.dumps(model.model_dump(mode="json", by_alias=True, exclude_none=True))


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


async def generate_results(
    session: Session,
    project_id: int,
    client: LLMClient | None = None,
    on_progress: ProgressCallback | None = None,
    settings: Settings | None = None,
    run_id: str | None = None,
) -> RunResult:
    """Generate and persist JTBD, opportunities, scorecard and strategic bets."""
    ctx = RunContext(run_id=run_id or str(uuid.uuid4()), generated_at=datetime.now(UTC).isoformat())
    try:
        return await _run(session, project_id, client, on_progress, settings or get_settings(), ctx)
    except Exception as exc:
        log.exception("Unhandled error in results generation for run %s: %s: %s",
                      ctx.run_id, type(exc).__name__, exc)
        details: dict[str, Any] = {"name": type(exc).__name__, "message": str(exc)}
        if isinstance(exc, LLMCallError):
            details["retryable"] = exc.retryable
        return RunFailure(
            code="UNEXPECTED_ERROR",
            message=str(exc) or "Unexpected error during results generation.",
            details=details,
        )


async def _run(
    session: Session,
    project_id: int,
    client: LLMClient | None,
    on_progress: ProgressCallback | None,
    settings: Settings,
    ctx: RunContext,
) -> RunResult:
    def emit(phase: str, message: str, *, detail: str | None = None, meta: dict[str, Any] | None = None) -> None:
        if on_progress is not None:
            on_progress(make_progress_event(ctx.run_id, phase, message, detail=detail, meta=meta))

    # -- load_input ---------------------------------------------------------
    project = services.get_project(session, project_id)
    if project is None:
        return RunFailure(code="PROJECT_NOT_FOUND", message="Project not found.")

    emit("load_input", "Loading project data and competitors...", meta={"competitorCount": 0})
    competitors = services.list_competitors(session, project_id)
    n = len(competitors)
    emit("load_input", "Project data loaded",
         detail=f"Found {n} competitor{'s' if n != 1 else ''}", meta={"competitorCount": n})
    if n < settings.min_competitors:
        return RunFailure(code="INSUFFICIENT_COMPETITORS",
                          message=f"Add at least {settings.min_competitors} competitors to generate results.",
                          details={"competitorCount": n})
    if n > settings.max_competitors:
        return RunFailure(code="TOO_MANY_COMPETITORS",
                          message=f"Maximum of {settings.max_competitors} competitors allowed.",
                          details={"competitorCount": n})

    # -- evidence_quality_check ----------------------------------------------
    emit("evidence_quality_check", "Checking evidence quality...")
    quality = check_evidence_quality(
        services.list_competitor_evidence(session, project_id), settings.evidence_cache_ttl_hours,
    )
    if quality.passes:
        emit("evidence_quality_check", "Evidence quality check passed",
             detail=f"Quality: {quality.confidence}, Decay: {quality.decay_factor * 100:.0f}%")
    else:
        emit("evidence_quality_check", "Evidence quality check completed",
             detail=quality.reason or "Low evidence quality detected")

    profiles_row = services.latest_artifact(session, project_id, "profiles")
    if profiles_row is None:
        return RunFailure(code="MISSING_PROFILES",
                          message="Competitor profiles are required. Please generate analysis first.")
    profiles = ProfilesContent.model_validate(services.artifact_content(profiles_row))
    if not profiles.snapshots:
        return RunFailure(code="NO_SNAPSHOTS", message="No competitor snapshots found in profiles artifact.")
    snapshots_json = json.dumps([s.model_dump(mode="json") for s in profiles.snapshots])

    synthesis_json = None
    synthesis_row = services.latest_artifact(session, project_id, "synthesis")
    if synthesis_row is not None:
        content = services.artifact_content(synthesis_row)
        synthesis = content.get("synthesis", content)
        if synthesis:
            synthesis_json = json.dumps(synthesis)

    project_ctx = services.project_context(project)
    evidence_items = services.list_evidence_items(session, project_id)
    input_version = project.input_version or 0
    client = client or LLMClient()
    guard = _Guard(quality=quality, ctx=ctx)
    penalties: dict[str, float] = {}

    async def run_stage(stage: StageSpec, messages: list[dict[str, str]], draft_label: str):
        stage_started = time.perf_counter()
        emit(f"{stage.phase}_generate", f"Drafting {draft_label}...",
             detail=f"Drafting {draft_label} ({ctx.llm_calls_done + 1}/{LLM_CALLS_TOTAL})",
             meta={"llmCallsDone": ctx.llm_calls_done, "llmCallsTotal": LLM_CALLS_TOTAL})

        def on_repair() -> None:
            ctx.repair_count += 1
            emit(f"{stage.phase}_validate", "Repairing invalid JSON...",
                 detail="Model retrying due to invalid JSON (attempt 1/1)",
                 meta={"repairsUsed": ctx.repair_count})

        emit(f"{stage.phase}_validate", "Validating structure and removing vague language...",
             meta={"repairsUsed": ctx.repair_count})
        result = await generate_validated(stage, client, messages, on_repair=on_repair)
        ctx.llm_calls_done += 1
        log.debug("Stage %s finished in %.0f ms", stage.phase, (time.perf_counter() - stage_started) * 1000)
        return result

    # -- jobs ---------------------------------------------------------------
    result = await run_stage(JTBD_STAGE, build_jtbd_messages(project_ctx, snapshots_json, synthesis_json),
                             "Jobs to Be Done")
    if isinstance(result, StageFailure):
        return _stage_failure(result)
    penalties["jtbd"] = compute_banned_pattern_penalty(_dump(result.data))
    jtbd = _score_jobs(result.data, guard, penalties["jtbd"])
    jtbd = jtbd.model_copy(update={"meta": _meta(ctx, client.model)})
    emit("jobs_validate", "Jobs validated", detail=f"{len(jtbd.jobs)} jobs extracted",
         meta={"repairsUsed": ctx.repair_count})
    jtbd_json = _dump(jtbd)

    # -- scorecard ----------------------------------------------------------
    result = await run_stage(
        SCORING_STAGE, build_scoring_messages(project_ctx, snapshots_json, synthesis_json, jtbd_json),
        "Scorecard",
    )
    if isinstance(result, StageFailure):
        return _stage_failure(result)
    penalties["scoring_matrix"] = compute_banned_pattern_penalty(_dump(result.data))
    scoring = _score_matrix(result.data, guard, penalties["scoring_matrix"])
    scoring = scoring.model_copy(update={"meta": _meta(ctx, client.model)})
    emit("scorecard_validate", "Scorecard validated", detail=f"{len(scoring.criteria)} criteria defined",
         meta={"repairsUsed": ctx.repair_count})
    scoring_json = _dump(scoring)

    # -- opportunities ------------------------------------------------------
    candidates = generate_candidate_opportunities(evidence_items, project_ctx)
    if candidates:
        result = await run_stage(
            OPPORTUNITIES_STAGE,
            build_opportunity_messages(project_ctx, candidates, jtbd_json, scoring_json),
            "Opportunities",
        )
        if isinstance(result, StageFailure):
            return _stage_failure(result)
        penalties["opportunities"] = compute_banned_pattern_penalty(_dump(result.data))
        candidates = apply_refinements(candidates, result.data, jtbd.jobs)
    else:
        ctx.llm_calls_done += 1
        emit("opportunities_generate", "Not enough evidence to publish opportunities",
             detail="Skipping the opportunities draft; no candidate passed the evidence gate",
             meta={"llmCallsDone": ctx.llm_calls_done, "llmCallsTotal": LLM_CALLS_TOTAL})

    opportunities = build_opportunities_artifact(
        project_run_id=ctx.run_id,
        pipeline_version=settings.pipeline_version,
        input_version=input_version,
        evidence_items=evidence_items,
        candidates=candidates,
        competitor_count=n,
        generated_at=ctx.generated_at,
    )
    penalty = penalties.get("opportunities", 0.0)
    opportunities = cap_opportunity_scores(opportunities, lambda raw: guard.cap(raw, penalty))
    opportunities = opportunities.model_copy(update={"meta": _meta(ctx, client.model, schema_version=1)})
    emit("opportunities_validate", "Opportunities validated",
         detail=f"{len(opportunities.opportunities)} opportunities published",
         meta={"repairsUsed": ctx.repair_count})

    # -- strategic bets -----------------------------------------------------
    result = await run_stage(
        STRATEGIC_BETS_STAGE,
        build_strategic_bets_messages(project_ctx, snapshots_json, _dump(opportunities), scoring_json,
                                      synthesis_json),
        "Strategic Bets",
    )
    if isinstance(result, StageFailure):
        return _stage_failure(result)
    bets = result.data.model_copy(update={"meta": _meta(ctx, client.model, schema_version=1)})
    emit("strategic_bets_validate", "Strategic bets validated",
         detail=f"{len(bets.bets)} strategic bets generated", meta={"repairsUsed": ctx.repair_count})

    # -- scoring_compute ----------------------------------------------------
    signals = compute_run_signals(
        jtbd=jtbd, opportunities=opportunities, scoring=scoring, quality=quality,
        repair_count=ctx.repair_count, banned_pattern_penalty=max(penalties.values(), default=0.0),
    )
    emit("scoring_compute", "Scores computed", detail="All deterministic scores calculated")

    docs = {"jtbd": jtbd, "opportunities": opportunities, "scoring_matrix": scoring, "strategic_bets": bets}
    contents: dict[str, dict[str, Any]] = {}
    for artifact_type in RUN_OUTPUT_TYPES:
        data = docs[artifact_type].model_dump(mode="json", by_alias=True, exclude_none=True)
        data["meta"]["signals"] = signals
        contents[artifact_type] = data
    log.info("Results generation completed for run %s (project %s): %s", ctx.run_id, project_id, signals)

    # -- save_artifacts -----------------------------------------------------
    emit("save_artifacts", "Writing outputs to your workspace...",
         detail="Saving Jobs, Opportunities, Scorecard, and Strategic Bets",
         meta={"writesDone": 0, "writesTotal": WRITES_TOTAL})
    artifact_ids = services.save_run_artifacts(session, project_id, contents, run_id=ctx.run_id)
    emit("save_artifacts", "Outputs saved", detail="This lets you regenerate without losing history",
         meta={"writesDone": WRITES_TOTAL, "writesTotal": WRITES_TOTAL})

    # -- finalize -----------------------------------------------------------
    emit("finalize", "Finalizing artifacts for copy/export...",
         meta={"artifactCount": len(artifact_ids), "durationMs": ctx.elapsed_ms})
    return RunSuccess(run_id=ctx.run_id, artifact_ids=artifact_ids, signals=signals)
