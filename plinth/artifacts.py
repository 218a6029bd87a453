"""Pydantic models for every JSON document a run reads or writes.

Persisted documents are parsed through :data:`ARTIFACT_CONTENT_MODELS`, keyed
by the artifact type column, so no consumer ever has to guess a document's
shape from which keys it happens to carry.
"""
from __future__ import annotations

import uuid
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from plinth.citations import Citation

OPPORTUNITY_V1_SCHEMA_VERSION = "opportunity_v1.0"


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class _Lenient(BaseModel):
    """Model output: unknown keys are dropped rather than rejected."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ArtifactMeta(_Lenient):
    generated_at: str
    model: str | None = None
    run_id: str | None = None
    schema_version: int | str | None = None
    signals: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Opportunities (v1)
# ---------------------------------------------------------------------------


class OpportunityJtbd(_Strict):
    job: str = Field(min_length=1)
    context: str = Field(min_length=1)
    constraints: str | None = None


class Recommendation(_Strict):
    what_to_do: str = Field(alias="whatToDo", min_length=1)
    why_now: str = Field(alias="whyNow", min_length=1)
    expected_impact: str = Field(alias="expectedImpact", min_length=1)
    risks: list[str] = []


class ScoreDriver(_Strict):
    key: str
    label: str
    weight: float = Field(ge=0, le=1)
    value: float = Field(ge=0, le=1)
    rationale: str
    citations_used: list[str] = Field(default=[], alias="citationsUsed")


class Scores(_Strict):
    total: int = Field(ge=0, le=100)
    drivers: list[ScoreDriver] = Field(min_length=1)
    # Weighted driver sum before run guardrails; set only when total was capped
    raw_total: int | None = Field(default=None, alias="rawTotal", ge=0, le=100)


class EvidenceSummary(_Strict):
    total_citations: int = Field(alias="totalCitations", ge=0)
    evidence_types_present: list[str] = Field(alias="evidenceTypesPresent")


class OpportunityV1(_Strict):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    id: str
    title: str = Field(min_length=1)
    jtbd: OpportunityJtbd
    for_whom: str = Field(alias="forWhom", min_length=1)
    why_competitors_miss_it: str = Field(alias="whyCompetitorsMissIt", min_length=1)
    recommendation: Recommendation
    citations: list[Citation] = Field(min_length=3)
    evidence_summary: EvidenceSummary = Field(alias="evidenceSummary")
    scores: Scores
    why_this_ranks: list[str] = Field(alias="whyThisRanks", max_length=3)
    assumptions: list[str] = []
    confidence: Literal["exploratory", "directional", "investment_ready"]
    schema_version: Literal["opportunity_v1.0"] = OPPORTUNITY_V1_SCHEMA_VERSION


class EvidenceStats(_Strict):
    total_evidence_items: int = Field(alias="totalEvidenceItems", ge=0)
    evidence_types_present: list[str] = Field(alias="evidenceTypesPresent")
    competitor_count: int | None = Field(default=None, alias="competitorCount")


class GenerationNotes(_Strict):
    failed_closed: bool
    reasons: list[str] | None = None
    evidence_stats: EvidenceStats | None = None


class OpportunitiesArtifact(_Strict):
    schema_version: Literal["opportunity_v1.0"] = OPPORTUNITY_V1_SCHEMA_VERSION
    project_run_id: str
    pipeline_version: str
    input_version: int = Field(ge=0)
    generated_at: str
    opportunities: list[OpportunityV1] = []
    generation_notes: GenerationNotes | None = None
    meta: ArtifactMeta | None = None

    @field_validator("project_run_id")
    @classmethod
    def run_id_must_be_uuid(cls, v: str) -> str:
        uuid.UUID(v)
        return v

    @model_validator(mode="after")
    def empty_means_failed_closed(self) -> OpportunitiesArtifact:
        if not self.opportunities:
            notes = self.generation_notes
            if notes is None or not notes.failed_closed or not notes.reasons or notes.evidence_stats is None:
                raise ValueError(
                    "an empty opportunities list requires generation_notes with "
                    "failed_closed=true, reasons and evidence_stats"
                )
        return self

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Jobs to be done
# ---------------------------------------------------------------------------


class JtbdEvidence(_Lenient):
    competitor: str | None = None
    citation: str | None = None
    quote: str | None = None


class Job(_Lenient):
    job_statement: str = Field(min_length=1)
    context: str
    desired_outcomes: list[str] = []
    constraints: list[str] = []
    current_workarounds: list[str] = []
    non_negotiables: list[str] = []
    who: str
    frequency: Literal["daily", "weekly", "monthly", "rare"]
    importance_score: int = Field(ge=1, le=5)
    satisfaction_score: int = Field(ge=1, le=5)
    # Recomputed from importance and satisfaction; any model value is overwritten
    opportunity_score: float = 0
    evidence: list[JtbdEvidence] = []


class JtbdContent(_Lenient):
    jobs: list[Job] = Field(min_length=1, max_length=12)
    meta: ArtifactMeta


# ---------------------------------------------------------------------------
# Scoring matrix
# ---------------------------------------------------------------------------


class Criterion(_Lenient):
    id: str
    name: str
    description: str = ""
    weight: int = Field(default=3, ge=1, le=5)
    how_to_score: str = ""


class CompetitorScore(_Lenient):
    competitor_id: str | None = None
    competitor_name: str
    criteria_id: str
    score: float = Field(ge=1, le=5)
    evidence: str | None = None


class CompetitorSummary(_Lenient):
    competitor_name: str
    # Recomputed from criteria weights and scores
    total_weighted_score: float = 0
    strengths: list[str] = []
    weaknesses: list[str] = []


class ScoringMatrixContent(_Lenient):
    criteria: list[Criterion] = Field(min_length=1, max_length=15)
    scores: list[CompetitorScore]
    summary: list[CompetitorSummary] = []
    notes: str | None = None
    meta: ArtifactMeta


# ---------------------------------------------------------------------------
# Opportunity refinement (model output for the opportunities stage)
# ---------------------------------------------------------------------------


class OpportunityRefinementItem(_Lenient):
    candidate_index: int = Field(ge=0)
    title: str = Field(min_length=1)
    why_competitors_miss_it: str = Field(min_length=1)
    what_to_do: str = Field(min_length=1)
    why_now: str = Field(min_length=1)
    expected_impact: str = Field(min_length=1)
    risks: list[str] = []
    job_link: int | str | None = None
    # Accepted so it can be discarded; scores are always recomputed
    score: float | None = None


class OpportunityRefinement(_Lenient):
    opportunities: list[OpportunityRefinementItem]
    meta: ArtifactMeta


# ---------------------------------------------------------------------------
# Strategic bets
# ---------------------------------------------------------------------------


class BetCitation(_Lenient):
    url: str
    source_type: str | None = None
    extracted_at: str | None = None


class StrategicBet(_Lenient):
    id: str
    title: str = Field(min_length=1)
    summary: str
    what_we_say_no_to: list[str] = Field(min_length=1)
    capability_we_must_build: list[str] = Field(min_length=1)
    why_competitors_wont_follow_easily: str
    risk_and_assumptions: list[str] = []
    decision_owner: str = "VP Product/UX"
    time_horizon: Literal["Now", "Next", "Later"]
    citations: list[BetCitation] = []


class StrategicBetsContent(_Lenient):
    bets: list[StrategicBet] = Field(min_length=1, max_length=6)
    meta: ArtifactMeta


# ---------------------------------------------------------------------------
# Run inputs
# ---------------------------------------------------------------------------


class CompetitorSnapshot(BaseModel):
    model_config = ConfigDict(extra="allow")

    competitor_name: str


class ProfilesContent(BaseModel):
    model_config = ConfigDict(extra="allow")

    snapshots: list[CompetitorSnapshot] = []


class SynthesisContent(BaseModel):
    model_config = ConfigDict(extra="allow")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

ARTIFACT_CONTENT_MODELS: dict[str, type[BaseModel]] = {
    "profiles": ProfilesContent,
    "synthesis": SynthesisContent,
    "jtbd": JtbdContent,
    "scoring_matrix": ScoringMatrixContent,
    "opportunities": OpportunitiesArtifact,
    "strategic_bets": StrategicBetsContent,
}
RUN_OUTPUT_TYPES = ("jtbd", "opportunities", "scoring_matrix", "strategic_bets")


def parse_artifact_content(artifact_type: str, content: dict[str, Any]) -> BaseModel:
    """Parse stored content with the model registered for *artifact_type*."""
    model = ARTIFACT_CONTENT_MODELS.get(artifact_type)
    if model is None:
        raise ValueError(f"Unknown artifact type: {artifact_type!r}")
    return model.model_validate(content)
