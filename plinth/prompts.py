"""Message builders for the four model-backed stages of a run.

Each stage has a system prompt, a schema shape shown to the model (and reused
by the repair loop), and a builder that assembles the user message from the
project context and prior validated outputs.
"""
from __future__ import annotations

import json
from typing import Any

from plinth.candidates import OpportunityCandidate, ProjectContext
from plinth.guardrails import BANNED_VAGUE_VERBS

Message = dict[str, str]

# ---------------------------------------------------------------------------
# Schema shapes
# ---------------------------------------------------------------------------

_META_SHAPE = {
    "generated_at": "string (ISO 8601)",
    "model": "string (optional)",
    "run_id": "string (optional)",
}

JTBD_SCHEMA_SHAPE: dict[str, Any] = {
    "meta": _META_SHAPE,
    "jobs": [
        {
            "job_statement": 'string (format: "When <context>, I want to <action>, so I can <outcome>.")',
            "context": "string",
            "desired_outcomes": ["string (measurable: time, risk, cost or quality)"],
            "constraints": ["string"],
            "current_workarounds": ["string"],
            "non_negotiables": ["string"],
            "who": "string (persona shorthand)",
            "frequency": "daily | weekly | monthly | rare",
            "importance_score": "integer 1-5",
            "satisfaction_score": "integer 1-5",
            "evidence": [{"competitor": "string (optional)", "citation": "string (URL, optional)",
                          "quote": "string (optional)"}],
        }
    ],
}

SCORING_MATRIX_SCHEMA_SHAPE: dict[str, Any] = {
    "meta": _META_SHAPE,
    "criteria": [
        {
            "id": "string (unique identifier)",
            "name": "string",
            "description": "string",
            "weight": "integer 1-5 (higher = more important)",
            "how_to_score": "string (rubric for scoring 1-5)",
        }
    ],
    "scores": [
        {
            "competitor_id": "string (optional)",
            "competitor_name": "string",
            "criteria_id": "string",
            "score": "integer 1-5",
            "evidence": "string (optional, quote or reference)",
        }
    ],
    "summary": [
        {"competitor_name": "string", "strengths": ["string"], "weaknesses": ["string"]}
    ],
    "notes": "string (optional)",
}

OPPORTUNITY_REFINEMENT_SCHEMA_SHAPE: dict[str, Any] = {
    "meta": _META_SHAPE,
    "opportunities": [
        {
            "candidate_index": "integer (index of the candidate being refined)",
            "title": "string (specific, non-buzzword)",
            "why_competitors_miss_it": "string (grounded in the cited evidence)",
            "what_to_do": "string",
            "why_now": "string (market trigger)",
            "expected_impact": "string",
            "risks": ["string"],
            "job_link": "integer (optional, 1-based index into the jobs list)",
        }
    ],
}

STRATEGIC_BETS_SCHEMA_SHAPE: dict[str, Any] = {
    "meta": _META_SHAPE,
    "bets": [
        {
            "id": 'string (e.g. "bet-1")',
            "title": "string (specific, non-buzzword)",
            "summary": "string (1-2 sentences)",
            "what_we_say_no_to": ["string"],
            "capability_we_must_build": ["string"],
            "why_competitors_wont_follow_easily": "string (structural constraint)",
            "risk_and_assumptions": ["string"],
            "decision_owner": "string (default: VP Product/UX)",
            "time_horizon": "Now | Next | Later",
            "citations": [{"url": "string", "source_type": "string (optional)",
                           "extracted_at": "string (optional, ISO 8601)"}],
        }
    ],
}

# ---------------------------------------------------------------------------
# System prompts
# ---------------------------------------------------------------------------

_OUTPUT_RULES = """\
OUTPUT RULES
1) Output a single JSON object only. No surrounding prose, labels, or explanations.
2) Do not use markdown or backticks. Do not wrap the JSON in any kind of code fence.
3) Use exactly the schema keys shown. Do not add, remove, or rename keys.
4) Use standard JSON syntax with double-quoted keys and string values.
"""

JTBD_SYSTEM_PROMPT = """\
You are a product strategist turning competitor research into Jobs To Be Done.

Write jobs that are concrete and testable. Every desired outcome must be \
measurable. Rate importance and current satisfaction honestly on a 1-5 scale; \
do not compute any opportunity score, it is calculated for you.
"""

SCORING_SYSTEM_PROMPT = """\
You are a product strategist building a competitive scorecard.

Choose criteria buyers actually evaluate. Score every competitor on every \
criterion from 1 to 5 using only what the evidence supports. Do not compute \
weighted totals; they are calculated for you.
"""

OPPORTUNITIES_SYSTEM_PROMPT = """\
You are a product strategist refining evidence-backed opportunity drafts.

You receive drafts that already passed an evidence gate. Rewrite their \
narrative to be specific and decision-ready. Never add claims the cited \
evidence does not support, never add or change citations, and never supply \
scores: ranking is computed deterministically from the evidence.
"""

STRATEGIC_BETS_SYSTEM_PROMPT = """\
You are a VP of Product turning validated opportunities into strategic bets.

Each bet must state what the company says no to, the capability it forces the \
company to build, and why competitors cannot easily follow. Cite only URLs \
that appear in the provided material.
"""


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def _project_lines(project: ProjectContext) -> list[str]:
    lines = [f"Market: {project.market}", f"Target customer: {project.target_customer}"]
    if project.your_product:
        lines.append(f"Your product: {project.your_product}")
    if project.business_goal:
        lines.append(f"Business goal: {project.business_goal}")
    if project.geography:
        lines.append(f"Geography: {project.geography}")
    return lines


def _section(title: str, payload: str, tag: str) -> list[str]:
    return ["", title, f"{tag}_JSON_START", payload, f"{tag}_JSON_END"]


def _finish(
    system: str, task: list[str], project: ProjectContext, sections: list[str], shape: dict[str, Any],
) -> list[Message]:
    user = [
        "TASK", *task,
        "", "PROJECT CONTEXT", *_project_lines(project),
        *sections,
        "", "OUTPUT SCHEMA", json.dumps(shape, indent=2),
        "", _OUTPUT_RULES,
        "BANNED VAGUE VERBS (DO NOT USE):", ", ".join(BANNED_VAGUE_VERBS),
    ]
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": "\n".join(user)},
    ]


def _context_sections(snapshots_json: str, synthesis_json: str | None) -> list[str]:
    sections = _section("COMPETITOR SNAPSHOTS", snapshots_json, "SNAPSHOTS")
    if synthesis_json:
        sections += _section("MARKET SYNTHESIS", synthesis_json, "SYNTHESIS")
    return sections


def build_jtbd_messages(
    project: ProjectContext, snapshots_json: str, synthesis_json: str | None = None,
) -> list[Message]:
    return _finish(
        JTBD_SYSTEM_PROMPT,
        ["Generate 8-12 specific Jobs To Be Done grounded in the competitor snapshots."],
        project, _context_sections(snapshots_json, synthesis_json), JTBD_SCHEMA_SHAPE,
    )


def build_scoring_messages(
    project: ProjectContext, snapshots_json: str, synthesis_json: str | None = None,
    jtbd_json: str | None = None,
) -> list[Message]:
    sections = _context_sections(snapshots_json, synthesis_json)
    if jtbd_json:
        sections += _section("JOBS TO BE DONE", jtbd_json, "JTBD")
    return _finish(
        SCORING_SYSTEM_PROMPT,
        ["Build a scorecard of 6-10 weighted criteria and score every competitor on each."],
        project, sections, SCORING_MATRIX_SCHEMA_SHAPE,
    )


def candidate_payload(candidates: list[OpportunityCandidate]) -> list[dict[str, Any]]:
    return [
        {
            "candidate_index": idx,
            "title": c.title,
            "job": c.jtbd.job,
            "for_whom": c.for_whom,
            "why_competitors_miss_it": c.why_competitors_miss_it,
            "what_to_do": c.recommendation.what_to_do,
            "why_now": c.recommendation.why_now,
            "expected_impact": c.recommendation.expected_impact,
            "risks": c.recommendation.risks,
            "citations": [
                {"url": cit.url, "source_type": cit.source_type, "excerpt": cit.excerpt}
                for cit in c.citations
            ],
        }
        for idx, c in enumerate(candidates)
    ]


def build_opportunity_messages(
    project: ProjectContext, candidates: list[OpportunityCandidate], jtbd_json: str,
    scoring_json: str,
) -> list[Message]:
    sections = _section("OPPORTUNITY DRAFTS", json.dumps(candidate_payload(candidates), indent=2), "DRAFTS")
    sections += _section("JOBS TO BE DONE", jtbd_json, "JTBD")
    sections += _section("SCORECARD", scoring_json, "SCORECARD")
    return _finish(
        OPPORTUNITIES_SYSTEM_PROMPT,
        [f"Refine each of the {len(candidates)} opportunity drafts. Return one item per draft, "
         "keyed by candidate_index."],
        project, sections, OPPORTUNITY_REFINEMENT_SCHEMA_SHAPE,
    )


def build_strategic_bets_messages(
    project: ProjectContext, snapshots_json: str, opportunities_json: str, scoring_json: str,
    synthesis_json: str | None = None,
) -> list[Message]:
    sections = _context_sections(snapshots_json, synthesis_json)
    sections += _section("OPPORTUNITIES", opportunities_json, "OPPORTUNITIES")
    sections += _section("SCORECARD", scoring_json, "SCORECARD")
    return _finish(
        STRATEGIC_BETS_SYSTEM_PROMPT,
        ["Generate 2-3 strategic bets from the opportunities and scorecard."],
        project, sections, STRATEGIC_BETS_SCHEMA_SHAPE,
    )
