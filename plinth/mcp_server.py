from __future__ import annotations

import json
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager

from mcp.server.fastmcp import FastMCP

from plinth import services
from plinth.artifacts import ARTIFACT_CONTENT_MODELS
from plinth.config import get_settings
from plinth.db import get_session, init_db
from plinth.llm import LLMCallError, LLMClient
from plinth.opportunities import generate_opportunities_v1
from plinth.pipeline import RunFailure, generate_results

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def plinth_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Plinth",
    instructions=(
        "Plinth turns stored competitor evidence into cited, deterministically scored "
        "opportunities. Start with list_artifacts(project_id) to see what exists, "
        "preview_opportunities(project_id) for an evidence-gated draft without an LLM, "
        "and generate_results_tool(project_id) for a full run."
    ),
    lifespan=plinth_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session():
    session = get_session()
    try:
        yield session
    finally:
        session.close()


def _project_or_error(session, project_id: int):
    project = services.get_project(session, project_id)
    if not project:
        return None, {"error": f"Project {project_id} not found"}
    return project, None


def _llm_error(exc: BaseException) -> dict:
    return {
        "error": f"Generation failed: {exc}",
        "error_code": "LLM_ERROR",
        "retryable": bool(getattr(exc, "retryable", False)),
    }


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("plinth://overview")
def plinth_overview() -> str:
    """Overview of Plinth: artifacts, evidence rules and workflow."""
    return json.dumps({
        "system": "Plinth: evidence-gated opportunity generation and scoring",
        "artifacts": {
            "profiles": "Input. Per-competitor snapshots; a run needs at least one.",
            "synthesis": "Optional input. Market synthesis shared with every stage.",
            "jtbd": "Jobs to be done with recomputed opportunity scores (0-100).",
            "scoring_matrix": "Weighted competitor scorecard with recomputed totals (0-100).",
            "opportunities": "Cited opportunities (opportunity_v1.0); empty with failed_closed when evidence is thin.",
            "strategic_bets": "Bets with explicit trade-offs and a decision owner.",
        },
        "evidence_rules": {
            "min_citations": 3,
            "min_source_types": 2,
            "min_excerpt_length": 20,
            "confidence_tiers": ["exploratory", "directional", "investment_ready"],
        },
        "workflow": [
            "1. list_artifacts(project_id): see what exists.",
            "2. preview_opportunities(project_id): deterministic draft, no LLM cost.",
            "3. generate_results_tool(project_id): full run writing four artifacts.",
            "4. get_latest_opportunities(project_id): read the newest opportunities.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def list_artifacts(project_id: int, artifact_type: str | None = None) -> dict:
    """List a project's artifacts, newest first.

    Args:
        project_id: The project to inspect.
        artifact_type: Optional filter, one of: profiles, synthesis, jtbd,
                       scoring_matrix, opportunities, strategic_bets.
    """
    if artifact_type and artifact_type not in ARTIFACT_CONTENT_MODELS:
        return {"error": f"Unknown artifact type: {artifact_type}"}
    with _session() as session:
        _, err = _project_or_error(session, project_id)
        if err:
            return err
        items = [services.artifact_summary(a) for a in services.list_artifacts(session, project_id, artifact_type)]
        return {"project_id": project_id, "total": len(items), "items": items}


@mcp.tool()
def get_latest_opportunities(project_id: int) -> dict:
    """Get the newest opportunities artifact, including citations and score drivers."""
    with _session() as session:
        _, err = _project_or_error(session, project_id)
        if err:
            return err
        artifact = services.latest_artifact(session, project_id, "opportunities")
        if artifact is None:
            return {"error": f"No opportunities artifact for project {project_id}"}
        return services.artifact_summary(artifact, include_content=True)


@mcp.tool()
def preview_opportunities(project_id: int) -> dict:
    """Build an evidence-gated opportunities artifact from stored evidence. No LLM, nothing saved."""
    with _session() as session:
        project, err = _project_or_error(session, project_id)
        if err:
            return err
        artifact = generate_opportunities_v1(
            project_run_id=str(uuid.uuid4()),
            pipeline_version=get_settings().pipeline_version,
            input_version=project.input_version or 0,
            evidence_items=services.list_evidence_items(session, project_id),
            context=services.project_context(project),
            competitor_count=len(services.list_competitors(session, project_id)),
        )
        return artifact.to_json()


@mcp.tool()
async def generate_results_tool(project_id: int) -> dict:
    """Run full results generation (JTBD, scorecard, opportunities, strategic bets). Requires an LLM API key."""
    with _session() as session:
        _, err = _project_or_error(session, project_id)
        if err:
            return err
        try:
            client = LLMClient()
        except Exception as exc:
            return _llm_error(exc)
        result = await generate_results(session, project_id, client)
        if isinstance(result, RunFailure):
            details = result.details or {}
            if details.get("name") == "LLMCallError":
                return _llm_error(LLMCallError(details.get("message", result.message),
                                               retryable=bool(details.get("retryable"))))
            return result.to_json()
        return {"ok": True, "run_id": result.run_id, "artifact_ids": result.artifact_ids,
                "signals": result.signals}


def main():
    """Run the Plinth MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
