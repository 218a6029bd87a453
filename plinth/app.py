from __future__ import annotations

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Generator

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from plinth import services
from plinth.artifacts import ARTIFACT_CONTENT_MODELS
from plinth.config import get_settings
from plinth.db import get_session, init_db
from plinth.llm import LLMClient
from plinth.models import Project
from plinth.opportunities import generate_opportunities_v1
from plinth.pipeline import ProgressEvent, RunFailure, generate_results
from plinth.schemas import ArtifactCreate, ArtifactOut, CompetitorCreate, CompetitorOut, EvidenceBatch, ProjectCreate, ProjectOut

log = logging.getLogger(__name__)

# Precondition failures are client-side (4xx); stage failures are upstream model errors
FAILURE_STATUS = {
    "PROJECT_NOT_FOUND": 404,
    "INSUFFICIENT_COMPETITORS": 409,
    "TOO_MANY_COMPETITORS": 409,
    "MISSING_PROFILES": 409,
    "NO_SNAPSHOTS": 409,
    "JTBD_VALIDATION_FAILED": 502,
    "SCORING_VALIDATION_FAILED": 502,
    "OPPORTUNITIES_VALIDATION_FAILED": 502,
    "STRATEGIC_BETS_VALIDATION_FAILED": 502,
    "UNEXPECTED_ERROR": 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Plinth",
    version="0.1.0",
    description=(
        "Evidence-gated competitive analysis API. Store competitors and evidence, "
        "then generate jobs to be done, a competitor scorecard, cited opportunities "
        "and strategic bets. All endpoints return JSON except the SSE generation stream."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Projects", "description": "Create projects and add competitors and evidence."},
        {"name": "Artifacts", "description": "Seed inputs and browse generated artifacts."},
        {"name": "Generation", "description": "LLM-backed results generation. Requires an LLM API key."},
        {"name": "Opportunities", "description": "Deterministic, evidence-gated opportunity previews."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def llm_client() -> LLMClient:
    return LLMClient()


def _get_project_or_404(session: Session, project_id: int) -> Project:
    project = services.get_project(session, project_id)
    if not project:
        raise HTTPException(404, "Project not found")
    return project


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


# ---------------------------------------------------------------------------
# Routes: Projects
# ---------------------------------------------------------------------------


@app.post("/api/projects", response_model=ProjectOut, status_code=201,
          tags=["Projects"], summary="Create a project")
async def create_project(body: ProjectCreate, session: Session = Depends(db_session)):
    project = services.create_project(session, body.model_dump())
    session.commit()
    return services.project_summary(project)


@app.get("/api/projects/{project_id}", response_model=ProjectOut,
         tags=["Projects"], summary="Get a project with its competitors")
async def get_project(project_id: int, session: Session = Depends(db_session)):
    return services.project_summary(_get_project_or_404(session, project_id))


@app.post("/api/projects/{project_id}/competitors", response_model=CompetitorOut, status_code=201,
          tags=["Projects"], summary="Add a competitor to a project")
async def add_competitor(project_id: int, body: CompetitorCreate, session: Session = Depends(db_session)):
    _get_project_or_404(session, project_id)
    competitor = services.add_competitor(session, project_id, body.name, body.url)
    session.commit()
    return {"id": competitor.id, "name": competitor.name, "url": competitor.url}


@app.post("/api/projects/{project_id}/evidence", status_code=201,
          tags=["Projects"], summary="Add evidence items to a project")
async def add_evidence(project_id: int, body: EvidenceBatch, session: Session = Depends(db_session)):
    project = _get_project_or_404(session, project_id)
    competitor_ids = {c.id for c in services.list_competitors(session, project_id)}
    for item in body.items:
        if item.competitor_id is not None and item.competitor_id not in competitor_ids:
            raise HTTPException(404, f"Competitor {item.competitor_id} not found in this project")
    for item in body.items:
        services.add_evidence(session, project_id, item.model_dump())
    session.commit()
    return {"added": len(body.items), "input_version": project.input_version}


# ---------------------------------------------------------------------------
# Routes: Artifacts
# ---------------------------------------------------------------------------


@app.post("/api/projects/{project_id}/artifacts", response_model=ArtifactOut, status_code=201,
          tags=["Artifacts"], summary="Store an input artifact (profiles or synthesis)")
async def create_artifact(project_id: int, body: ArtifactCreate, session: Session = Depends(db_session)):
    _get_project_or_404(session, project_id)
    try:
        artifact = services.create_artifact(session, project_id, body.type, body.content)
    except ValidationError as exc:
        raise HTTPException(422, f"Invalid {body.type} content: {exc.error_count()} error(s)") from exc
    session.commit()
    return services.artifact_summary(artifact, include_content=True)


@app.get("/api/projects/{project_id}/artifacts", response_model=list[ArtifactOut],
         tags=["Artifacts"], summary="List artifacts, newest first")
async def list_artifacts(
    project_id: int,
    artifact_type: str | None = Query(None, alias="type", description="Filter by artifact type"),
    include_content: bool = Query(False),
    session: Session = Depends(db_session),
):
    _get_project_or_404(session, project_id)
    return [services.artifact_summary(a, include_content=include_content)
            for a in services.list_artifacts(session, project_id, artifact_type)]


@app.get("/api/projects/{project_id}/artifacts/latest/{artifact_type}", response_model=ArtifactOut,
         tags=["Artifacts"], summary="Get the newest artifact of one type")
async def latest_artifact(project_id: int, artifact_type: str, session: Session = Depends(db_session)):
    if artifact_type not in ARTIFACT_CONTENT_MODELS:
        raise HTTPException(400, f"Unknown artifact type: {artifact_type}")
    _get_project_or_404(session, project_id)
    artifact = services.latest_artifact(session, project_id, artifact_type)
    if artifact is None:
        raise HTTPException(404, f"No {artifact_type} artifact found")
    return services.artifact_summary(artifact, include_content=True)


# ---------------------------------------------------------------------------
# Routes: Generation
# ---------------------------------------------------------------------------


def _generation_stream(project_id: int, client: LLMClient) -> StreamingResponse:
    """SSE stream of progress events, ending with a complete or error event."""
    async def stream():
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        session = get_session()
        try:
            task = asyncio.create_task(
                generate_results(session, project_id, client, on_progress=queue.put_nowait)
            )
            while not task.done() or not queue.empty():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=0.1)
                except asyncio.TimeoutError:
                    continue
                yield _sse({"type": "progress", **event.to_json()})

            result = task.result()
            if isinstance(result, RunFailure):
                yield _sse({"type": "error", **result.to_json()})
            else:
                yield _sse({"type": "complete", "ok": True, "run_id": result.run_id,
                            "artifact_ids": result.artifact_ids, "signals": result.signals})
        finally:
            session.close()

    return StreamingResponse(stream(), media_type="text/event-stream")


@app.post("/api/projects/{project_id}/generate", tags=["Generation"],
          summary="Generate results (SSE progress stream, or JSON with stream=false)")
async def generate(
    project_id: int,
    stream: bool = Query(True),
    session: Session = Depends(db_session),
    client: LLMClient = Depends(llm_client),
):
    _get_project_or_404(session, project_id)
    if stream:
        return _generation_stream(project_id, client)

    result = await generate_results(session, project_id, client)
    if isinstance(result, RunFailure):
        raise HTTPException(FAILURE_STATUS.get(result.code, 500), result.to_json())
    return {"ok": True, "run_id": result.run_id, "artifact_ids": result.artifact_ids,
            "signals": result.signals}


# ---------------------------------------------------------------------------
# Routes: Opportunities
# ---------------------------------------------------------------------------


@app.post("/api/projects/{project_id}/opportunities/preview", tags=["Opportunities"],
          summary="Build an evidence-gated opportunities artifact without calling an LLM")
async def preview_opportunities(project_id: int, session: Session = Depends(db_session)):
    project = _get_project_or_404(session, project_id)
    artifact = generate_opportunities_v1(
        project_run_id=str(uuid.uuid4()),
        pipeline_version=get_settings().pipeline_version,
        input_version=project.input_version or 0,
        evidence_items=services.list_evidence_items(session, project_id),
        context=services.project_context(project),
        competitor_count=len(services.list_competitors(session, project_id)),
    )
    return artifact.to_json()


def main():
    import uvicorn
    uvicorn.run("plinth.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
