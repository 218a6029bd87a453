"""Shared store operations for the Plinth API, MCP server and run pipeline."""
from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import urlparse

from sqlalchemy import select
from sqlalchemy.orm import Session

from plinth.artifacts import parse_artifact_content
from plinth.candidates import ProjectContext
from plinth.citations import EvidenceItem
from plinth.models import Artifact, Competitor, EvidenceSource, Project
from plinth.utils import json_parse

log = logging.getLogger(__name__)

PROJECT_FIELDS = ("name", "market", "target_customer", "your_product", "business_goal", "geography")

# ---------------------------------------------------------------------------
# Projects and competitors
# ---------------------------------------------------------------------------


def get_project(session: Session, project_id: int) -> Project | None:
    return session.execute(select(Project).where(Project.id == project_id)).scalars().first()


def create_project(session: Session, data: dict[str, Any]) -> Project:
    """Create a project (caller must commit)."""
    project = Project(**{f: data.get(f) for f in PROJECT_FIELDS if data.get(f) is not None})
    session.add(project)
    session.flush()
    return project


def project_context(project: Project) -> ProjectContext:
    return ProjectContext(
        market=project.market or "",
        target_customer=project.target_customer or "",
        your_product=project.your_product or None,
        business_goal=project.business_goal or None,
        geography=project.geography or None,
    )


def list_competitors(session: Session, project_id: int) -> list[Competitor]:
    return list(session.execute(
        select(Competitor).where(Competitor.project_id == project_id).order_by(Competitor.id)
    ).scalars().all())


def add_competitor(session: Session, project_id: int, name: str, url: str = "") -> Competitor:
    """Add a competitor (caller must commit)."""
    competitor = Competitor(project_id=project_id, name=name, url=url)
    session.add(competitor)
    _bump_input_version(session, project_id)
    session.flush()
    return competitor


def _bump_input_version(session: Session, project_id: int) -> None:
    project = get_project(session, project_id)
    if project is not None:
        project.input_version = (project.input_version or 0) + 1


def project_summary(project: Project) -> dict:
    return {
        "id": project.id,
        **{f: getattr(project, f) for f in PROJECT_FIELDS},
        "input_version": project.input_version or 0,
        "created_at": project.created_at.isoformat() if project.created_at else None,
        "competitors": [{"id": c.id, "name": c.name, "url": c.url} for c in project.competitors],
        "evidence_count": len(project.evidence),
        "artifact_count": len(project.artifacts),
    }


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------


def _evidence_item(row: EvidenceSource) -> EvidenceItem:
    return EvidenceItem(
        id=str(row.id),
        type=row.source_type,
        url=row.url,
        title=row.title or "",
        snippet=row.snippet or "",
        domain=row.domain or urlparse(row.url).netloc or None,
        retrieved_at=row.retrieved_at,
        competitor_id=row.competitor_id,
    )


def add_evidence(session: Session, project_id: int, item: dict[str, Any]) -> EvidenceSource:
    """Store one evidence record (caller must commit)."""
    row = EvidenceSource(
        project_id=project_id,
        competitor_id=item.get("competitor_id"),
        source_type=(item.get("type") or "other").strip().lower(),
        url=item["url"],
        title=item.get("title") or "",
        snippet=item.get("snippet") or "",
        domain=item.get("domain"),
        retrieved_at=item.get("retrieved_at") or item.get("retrievedAt"),
    )
    session.add(row)
    _bump_input_version(session, project_id)
    return row


def list_evidence_items(session: Session, project_id: int) -> list[EvidenceItem]:
    rows = session.execute(
        select(EvidenceSource).where(EvidenceSource.project_id == project_id).order_by(EvidenceSource.id)
    ).scalars().all()
    return [_evidence_item(r) for r in rows]


def list_competitor_evidence(session: Session, project_id: int) -> dict[str, list[EvidenceItem]]:
    """Evidence grouped by competitor name.

    Every competitor gets a key, with an empty list when nothing was
    collected for it, so run-level averages count it.  Evidence not tied to
    a competitor is left out.
    """
    competitors = list_competitors(session, project_id)
    names = {c.id: c.name for c in competitors}
    grouped: dict[str, list[EvidenceItem]] = {c.name: [] for c in competitors}
    for item in list_evidence_items(session, project_id):
        name = names.get(item.competitor_id) if item.competitor_id is not None else None
        if name is None:
            continue
        grouped[name].append(item)
    return grouped


# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------


def create_artifact(
    session: Session,
    project_id: int,
    artifact_type: str,
    content: dict[str, Any],
    *,
    schema_version: int = 1,
    run_id: str | None = None,
) -> Artifact:
    """Validate and add an artifact row (create-only; caller must commit)."""
    parse_artifact_content(artifact_type, content)
    artifact = Artifact(
        project_id=project_id,
        type=artifact_type,
        content_json=json.dumps(content),
        schema_version=schema_version,
        run_id=run_id,
    )
    session.add(artifact)
    return artifact


def _newest_first(query):
    return query.order_by(Artifact.created_at.desc(), Artifact.schema_version.desc(), Artifact.id.desc())


def list_artifacts(session: Session, project_id: int, artifact_type: str | None = None) -> list[Artifact]:
    query = select(Artifact).where(Artifact.project_id == project_id)
    if artifact_type:
        query = query.where(Artifact.type == artifact_type)
    return list(session.execute(_newest_first(query)).scalars().all())


def latest_artifact(session: Session, project_id: int, artifact_type: str) -> Artifact | None:
    query = select(Artifact).where(Artifact.project_id == project_id, Artifact.type == artifact_type)
    return session.execute(_newest_first(query).limit(1)).scalars().first()


def artifact_content(artifact: Artifact) -> dict[str, Any]:
    return json_parse(artifact.content_json, {})


def artifact_summary(artifact: Artifact, *, include_content: bool = False) -> dict:
    result = {
        "id": artifact.id,
        "project_id": artifact.project_id,
        "type": artifact.type,
        "schema_version": artifact.schema_version,
        "run_id": artifact.run_id,
        "created_at": artifact.created_at.isoformat() if artifact.created_at else None,
    }
    if include_content:
        result["content"] = artifact_content(artifact)
    return result


def save_run_artifacts(
    session: Session,
    project_id: int,
    contents: dict[str, dict[str, Any]],
    *,
    run_id: str,
    schema_version: int = 1,
) -> list[int]:
    """Write every run artifact in one transaction: all rows land, or none do."""
    try:
        rows = [
            create_artifact(session, project_id, artifact_type, content,
                            schema_version=schema_version, run_id=run_id)
            for artifact_type, content in contents.items()
        ]
        session.flush()
        session.commit()
    except Exception:
        session.rollback()
        log.warning("Rolled back artifact save for run %s", run_id)
        raise
    return [row.id for row in rows]
