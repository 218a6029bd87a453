"""Tests for the store layer: db sessions, services and shared utilities."""
from __future__ import annotations

from datetime import UTC, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from plinth.models import Base, Project


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def sample_project(session: Session) -> Project:
    from plinth.services import add_competitor, create_project
    project = create_project(session, {
        "name": "Demo", "market": "Product analytics", "target_customer": "PMs",
        "business_goal": "Grow self-serve revenue",
    })
    add_competitor(session, project.id, "Amplitude", "https://amplitude.com")
    add_competitor(session, project.id, "Heap", "https://heap.io")
    session.commit()
    return project


# =========================================================================
# Utilities
# =========================================================================

class TestJsonParse:
    def test_valid_json(self):
        from plinth.utils import json_parse
        assert json_parse('{"a": 1}') == {"a": 1}

    def test_invalid_json_returns_empty_dict(self):
        from plinth.utils import json_parse
        assert json_parse("{nope") == {}

    def test_custom_default(self):
        from plinth.utils import json_parse
        assert json_parse(None, []) == []


class TestParseTimestamp:
    def test_naive_becomes_utc(self):
        from plinth.utils import parse_timestamp
        assert parse_timestamp("2026-01-01T10:00:00") == datetime(2026, 1, 1, 10, tzinfo=UTC)

    def test_zulu_suffix(self):
        from plinth.utils import parse_timestamp
        assert parse_timestamp("2026-01-01T10:00:00Z") == datetime(2026, 1, 1, 10, tzinfo=UTC)

    def test_garbage(self):
        from plinth.utils import parse_timestamp
        assert parse_timestamp("soon") is None
        assert parse_timestamp(None) is None


class TestRoundHalfUp:
    def test_halves_go_up(self):
        from plinth.utils import round_half_up
        assert round_half_up(12.5) == 13
        assert round_half_up(62.5) == 63
        assert round_half_up(0.5) == 1

    def test_whole_numbers(self):
        from plinth.utils import round_half_up
        assert round_half_up(12.4) == 12
        assert isinstance(round_half_up(7.0), int)

    def test_two_digits(self):
        from plinth.utils import round_half_up
        assert round_half_up(0.125, 2) == 0.13
        assert round_half_up(66.666, 2) == 66.67


# =========================================================================
# Sessions
# =========================================================================

class TestSessionManagement:
    def test_init_db_creates_file(self, tmp_path):
        from plinth.db import get_session, init_db
        db_file = tmp_path / "nested" / "plinth.db"
        init_db(db_file)
        assert db_file.exists()
        session = get_session()
        try:
            assert session.query(Project).count() == 0
        finally:
            session.close()

    def test_session_scope_rolls_back(self, tmp_path):
        from plinth.db import init_db, session_scope
        init_db(tmp_path / "scope.db")
        with pytest.raises(RuntimeError):
            with session_scope() as session:
                session.add(Project(name="Ghost"))
                session.flush()
                raise RuntimeError("boom")
        with session_scope() as session:
            assert session.query(Project).count() == 0


# =========================================================================
# Projects, competitors and evidence
# =========================================================================

class TestProjects:
    def test_create_project(self, session, sample_project):
        from plinth.services import get_project
        got = get_project(session, sample_project.id)
        assert got.name == "Demo"
        assert got.input_version == 2

    def test_project_context(self, sample_project):
        from plinth.services import project_context
        ctx = project_context(sample_project)
        assert ctx.market == "Product analytics"
        assert ctx.business_goal == "Grow self-serve revenue"
        assert ctx.your_product is None

    def test_project_summary_shape(self, session, sample_project):
        from plinth.services import project_summary
        session.refresh(sample_project)
        result = project_summary(sample_project)
        assert result["name"] == "Demo"
        assert [c["name"] for c in result["competitors"]] == ["Amplitude", "Heap"]
        assert result["evidence_count"] == 0
        assert result["created_at"] is not None

    def test_missing_project(self, session):
        from plinth.services import get_project
        assert get_project(session, 12345) is None


class TestEvidence:
    def test_add_evidence_bumps_version_and_normalizes_type(self, session, sample_project):
        from plinth.services import add_evidence, list_evidence_items
        add_evidence(session, sample_project.id, {
            "type": " Pricing ", "url": "https://www.amplitude.com/pricing",
            "snippet": "Growth plan starts at a monthly fee per seat", "retrievedAt": "2026-01-02T00:00:00Z",
        })
        session.commit()
        items = list_evidence_items(session, sample_project.id)
        assert len(items) == 1
        assert items[0].type == "pricing"
        assert items[0].domain == "www.amplitude.com"
        assert items[0].retrieved_at == "2026-01-02T00:00:00Z"
        assert items[0].id == str(1)
        assert sample_project.input_version == 3

    def test_competitor_grouping_skips_unassigned(self, session, sample_project):
        from plinth.services import add_evidence, list_competitor_evidence, list_competitors
        amplitude, heap = list_competitors(session, sample_project.id)
        for comp_id in (amplitude.id, amplitude.id, heap.id, None):
            add_evidence(session, sample_project.id, {"type": "docs", "url": "https://x.com", "competitor_id": comp_id})
        session.commit()
        grouped = list_competitor_evidence(session, sample_project.id)
        assert {name: len(items) for name, items in grouped.items()} == {"Amplitude": 2, "Heap": 1}

    def test_competitor_grouping_keeps_competitors_without_evidence(self, session, sample_project):
        from plinth.guardrails import check_evidence_quality
        from plinth.services import add_competitor, add_evidence, list_competitor_evidence, list_competitors
        add_competitor(session, sample_project.id, "Mixpanel", "https://mixpanel.com")
        amplitude = list_competitors(session, sample_project.id)[0]
        for i, source_type in enumerate(["pricing", "reviews"] * 3):
            add_evidence(session, sample_project.id, {
                "type": source_type, "url": f"https://amplitude.com/{i}", "competitor_id": amplitude.id,
            })
        session.commit()

        grouped = list_competitor_evidence(session, sample_project.id)
        assert {name: len(items) for name, items in grouped.items()} == {"Amplitude": 6, "Heap": 0, "Mixpanel": 0}
        quality = check_evidence_quality(grouped, 168)
        assert not quality.passes
        assert quality.confidence == "low"


# =========================================================================
# Artifacts
# =========================================================================

class TestArtifacts:
    def test_create_validates_content(self, session, sample_project):
        from pydantic import ValidationError

        from plinth.services import create_artifact
        with pytest.raises(ValidationError):
            create_artifact(session, sample_project.id, "jtbd", {"jobs": []})

    def test_unknown_type(self, session, sample_project):
        from plinth.services import create_artifact
        with pytest.raises(ValueError, match="Unknown artifact type"):
            create_artifact(session, sample_project.id, "bogus", {})

    def test_latest_prefers_highest_id_within_same_second(self, session, sample_project):
        from plinth.services import artifact_content, create_artifact, latest_artifact
        create_artifact(session, sample_project.id, "synthesis", {"v": 1})
        create_artifact(session, sample_project.id, "synthesis", {"v": 2})
        session.commit()
        assert artifact_content(latest_artifact(session, sample_project.id, "synthesis")) == {"v": 2}

    def test_latest_prefers_newer_created_at(self, session, sample_project):
        from plinth.models import Artifact
        from plinth.services import artifact_content, latest_artifact
        session.add(Artifact(project_id=sample_project.id, type="synthesis", content_json='{"v": "new"}',
                             created_at=datetime(2026, 2, 1)))
        session.add(Artifact(project_id=sample_project.id, type="synthesis", content_json='{"v": "old"}',
                             created_at=datetime(2025, 2, 1)))
        session.commit()
        assert artifact_content(latest_artifact(session, sample_project.id, "synthesis")) == {"v": "new"}

    def test_artifact_summary(self, session, sample_project):
        from plinth.services import artifact_summary, create_artifact
        artifact = create_artifact(session, sample_project.id, "synthesis", {"themes": []}, run_id="r-1")
        session.commit()
        session.refresh(artifact)
        summary = artifact_summary(artifact)
        assert summary["type"] == "synthesis"
        assert summary["run_id"] == "r-1"
        assert "content" not in summary
        assert artifact_summary(artifact, include_content=True)["content"] == {"themes": []}

    def test_save_run_artifacts_is_atomic(self, session, sample_project):
        from pydantic import ValidationError

        from plinth.services import list_artifacts, save_run_artifacts
        with pytest.raises(ValidationError):
            save_run_artifacts(session, sample_project.id, {
                "synthesis": {"themes": []},
                "jtbd": {"jobs": []},
            }, run_id="r-2")
        assert list_artifacts(session, sample_project.id) == []

    def test_save_run_artifacts_returns_ids_in_order(self, session, sample_project):
        from plinth.services import save_run_artifacts
        ids = save_run_artifacts(session, sample_project.id, {
            "synthesis": {"a": 1}, "profiles": {"snapshots": []},
        }, run_id="r-3")
        assert len(ids) == 2
        assert ids[0] < ids[1]
