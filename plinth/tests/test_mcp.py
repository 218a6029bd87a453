"""Tests for the MCP server tools."""
from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from plinth import services
from plinth.llm import LLMCallError, LLMResponse
from plinth.models import Base


@pytest.fixture()
def TestSession():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with patch("plinth.mcp_server.get_session", factory):
        yield factory


@pytest.fixture()
def project_id(TestSession):
    session = TestSession()
    project = services.create_project(session, {"name": "Demo", "market": "Analytics", "target_customer": "PMs"})
    competitors = [services.add_competitor(session, project.id, n) for n in ("Amplitude", "Mixpanel", "Heap")]
    now = datetime.now(UTC).isoformat()
    for i, t in enumerate(["pricing", "reviews", "docs", "pricing"]):
        services.add_evidence(session, project.id, {
            "type": t, "url": f"https://src{i}.example.com", "title": f"{t} {i}",
            "snippet": f"Users describe {t} problems in some detail, item {i}",
            "retrieved_at": now, "competitor_id": competitors[i % 3].id,
        })
    services.create_artifact(session, project.id, "profiles",
                             {"snapshots": [{"competitor_name": c.name} for c in competitors]})
    session.commit()
    pid = project.id
    session.close()
    return pid


# =========================================================================
# _llm_error helper
# =========================================================================

class TestLlmErrorHelper:
    def test_with_retryable(self):
        from plinth.mcp_server import _llm_error
        exc = LLMCallError("API timeout", retryable=True)
        result = _llm_error(exc)
        assert result["error"] == "Generation failed: API timeout"
        assert result["error_code"] == "LLM_ERROR"
        assert result["retryable"] is True

    def test_without_retryable(self):
        from plinth.mcp_server import _llm_error
        exc = RuntimeError("unexpected")
        result = _llm_error(exc)
        assert result["error"] == "Generation failed: unexpected"
        assert result["error_code"] == "LLM_ERROR"
        assert result["retryable"] is False


class TestOverviewResource:
    def test_overview_lists_artifacts_and_rules(self):
        from plinth.mcp_server import plinth_overview
        data = json.loads(plinth_overview())
        assert set(data["artifacts"]) >= {"jtbd", "opportunities", "scoring_matrix", "strategic_bets"}
        assert data["evidence_rules"]["min_citations"] == 3
        assert data["evidence_rules"]["min_source_types"] == 2


class TestReadTools:
    def test_list_artifacts(self, project_id):
        from plinth.mcp_server import list_artifacts
        result = list_artifacts(project_id)
        assert result["total"] == 1
        assert result["items"][0]["type"] == "profiles"

    def test_list_artifacts_unknown_type(self, project_id):
        from plinth.mcp_server import list_artifacts
        assert "error" in list_artifacts(project_id, "bogus")

    def test_missing_project(self, TestSession):
        from plinth.mcp_server import get_latest_opportunities, list_artifacts, preview_opportunities
        assert list_artifacts(404) == {"error": "Project 404 not found"}
        assert get_latest_opportunities(404) == {"error": "Project 404 not found"}
        assert preview_opportunities(404) == {"error": "Project 404 not found"}

    def test_no_opportunities_yet(self, project_id):
        from plinth.mcp_server import get_latest_opportunities
        assert "error" in get_latest_opportunities(project_id)

    def test_preview(self, project_id):
        from plinth.mcp_server import preview_opportunities
        result = preview_opportunities(project_id)
        assert result["schema_version"] == "opportunity_v1.0"
        assert len(result["opportunities"]) == 2
        assert result["generation_notes"]["evidence_stats"]["competitorCount"] == 3


class TestGenerateTool:
    def _outputs(self):
        meta = {"generated_at": "2026-02-01T00:00:00Z"}
        return [
            {"jobs": [{"job_statement": "Compare plans before renewal", "context": "Renewal",
                       "who": "Ops", "frequency": "rare", "importance_score": 4, "satisfaction_score": 3}],
             "meta": meta},
            {"criteria": [{"id": "c1", "name": "Docs depth", "weight": 2}],
             "scores": [{"competitor_name": "Heap", "criteria_id": "c1", "score": 3}], "meta": meta},
            {"opportunities": [], "meta": meta},
            {"bets": [{"id": "bet-1", "title": "Docs-led growth", "summary": "Win on documentation.",
                       "what_we_say_no_to": ["Field sales"], "capability_we_must_build": ["Docs tooling"],
                       "why_competitors_wont_follow_easily": "Sales-led org charts",
                       "time_horizon": "Later"}],
             "meta": meta},
        ]

    @pytest.mark.asyncio
    async def test_generate_and_read_back(self, project_id):
        from plinth.mcp_server import generate_results_tool, get_latest_opportunities
        llm = MagicMock()
        llm.model = "test-model"
        llm.call_llm = AsyncMock(side_effect=[LLMResponse(text=json.dumps(o)) for o in self._outputs()])

        with patch("plinth.mcp_server.LLMClient", return_value=llm):
            result = await generate_results_tool(project_id)

        assert result["ok"] is True
        assert len(result["artifact_ids"]) == 4
        latest = get_latest_opportunities(project_id)
        assert latest["type"] == "opportunities"
        assert latest["run_id"] == result["run_id"]
        assert latest["content"]["opportunities"]

    @pytest.mark.asyncio
    async def test_llm_failure_is_llm_error(self, project_id):
        from plinth.mcp_server import generate_results_tool
        llm = MagicMock()
        llm.model = "test-model"
        llm.call_llm = AsyncMock(side_effect=LLMCallError("overloaded", retryable=True))

        with patch("plinth.mcp_server.LLMClient", return_value=llm):
            result = await generate_results_tool(project_id)

        assert result == {"error": "Generation failed: overloaded", "error_code": "LLM_ERROR", "retryable": True}

    @pytest.mark.asyncio
    async def test_client_construction_failure(self, project_id):
        from plinth.mcp_server import generate_results_tool
        with patch("plinth.mcp_server.LLMClient", side_effect=ValueError("Unknown LLM provider: 'x'")):
            result = await generate_results_tool(project_id)
        assert result["error_code"] == "LLM_ERROR"
        assert result["retryable"] is False

    @pytest.mark.asyncio
    async def test_precondition_failure_passes_through(self, TestSession):
        from plinth.mcp_server import generate_results_tool
        session = TestSession()
        pid = services.create_project(session, {"name": "Lonely"}).id
        session.commit()
        session.close()

        with patch("plinth.mcp_server.LLMClient", return_value=MagicMock()):
            result = await generate_results_tool(pid)

        assert result["ok"] is False
        assert result["error"]["code"] == "INSUFFICIENT_COMPETITORS"
