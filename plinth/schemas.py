"""Pydantic request/response schemas for the Plinth API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from plinth.artifacts import ARTIFACT_CONTENT_MODELS


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1)
    market: str = ""
    target_customer: str = ""
    your_product: str | None = None
    business_goal: str | None = None
    geography: str | None = None


class CompetitorOut(BaseModel):
    id: int
    name: str
    url: str = ""


class ProjectOut(BaseModel):
    id: int
    name: str
    market: str
    target_customer: str
    your_product: str | None = None
    business_goal: str | None = None
    geography: str | None = None
    input_version: int = 0
    created_at: str | None = None
    competitors: list[CompetitorOut] = []
    evidence_count: int = 0
    artifact_count: int = 0


class CompetitorCreate(BaseModel):
    name: str = Field(min_length=1)
    url: str = ""


class EvidenceCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str = "other"
    url: str = Field(min_length=1)
    title: str = ""
    snippet: str = ""
    domain: str | None = None
    retrieved_at: str | None = Field(default=None, alias="retrievedAt")
    competitor_id: int | None = None


class EvidenceBatch(BaseModel):
    items: list[EvidenceCreate] = Field(min_length=1)


class ArtifactCreate(BaseModel):
    type: str
    content: dict[str, Any]

    @field_validator("type")
    @classmethod
    def known_type(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ARTIFACT_CONTENT_MODELS:
            raise ValueError(f"type must be one of: {', '.join(sorted(ARTIFACT_CONTENT_MODELS))}")
        return v


class ArtifactOut(BaseModel):
    id: int
    project_id: int
    type: str
    schema_version: int
    run_id: str | None = None
    created_at: str | None = None
    content: dict[str, Any] | None = None
