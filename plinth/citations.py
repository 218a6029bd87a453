"""Citation model: the single contract every piece of evidence must satisfy.

Scraped evidence, pasted evidence and model-asserted evidence all pass through
:func:`validate_citation` before they can support a claim.  A citation without
an absolute URL and an excerpt of at least ``MIN_EXCERPT_LENGTH`` characters is
never usable.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from plinth.utils import parse_timestamp

log = logging.getLogger(__name__)

MIN_EXCERPT_LENGTH = 20

SOURCE_TYPES = (
    "pricing", "docs", "changelog", "reviews", "community",
    "security", "jobs", "case_studies", "other",
)
SourceType = Literal[
    "pricing", "docs", "changelog", "reviews", "community",
    "security", "jobs", "case_studies", "other",
]

# Evidence types that are collected but have no citation type of their own
_EVIDENCE_TYPE_ALIASES = {"blog": "other"}


def is_absolute_url(value: str | None) -> bool:
    if not value or not value.strip():
        return False
    parsed = urlparse(value.strip())
    return bool(parsed.scheme and parsed.netloc)


class Citation(BaseModel):
    """One piece of evidence backing a claim (JSON keys are camelCase)."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    evidence_id: str = Field(alias="evidenceId", min_length=1)
    url: str
    source_type: SourceType = Field(alias="sourceType")
    excerpt: str = Field(min_length=MIN_EXCERPT_LENGTH)
    retrieved_at: str | None = Field(default=None, alias="retrievedAt")

    @field_validator("url")
    @classmethod
    def url_must_be_absolute(cls, v: str) -> str:
        if not is_absolute_url(v):
            raise ValueError("url must be a well-formed absolute URL")
        return v

    @field_validator("retrieved_at")
    @classmethod
    def retrieved_at_must_be_iso(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            datetime.fromisoformat(v)
        except ValueError as exc:
            raise ValueError("retrievedAt must be an ISO-8601 timestamp") from exc
        return v

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def validate_citation(raw: dict[str, Any] | Citation) -> Citation:
    """Validate a raw mapping into a Citation.

    Raises ``pydantic.ValidationError`` when the URL is not absolute, the
    source type is outside the closed set, the excerpt is too short, or keys
    are missing or unknown.
    """
    if isinstance(raw, Citation):
        raw = raw.model_dump(by_alias=True)
    return Citation.model_validate(raw)


def is_usable_citation(citation: Citation) -> bool:
    """Re-check the URL and excerpt floor on an already-built citation."""
    return is_absolute_url(citation.url) and len(citation.excerpt or "") >= MIN_EXCERPT_LENGTH


# ---------------------------------------------------------------------------
# Evidence items
# ---------------------------------------------------------------------------


class EvidenceItem(BaseModel):
    """A raw evidence record as held by the evidence store."""
    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    type: str = "other"
    url: str = ""
    title: str = ""
    snippet: str = ""
    domain: str | None = None
    retrieved_at: str | None = Field(default=None, alias="retrievedAt")
    competitor_id: int | None = None


def normalize_source_type(evidence_type: str | None) -> str:
    t = (evidence_type or "other").strip().lower()
    t = _EVIDENCE_TYPE_ALIASES.get(t, t)
    return t if t in SOURCE_TYPES else "other"


def best_excerpt(item: EvidenceItem) -> str:
    """Snippet when long enough, then title, then the URL itself."""
    snippet = (item.snippet or "").strip()
    if len(snippet) >= MIN_EXCERPT_LENGTH:
        return snippet
    title = (item.title or "").strip()
    if title:
        return title
    return item.url


def evidence_item_to_citation(item: EvidenceItem, index: int) -> Citation | None:
    """Map an evidence item to a validated citation, or None if it is unusable."""
    evidence_id = item.id or f"ev-{index}-{int(time.time() * 1000)}"
    try:
        return Citation(
            evidence_id=evidence_id,
            url=item.url,
            source_type=normalize_source_type(item.type),
            excerpt=best_excerpt(item),
            retrieved_at=item.retrieved_at if parse_timestamp(item.retrieved_at) else None,
        )
    except ValidationError as exc:
        log.warning("Evidence item %s is not a usable citation: %d error(s)",
                    evidence_id, exc.error_count())
        return None
