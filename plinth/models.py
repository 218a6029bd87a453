from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    market: Mapped[str] = mapped_column(String(300), default="")
    target_customer: Mapped[str] = mapped_column(String(300), default="")
    your_product: Mapped[str | None] = mapped_column(Text, nullable=True)
    business_goal: Mapped[str | None] = mapped_column(Text, nullable=True)
    geography: Mapped[str | None] = mapped_column(String(200), nullable=True)
    # Bumped whenever competitors or evidence change
    input_version: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    competitors: Mapped[list[Competitor]] = relationship(
        "Competitor", back_populates="project", cascade="all, delete-orphan",
    )
    evidence: Mapped[list[EvidenceSource]] = relationship(
        "EvidenceSource", back_populates="project", cascade="all, delete-orphan",
    )
    artifacts: Mapped[list[Artifact]] = relationship(
        "Artifact", back_populates="project", cascade="all, delete-orphan",
    )


class Competitor(Base):
    __tablename__ = "competitors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    url: Mapped[str] = mapped_column(String(500), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    project: Mapped[Project] = relationship("Project", back_populates="competitors")
    evidence: Mapped[list[EvidenceSource]] = relationship("EvidenceSource", back_populates="competitor")


class EvidenceSource(Base):
    __tablename__ = "evidence_sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id"), nullable=False)
    competitor_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("competitors.id"), nullable=True)
    source_type: Mapped[str] = mapped_column(String(50), default="other")  # pricing | docs | reviews | blog | ...
    url: Mapped[str] = mapped_column(String(1000), nullable=False)
    title: Mapped[str] = mapped_column(Text, default="")
    snippet: Mapped[str] = mapped_column(Text, default="")
    domain: Mapped[str | None] = mapped_column(String(300), nullable=True)
    # ISO-8601 as scraped; kept as text so unparseable values survive for inspection
    retrieved_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    project: Mapped[Project] = relationship("Project", back_populates="evidence")
    competitor: Mapped[Competitor | None] = relationship("Competitor", back_populates="evidence")


class Artifact(Base):
    """Append-only JSON document produced (or seeded) for a project."""
    __tablename__ = "artifacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)  # jtbd | opportunities | scoring_matrix | ...
    content_json: Mapped[str] = mapped_column(Text, default="{}")
    schema_version: Mapped[int] = mapped_column(Integer, default=1)
    run_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    project: Mapped[Project] = relationship("Project", back_populates="artifacts")
