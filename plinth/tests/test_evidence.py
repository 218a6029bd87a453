"""Tests for citations, the evidence gate, the citation selector and candidates."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from plinth.citations import Citation, EvidenceItem


def _citation(idx: int, source_type: str = "pricing", excerpt: str | None = None, **kw) -> Citation:
    return Citation(
        evidence_id=kw.pop("evidence_id", f"ev-{idx}"),
        url=kw.pop("url", f"https://example{idx}.com/page"),
        source_type=source_type,
        excerpt=excerpt if excerpt is not None else f"Evidence excerpt number {idx} with enough text",
        **kw,
    )


def _item(idx: int, type_: str, **kw) -> EvidenceItem:
    return EvidenceItem(
        id=kw.pop("id", f"item-{idx}"),
        type=type_,
        url=kw.pop("url", f"https://site{idx}.example.com/{type_}"),
        title=kw.pop("title", f"{type_.title()} page {idx}"),
        snippet=kw.pop("snippet", f"Customers describe {type_} friction in detail, item {idx}"),
        **kw,
    )


# ---------------------------------------------------------------------------
# Citation model
# ---------------------------------------------------------------------------


class TestCitation:
    def test_valid_citation_round_trips_camel_case(self):
        c = _citation(1, retrieved_at="2026-01-05T10:00:00+00:00")
        data = c.to_json()
        assert data["evidenceId"] == "ev-1"
        assert data["sourceType"] == "pricing"
        assert data["retrievedAt"] == "2026-01-05T10:00:00+00:00"

    def test_excerpt_floor_19_fails_20_passes(self):
        with pytest.raises(ValidationError):
            _citation(1, excerpt="x" * 19)
        assert _citation(1, excerpt="x" * 20).excerpt == "x" * 20

    def test_relative_url_rejected(self):
        from plinth.citations import validate_citation
        with pytest.raises(ValidationError):
            validate_citation({
                "evidenceId": "a", "url": "/pricing", "sourceType": "pricing",
                "excerpt": "A long enough excerpt for the test",
            })

    def test_unknown_keys_rejected(self):
        from plinth.citations import validate_citation
        with pytest.raises(ValidationError):
            validate_citation({
                "evidenceId": "a", "url": "https://a.com", "sourceType": "docs",
                "excerpt": "A long enough excerpt for the test", "score": 5,
            })

    def test_unknown_source_type_rejected(self):
        with pytest.raises(ValidationError):
            _citation(1, source_type="blog")

    def test_bad_timestamp_rejected(self):
        with pytest.raises(ValidationError):
            _citation(1, retrieved_at="last tuesday")

    def test_is_usable_citation(self):
        from plinth.citations import is_usable_citation
        assert is_usable_citation(_citation(1))


class TestEvidenceItemMapping:
    def test_blog_maps_to_other(self):
        from plinth.citations import normalize_source_type
        assert normalize_source_type("blog") == "other"
        assert normalize_source_type("Reviews") == "reviews"
        assert normalize_source_type("press_release") == "other"
        assert normalize_source_type(None) == "other"

    def test_excerpt_prefers_long_snippet(self):
        from plinth.citations import evidence_item_to_citation
        c = evidence_item_to_citation(_item(1, "docs"), 0)
        assert c is not None
        assert c.excerpt.startswith("Customers describe docs friction")

    def test_excerpt_falls_back_to_title_then_url(self):
        from plinth.citations import best_excerpt
        item = _item(1, "docs", snippet="short", title="A title that is fairly long")
        assert best_excerpt(item) == "A title that is fairly long"
        item = _item(1, "docs", snippet="", title="", url="https://docs.example.com/getting-started")
        assert best_excerpt(item) == "https://docs.example.com/getting-started"

    def test_missing_id_gets_fallback(self):
        from plinth.citations import evidence_item_to_citation
        c = evidence_item_to_citation(_item(3, "reviews", id=None), 7)
        assert c is not None
        assert c.evidence_id.startswith("ev-7-")

    def test_unusable_item_returns_none(self):
        from plinth.citations import evidence_item_to_citation
        assert evidence_item_to_citation(_item(1, "docs", url="not a url"), 0) is None

    def test_unparseable_retrieved_at_is_dropped(self):
        from plinth.citations import evidence_item_to_citation
        c = evidence_item_to_citation(_item(1, "docs", retrieved_at="yesterday"), 0)
        assert c is not None
        assert c.retrieved_at is None


# ---------------------------------------------------------------------------
# Evidence gate
# ---------------------------------------------------------------------------


class TestEvidenceGate:
    def test_three_citations_two_types_pass(self):
        from plinth.gate import has_minimum_evidence_for_opportunity
        result = has_minimum_evidence_for_opportunity(
            [_citation(1, "pricing"), _citation(2, "reviews"), _citation(3, "pricing")]
        )
        assert result.ok
        assert result.reasons == []

    def test_two_citations_fail(self):
        from plinth.gate import has_minimum_evidence_for_opportunity
        result = has_minimum_evidence_for_opportunity([_citation(1, "pricing"), _citation(2, "docs")])
        assert not result.ok
        assert any("Insufficient citations: 2 found" in r for r in result.reasons)

    def test_single_type_fails(self):
        from plinth.gate import has_minimum_evidence_for_opportunity
        result = has_minimum_evidence_for_opportunity([_citation(i, "pricing") for i in range(5)])
        assert not result.ok
        assert any("diversity" in r for r in result.reasons)

    def test_all_reasons_reported(self):
        from plinth.gate import has_minimum_evidence_for_opportunity
        result = has_minimum_evidence_for_opportunity([_citation(1, "pricing")])
        assert len(result.reasons) == 2

    def test_empty_fails(self):
        from plinth.gate import has_minimum_evidence_for_opportunity
        assert not has_minimum_evidence_for_opportunity([]).ok

    def test_distinct_types_keep_first_seen_order(self):
        from plinth.gate import distinct_source_types
        cits = [_citation(1, "reviews"), _citation(2, "pricing"), _citation(3, "reviews")]
        assert distinct_source_types(cits) == ["reviews", "pricing"]


class TestConfidenceTiers:
    @pytest.mark.parametrize("count,types,expected", [
        (3, 2, "exploratory"),
        (7, 3, "directional"),
        (12, 5, "investment_ready"),
        (12, 3, "directional"),
        (9, 5, "directional"),
        (5, 5, "exploratory"),
    ])
    def test_tiers(self, count, types, expected):
        from plinth.citations import SOURCE_TYPES
        from plinth.gate import derive_confidence_from_evidence
        cits = [_citation(i, SOURCE_TYPES[i % types]) for i in range(count)]
        assert derive_confidence_from_evidence(cits) == expected


# ---------------------------------------------------------------------------
# Selector
# ---------------------------------------------------------------------------


class TestSelector:
    def test_single_type_pool_returns_empty(self):
        from plinth.selector import select_best_citations
        assert select_best_citations([_item(i, "pricing") for i in range(10)]) == []

    def test_too_few_items_returns_empty(self):
        from plinth.selector import select_best_citations
        assert select_best_citations([_item(1, "pricing"), _item(2, "reviews")]) == []

    def test_mixed_pool_selects_diverse_citations(self):
        from plinth.selector import MAX_CITATIONS, select_best_citations
        pool = [_item(i, "pricing") for i in range(4)] + [_item(i + 4, "reviews") for i in range(4)]
        cits = select_best_citations(pool)
        assert 3 <= len(cits) <= MAX_CITATIONS
        assert {c.source_type for c in cits} == {"pricing", "reviews"}

    def test_pass_one_takes_one_per_type(self):
        from plinth.selector import select_best_citations
        pool = [_item(1, "pricing"), _item(2, "pricing"), _item(3, "docs"), _item(4, "reviews")]
        cits = select_best_citations(pool)
        assert [c.source_type for c in cits[:3]] == ["pricing", "docs", "reviews"]

    def test_prefers_unseen_domains(self):
        from plinth.selector import select_best_citations
        pool = [
            _item(1, "pricing", url="https://a.com/pricing"),
            _item(2, "docs", url="https://a.com/docs"),
            _item(3, "docs", url="https://b.com/docs"),
            _item(4, "reviews", url="https://c.com/reviews"),
        ]
        cits = select_best_citations(pool)
        assert cits[1].url == "https://b.com/docs"

    def test_relative_url_never_takes_a_slot(self):
        from plinth.selector import select_best_citations
        pool = [
            _item(1, "pricing"),
            _item(2, "docs", url="/docs/getting-started"),
            _item(3, "docs"),
            _item(4, "reviews"),
        ]
        cits = select_best_citations(pool)
        assert [c.evidence_id for c in cits[:3]] == ["item-1", "item-3", "item-4"]
        assert "item-2" not in [c.evidence_id for c in cits]

    def test_items_without_text_are_skipped(self):
        from plinth.selector import select_best_citations
        pool = [
            _item(1, "pricing", snippet="", title="short"),
            _item(2, "pricing"), _item(3, "reviews"), _item(4, "docs"),
        ]
        cits = select_best_citations(pool)
        assert "item-1" not in [c.evidence_id for c in cits]

    def test_deterministic_for_same_pool(self):
        from plinth.selector import select_best_citations
        pool = [_item(i, t) for i, t in enumerate(["pricing", "docs", "reviews", "docs", "jobs", "pricing", "blog"])]
        assert select_best_citations(pool) == select_best_citations(pool)

    def test_item_domain_strips_www(self):
        from plinth.selector import item_domain
        assert item_domain(_item(1, "docs", url="https://www.Example.com/x")) == "example.com"
        assert item_domain(_item(1, "docs", domain="WWW.acme.io")) == "acme.io"


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------


class TestCandidates:
    def test_two_pricing_items_yield_no_candidates(self):
        from plinth.candidates import generate_candidate_opportunities
        assert generate_candidate_opportunities([_item(1, "pricing"), _item(2, "pricing")]) == []

    def test_rich_pool_yields_two_candidates(self):
        from plinth.candidates import ProjectContext, generate_candidate_opportunities
        pool = [_item(i, "pricing") for i in range(4)] + [_item(i + 4, "reviews") for i in range(4)]
        ctx = ProjectContext(market="Product analytics", target_customer="B2B product managers")
        candidates = generate_candidate_opportunities(pool, ctx)
        assert len(candidates) == 2
        first = candidates[0]
        assert "Product analytics" in first.title
        assert first.for_whom == "B2B product managers"
        assert len(first.citations) >= 3
        assert first.recommendation.risks

    def test_small_pool_yields_one_candidate(self):
        from plinth.candidates import generate_candidate_opportunities
        candidates = generate_candidate_opportunities([_item(1, "pricing"), _item(2, "reviews"), _item(3, "docs")])
        assert len(candidates) == 1

    def test_context_defaults(self):
        from plinth.candidates import generate_candidate_opportunities
        candidates = generate_candidate_opportunities([_item(1, "pricing"), _item(2, "reviews"), _item(3, "docs")])
        assert "this market" in candidates[0].title
        assert candidates[0].for_whom == "target customers"

    def test_geography_adds_assumption(self):
        from plinth.candidates import ProjectContext, generate_candidate_opportunities
        ctx = ProjectContext(market="CRM", target_customer="SMBs", geography="DACH")
        candidates = generate_candidate_opportunities(
            [_item(1, "pricing"), _item(2, "reviews"), _item(3, "docs")], ctx,
        )
        assert any("DACH" in a for a in candidates[0].assumptions)
