"""Citation selector: pick a small, diverse set of citations from an evidence pool.

Selection is deterministic for a given pool order.  The only wall-clock input
is the fallback evidence id for items without one, which affects identity
and never which items are picked.
"""
from __future__ import annotations

import logging
from collections import Counter
from urllib.parse import urlparse

from plinth.citations import (
    MIN_EXCERPT_LENGTH,
    Citation,
    EvidenceItem,
    evidence_item_to_citation,
    is_absolute_url,
    normalize_source_type,
)
from plinth.gate import MIN_CITATIONS, MIN_SOURCE_TYPES

log = logging.getLogger(__name__)

MAX_CITATIONS = 6


def item_domain(item: EvidenceItem) -> str:
    domain = (item.domain or "").strip().lower()
    if not domain:
        domain = (urlparse(item.url.strip()).hostname or "").lower()
    return domain.removeprefix("www.")


def _is_candidate(item: EvidenceItem) -> bool:
    if not is_absolute_url(item.url):
        return False
    snippet = (item.snippet or "").strip()
    title = (item.title or "").strip()
    return len(snippet) >= MIN_EXCERPT_LENGTH or len(title) >= MIN_EXCERPT_LENGTH


def select_best_citations(pool: list[EvidenceItem]) -> list[Citation]:
    """Select 3-6 citations spanning at least two source types, or ``[]``."""
    # (pool index, item, source type) for every item with usable text
    usable = [
        (idx, item, normalize_source_type(item.type))
        for idx, item in enumerate(pool)
        if _is_candidate(item)
    ]
    if len(usable) < MIN_CITATIONS:
        return []

    by_type: dict[str, list[tuple[int, EvidenceItem, str]]] = {}
    for entry in usable:
        by_type.setdefault(entry[2], []).append(entry)
    if len(by_type) < MIN_SOURCE_TYPES:
        return []

    picked: list[tuple[int, EvidenceItem, str]] = []
    picked_idx: set[int] = set()
    seen_domains: set[str] = set()

    # Pass 1: one item per type, preferring a domain not yet used
    for entries in by_type.values():
        if len(picked) >= MAX_CITATIONS:
            break
        fresh = [e for e in entries if item_domain(e[1]) not in seen_domains]
        choice = (fresh or entries)[0]
        picked.append(choice)
        picked_idx.add(choice[0])
        seen_domains.add(item_domain(choice[1]))

    # Pass 2: fill remaining slots from under-represented types and new domains
    while len(picked) < MAX_CITATIONS:
        remaining = [e for e in usable if e[0] not in picked_idx]
        if not remaining:
            break
        type_counts = Counter(e[2] for e in picked)
        remaining.sort(key=lambda e: (
            type_counts[e[2]],
            item_domain(e[1]) in seen_domains,
            e[0],
        ))
        choice = remaining[0]
        picked.append(choice)
        picked_idx.add(choice[0])
        seen_domains.add(item_domain(choice[1]))

    citations: list[Citation] = []
    for idx, item, _ in picked:
        citation = evidence_item_to_citation(item, idx)
        if citation is not None:
            citations.append(citation)

    if len(citations) < MIN_CITATIONS or len({c.source_type for c in citations}) < MIN_SOURCE_TYPES:
        log.warning("Citation selection failed closed: %d citations across %d type(s)",
                    len(citations), len({c.source_type for c in citations}))
        return []
    return citations
