"""
merge.py — Consensus merge of multi-provider takeoff results.

Three models reading the same sheet never agree exactly. One calls it
"2x4 Wood Studs @ 16 O.C.", another "Wood Stud Framing 2x4", the third
misses it entirely; quantities come back 100, 110 and nothing. This
module decides which reports are the same physical item and folds them
into one line.

Two items from different providers are duplicates when all of these hold:
  - same category and same unit
  - name or description similarity (rapidfuzz token-set ratio) at or above
    `name_similarity`, and any size tokens (2x4, 5/8", 16ga) agree
  - compatible locations: with boxes on both, same page and the boxes
    overlap or their centres are within `bbox_center_tolerance`; else with
    location text on both, similarity at or above `location_similarity`;
    else no evidence either way, which counts as compatible

Quantities do not have to agree; disagreement is what the merge resolves.
A cluster holds at most one item per provider, and provider-disjoint
clusters whose resolved lines still match after the first pass are
consolidated, so no two output items are duplicates of each other.

Resolved fields: median of the positive quantities, the most specific
subcategory / cost code (majority vote, then the most confident provider),
name, location and box from the most confident member, the longest
description, and de-duplicated notes and dimensions. Corroborated items
get a confidence boost of `corroboration_boost` per extra provider.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar

import numpy as np
from rapidfuzz import fuzz

from plan_takeoff.config import MergeConfig, config
from plan_takeoff.schemas import (
    BoundingBox,
    MergedQualityIssue,
    MergedQualityResult,
    MergedTakeoffItem,
    MergedTakeoffResult,
    MergeMetadata,
    QualityIssue,
    TakeoffItem,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
Member = Tuple[str, T]

_GENERIC_VALUES = {"other", "uncategorized", "general", "misc", "miscellaneous", "n/a", "none", "unknown"}

# 2x4, 2 x 10, 4×8, 5/8", 16 ga, 1/2 in
_SIZE_TOKEN_RE = re.compile(
    r"\d+(?:\.\d+)?\s*[x×]\s*\d+(?:\.\d+)?"
    r"|\d+(?:/\d+)?\s*(?:\"|in\b|inch\b|ga\b|gauge\b|mm\b)",
    re.IGNORECASE,
)


# ── Similarity ────────────────────────────────────────────────────────────

def text_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Token-set similarity in [0,1]; 0 when either side is empty."""
    if not a or not b:
        return 0.0
    a, b = " ".join(a.lower().split()), " ".join(b.lower().split())
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return fuzz.token_set_ratio(a, b) / 100.0


def _size_tokens(text: Optional[str]) -> set:
    if not text:
        return set()
    return {
        re.sub(r"\s+", "", m.group()).lower().replace("×", "x").replace("inch", "in").replace('"', "in")
        for m in _SIZE_TOKEN_RE.finditer(text)
    }


def _sizes_conflict(a: Optional[str], b: Optional[str]) -> bool:
    ta, tb = _size_tokens(a), _size_tokens(b)
    return bool(ta and tb and ta.isdisjoint(tb))


def name_similarity(a: TakeoffItem, b: TakeoffItem) -> float:
    return max(text_similarity(a.name, b.name), text_similarity(a.description, b.description))


def _boxes_close(a: BoundingBox, b: BoundingBox, tolerance: float) -> bool:
    if a.page != b.page:
        return False
    overlap_w = min(a.x + a.width, b.x + b.width) - max(a.x, b.x)
    overlap_h = min(a.y + a.height, b.y + b.height) - max(a.y, b.y)
    if overlap_w > 0 and overlap_h > 0:
        return True
    (ax, ay), (bx, by) = a.center, b.center
    return float(np.hypot(ax - bx, ay - by)) <= tolerance


def locations_compatible(
    a_box: Optional[BoundingBox],
    b_box: Optional[BoundingBox],
    a_location: Optional[str],
    b_location: Optional[str],
    tolerance: float,
    text_threshold: float,
) -> bool:
    if a_box is not None and b_box is not None:
        return _boxes_close(a_box, b_box, tolerance)
    if a_location and b_location:
        return text_similarity(a_location, b_location) >= text_threshold
    return True


def items_match(a: TakeoffItem, b: TakeoffItem, cfg: Optional[MergeConfig] = None) -> bool:
    """The duplicate predicate for two items reported by different providers."""
    cfg = cfg or config.merge
    if a.category != b.category or a.unit != b.unit:
        return False
    if _sizes_conflict(a.name, b.name):
        return False
    if name_similarity(a, b) < cfg.name_similarity:
        return False
    return locations_compatible(
        a.bounding_box, b.bounding_box, a.location, b.location,
        cfg.bbox_center_tolerance, cfg.location_similarity,
    )


def issues_match(a: QualityIssue, b: QualityIssue, cfg: Optional[MergeConfig] = None) -> bool:
    cfg = cfg or config.merge
    if a.severity != b.severity or a.category.lower() != b.category.lower():
        return False
    if text_similarity(a.description, b.description) < cfg.issue_description_similarity:
        return False
    return locations_compatible(
        a.bounding_box, b.bounding_box, a.location, b.location,
        cfg.bbox_center_tolerance, cfg.issue_location_similarity,
    )


# ── Clustering ────────────────────────────────────────────────────────────

def _cluster(
    provider_items: Mapping[str, Sequence[T]],
    match: Callable[[T, T], bool],
    score: Callable[[T, T], float],
    represent: Callable[[List[Member]], T],
) -> List[List[Member]]:
    """
    Greedy clustering with at most one member per provider per cluster.

    Each item joins the best-scoring cluster in which it matches every
    existing member and whose provider slot is still free. The greedy
    pass alone can leave chains behind: A matches B and C, B does not
    match C, so C ends up alone while the resolved A+B line still matches
    it. A second pass therefore compares what each cluster resolves to
    (`represent`) and folds provider-disjoint clusters whose resolved
    items match, until nothing changes.
    """
    clusters: List[List[Member]] = []

    for provider, items in provider_items.items():
        for item in items:
            best: Optional[List[Member]] = None
            best_score = -1.0
            for cluster in clusters:
                if any(p == provider for p, _ in cluster):
                    continue
                if not all(match(item, other) for _, other in cluster):
                    continue
                s = float(np.mean([score(item, other) for _, other in cluster]))
                if s > best_score:
                    best, best_score = cluster, s
            if best is None:
                clusters.append([(provider, item)])
            else:
                best.append((provider, item))

    merged_any = True
    while merged_any:
        merged_any = False
        resolved = [represent(c) for c in clusters]
        for i in range(len(clusters)):
            for j in range(i + 1, len(clusters)):
                left, right = clusters[i], clusters[j]
                if {p for p, _ in left} & {p for p, _ in right}:
                    continue
                if match(resolved[i], resolved[j]):
                    left.extend(right)
                    del clusters[j]
                    merged_any = True
                    break
            if merged_any:
                break

    return clusters


# ── Field resolution ──────────────────────────────────────────────────────

def _by_confidence(members: List[Member]) -> List[Member]:
    # sorted() is stable, so ties keep provider order
    return sorted(members, key=lambda m: m[1].confidence, reverse=True)


def _most_specific(values: Sequence[Optional[str]]) -> Optional[str]:
    """
    Pick one value from confidence-ordered candidates: drop blanks and
    generic labels, take the majority, break ties by order (most
    confident first).
    """
    specific = [v for v in values if v and v.strip().lower() not in _GENERIC_VALUES]
    if not specific:
        return next((v for v in values if v), None)
    votes = Counter(v.strip().lower() for v in specific)
    top = max(votes.values())
    for v in specific:
        if votes[v.strip().lower()] == top:
            return v
    return specific[0]


def _join_unique(values: Sequence[Optional[str]]) -> Optional[str]:
    seen = set()
    parts = []
    for v in values:
        if not v:
            continue
        key = " ".join(v.lower().split())
        if key in seen:
            continue
        seen.add(key)
        parts.append(v.strip())
    return " | ".join(parts) if parts else None


def _combined_confidence(confidences: Sequence[float], cfg: MergeConfig) -> float:
    if len(confidences) == 1:
        return confidences[0]
    boosted = float(np.mean(confidences)) + cfg.corroboration_boost * (len(confidences) - 1)
    return round(min(cfg.max_confidence, boosted), 4)


def resolve_cluster(members: List[Member], item_id: str, cfg: Optional[MergeConfig] = None) -> MergedTakeoffItem:
    cfg = cfg or config.merge
    ordered = _by_confidence(members)
    items = [item for _, item in ordered]
    top = items[0]

    positives = [i.quantity for i in items if i.quantity > 0]
    quantity = round(float(np.median(positives)), 2) if positives else 0.0

    cost_code = _most_specific([i.cost_code for i in items])
    cost_code_description = next(
        (i.cost_code_description for i in items if cost_code and i.cost_code == cost_code and i.cost_code_description),
        _most_specific([i.cost_code_description for i in items]),
    )

    descriptions = [i.description for i in items if i.description]
    specs: Dict[str, str] = {}
    for i in reversed(items):
        specs.update(i.material_specs or {})

    providers = [p for p, _ in members]
    return MergedTakeoffItem(
        id=item_id,
        name=top.name,
        description=max(descriptions, key=len) if descriptions else None,
        quantity=quantity,
        unit=top.unit,
        location=next((i.location for i in items if i.location), None),
        category=_most_specific([i.category for i in items]) or "other",
        subcategory=_most_specific([i.subcategory for i in items]),
        cost_code=cost_code,
        cost_code_description=cost_code_description,
        notes=_join_unique([i.notes for i in items]),
        dimensions=_join_unique([i.dimensions for i in items]),
        material_specs=specs or None,
        bounding_box=next((i.bounding_box for i in items if i.bounding_box), None),
        confidence=_combined_confidence([i.confidence for i in items], cfg),
        providers=providers,
        ai_provider=providers[0] if len(providers) == 1 else "merged",
        corroboration_count=len(providers),
        provider_quantities={p: i.quantity for p, i in members},
    )


def resolve_issue_cluster(members: List[Member], cfg: Optional[MergeConfig] = None) -> MergedQualityIssue:
    cfg = cfg or config.merge
    issues = [i for _, i in _by_confidence(members)]
    top = issues[0]
    return MergedQualityIssue(
        description=top.description,
        severity=top.severity,
        category=top.category,
        location=next((i.location for i in issues if i.location), None),
        bounding_box=next((i.bounding_box for i in issues if i.bounding_box), None),
        impact=_join_unique([i.impact for i in issues]),
        recommendation=_join_unique([i.recommendation for i in issues]),
        confidence=_combined_confidence([i.confidence for i in issues], cfg),
        providers=[p for p, _ in members],
    )


# ── Public API ────────────────────────────────────────────────────────────

def merge_takeoff_results(
    provider_items: Mapping[str, Sequence[TakeoffItem]],
    cfg: Optional[MergeConfig] = None,
    provider_errors: Optional[Mapping[str, str]] = None,
) -> MergedTakeoffResult:
    """
    Merge per-provider item lists into one deduplicated list.

    Items reported by a single provider are kept. Output order follows
    the first appearance of each item across providers.
    """
    cfg = cfg or config.merge
    clusters = _cluster(
        provider_items,
        match=lambda a, b: items_match(a, b, cfg),
        score=name_similarity,
        represent=lambda members: resolve_cluster(members, "candidate", cfg),
    )
    merged = [resolve_cluster(c, f"item_{n}", cfg) for n, c in enumerate(clusters, start=1)]

    totals = {p: len(items) for p, items in provider_items.items()}
    total_raw = sum(totals.values())
    metadata = MergeMetadata(
        totals_by_provider=totals,
        total_raw_items=total_raw,
        duplicates_removed=total_raw - len(merged),
        unique_items=len(merged),
        corroborated_items=sum(1 for m in merged if m.corroboration_count > 1),
        provider_errors=dict(provider_errors or {}),
    )
    logger.debug(
        "Merged %s → %d items (%d duplicates removed)",
        totals, len(merged), metadata.duplicates_removed,
    )
    return MergedTakeoffResult(items=merged, metadata=metadata)


def merge_analysis_results(
    openai_items: Sequence[TakeoffItem],
    claude_items: Sequence[TakeoffItem],
    gemini_items: Sequence[TakeoffItem],
    cfg: Optional[MergeConfig] = None,
) -> MergedTakeoffResult:
    """Three-provider convenience wrapper around merge_takeoff_results."""
    return merge_takeoff_results(
        {"openai": openai_items, "claude": claude_items, "gemini": gemini_items}, cfg
    )


def merge_quality_results(
    provider_issues: Mapping[str, Sequence[QualityIssue]],
    cfg: Optional[MergeConfig] = None,
) -> MergedQualityResult:
    """Same clustering for plan-quality findings; impacts and recommendations are joined."""
    cfg = cfg or config.merge
    clusters = _cluster(
        provider_issues,
        match=lambda a, b: issues_match(a, b, cfg),
        score=lambda a, b: text_similarity(a.description, b.description),
        represent=lambda members: resolve_issue_cluster(members, cfg),
    )
    merged = [resolve_issue_cluster(c, cfg) for c in clusters]

    totals = {p: len(v) for p, v in provider_issues.items()}
    return MergedQualityResult(
        issues=merged,
        totals_by_provider=totals,
        duplicates_removed=sum(totals.values()) - len(merged),
    )
