"""
missing_info.py — What a takeoff can't tell the estimator.

A takeoff line with quantity 0 is not a zero-cost item; it's an item the
models couldn't measure. This module turns those gaps into a structured
list ("Length and Width missing for Gypsum Board, check page 3 or the
wall sections") with an impact rating, so the estimator knows what to
chase before pricing.

Sources of gaps, per item:
  - reviewer annotations, emitted as given
  - measurement gaps: quantity 0 and no usable dimension string
  - count gaps: EA items with quantity 0
  - specification gaps: no material specs and notes that hedge on grade/type
  - inline "⚠️ MISSING: ..." markers the models were asked to write in notes
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Sequence

from plan_takeoff.schemas import (
    MissingInformation,
    MissingInformationAnalysis,
    MissingInformationSummary,
    ReviewedItem,
    ReviewFindings,
    TakeoffItem,
)

logger = logging.getLogger(__name__)

_MISSING_MARKER_RE = re.compile(
    r"⚠️?\s*MISSING: ([^.]+)\. WHY NEEDED: ([^.]+)\. WHERE TO FIND: ([^.]+)\. "
    r"IMPACT: (critical|high|medium|low)"
)

_SPEC_HEDGES = ("grade not specified", "type unclear", "specification missing")
_UNUSABLE_DIMENSIONS = {"", "n/a", "na", "dimension not visible", "dimensions not visible", "none", "unknown"}

_NEEDED_MEASUREMENTS = {
    "SF": ["Length", "Width"],
    "SQ": ["Length", "Width"],
    "CF": ["Length", "Width", "Height"],
    "CY": ["Length", "Width", "Height"],
    "LF": ["Length"],
    "EA": [],
}

_MEASUREMENT_IMPACT = {"SF": "critical", "SQ": "critical", "CF": "critical", "CY": "critical", "LF": "high"}


def _display_name(item: TakeoffItem, index: int) -> str:
    return item.name or item.description or f"Item {index + 1}"


def _page(item: TakeoffItem) -> Optional[int]:
    return item.bounding_box.page if item.bounding_box else None


def _has_usable_dimensions(item: TakeoffItem) -> bool:
    return bool(item.dimensions) and item.dimensions.strip().lower() not in _UNUSABLE_DIMENSIONS


def where_to_find_measurement(item: TakeoffItem) -> str:
    page, location = _page(item), item.location
    if page:
        suffix = f", {location}" if location else ""
        return f"Check dimensions on page {page}{suffix} or in detail drawings"
    if location:
        return f"Check dimensions in {location} or detail drawings"
    return "Check plan dimensions, detail drawings, or schedules"


def where_to_find_quantity(item: TakeoffItem) -> str:
    page, location = _page(item), item.location
    page_note = f" (page {page})" if page else ""
    if item.category == "mep":
        return f"Check {item.subcategory or 'MEP'} schedule on electrical/mechanical sheets{page_note}"
    if item.category in ("interior", "exterior"):
        return f"Count from plans{page_note} or check door/window/fixture schedules"
    if page:
        suffix = f", {location}" if location else ""
        return f"Count items from page {page}{suffix} or check schedules"
    return "Count items from plans or check schedules"


class MissingInformationAnalyzer:
    """
    Usage:
        analysis = MissingInformationAnalyzer().analyze(result.items)
        for gap in analysis.missing_information:
            print(gap.item_name, gap.missing_data, gap.impact)
    """

    def analyze(
        self,
        items: Sequence[TakeoffItem],
        review_findings: Optional[ReviewFindings] = None,
    ) -> MissingInformationAnalysis:
        gaps: List[MissingInformation] = []
        affected = set()

        for index, item in enumerate(items):
            item_gaps = self.analyze_item(item, index, review_findings)
            if item_gaps:
                affected.add(getattr(item, "id", None) or f"item_{index}")
                gaps.extend(item_gaps)

        summary = MissingInformationSummary(total_missing=len(gaps), items_affected=len(affected))
        for gap in gaps:
            summary.by_category[gap.category] += 1
            summary.by_impact[gap.impact] += 1

        logger.info(
            "Missing information: %d gaps across %d/%d items (%d critical)",
            len(gaps), len(affected), len(items), summary.by_impact["critical"],
        )
        return MissingInformationAnalysis(missing_information=gaps, summary=summary)

    def analyze_item(
        self,
        item: TakeoffItem,
        index: int,
        review_findings: Optional[ReviewFindings] = None,
    ) -> List[MissingInformation]:
        name = _display_name(item, index)
        item_id = getattr(item, "id", None)

        def gap(**fields) -> MissingInformation:
            return MissingInformation(item_id=item_id, item_name=name, location=item.location, **fields)

        gaps: List[MissingInformation] = []

        reviewed = self._find_review(item, index, review_findings)
        if reviewed is not None:
            for finding in reviewed.missing_information:
                gaps.append(gap(
                    category=finding.category,
                    missing_data=finding.missing_data,
                    why_needed=finding.why_needed,
                    where_to_find=finding.where_to_find,
                    impact=finding.impact,
                    suggested_action=finding.suggested_action,
                ))

        if not item.quantity and not _has_usable_dimensions(item):
            for measurement in _NEEDED_MEASUREMENTS.get(item.unit, ["Dimensions"]):
                gaps.append(gap(
                    category="measurement",
                    missing_data=measurement,
                    why_needed=f"Cannot calculate {item.unit} quantity without {measurement}",
                    where_to_find=where_to_find_measurement(item),
                    impact=_MEASUREMENT_IMPACT.get(item.unit, "medium"),
                    suggested_action=f"Measure or find {measurement} in plans to calculate quantity",
                ))

        if item.unit == "EA" and not item.quantity:
            gaps.append(gap(
                category="quantity",
                missing_data="Item count",
                why_needed="Cannot estimate cost without knowing how many items are needed",
                where_to_find=where_to_find_quantity(item),
                impact="high",
                suggested_action="Count items from plans or check schedules",
            ))

        notes = item.notes or ""
        if not item.material_specs and any(h in notes.lower() for h in _SPEC_HEDGES):
            gaps.append(gap(
                category="specification",
                missing_data="Material specifications (grade, type, size)",
                why_needed="Cannot provide accurate pricing without material specifications",
                where_to_find="Check specifications section, details, or material schedules",
                impact="medium",
                suggested_action="Review specifications section or contact architect",
            ))

        for match in _MISSING_MARKER_RE.finditer(notes):
            gaps.append(gap(
                category="other",
                missing_data=match.group(1).strip(),
                why_needed=match.group(2).strip(),
                where_to_find=match.group(3).strip(),
                impact=match.group(4),
            ))

        return gaps

    @staticmethod
    def _find_review(
        item: TakeoffItem,
        index: int,
        review_findings: Optional[ReviewFindings],
    ) -> Optional[ReviewedItem]:
        if review_findings is None:
            return None
        for reviewed in review_findings.reviewed_items:
            if reviewed.item_index == index + 1:
                return reviewed
            if reviewed.item_name and reviewed.item_name in (item.name, item.description):
                return reviewed
        return None
