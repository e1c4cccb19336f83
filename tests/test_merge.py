"""
test_merge.py — Consensus merge of multi-provider takeoff results.
"""

from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from plan_takeoff.merge import (
    items_match,
    merge_analysis_results,
    merge_quality_results,
    merge_takeoff_results,
    text_similarity,
)
from plan_takeoff.schemas import BoundingBox, QualityIssue, TakeoffItem


def _item(name, quantity=0.0, unit="LF", category="structural", **kwargs):
    kwargs.setdefault("confidence", 0.8)
    return TakeoffItem(name=name, quantity=quantity, unit=unit, category=category, **kwargs)


def _box(x, y, page=1, size=0.05):
    return BoundingBox(page=page, x=x, y=y, width=size, height=size)


def test_text_similarity_edges():
    assert text_similarity("", "Gypsum Board") == 0.0
    assert text_similarity(None, "Gypsum Board") == 0.0
    assert text_similarity("Gypsum  Board", "gypsum board") == 1.0
    print("  ✓ test_text_similarity_edges")


def test_two_providers_agree_one_missing():
    """openai 100 SF + claude 110 SF, gemini silent → one merged item."""
    result = merge_analysis_results(
        [_item("Gypsum Board 5/8 in. Type X", 100, unit="SF", category="interior")],
        [_item("gypsum board 5/8 in. type x", 110, unit="SF", category="interior")],
        [],
    )
    assert len(result.items) == 1
    merged = result.items[0]
    assert 100 <= merged.quantity <= 110
    assert merged.quantity == 105.0
    assert merged.confidence > 0.8
    assert merged.corroboration_count == 2
    assert merged.ai_provider == "merged"
    assert sorted(merged.providers) == ["claude", "openai"]
    assert merged.provider_quantities == {"openai": 100, "claude": 110}

    meta = result.metadata
    assert meta.totals_by_provider == {"openai": 1, "claude": 1, "gemini": 0}
    assert meta.total_raw_items == 2
    assert meta.duplicates_removed == 1
    assert meta.unique_items == 1
    assert meta.corroborated_items == 1
    print("  ✓ test_two_providers_agree_one_missing")


def test_three_way_confidence_is_capped():
    result = merge_analysis_results(
        [_item("Anchor Bolts 1/2 in", 24, unit="EA", confidence=0.95)],
        [_item("anchor bolts 1/2 in", 24, unit="EA", confidence=0.9)],
        [_item("Anchor Bolts 1/2 in", 26, unit="EA", confidence=0.9)],
    )
    assert len(result.items) == 1
    assert result.items[0].confidence == 1.0
    assert result.items[0].quantity == 24.0
    print("  ✓ test_three_way_confidence_is_capped")


def test_different_sizes_are_not_merged():
    a = _item("2x4 Wood Studs", 150)
    b = _item("2x6 Wood Studs", 150)
    assert items_match(a, b) is False
    result = merge_takeoff_results({"openai": [a], "claude": [b]})
    assert len(result.items) == 2
    assert result.metadata.duplicates_removed == 0
    print("  ✓ test_different_sizes_are_not_merged")


def test_different_units_or_categories_are_not_merged():
    assert items_match(_item("Concrete Footing", unit="CY"), _item("Concrete Footing", unit="SF")) is False
    assert items_match(
        _item("Concrete Footing", category="structural"),
        _item("Concrete Footing", category="other"),
    ) is False
    print("  ✓ test_different_units_or_categories_are_not_merged")


def test_bounding_boxes_decide_location():
    near_a = _item("Floor Drain", 1, unit="EA", category="mep", bounding_box=_box(0.40, 0.40))
    near_b = _item("Floor Drain", 1, unit="EA", category="mep", bounding_box=_box(0.42, 0.41))
    far = _item("Floor Drain", 1, unit="EA", category="mep", bounding_box=_box(0.85, 0.85))
    other_page = _item("Floor Drain", 1, unit="EA", category="mep", bounding_box=_box(0.40, 0.40, page=2))

    assert items_match(near_a, near_b) is True
    assert items_match(near_a, far) is False
    assert items_match(near_a, other_page) is False
    print("  ✓ test_bounding_boxes_decide_location")


def test_location_text_and_missing_location():
    kitchen = _item("Base Cabinets", 12, category="interior", location="Level 1 - Kitchen")
    kitchen2 = _item("Base Cabinets", 12, category="interior", location="Kitchen Level 1")
    garage = _item("Base Cabinets", 12, category="interior", location="Garage")
    nowhere = _item("Base Cabinets", 12, category="interior")

    assert items_match(kitchen, kitchen2) is True
    assert items_match(kitchen, garage) is False
    assert items_match(kitchen, nowhere) is True
    print("  ✓ test_location_text_and_missing_location")


def test_most_specific_subcategory_wins():
    result = merge_analysis_results(
        [_item("2x4 Top Plate", 300, subcategory="Other")],
        [_item("2x4 top plate", 320, subcategory="Framing", cost_code="6,100")],
        [_item("2x4 Top Plate", 310, subcategory="Framing")],
    )
    assert len(result.items) == 1
    merged = result.items[0]
    assert merged.subcategory == "Framing"
    assert merged.cost_code == "6,100"
    assert merged.quantity == 310.0
    print("  ✓ test_most_specific_subcategory_wins")


def test_single_provider_item_keeps_attribution():
    result = merge_analysis_results(
        [],
        [_item("Roof Underlayment", 32, unit="SQ", category="exterior", confidence=0.7)],
        [],
    )
    item = result.items[0]
    assert item.ai_provider == "claude"
    assert item.providers == ["claude"]
    assert item.confidence == 0.7
    assert item.corroboration_count == 1
    print("  ✓ test_single_provider_item_keeps_attribution")


def test_notes_and_specs_are_combined():
    result = merge_analysis_results(
        [_item("Vinyl Siding", 1200, unit="SF", category="exterior",
               notes="Double 4 profile", material_specs={"color": "white"})],
        [_item("vinyl siding", 1180, unit="SF", category="exterior",
               notes="double 4 profile", material_specs={"gauge": ".044"}, confidence=0.9)],
        [],
    )
    merged = result.items[0]
    assert merged.notes.lower() == "double 4 profile"
    assert merged.material_specs == {"color": "white", "gauge": ".044"}
    assert merged.name == "vinyl siding"
    print("  ✓ test_notes_and_specs_are_combined")


def test_no_duplicates_survive_merge():
    """No two output items from disjoint providers may still match."""
    openai = [
        _item("2x4 Wood Studs", 150),
        _item("Gypsum Board", 900, unit="SF", category="interior"),
        _item("Interior Door 3068", 6, unit="EA", category="interior"),
    ]
    claude = [
        _item("2x4 wood studs", 160),
        _item("2x6 Wood Studs", 80),
        _item("Interior Door 3068", 7, unit="EA", category="interior"),
    ]
    gemini = [
        _item("Gypsum Board", 950, unit="SF", category="interior"),
        _item("2x4 Wood Studs", 155),
    ]
    result = merge_analysis_results(openai, claude, gemini)
    items = result.items

    assert len(items) == 4
    for i, a in enumerate(items):
        for b in items[i + 1:]:
            if set(a.providers).isdisjoint(b.providers):
                assert not items_match(a, b)
    assert result.metadata.duplicates_removed == 8 - 4
    assert [i.id for i in items] == ["item_1", "item_2", "item_3", "item_4"]
    print("  ✓ test_no_duplicates_survive_merge")


def test_chained_matches_collapse_into_one_item():
    """
    A matches B and C but B does not match C. The greedy pass pairs A+B
    and leaves C alone; the resolved A+B line still matches C, so they
    must end up as one item.
    """
    a = _item("Wood Studs", 150, confidence=0.9)
    b = _item("Wood Studs interior partition walls", 160, confidence=0.8)
    c = _item("Wood Studs exterior", 140, confidence=0.7)
    assert items_match(a, b) and items_match(a, c)
    assert not items_match(b, c)

    result = merge_analysis_results([a], [b], [c])
    items = result.items

    assert len(items) == 1
    merged = items[0]
    assert merged.name == "Wood Studs"
    assert sorted(merged.providers) == ["claude", "gemini", "openai"]
    assert merged.corroboration_count == 3
    assert merged.quantity == 150.0
    assert result.metadata.duplicates_removed == 2
    print("  ✓ test_chained_matches_collapse_into_one_item")


def test_chained_match_leaves_no_duplicate_pairs():
    """Chains mixed with unrelated items: every disjoint pair left must differ."""
    openai = [
        _item("Wood Studs", 150, confidence=0.9),
        _item("Gypsum Board", 900, unit="SF", category="interior"),
    ]
    claude = [
        _item("Wood Studs interior partition walls", 160),
        _item("2x6 Wood Studs", 80),
    ]
    gemini = [
        _item("Wood Studs exterior", 140, confidence=0.7),
        _item("Gypsum Board", 950, unit="SF", category="interior"),
    ]
    items = merge_analysis_results(openai, claude, gemini).items

    for i, x in enumerate(items):
        for y in items[i + 1:]:
            if set(x.providers).isdisjoint(y.providers):
                assert not items_match(x, y), (x.name, y.name)
    assert [i.id for i in items] == [f"item_{n}" for n in range(1, len(items) + 1)]
    print("  ✓ test_chained_match_leaves_no_duplicate_pairs")


def test_all_empty():
    result = merge_analysis_results([], [], [])
    assert result.items == []
    assert result.metadata.duplicates_removed == 0
    assert result.metadata.unique_items == 0
    print("  ✓ test_all_empty")


def test_quality_merge_joins_recommendations():
    issue = dict(severity="critical", category="missing_dimension", location="Sheet A-101")
    result = merge_quality_results({
        "openai": [QualityIssue(description="Door D-4 has no size in the door schedule",
                                recommendation="Issue an RFI for door D-4 size", **issue)],
        "claude": [QualityIssue(description="door D-4 has no size in door schedule",
                                recommendation="Confirm D-4 width with architect", **issue)],
        "gemini": [QualityIssue(description="Roof slope not indicated", severity="warning",
                                category="missing_dimension")],
    })
    assert len(result.issues) == 2
    door = result.issues[0]
    assert sorted(door.providers) == ["claude", "openai"]
    assert "RFI" in door.recommendation and "architect" in door.recommendation
    assert result.duplicates_removed == 1
    print("  ✓ test_quality_merge_joins_recommendations")
