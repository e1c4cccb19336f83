"""
test_ingestion.py — Native text extraction, OCR trigger and OCR merge.

The OCR backend is faked; these tests never touch Tesseract or poppler.
"""

from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest

from plan_takeoff.ingestion import (
    TesseractOCR,
    apply_ocr_fallback,
    extract_text_per_page,
    merge_ocr_pages,
    needs_ocr,
    validate_pdf_bytes,
)
from plan_takeoff.config import OCRConfig
from plan_takeoff.schemas import PageText
from plan_takeoff.sheet_index import analyze_sheet, build_sheet_index
from tests.helpers import build_scanned_pdf, build_text_pdf


class FakeOCR:
    def __init__(self, pages=None, available=True, error=None):
        self._pages = pages or []
        self._available = available
        self._error = error
        self.calls = 0

    def is_available(self):
        return self._available

    def ocr(self, pdf_bytes, file_name):
        self.calls += 1
        if self._error:
            raise self._error
        return self._pages


def _pages(*texts):
    return [PageText(page_number=i, text=t) for i, t in enumerate(texts, start=1)]


def test_extract_text_per_page_in_order():
    pdf = build_text_pdf([
        "A-101 FIRST FLOOR PLAN. Provide 5/8 in. type X gypsum board at corridor walls.",
        "",
        "S-201 FOUNDATION PLAN. Continuous footing 24 in. wide x 12 in. deep.",
    ])
    pages = extract_text_per_page(pdf)
    assert [p.page_number for p in pages] == [1, 2, 3]
    assert "FIRST FLOOR PLAN" in pages[0].text
    assert pages[1].text.strip() == ""
    assert "FOUNDATION PLAN" in pages[2].text
    assert all(p.source == "text" for p in pages)
    assert any(item.text == "FOUNDATION" for item in pages[2].text_items)
    print("  ✓ test_extract_text_per_page_in_order")


def test_extract_text_rejects_non_pdf():
    with pytest.raises(Exception):
        extract_text_per_page(b"this is not a pdf")
    print("  ✓ test_extract_text_rejects_non_pdf")


def test_validate_pdf_bytes_size_cap():
    validate_pdf_bytes(build_text_pdf(["A-101 FLOOR PLAN."]), max_file_size_mb=1)
    with pytest.raises(ValueError, match="too large"):
        validate_pdf_bytes(b"%PDF-" + b"0" * (2 * 1024 * 1024), max_file_size_mb=1)
    with pytest.raises(ValueError, match="empty"):
        validate_pdf_bytes(b"")
    print("  ✓ test_validate_pdf_bytes_size_cap")


def test_scanned_pdf_has_no_text():
    pages = extract_text_per_page(build_scanned_pdf(pages=3))
    assert len(pages) == 3
    assert all(p.text.strip() == "" for p in pages)
    print("  ✓ test_scanned_pdf_has_no_text")


def test_needs_ocr_threshold():
    """OCR triggers iff there are no pages or the average is under 50 chars."""
    assert needs_ocr([]) is True
    assert needs_ocr(_pages("x" * 49)) is True
    assert needs_ocr(_pages("x" * 50)) is False
    assert needs_ocr(_pages("x" * 90, "")) is True      # 45 avg
    assert needs_ocr(_pages("x" * 100, "")) is False    # 50 avg
    assert needs_ocr(_pages("x" * 30), threshold=20) is False
    print("  ✓ test_needs_ocr_threshold")


def test_fallback_not_needed_leaves_pages_alone():
    pages = _pages("x" * 200)
    backend = FakeOCR()
    out, warnings, used = apply_ocr_fallback(pages, b"", "set.pdf", backend)
    assert out == pages and warnings == [] and used is False
    assert backend.calls == 0
    print("  ✓ test_fallback_not_needed_leaves_pages_alone")


def test_fallback_without_backend_warns():
    pages = extract_text_per_page(build_scanned_pdf(pages=2))
    out, warnings, used = apply_ocr_fallback(pages, b"", "scan.pdf", None)
    assert used is False
    assert out == pages
    assert any("OCR" in w and "scanned" in w for w in warnings)
    assert any("No text extracted" in w for w in warnings)
    print("  ✓ test_fallback_without_backend_warns")


def test_fallback_with_unavailable_backend_warns():
    out, warnings, used = apply_ocr_fallback(_pages(""), b"", "scan.pdf", FakeOCR(available=False))
    assert used is False
    assert any("OCR" in w for w in warnings)
    print("  ✓ test_fallback_with_unavailable_backend_warns")


def test_fallback_merges_native_first():
    native = _pages("A-101", "")
    ocr = [
        PageText(page_number=1, text="FIRST FLOOR PLAN 1/4 in = 1 ft", source="ocr"),
        PageText(page_number=2, text="DOOR SCHEDULE D1 D2 D3", source="ocr"),
    ]
    out, warnings, used = apply_ocr_fallback(native, b"", "scan.pdf", FakeOCR(ocr))
    assert used is True
    assert warnings == []
    assert out[0].text == "A-101\nFIRST FLOOR PLAN 1/4 in = 1 ft"
    assert out[0].source == "merged"
    assert out[1].text == "DOOR SCHEDULE D1 D2 D3"
    assert out[1].source == "ocr"
    print("  ✓ test_fallback_merges_native_first")


def test_fallback_backend_error_becomes_warning():
    out, warnings, used = apply_ocr_fallback(
        _pages(""), b"", "scan.pdf", FakeOCR(error=RuntimeError("poppler missing"))
    )
    assert out[0].text == ""
    assert any("poppler missing" in w for w in warnings)
    assert any("OCR returned no text" in w for w in warnings)
    print("  ✓ test_fallback_backend_error_becomes_warning")


def test_merge_ocr_pages_passthrough_and_order():
    native = [PageText(page_number=3, text="native three"), PageText(page_number=1, text="native one")]
    ocr = [
        PageText(page_number=2, text="ocr two", source="ocr"),
        PageText(page_number=3, text="", source="ocr"),
    ]
    merged = merge_ocr_pages(native, ocr)
    assert [p.page_number for p in merged] == [1, 2, 3]
    assert merged[0].text == "native one"
    assert merged[1].text == "ocr two"
    assert merged[2].text == "native three"
    print("  ✓ test_merge_ocr_pages_passthrough_and_order")


def test_tesseract_disabled_is_unavailable():
    assert TesseractOCR(OCRConfig(enabled=False)).is_available() is False
    assert TesseractOCR(OCRConfig(tesseract_cmd="/nonexistent/tesseract-xyz")).is_available() is False
    print("  ✓ test_tesseract_disabled_is_unavailable")


def test_sheet_index_heuristics():
    meta = analyze_sheet("ARCHITECTURAL A-101 FIRST FLOOR PLAN SCALE 1/4\" = 1'-0\"", 2)
    assert meta.sheet_id == "A-101"
    assert meta.discipline == "architectural"
    assert meta.sheet_type == "floor_plan"
    assert "FLOOR PLAN" in meta.title

    meta = analyze_sheet("E2.1 LIGHTING PLAN - LEVEL 2", 7)
    assert meta.sheet_id == "E-2.1"
    assert meta.discipline == "electrical"

    index = build_sheet_index(_pages("S-201 FOUNDATION PLAN", "", "M-1 MECHANICAL SCHEDULES"))
    assert sorted(index) == [1, 3]
    assert index[1].discipline == "structural"
    assert index[3].sheet_type == "schedule"
    print("  ✓ test_sheet_index_heuristics")
