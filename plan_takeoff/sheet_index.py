"""
sheet_index.py — Title-block heuristics for plan sheets.

Reads each page's text for a sheet number (A-101, S2.1, E-3), a title
(FIRST FLOOR PLAN, BUILDING SECTIONS), the discipline and the sheet type.
The result is attached to chunks as context only; it never changes how
text is chunked.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional

from plan_takeoff.schemas import PageText, SheetMetadata

logger = logging.getLogger(__name__)

_SHEET_ID_RE = re.compile(r"\b([ACEFGLMPS]|FP|ID)\s*[-.]?\s*(\d{1,3}(?:\.\d{1,2})?)\b")
_TITLE_RE = re.compile(
    r"\b((?:[A-Z]+\s+){0,3}"
    r"(?:FLOOR PLAN|ROOF PLAN|SITE PLAN|FOUNDATION PLAN|FRAMING PLAN|ELEVATIONS?|"
    r"SECTIONS?|DETAILS?|SCHEDULES?|LEGEND))\b"
)

_DISCIPLINE_PREFIX = {
    "A": "architectural",
    "ID": "architectural",
    "S": "structural",
    "E": "electrical",
    "P": "plumbing",
    "M": "mechanical",
    "FP": "fire_protection",
    "C": "civil",
    "G": "general",
    "L": "landscape",
}

_DISCIPLINE_WORDS = (
    ("ARCHITECTURAL", "architectural"),
    ("STRUCTURAL", "structural"),
    ("ELECTRICAL", "electrical"),
    ("PLUMBING", "plumbing"),
    ("MECHANICAL", "mechanical"),
    ("HVAC", "mechanical"),
    ("CIVIL", "civil"),
    ("LANDSCAPE", "landscape"),
)

# Checked in order; first hit wins.
_SHEET_TYPES = (
    ("COVER", "title"),
    ("SHEET INDEX", "title"),
    ("FLOOR PLAN", "floor_plan"),
    ("ROOF PLAN", "roof_plan"),
    ("SITE PLAN", "site_plan"),
    ("FOUNDATION", "foundation_plan"),
    ("ELEVATION", "elevation"),
    ("SECTION", "section"),
    ("SCHEDULE", "schedule"),
    ("DETAIL", "detail"),
    ("LEGEND", "legend"),
)


def build_sheet_index(pages: List[PageText]) -> Dict[int, SheetMetadata]:
    """Map page number → SheetMetadata for every page with any text."""
    index: Dict[int, SheetMetadata] = {}
    for page in pages:
        if not page.text.strip():
            continue
        index[page.page_number] = analyze_sheet(page.text, page.page_number)
    logger.debug("Sheet index built for %d/%d pages", len(index), len(pages))
    return index


def analyze_sheet(text: str, page_number: int) -> SheetMetadata:
    upper = text.upper()

    sheet_id: Optional[str] = None
    prefix: Optional[str] = None
    match = _SHEET_ID_RE.search(upper)
    if match:
        prefix = match.group(1)
        sheet_id = f"{prefix}-{match.group(2)}"

    title_match = _TITLE_RE.search(upper)
    title = " ".join(title_match.group(1).split()) if title_match else None

    discipline = _DISCIPLINE_PREFIX.get(prefix) if prefix else None
    if discipline is None:
        for word, name in _DISCIPLINE_WORDS:
            if word in upper:
                discipline = name
                break

    sheet_type = None
    for needle, kind in _SHEET_TYPES:
        if needle in upper:
            sheet_type = kind
            break
    if sheet_type is None and page_number == 1:
        sheet_type = "title"

    return SheetMetadata(
        page_no=page_number,
        sheet_id=sheet_id,
        title=title,
        discipline=discipline,
        sheet_type=sheet_type,
    )
