"""
schemas.py — Pydantic v2 models for ingestion and takeoff.

Two families live here. The ingestion side (PageText, ChunkCandidate,
TextChunk, RetrievedChunk) carries plan text from the PDF into the chunk
store. The takeoff side (TakeoffItem, MergedTakeoffResult,
MissingInformation) is the contract for AI-produced quantity lists.

AI output never flows through the pipeline as raw dicts: provider JSON is
normalized into TakeoffItem as soon as it is parsed, and anything that
does not fit the model is dropped there.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

Unit = Literal["LF", "SF", "CF", "CY", "EA", "SQ"]
Category = Literal["structural", "exterior", "interior", "mep", "finishes", "other"]
Impact = Literal["critical", "high", "medium", "low"]
GapCategory = Literal["measurement", "quantity", "specification", "detail", "other"]

UNITS: tuple = ("LF", "SF", "CF", "CY", "EA", "SQ")
CATEGORIES: tuple = ("structural", "exterior", "interior", "mep", "finishes", "other")
IMPACTS: tuple = ("critical", "high", "medium", "low")
GAP_CATEGORIES: tuple = ("measurement", "quantity", "specification", "detail", "other")


# ── Ingestion ─────────────────────────────────────────────────────────────

class TextItem(BaseModel):
    """A positioned run of text on a page (PDF points, origin top-left)."""
    text: str
    x: float = 0.0
    y: float = 0.0
    font_size: Optional[float] = None
    font_name: Optional[str] = None


class PageText(BaseModel):
    page_number: int = Field(..., ge=1)
    text: str = ""
    text_items: List[TextItem] = Field(default_factory=list)
    source: Literal["text", "ocr", "merged"] = "text"


class SheetMetadata(BaseModel):
    """Title-block facts for one sheet, e.g. A-101 'FIRST FLOOR PLAN'."""
    page_no: int = Field(..., ge=1)
    sheet_id: Optional[str] = None
    title: Optional[str] = None
    discipline: Optional[str] = None
    sheet_type: Optional[str] = None


class ChunkMetadata(BaseModel):
    chunk_page_index: int = 0
    total_pages: int = 0
    sheet_id: Optional[str] = None
    sheet_title: Optional[str] = None
    sheet_discipline: Optional[str] = None
    sheet_type: Optional[str] = None
    chunk_index: int = 0
    character_count: int = 0


class ChunkCandidate(BaseModel):
    """A chunk before it has been embedded."""
    page_number: Optional[int] = None
    snippet_text: str = Field(..., max_length=900)
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)

    @field_validator("snippet_text")
    @classmethod
    def snippet_must_not_be_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("snippet_text cannot be empty or whitespace")
        return v


class TextChunk(ChunkCandidate):
    id: str
    plan_id: str
    embedding: List[float]


class RetrievedChunk(BaseModel):
    id: str
    page_number: Optional[int] = None
    snippet_text: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    similarity: Optional[float] = None


class IngestionResult(BaseModel):
    plan_id: str
    chunk_count: int = 0
    page_count: int = 0
    ocr_used: bool = False
    warnings: List[str] = Field(default_factory=list)


# ── Takeoff ───────────────────────────────────────────────────────────────

class BoundingBox(BaseModel):
    """Page-normalized box; x/y is the top-left corner."""
    page: int = Field(..., ge=1)
    x: float = Field(..., ge=0, le=1)
    y: float = Field(..., ge=0, le=1)
    width: float = Field(..., ge=0, le=1)
    height: float = Field(..., ge=0, le=1)

    @property
    def center(self) -> tuple:
        return (self.x + self.width / 2, self.y + self.height / 2)


class TakeoffItem(BaseModel):
    """One line item as a single provider reported it."""
    name: str
    description: Optional[str] = None
    quantity: float = Field(default=0.0, ge=0)
    unit: Unit = "EA"
    location: Optional[str] = None
    category: Category = "other"
    subcategory: Optional[str] = None
    cost_code: Optional[str] = None
    cost_code_description: Optional[str] = None
    notes: Optional[str] = None
    dimensions: Optional[str] = None
    material_specs: Optional[Dict[str, str]] = None
    bounding_box: Optional[BoundingBox] = None
    confidence: float = Field(default=0.5, ge=0, le=1)

    @field_validator("name")
    @classmethod
    def name_must_not_be_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("name cannot be empty or whitespace")
        return v.strip()


class MergedTakeoffItem(TakeoffItem):
    id: str
    providers: List[str] = Field(default_factory=list)
    ai_provider: str = "merged"
    corroboration_count: int = 1
    provider_quantities: Dict[str, float] = Field(default_factory=dict)


class MergeMetadata(BaseModel):
    totals_by_provider: Dict[str, int] = Field(default_factory=dict)
    total_raw_items: int = 0
    duplicates_removed: int = 0
    unique_items: int = 0
    corroborated_items: int = 0
    provider_errors: Dict[str, str] = Field(default_factory=dict)


class MergedTakeoffResult(BaseModel):
    items: List[MergedTakeoffItem] = Field(default_factory=list)
    metadata: MergeMetadata = Field(default_factory=MergeMetadata)


class QualityIssue(BaseModel):
    """A plan-quality finding (missing dimension, conflicting callout, ...)."""
    description: str
    severity: Literal["critical", "warning", "info"] = "info"
    category: str = "general"
    location: Optional[str] = None
    bounding_box: Optional[BoundingBox] = None
    impact: Optional[str] = None
    recommendation: Optional[str] = None
    confidence: float = Field(default=0.5, ge=0, le=1)


class MergedQualityIssue(QualityIssue):
    providers: List[str] = Field(default_factory=list)


class MergedQualityResult(BaseModel):
    issues: List[MergedQualityIssue] = Field(default_factory=list)
    totals_by_provider: Dict[str, int] = Field(default_factory=dict)
    duplicates_removed: int = 0


# ── Missing information ───────────────────────────────────────────────────

class MissingInformation(BaseModel):
    item_id: Optional[str] = None
    item_name: str
    category: GapCategory
    missing_data: str
    why_needed: str
    where_to_find: str
    impact: Impact
    location: Optional[str] = None
    suggested_action: Optional[str] = None


class MissingInformationSummary(BaseModel):
    total_missing: int = 0
    by_category: Dict[str, int] = Field(
        default_factory=lambda: {c: 0 for c in GAP_CATEGORIES}
    )
    by_impact: Dict[str, int] = Field(default_factory=lambda: {i: 0 for i in IMPACTS})
    items_affected: int = 0


class MissingInformationAnalysis(BaseModel):
    missing_information: List[MissingInformation] = Field(default_factory=list)
    summary: MissingInformationSummary = Field(default_factory=MissingInformationSummary)


class ReviewedGap(BaseModel):
    category: GapCategory = "other"
    missing_data: str
    why_needed: str = ""
    where_to_find: str = ""
    impact: Impact = "medium"
    suggested_action: Optional[str] = None


class ReviewedItem(BaseModel):
    item_index: int = Field(..., ge=1)
    item_name: Optional[str] = None
    missing_information: List[ReviewedGap] = Field(default_factory=list)


class ReviewFindings(BaseModel):
    """Reviewer annotations; item_index is 1-based into the analyzed list."""
    reviewed_items: List[ReviewedItem] = Field(default_factory=list)


# ── Jobs ──────────────────────────────────────────────────────────────────

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobRecord(BaseModel):
    job_id: str
    kind: str
    plan_id: Optional[str] = None
    status: Literal["queued", "running", "done", "error"] = "queued"
    message: str = "Queued"
    result: Optional[Any] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
