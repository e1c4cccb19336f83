"""
extraction.py — Multi-model takeoff extraction and response parsing.

Every provider gets the same system prompt: the JSON item contract, the
category/subcategory tree and the bounding-box rules. What comes back is
only JSON most of the time. The usual failures, roughly in order of
frequency:

  - the JSON is wrapped in ```json fences
  - the model chats before or after the object
  - the response was cut off at max_tokens in the middle of the items array
  - trailing commas
  - items shaped slightly wrong: "sq ft" instead of SF, quantity "150",
    confidence 95 instead of 0.95, a category we don't use

Parsing therefore runs in layers. Strict JSON first (with the fence and
first-object fallbacks), then a salvage pass that walks the items array
and keeps every object that closes cleanly. Each raw item is normalized
into a TakeoffItem immediately; whatever can't be normalized is dropped
and logged, never passed downstream as a dict.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from pydantic import ValidationError

from plan_takeoff.config import MergeConfig, config
from plan_takeoff.merge import merge_quality_results, merge_takeoff_results
from plan_takeoff.providers import VisionProvider, analyze_with_all_providers
from plan_takeoff.schemas import (
    CATEGORIES,
    UNITS,
    BoundingBox,
    MergedQualityResult,
    MergedTakeoffResult,
    QualityIssue,
    TakeoffItem,
)

logger = logging.getLogger(__name__)

PROVIDER_NAMES = ("openai", "claude", "gemini")


# ── Prompt Templates ──────────────────────────────────────────────────────
# The double-brace {{}} is str.format escaping, not a typo.

BOUNDING_BOX_INSTRUCTIONS = """
For EVERY item, give the location on the sheet where you read it as a
normalized bounding box:

"bounding_box": {"page": 1, "x": 0.25, "y": 0.30, "width": 0.15, "height": 0.10}

- x / y is the top-left corner; all four values are fractions of the page (0 to 1)
- page numbers start at 1 and follow the order of the images
- box the feature together with its dimension strings and labels
- if an item appears in several places, box the primary reference
"""

TAKEOFF_SYSTEM_PROMPT = """You are a senior construction estimator performing a quantity takeoff from construction plan images.

Respond ONLY with a JSON object. No explanations, no markdown. If the plan is hard to read, still return the structure with whatever you can determine and say so in the item notes.
{bbox}
METHOD:
1. Read every dimension, annotation, schedule and keynote visible on the sheets
2. Compute quantities from the dimensions and the drawing scale; show the dimensions you used
3. Be specific: "2x6 Top Plate", not "lumber"
4. If a dimension is not visible, put "dimension not visible" in notes and leave quantity 0

CATEGORIES (category → typical subcategories):
- structural: Foundation, Framing, Structural Steel, Engineered Lumber
- exterior: Siding & Cladding, Windows, Exterior Doors, Roofing, Gutters & Downspouts, Exterior Trim, Decks & Porches
- interior: Interior Walls, Interior Doors, Flooring, Ceilings, Interior Trim, Stairs, Cabinets & Millwork, Countertops
- mep: Electrical, Plumbing, HVAC, Fire Protection
- finishes: Paint, Tile, Wallcovering, Hardware, Mirrors & Accessories, Appliances
- other: Insulation, Weatherproofing, Site Work, Concrete, Landscaping, Specialties

UNITS: LF (linear feet), SF (square feet), CF (cubic feet), CY (cubic yards), EA (each), SQ (100 SF of roofing)

If an item is missing information you need, add to its notes:
"⚠️ MISSING: <what>. WHY NEEDED: <why>. WHERE TO FIND: <where>. IMPACT: critical|high|medium|low"

RESPONSE FORMAT:
{{
  "items": [
    {{
      "name": "2x4 Stud Framing",
      "description": "Interior partition studs @ 16 in. O.C.",
      "quantity": 150.5,
      "unit": "LF|SF|CF|CY|EA|SQ",
      "location": "Level 1 - Kitchen",
      "category": "structural|exterior|interior|mep|finishes|other",
      "subcategory": "Framing",
      "cost_code": "6,100",
      "cost_code_description": "Rough Carpentry",
      "notes": "Assumptions, grades, installation notes",
      "dimensions": "20' x 30'",
      "material_specs": {{"grade": "SPF #2"}},
      "bounding_box": {{"page": 1, "x": 0.25, "y": 0.30, "width": 0.15, "height": 0.10}},
      "confidence": 0.9
    }}
  ]
}}
""".format(bbox=BOUNDING_BOX_INSTRUCTIONS)

QUALITY_SYSTEM_PROMPT = """You are a plan reviewer checking construction drawings for problems that would block an accurate bid.

Respond ONLY with a JSON object:
{
  "issues": [
    {
      "description": "Door D-4 has no size in the door schedule",
      "severity": "critical|warning|info",
      "category": "missing_dimension|conflict|unclear_spec|code|other",
      "location": "Sheet A-101, Level 1 corridor",
      "bounding_box": {"page": 1, "x": 0.25, "y": 0.30, "width": 0.15, "height": 0.10},
      "impact": "What goes wrong in the estimate",
      "recommendation": "What to ask the architect",
      "confidence": 0.8
    }
  ]
}
"""


def build_takeoff_user_prompt(image_count: int) -> str:
    if image_count > 1:
        scope = (
            f"these {image_count} plan pages. The images are sequential pages of "
            "the same plan set; consider them together"
        )
    else:
        scope = "this plan page"
    return (
        f"Perform a complete quantity takeoff on {scope}. Calculate quantities for every "
        "material and component you can measure, include the dimensions you used, and "
        "give every item a bounding_box. Start your response with { and end with }."
    )


def build_quality_user_prompt(image_count: int) -> str:
    pages = f"these {image_count} plan pages" if image_count > 1 else "this plan page"
    return f"Review {pages} for missing, conflicting or unclear information. Respond with JSON only."


# ── Response parsing ──────────────────────────────────────────────────────

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


class ParsedPayload(NamedTuple):
    """A provider payload after shape detection: kind is envelope, nested, bare_list or unknown."""
    kind: str
    raw_items: List[Any]


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip().rstrip("`").strip()


def parse_json_payload(text: str) -> Optional[Any]:
    """
    Strict JSON parse with the usual fallbacks: direct, fence-stripped,
    then the first {...} span. Returns None when none of them parse.
    """
    if not text or not text.strip():
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    match = re.search(r"\{[\s\S]*\}", cleaned)
    if match:
        try:
            return json.loads(match.group())
        except json.JSONDecodeError:
            pass
    return None


def classify_payload(payload: Any, key: str = "items") -> ParsedPayload:
    if isinstance(payload, list):
        return ParsedPayload("bare_list", payload)
    if isinstance(payload, dict):
        if isinstance(payload.get(key), list):
            return ParsedPayload("envelope", payload[key])
        for wrapper in ("takeoff", "analysis", "result", "data"):
            inner = payload.get(wrapper)
            if isinstance(inner, dict) and isinstance(inner.get(key), list):
                return ParsedPayload("nested", inner[key])
    return ParsedPayload("unknown", [])


def salvage_items_from_malformed_json(text: str, key: str = "items") -> List[Dict[str, Any]]:
    """
    Recover complete objects from a broken or truncated items array.

    Walks the array after `"items"` (or the first `[` when the key is
    absent), tracking brace depth and string state, and parses each
    top-level object that closes. Trailing commas inside an object are
    repaired; objects that still don't parse, or never close, are dropped.
    """
    if not text:
        return []
    cleaned = strip_code_fences(text)

    key_match = re.search(r'"%s"\s*:\s*\[' % re.escape(key), cleaned)
    if key_match:
        start = key_match.end()
    else:
        bracket = cleaned.find("[")
        if bracket == -1:
            return []
        start = bracket + 1

    objects: List[Dict[str, Any]] = []
    depth = 0
    obj_start = -1
    in_string = False
    escaped = False

    for pos in range(start, len(cleaned)):
        ch = cleaned[pos]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == "{":
            if depth == 0:
                obj_start = pos
            depth += 1
        elif ch == "}":
            if depth == 0:
                continue
            depth -= 1
            if depth == 0 and obj_start >= 0:
                parsed = _loads_lenient(cleaned[obj_start:pos + 1])
                if isinstance(parsed, dict):
                    objects.append(parsed)
                obj_start = -1
        elif ch == "]" and depth == 0:
            break

    return objects


def _loads_lenient(fragment: str) -> Optional[Any]:
    try:
        return json.loads(fragment)
    except json.JSONDecodeError:
        pass
    try:
        return json.loads(_TRAILING_COMMA_RE.sub(r"\1", fragment))
    except json.JSONDecodeError:
        return None


def _extract_raw_items(raw: str, provider: str, key: str) -> List[Any]:
    payload = parse_json_payload(raw)
    if payload is not None:
        parsed = classify_payload(payload, key)
        if parsed.kind != "unknown":
            logger.debug("%s: %s payload with %d raw %s", provider, parsed.kind, len(parsed.raw_items), key)
            return parsed.raw_items

    salvaged = salvage_items_from_malformed_json(raw, key)
    if salvaged:
        logger.warning("%s: malformed JSON, salvaged %d %s", provider, len(salvaged), key)
    elif raw and raw.strip():
        logger.warning("%s: could not parse response (%d chars)", provider, len(raw))
    return salvaged


def parse_provider_response(raw: str, provider: str = "provider") -> List[TakeoffItem]:
    """Provider text → normalized TakeoffItems. Unparseable input gives []."""
    items: List[TakeoffItem] = []
    raw_items = _extract_raw_items(raw, provider, "items")
    for raw_item in raw_items:
        item = normalize_item(raw_item)
        if item is not None:
            items.append(item)
    dropped = len(raw_items) - len(items)
    if dropped:
        logger.info("%s: dropped %d items that could not be normalized", provider, dropped)
    return items


def parse_quality_response(raw: str, provider: str = "provider") -> List[QualityIssue]:
    issues: List[QualityIssue] = []
    for raw_issue in _extract_raw_items(raw, provider, "issues"):
        if not isinstance(raw_issue, dict) or not _clean_str(raw_issue.get("description")):
            continue
        severity = str(raw_issue.get("severity") or "info").strip().lower()
        if severity not in ("critical", "warning", "info"):
            severity = "warning" if severity in ("high", "medium") else "info"
        try:
            issues.append(QualityIssue(
                description=_clean_str(raw_issue.get("description")),
                severity=severity,
                category=_clean_str(raw_issue.get("category")) or "general",
                location=_clean_str(raw_issue.get("location")),
                bounding_box=_normalize_bbox(raw_issue.get("bounding_box")),
                impact=_clean_str(raw_issue.get("impact")),
                recommendation=_clean_str(raw_issue.get("recommendation")),
                confidence=_normalize_confidence(raw_issue.get("confidence")),
            ))
        except ValidationError as exc:
            logger.debug("%s: skipping quality issue: %s", provider, exc)
    return issues


# ── Item normalization ────────────────────────────────────────────────────

_UNIT_ALIASES = {
    "LIN FT": "LF", "LINEAR FT": "LF", "LINEAR FEET": "LF", "LINEAR FOOT": "LF",
    "FT": "LF", "FEET": "LF",
    "SQ FT": "SF", "SQFT": "SF", "SQUARE FEET": "SF", "SQUARE FOOT": "SF", "FT2": "SF",
    "CU FT": "CF", "CUBIC FEET": "CF", "CUBIC FOOT": "CF", "FT3": "CF",
    "CU YD": "CY", "CUBIC YARDS": "CY", "CUBIC YARD": "CY", "YD3": "CY",
    "EACH": "EA", "PCS": "EA", "PC": "EA", "UNIT": "EA", "UNITS": "EA", "COUNT": "EA",
    "SQUARE": "SQ", "SQUARES": "SQ", "ROOFING SQUARE": "SQ",
}

_CATEGORY_ALIASES = {
    "structure": "structural",
    "framing": "structural",
    "foundation": "structural",
    "electrical": "mep",
    "plumbing": "mep",
    "mechanical": "mep",
    "hvac": "mep",
    "finish": "finishes",
    "roofing": "exterior",
}

_CONFIDENCE_WORDS = {"high": 0.9, "medium": 0.6, "low": 0.3}


def _clean_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _to_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = re.search(r"-?\d[\d,]*(?:\.\d+)?|-?\.\d+", value)
        if match:
            try:
                return float(match.group().replace(",", ""))
            except ValueError:
                return None
    return None


def _normalize_unit(value: Any) -> str:
    # "S.F." / "sq_ft" / " Sq  Ft " all collapse to a comparable key
    key = " ".join(str(value or "").upper().replace(".", "").replace("_", " ").split())
    if key in UNITS:
        return key
    return _UNIT_ALIASES.get(key, "EA")


def _normalize_category(value: Any) -> str:
    key = str(value or "").strip().lower()
    if key in CATEGORIES:
        return key
    return _CATEGORY_ALIASES.get(key, "other")


def _normalize_confidence(value: Any) -> float:
    if isinstance(value, str) and value.strip().lower() in _CONFIDENCE_WORDS:
        return _CONFIDENCE_WORDS[value.strip().lower()]
    number = _to_float(value)
    if number is None:
        return 0.5
    if 1 < number <= 100:
        number /= 100
    return min(1.0, max(0.0, number))


def _normalize_bbox(value: Any) -> Optional[BoundingBox]:
    if not isinstance(value, dict):
        return None
    data = dict(value)
    data.setdefault("page", 1)
    try:
        return BoundingBox.model_validate(data)
    except ValidationError:
        return None


def normalize_item(raw: Any) -> Optional[TakeoffItem]:
    """Coerce one raw provider item into a TakeoffItem, or None if it's unusable."""
    if not isinstance(raw, dict):
        return None

    name = _clean_str(raw.get("name")) or _clean_str(raw.get("item_name")) or _clean_str(raw.get("description"))
    if not name:
        return None

    quantity = _to_float(raw.get("quantity"))
    specs = raw.get("material_specs")
    if isinstance(specs, dict):
        specs = {str(k): str(v) for k, v in specs.items() if v is not None} or None
    else:
        specs = None

    try:
        return TakeoffItem(
            name=name,
            description=_clean_str(raw.get("description")),
            quantity=max(0.0, quantity or 0.0),
            unit=_normalize_unit(raw.get("unit")),
            location=_clean_str(raw.get("location")),
            category=_normalize_category(raw.get("category")),
            subcategory=_clean_str(raw.get("subcategory")),
            cost_code=_clean_str(raw.get("cost_code")),
            cost_code_description=_clean_str(raw.get("cost_code_description")),
            notes=_clean_str(raw.get("notes")),
            dimensions=_clean_str(raw.get("dimensions")),
            material_specs=specs,
            bounding_box=_normalize_bbox(raw.get("bounding_box")),
            confidence=_normalize_confidence(raw.get("confidence")),
        )
    except ValidationError as exc:
        logger.debug("Skipping item %r: %s", name, exc)
        return None


# ── Analyzer ──────────────────────────────────────────────────────────────

class TakeoffAnalyzer:
    """
    Runs every configured vision provider over the same images and merges
    their answers.

    Usage:
        analyzer = TakeoffAnalyzer(build_providers())
        result = asyncio.run(analyzer.analyze(images))
    """

    def __init__(
        self,
        providers: Sequence[VisionProvider],
        merge_config: Optional[MergeConfig] = None,
        timeout: Optional[float] = None,
        expected_providers: Sequence[str] = PROVIDER_NAMES,
    ):
        self._providers = list(providers)
        self._merge_cfg = merge_config or config.merge
        self._timeout = timeout
        self._expected = tuple(expected_providers)

    def _unconfigured_errors(self) -> Dict[str, str]:
        configured = {p.name for p in self._providers}
        return {name: "not configured" for name in self._expected if name not in configured}

    async def analyze(
        self,
        images: Sequence[str],
        system_prompt: Optional[str] = None,
        user_prompt: Optional[str] = None,
    ) -> MergedTakeoffResult:
        """
        Takeoff across all providers. Provider failures end up in
        metadata.provider_errors; this only raises for bad input.
        """
        if not images:
            raise ValueError("At least one plan image is required")

        t0 = time.time()
        responses = await analyze_with_all_providers(
            self._providers,
            images,
            system_prompt or TAKEOFF_SYSTEM_PROMPT,
            user_prompt or build_takeoff_user_prompt(len(images)),
            timeout=self._timeout,
        )

        provider_items: Dict[str, List[TakeoffItem]] = {}
        errors = self._unconfigured_errors()
        for name in self._expected:
            provider_items.setdefault(name, [])
        for name, response in responses.items():
            if response.error:
                errors[name] = response.error
                provider_items[name] = []
            else:
                provider_items[name] = parse_provider_response(response.text, name)

        result = merge_takeoff_results(provider_items, self._merge_cfg, provider_errors=errors)
        logger.info(
            "Takeoff: %d raw → %d merged items (%d corroborated) in %.1fs",
            result.metadata.total_raw_items, len(result.items),
            result.metadata.corroborated_items, time.time() - t0,
        )
        return result

    async def analyze_quality(
        self,
        images: Sequence[str],
        system_prompt: Optional[str] = None,
        user_prompt: Optional[str] = None,
    ) -> MergedQualityResult:
        if not images:
            raise ValueError("At least one plan image is required")

        responses = await analyze_with_all_providers(
            self._providers,
            images,
            system_prompt or QUALITY_SYSTEM_PROMPT,
            user_prompt or build_quality_user_prompt(len(images)),
            timeout=self._timeout,
        )
        provider_issues = {
            name: ([] if r.error else parse_quality_response(r.text, name))
            for name, r in responses.items()
        }
        return merge_quality_results(provider_issues, self._merge_cfg)


# ── Image loading ─────────────────────────────────────────────────────────

_MEDIA_TYPES = {".png": "image/png", ".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".webp": "image/webp"}


def load_images_as_data_urls(paths: Sequence[str], dpi: int = 150) -> List[str]:
    """
    Read plan images (or render PDF pages) into base64 data URLs.

    PDFs are rasterized one page per image at `dpi`; vision models don't
    need OCR resolution.
    """
    urls: List[str] = []
    for raw_path in paths:
        path = Path(raw_path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")
        suffix = path.suffix.lower()
        if suffix == ".pdf":
            import io

            from pdf2image import convert_from_path

            for page in convert_from_path(str(path), dpi=dpi):
                buf = io.BytesIO()
                page.save(buf, format="PNG")
                urls.append("data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii"))
        elif suffix in _MEDIA_TYPES:
            data = base64.b64encode(path.read_bytes()).decode("ascii")
            urls.append(f"data:{_MEDIA_TYPES[suffix]};base64,{data}")
        else:
            raise ValueError(f"Unsupported image format: {suffix}")
    return urls
