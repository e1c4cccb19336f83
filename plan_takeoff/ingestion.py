"""
ingestion.py — Per-page plan text extraction with OCR fallback.

Plan sets arrive in two very different states. CAD exports have a real
text layer: every room tag, dimension string and general note is there
for pdfplumber to read. Scanned sets (a stamped permit copy, a plotted
set someone fed through the office copier) are pure images and come back
with almost no text.

We decide per document, not per page: if the average page has fewer than
50 characters the whole set goes through OCR, and the OCR text is merged
page-by-page after the native text. A CAD sheet with one scanned detail
still gets its native text first, so the stronger source always leads.

OCR is optional. Without Tesseract installed ingestion still completes
with whatever native text exists and records a warning on the result.
"""

from __future__ import annotations

import io
import logging
import shutil
from typing import Dict, List, Optional, Protocol, Tuple

import pdfplumber
from PIL import Image, ImageEnhance, ImageFilter

from plan_takeoff.config import OCRConfig, config
from plan_takeoff.schemas import PageText, TextItem

logger = logging.getLogger(__name__)


class OCRBackend(Protocol):
    """Anything that can turn PDF bytes into per-page text."""

    def is_available(self) -> bool: ...

    def ocr(self, pdf_bytes: bytes, file_name: str) -> List[PageText]: ...


def validate_pdf_bytes(pdf_bytes: bytes, max_file_size_mb: Optional[int] = None) -> None:
    """
    Fail fast on inputs that can't be a usable plan set.

    Full architectural sets with raster underlays run to tens of MB; the
    cap only stops something pathological from reaching pdfplumber.
    """
    limit = max_file_size_mb if max_file_size_mb is not None else config.max_file_size_mb
    if not pdf_bytes:
        raise ValueError("Plan file is empty")

    size_mb = len(pdf_bytes) / (1024 * 1024)
    if size_mb > limit:
        raise ValueError(f"File too large ({size_mb:.1f} MB). Max: {limit} MB")


def extract_text_per_page(pdf_bytes: bytes) -> List[PageText]:
    """
    Pull the native text layer out of every page, in page order.

    A page that pdfplumber chokes on (broken content stream, weird font
    encoding) yields "" instead of failing the document. A PDF that can't
    be opened at all raises; the pipeline reports that as the
    "extraction" stage.
    """
    pages: List[PageText] = []

    with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
        total_pages = len(pdf.pages)
        logger.info("Opening PDF (%d pages, %.1f KB)", total_pages, len(pdf_bytes) / 1024)

        for idx, page in enumerate(pdf.pages, start=1):
            try:
                text = page.extract_text() or ""
                items = _positioned_items(page)
            except Exception as exc:
                logger.warning("Text extraction failed on page %d: %s", idx, exc)
                text, items = "", []
            pages.append(PageText(page_number=idx, text=text, text_items=items, source="text"))

    logger.info(
        "Extracted native text: %d pages, %d chars total",
        len(pages), sum(len(p.text) for p in pages),
    )
    return pages


def _positioned_items(page) -> List[TextItem]:
    words = page.extract_words(extra_attrs=["size", "fontname"])
    return [
        TextItem(
            text=w["text"],
            x=float(w.get("x0", 0.0)),
            y=float(w.get("top", 0.0)),
            font_size=w.get("size"),
            font_name=w.get("fontname"),
        )
        for w in words
    ]


def needs_ocr(pages: List[PageText], threshold: Optional[int] = None) -> bool:
    """True when the document has no pages or averages under `threshold` chars/page."""
    if threshold is None:
        threshold = config.ocr.scanned_char_threshold
    if not pages:
        return True
    total = sum(len(p.text) for p in pages)
    return total / len(pages) < threshold


def merge_ocr_pages(native: List[PageText], ocr: List[PageText]) -> List[PageText]:
    """
    Merge native and OCR pages by page number, native text first.

    Pages that exist in only one source pass through unchanged. Output is
    sorted by page number.
    """
    by_page: Dict[int, PageText] = {p.page_number: p for p in native}

    for ocr_page in ocr:
        ocr_text = ocr_page.text.strip()
        existing = by_page.get(ocr_page.page_number)
        if existing is None:
            by_page[ocr_page.page_number] = ocr_page
            continue
        if not ocr_text:
            continue
        native_text = existing.text.strip()
        if not native_text:
            merged_text = ocr_text
        else:
            merged_text = f"{native_text}\n{ocr_text}"
        by_page[ocr_page.page_number] = PageText(
            page_number=existing.page_number,
            text=merged_text,
            text_items=existing.text_items,
            source="merged" if native_text else "ocr",
        )

    return [by_page[n] for n in sorted(by_page)]


def apply_ocr_fallback(
    pages: List[PageText],
    pdf_bytes: bytes,
    file_name: str,
    backend: Optional[OCRBackend],
    threshold: Optional[int] = None,
) -> Tuple[List[PageText], List[str], bool]:
    """
    Run OCR when the native text is too sparse.

    Returns (pages, warnings, ocr_used). Never raises on OCR trouble; a
    missing or broken backend becomes a warning and the native pages are
    returned as-is.
    """
    warnings: List[str] = []

    if not needs_ocr(pages, threshold):
        return pages, warnings, False

    avg = (sum(len(p.text) for p in pages) / len(pages)) if pages else 0.0
    logger.info("Sparse text layer (%.1f chars/page avg) — document looks scanned", avg)

    if backend is None or not backend.is_available():
        msg = (
            "Document appears to be scanned but OCR is not available; "
            "text search will be limited to the native text layer."
        )
        logger.warning(msg)
        warnings.append(msg)
        if not any(p.text.strip() for p in pages):
            warnings.append("No text extracted from document.")
        return pages, warnings, False

    try:
        ocr_pages = backend.ocr(pdf_bytes, file_name)
    except Exception as exc:
        logger.warning("OCR failed for %s: %s", file_name, exc)
        warnings.append(f"OCR failed for scanned document: {exc}")
        ocr_pages = []

    if not any(p.text.strip() for p in ocr_pages):
        warnings.append("OCR returned no text for scanned document.")
        merged = pages
    else:
        merged = merge_ocr_pages(pages, ocr_pages)
        logger.info(
            "OCR merged: %d pages, %d chars total",
            len(merged), sum(len(p.text) for p in merged),
        )

    if not any(p.text.strip() for p in merged):
        warnings.append("No text extracted from document.")

    return merged, warnings, bool(ocr_pages)


class TesseractOCR:
    """
    Local OCR via pdf2image + Tesseract.

    Pages are rendered one at a time: a 40-sheet D-size set at 300 DPI
    does not fit in memory all at once.
    """

    def __init__(self, ocr_config: Optional[OCRConfig] = None):
        self._cfg = ocr_config or config.ocr

    def is_available(self) -> bool:
        if not self._cfg.enabled:
            return False
        return shutil.which(self._cfg.tesseract_cmd) is not None

    def ocr(self, pdf_bytes: bytes, file_name: str) -> List[PageText]:
        from pdf2image import convert_from_bytes

        with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
            page_count = len(pdf.pages)

        logger.info("OCR: %s (%d pages at %d DPI)", file_name, page_count, self._cfg.dpi)
        pages: List[PageText] = []
        for page_number in range(1, page_count + 1):
            text = ""
            try:
                images = convert_from_bytes(
                    pdf_bytes,
                    dpi=self._cfg.dpi,
                    first_page=page_number,
                    last_page=page_number,
                )
                if images:
                    text = self._ocr_image(self._preprocess_image(images[0]))
                else:
                    logger.warning("pdf2image returned empty for page %d", page_number)
            except Exception as exc:
                # poppler raises a zoo of error types for broken pages
                logger.warning("OCR failed for page %d: %s", page_number, exc)
            pages.append(PageText(page_number=page_number, text=text, source="ocr"))
        return pages

    def _preprocess_image(self, img: Image.Image) -> Image.Image:
        """Grayscale, then contrast, then median denoise. Order matters."""
        img = img.convert("L")
        if self._cfg.contrast_enhance:
            img = ImageEnhance.Contrast(img).enhance(2.0)
        if self._cfg.denoise:
            img = img.filter(ImageFilter.MedianFilter(size=3))
        return img

    def _ocr_image(self, img: Image.Image) -> str:
        import pytesseract

        pytesseract.pytesseract.tesseract_cmd = self._cfg.tesseract_cmd
        try:
            return pytesseract.image_to_string(img, lang=self._cfg.lang).strip()
        except Exception as exc:
            logger.error("Tesseract failed: %s", exc)
            return ""
