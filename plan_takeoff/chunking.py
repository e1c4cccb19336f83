"""
chunking.py — Sentence-aware character chunking for plan text.

Plan text is not prose. A sheet's text layer is a soup of room tags,
dimension strings, keynotes and the odd paragraph of general notes, and
after whitespace normalization most of it is one long run with a handful
of sentence breaks. So the chunker works in characters, not tokens:

  1. Normalize whitespace and strip NUL bytes.
  2. Split at sentence punctuation (. ? !) followed by whitespace.
  3. Hard-split anything still over 900 chars on whitespace; a single
     token over 900 chars (a run of hatch characters, base64 junk) is
     sliced.
  4. Greedily pack segments into chunks of at most 900 chars.

The awkward case is a short buffer (under 250 chars) that can't take the
next segment. Emitting it would leave a fragment too small to retrieve
well; appending it to the previous chunk would blow the 900 cap. Instead
the previous chunk, the short buffer and the new segment are re-packed on
word boundaries and the last two pieces rebalanced. Every chunk is at most
900 chars, and every chunk except the last one on a page is at least 250,
with one exception: a short piece next to a whitespace-free run too long to
share a chunk with it (e.g. "Note." before an 899-char token) stays short,
since no word boundary can absorb it.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional

from plan_takeoff.config import config
from plan_takeoff.schemas import ChunkCandidate, ChunkMetadata, PageText, SheetMetadata

logger = logging.getLogger(__name__)

_SENTENCE_BREAK_RE = re.compile(r"(?<=[.!?])\s+")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text.replace("\x00", "")).strip()


def split_into_sentences(text: str, max_chars: Optional[int] = None) -> List[str]:
    """Sentence-like segments of normalized text, each at most `max_chars`."""
    max_chars = max_chars or config.chunking.max_chunk_chars
    segments: List[str] = []
    for raw in _SENTENCE_BREAK_RE.split(text):
        segment = raw.strip()
        if not segment:
            continue
        if len(segment) <= max_chars:
            segments.append(segment)
        else:
            segments.extend(_hard_split(segment, max_chars))
    return segments


def _hard_split(segment: str, max_chars: int) -> List[str]:
    """Greedy whitespace split; tokens longer than max_chars are sliced."""
    pieces: List[str] = []
    current = ""
    for word in segment.split():
        for part in _slice_word(word, max_chars):
            if not current:
                current = part
            elif len(current) + 1 + len(part) <= max_chars:
                current = f"{current} {part}"
            else:
                pieces.append(current)
                current = part
    if current:
        pieces.append(current)
    return pieces


def _slice_word(word: str, max_chars: int) -> List[str]:
    if len(word) <= max_chars:
        return [word]
    return [word[i:i + max_chars] for i in range(0, len(word), max_chars)]


def _split_near_middle(text: str) -> Optional[List[str]]:
    """Split at the space closest to the middle of `text`."""
    middle = len(text) // 2
    best = None
    for match in re.finditer(" ", text):
        pos = match.start()
        if best is None or abs(pos - middle) < abs(best - middle):
            best = pos
    if best is None:
        return None
    return [text[:best], text[best + 1:]]


def _pack_words(text: str, max_chars: int, min_chars: int) -> List[str]:
    """
    Re-pack text on word boundaries into pieces of at most max_chars.

    If the final piece comes out under min_chars it is folded into the
    piece before it, or when that would overflow, the two are split again
    near their joint middle.
    """
    pieces = _hard_split(text, max_chars)
    if len(pieces) >= 2 and len(pieces[-1]) < min_chars:
        joined = f"{pieces[-2]} {pieces[-1]}"
        if len(joined) <= max_chars:
            pieces[-2:] = [joined]
        else:
            halves = _split_near_middle(joined)
            if halves and all(min_chars <= len(h) <= max_chars for h in halves):
                pieces[-2:] = halves
    return pieces


def chunk_text(
    text: str,
    max_chars: Optional[int] = None,
    min_chars: Optional[int] = None,
) -> List[str]:
    """Chunk one page of text into snippet strings."""
    max_chars = max_chars or config.chunking.max_chunk_chars
    min_chars = min_chars if min_chars is not None else config.chunking.min_chunk_chars

    normalized = normalize_whitespace(text)
    if not normalized:
        return []

    chunks: List[str] = []
    buffer = ""
    for segment in split_into_sentences(normalized, max_chars):
        candidate = f"{buffer} {segment}" if buffer else segment
        if len(candidate) <= max_chars:
            buffer = candidate
            continue

        if len(buffer) >= min_chars:
            chunks.append(buffer)
            buffer = segment
            continue

        # Short buffer: fold it and the new segment into the previous chunk.
        parts = [chunks.pop()] if chunks else []
        parts.extend([buffer, segment])
        pieces = _pack_words(" ".join(parts), max_chars, min_chars)
        chunks.extend(pieces[:-1])
        buffer = pieces[-1]

    if buffer:
        chunks.append(buffer)
    return chunks


def chunk_page_text(
    page: PageText,
    page_index: int,
    total_pages: int,
    sheet: Optional[SheetMetadata] = None,
) -> List[ChunkCandidate]:
    """Chunk a single page and attach page/sheet context to each chunk."""
    snippets = chunk_text(page.text)
    return [
        ChunkCandidate(
            page_number=page.page_number,
            snippet_text=snippet,
            metadata=ChunkMetadata(
                chunk_page_index=page_index,
                total_pages=total_pages,
                sheet_id=sheet.sheet_id if sheet else None,
                sheet_title=sheet.title if sheet else None,
                sheet_discipline=sheet.discipline if sheet else None,
                sheet_type=sheet.sheet_type if sheet else None,
                chunk_index=chunk_index,
                character_count=len(snippet),
            ),
        )
        for chunk_index, snippet in enumerate(snippets)
    ]


def create_chunks(
    pages: List[PageText],
    sheet_index: Optional[Dict[int, SheetMetadata]] = None,
) -> List[ChunkCandidate]:
    """
    Chunk every page of a plan, in page order.

    Blank pages contribute nothing. Sheet metadata is looked up by page
    number and only decorates the chunks.
    """
    sheet_index = sheet_index or {}
    total_pages = len(pages)
    chunks: List[ChunkCandidate] = []

    for page_index, page in enumerate(pages):
        chunks.extend(
            chunk_page_text(page, page_index, total_pages, sheet_index.get(page.page_number))
        )

    logger.info(
        "Created %d chunks from %d pages (%d pages without text)",
        len(chunks), total_pages,
        sum(1 for p in pages if not p.text.strip()),
    )
    return chunks
