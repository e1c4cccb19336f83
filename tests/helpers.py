"""
Shared fixtures for the test suite: tiny hand-built PDFs, a deterministic
fake embedder and an in-memory Chroma store. Nothing here needs network,
Tesseract or API keys.
"""

from __future__ import annotations

import hashlib
import io
import uuid
from typing import List, Sequence

import chromadb
import numpy as np
from PIL import Image

from plan_takeoff.retrieval import ChromaChunkStore


def _pdf_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def _wrap(text: str, width: int = 90) -> List[str]:
    lines: List[str] = []
    current = ""
    for word in text.split():
        if current and len(current) + 1 + len(word) > width:
            lines.append(current)
            current = word
        else:
            current = f"{current} {word}" if current else word
    if current:
        lines.append(current)
    return lines


def _content_stream(text: str) -> bytes:
    lines = _wrap(text)
    if not lines:
        return b""
    ops = ["BT", "/F1 8 Tf", "10 TL", "40 760 Td"]
    for n, line in enumerate(lines):
        if n:
            ops.append("T*")
        ops.append(f"({_pdf_escape(line)}) Tj")
    ops.append("ET")
    return "\n".join(ops).encode("latin-1")


def build_text_pdf(page_texts: Sequence[str]) -> bytes:
    """A minimal multi-page PDF with a real Helvetica text layer."""
    bodies = {
        1: b"<< /Type /Catalog /Pages 2 0 R >>",
        3: b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    }
    kids = []
    next_num = 4
    for text in page_texts:
        page_num, content_num = next_num, next_num + 1
        next_num += 2
        stream = _content_stream(text)
        bodies[content_num] = (
            b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream"
        )
        bodies[page_num] = (
            "<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
            "/Resources << /Font << /F1 3 0 R >> >> /Contents %d 0 R >>" % content_num
        ).encode("latin-1")
        kids.append(page_num)
    bodies[2] = (
        "<< /Type /Pages /Kids [%s] /Count %d >>"
        % (" ".join(f"{k} 0 R" for k in kids), len(kids))
    ).encode("latin-1")

    out = bytearray(b"%PDF-1.4\n")
    offsets = {}
    for num in range(1, next_num):
        offsets[num] = len(out)
        out += b"%d 0 obj\n" % num + bodies[num] + b"\nendobj\n"
    xref_pos = len(out)
    out += b"xref\n0 %d\n" % next_num
    out += b"0000000000 65535 f \n"
    for num in range(1, next_num):
        out += b"%010d 00000 n \n" % offsets[num]
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (next_num, xref_pos)
    return bytes(out)


def build_scanned_pdf(pages: int = 2) -> bytes:
    """Image-only PDF: no text layer at all, like a copier scan."""
    images = [Image.new("RGB", (200, 260), "white") for _ in range(pages)]
    buf = io.BytesIO()
    images[0].save(buf, format="PDF", save_all=True, append_images=images[1:])
    return buf.getvalue()


def plan_sentence(n: int, length: int) -> str:
    """A period-terminated sentence of `length` chars (give or take one)."""
    words = ["stud", "plate", "header", "joist", "gypsum", "footing", "rebar", "anchor"]
    out = f"Note {n}"
    i = 0
    while len(out) < length - 1:
        out += " " + words[i % len(words)]
        i += 1
    return out[: length - 1].rstrip() + "."


def plan_page_text(sentence_lengths: Sequence[int], offset: int = 0) -> str:
    return " ".join(plan_sentence(offset + i, n) for i, n in enumerate(sentence_lengths))


class FakeEmbedder:
    """Deterministic unit vectors seeded from the text hash."""

    def __init__(self, dimension: int = 1536):
        self.dimension = dimension
        self.calls: List[int] = []

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(len(texts))
        vectors = []
        for text in texts:
            seed = int(hashlib.md5(text.encode("utf-8")).hexdigest()[:8], 16)
            vec = np.random.default_rng(seed).standard_normal(self.dimension)
            vectors.append((vec / np.linalg.norm(vec)).tolist())
        return vectors


def memory_store() -> ChromaChunkStore:
    """A fresh collection in the shared in-memory Chroma client."""
    return ChromaChunkStore(chromadb.EphemeralClient(), collection_name=f"test_{uuid.uuid4().hex[:12]}")
