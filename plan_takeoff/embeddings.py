"""
embeddings.py — OpenAI embeddings for plan chunks.

The chunk store is built around 1536-dimension vectors
(text-embedding-3-small). A vector of any other length means the wrong
model is configured, and silently padding or truncating it would poison
every similarity score for the plan, so a mismatch is fatal.
"""

from __future__ import annotations

import logging
import uuid
from typing import List, Optional, Protocol, Sequence

import numpy as np

from plan_takeoff.config import EmbeddingConfig, config
from plan_takeoff.exceptions import ConfigurationError, EmbeddingDimensionError
from plan_takeoff.schemas import ChunkCandidate, TextChunk

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    def embed(self, texts: Sequence[str]) -> List[List[float]]: ...


class OpenAIEmbedder:
    """Thin wrapper over an injected `openai.OpenAI` client."""

    def __init__(self, client, model: Optional[str] = None):
        self._client = client
        self.model = model or config.embedding.model

    @classmethod
    def from_config(cls, embedding_config: Optional[EmbeddingConfig] = None) -> "OpenAIEmbedder":
        cfg = embedding_config or config.embedding
        if not cfg.api_key:
            raise ConfigurationError(
                "OPENAI_API_KEY is not set; cannot generate plan text embeddings."
            )
        from openai import OpenAI

        return cls(OpenAI(api_key=cfg.api_key), model=cfg.model)

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        response = self._client.embeddings.create(
            model=self.model,
            input=list(texts),
            encoding_format="float",
        )
        ordered = sorted(response.data, key=lambda d: d.index)
        return [list(d.embedding) for d in ordered]


def embed_texts(
    texts: Sequence[str],
    embedder: Embedder,
    batch_size: Optional[int] = None,
    dimension: Optional[int] = None,
    max_chars: Optional[int] = None,
) -> np.ndarray:
    """
    Embed texts in batches and return a (n, dimension) float32 matrix.

    Each input is truncated to max_chars first. Raises
    EmbeddingDimensionError if any vector has the wrong length.
    """
    batch_size = batch_size or config.embedding.batch_size
    dimension = dimension or config.embedding.dimension
    max_chars = max_chars or config.chunking.max_chunk_chars

    if not texts:
        return np.zeros((0, dimension), dtype="float32")

    vectors: List[List[float]] = []
    for start in range(0, len(texts), batch_size):
        batch = [t[:max_chars] for t in texts[start:start + batch_size]]
        result = embedder.embed(batch)
        if len(result) != len(batch):
            raise RuntimeError(
                f"Embedding backend returned {len(result)} vectors for {len(batch)} inputs"
            )
        for offset, vector in enumerate(result):
            if len(vector) != dimension:
                raise EmbeddingDimensionError(dimension, len(vector), index=start + offset)
        vectors.extend(result)
        logger.debug("Embedded batch %d-%d", start, start + len(batch) - 1)

    return np.asarray(vectors, dtype="float32")


def build_text_chunks(
    plan_id: str,
    candidates: Sequence[ChunkCandidate],
    embedder: Embedder,
) -> List[TextChunk]:
    """Embed candidates and attach ids, ready for the store."""
    matrix = embed_texts([c.snippet_text for c in candidates], embedder)
    return [
        TextChunk(
            id=str(uuid.uuid4()),
            plan_id=plan_id,
            page_number=c.page_number,
            snippet_text=c.snippet_text,
            metadata=c.metadata,
            embedding=row.tolist(),
        )
        for c, row in zip(candidates, matrix)
    ]


def index_plan_chunks(
    plan_id: str,
    candidates: Sequence[ChunkCandidate],
    embedder: Embedder,
    store,
) -> int:
    """
    Embed and store a plan's chunks, replacing whatever was there.

    Zero candidates still clears the plan's old chunks and returns 0.
    Embedding happens before the delete so a failed embedding call leaves
    the previous chunk set intact.
    """
    if not candidates:
        store.delete_plan_chunks(plan_id)
        logger.info("Plan %s: no chunks, cleared existing rows", plan_id)
        return 0

    chunks = build_text_chunks(plan_id, candidates, embedder)
    return store.replace_plan_chunks(plan_id, chunks)
