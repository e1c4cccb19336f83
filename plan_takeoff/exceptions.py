"""
exceptions.py — Error types raised by the ingestion pipeline.

The CLI catches FileNotFoundError / ValueError / RuntimeError, so every
error here subclasses one of those.
"""

from __future__ import annotations

from typing import Optional, Sequence


class ConfigurationError(RuntimeError):
    """Required credentials or settings are missing. Raised before any work."""


class EmbeddingDimensionError(RuntimeError):
    """The embedding backend returned a vector of the wrong length."""

    def __init__(self, expected: int, actual: int, index: Optional[int] = None):
        self.expected = expected
        self.actual = actual
        self.index = index
        where = f" for input {index}" if index is not None else ""
        super().__init__(
            f"Embedding dimension mismatch{where}: expected {expected}, got {actual}"
        )


class PlanFileNotFoundError(FileNotFoundError):
    """No storage candidate produced the plan file."""

    def __init__(self, file_path: str, buckets_tried: Sequence[str]):
        self.file_path = file_path
        self.buckets_tried = list(buckets_tried)
        super().__init__(
            f"Plan file '{file_path}' not found in buckets: {', '.join(self.buckets_tried)}"
        )


class IngestionError(RuntimeError):
    """
    A pipeline stage failed. `stage` is one of download, extraction,
    chunking, embedding, storage. The original exception is chained.
    """

    STAGES = ("download", "extraction", "chunking", "embedding", "storage")

    def __init__(self, stage: str, message: str):
        if stage not in self.STAGES:
            raise ValueError(f"Unknown ingestion stage: {stage}")
        self.stage = stage
        super().__init__(f"[{stage}] {message}")
