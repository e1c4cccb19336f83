"""
config.py — Central configuration for PlanTakeoff.

Every tunable number in the ingestion and takeoff pipeline lives here:
chunk sizes, the scanned-page threshold, embedding dimensions, storage
buckets, provider models and the fuzzy-matching thresholds the merge
engine uses to decide two AI line items are the same thing.

Most values can be overridden from the environment so the API container
and the CLI pick up the same settings without code changes. API keys are
only ever read from the environment.
"""

from dataclasses import dataclass, field
import os
import logging
from typing import Optional, Tuple

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class OCRConfig:
    """
    Tesseract OCR settings for scanned plan sets.

    A plan sheet is mostly linework, so a text-layer PDF averages a few
    hundred characters per page even on sparse sheets. Anything under 50
    characters per page on average is an image-only scan.
    """
    enabled: bool = _env_bool("OCR_ENABLED", True)
    tesseract_cmd: str = os.getenv(
        "TESSERACT_CMD",
        r"C:\Program Files\Tesseract-OCR\tesseract.exe"
        if os.name == "nt"
        else "tesseract",
    )
    lang: str = os.getenv("OCR_LANG", "eng")
    scanned_char_threshold: int = int(os.getenv("OCR_SCANNED_CHAR_THRESHOLD", "50"))
    # Title blocks and dimension strings are small; 300 DPI keeps them legible.
    dpi: int = int(os.getenv("OCR_DPI", "300"))
    denoise: bool = True
    contrast_enhance: bool = True


@dataclass
class ChunkingConfig:
    """
    Character-based chunk bounds.

    Snippets are capped at 900 chars because that is also the per-input
    truncation applied before embedding. Chunks under 250 chars are folded
    into a neighbour unless they are the last thing on the page.
    """
    max_chunk_chars: int = 900
    min_chunk_chars: int = 250


@dataclass
class EmbeddingConfig:
    """OpenAI embedding settings. Dimension is a hard contract with the store."""
    api_key: Optional[str] = os.getenv("OPENAI_API_KEY")
    model: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    dimension: int = 1536
    batch_size: int = 20


@dataclass
class StorageConfig:
    """
    Where plan PDFs and chunk vectors live.

    Plan files are looked up across several buckets because uploads have
    landed in different buckets over time. When no storage URL is set,
    each bucket maps to a directory under local_root.
    """
    storage_url: Optional[str] = os.getenv("SUPABASE_URL")
    service_key: Optional[str] = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    default_bucket: str = os.getenv("PLAN_STORAGE_BUCKET", "job-plans")
    fallback_buckets: Tuple[str, ...] = ("plan-files", "plans")
    local_root: str = os.getenv("PLAN_STORAGE_ROOT", "storage")
    signed_url_ttl: int = 300
    http_timeout: float = 60.0

    chroma_persist_dir: str = os.getenv("CHROMA_PERSIST_DIR", "chroma_db")
    collection_name: str = os.getenv("CHROMA_COLLECTION", "plan_text_chunks")
    insert_batch_size: int = 100


@dataclass
class RetrievalConfig:
    """Similarity search defaults."""
    top_k: int = 6
    chunks_per_page: int = 12
    sample_size: int = 12


@dataclass
class ProviderConfig:
    """
    Vision model settings for the three takeoff providers.

    A provider without an API key is simply left out of the run; the
    merge still works with whatever subset answered.
    """
    openai_api_key: Optional[str] = os.getenv("OPENAI_API_KEY")
    anthropic_api_key: Optional[str] = os.getenv("ANTHROPIC_API_KEY")
    gemini_api_key: Optional[str] = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")

    openai_model: str = os.getenv("OPENAI_VISION_MODEL", "gpt-4o")
    anthropic_model: str = os.getenv("ANTHROPIC_VISION_MODEL", "claude-sonnet-4-5")
    gemini_model: str = os.getenv("GEMINI_VISION_MODEL", "gemini-2.5-flash")

    max_tokens: int = 4096
    temperature: float = 0.2
    timeout_seconds: float = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "180"))


@dataclass
class MergeConfig:
    """
    Consensus thresholds for deduplicating provider output.

    Names are compared with rapidfuzz token-set ratio, so "2x4 Wood Stud"
    and "Wood Studs 2x4 @ 16 O.C." score high. Locations are looser
    because each model phrases "Level 1 - North Wall" differently.
    Bounding boxes are normalized to the page, so 0.15 is about one
    sixth of the sheet width.
    """
    name_similarity: float = 0.75
    location_similarity: float = 0.6
    bbox_center_tolerance: float = 0.15
    corroboration_boost: float = 0.15
    max_confidence: float = 1.0

    issue_description_similarity: float = 0.75
    issue_location_similarity: float = 0.7


@dataclass
class JobConfig:
    """Background job queue sizing."""
    workers: int = int(os.getenv("JOB_WORKERS", "2"))


@dataclass
class Config:
    """Master config — instantiated once, used everywhere."""
    ocr: OCRConfig = field(default_factory=OCRConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    providers: ProviderConfig = field(default_factory=ProviderConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    jobs: JobConfig = field(default_factory=JobConfig)

    max_file_size_mb: int = 100
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    def __post_init__(self):
        """Fail fast on settings that would corrupt chunking or merging."""
        if self.chunking.min_chunk_chars >= self.chunking.max_chunk_chars:
            raise ValueError(
                f"min_chunk_chars ({self.chunking.min_chunk_chars}) must be "
                f"below max_chunk_chars ({self.chunking.max_chunk_chars})"
            )
        for name in ("name_similarity", "location_similarity", "bbox_center_tolerance",
                     "issue_description_similarity", "issue_location_similarity"):
            value = getattr(self.merge, name)
            if not 0 <= value <= 1:
                raise ValueError(f"merge.{name} must be in [0,1], got {value}")
        if self.embedding.dimension <= 0:
            raise ValueError(f"Embedding dimension must be positive, got {self.embedding.dimension}")

        if not self.embedding.api_key:
            logger.debug("OPENAI_API_KEY not set; ingestion will refuse to start.")


# Shared instance, imported by every module
config = Config()
