"""
main.py — Plan ingestion pipeline and CLI for PlanTakeoff.

Ingestion runs in five stages with timing and error handling at each:

  [1/5] download    plan bytes from storage (skipped when bytes are given)
  [2/5] extraction  native text per page, OCR fallback for scanned sets
  [3/5] chunking    sheet index + sentence-aware chunks
  [4/5] embedding   1536-d vectors, 20 per request
  [5/5] storage     delete the plan's old chunks, insert the new ones

Any failure is re-raised as IngestionError carrying the stage name, so
the API can tell a missing file from a broken PDF from an embedding
outage. Partial problems (scanned pages with no OCR, blank pages) are not
failures; they show up as warnings on the IngestionResult.

The CLI wraps the same pipeline plus retrieval, takeoff and the
missing-information report:

    plan-takeoff ingest PLAN_ID --file set.pdf
    plan-takeoff search PLAN_ID "door hardware schedule"
    plan-takeoff pages PLAN_ID 3 5
    plan-takeoff takeoff A-101.png A-102.png -o takeoff.json
    plan-takeoff missing takeoff.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Dict, Optional

from plan_takeoff.chunking import create_chunks
from plan_takeoff.config import config
from plan_takeoff.embeddings import Embedder, OpenAIEmbedder, build_text_chunks
from plan_takeoff.exceptions import ConfigurationError, IngestionError
from plan_takeoff.ingestion import (
    OCRBackend,
    TesseractOCR,
    apply_ocr_fallback,
    extract_text_per_page,
    validate_pdf_bytes,
)
from plan_takeoff.retrieval import ChromaChunkStore, PlanRetriever
from plan_takeoff.schemas import IngestionResult, MergedTakeoffResult, SheetMetadata
from plan_takeoff.sheet_index import build_sheet_index
from plan_takeoff.storage import PlanFileStore

logger = logging.getLogger("plan_takeoff")


class PlanIngestionPipeline:
    """
    End-to-end plan ingestion.

    Usage:
        pipeline = PlanIngestionPipeline(OpenAIEmbedder.from_config(),
                                         ChromaChunkStore.persistent())
        result = pipeline.run("plan-123", file_path="job-plans/plan-123/set.pdf")
    """

    def __init__(
        self,
        embedder: Optional[Embedder],
        store: ChromaChunkStore,
        file_store: Optional[PlanFileStore] = None,
        ocr_backend: Optional[OCRBackend] = None,
    ):
        if embedder is None:
            raise ConfigurationError("An embedding backend is required for plan ingestion.")
        self._embedder = embedder
        self._store = store
        self._file_store = file_store
        self._ocr = ocr_backend

    def run(
        self,
        plan_id: str,
        file_path: Optional[str] = None,
        pdf_bytes: Optional[bytes] = None,
        file_name: Optional[str] = None,
        sheet_index: Optional[Dict[int, SheetMetadata]] = None,
    ) -> IngestionResult:
        """
        Ingest one plan and return its chunk count, page count and warnings.

        Either `pdf_bytes` or `file_path` must be given. `sheet_index`
        overrides the title-block heuristics when sheet metadata is
        already known.
        """
        overall_start = time.time()
        file_name = file_name or (Path(file_path).name if file_path else f"{plan_id}.pdf")
        logger.info("=" * 60)
        logger.info("PlanTakeoff — Ingesting plan %s (%s)", plan_id, file_name)
        logger.info("=" * 60)

        # ── Stage 1: Download ────────────────────────────────────
        t0 = time.time()
        logger.info("[1/5] Loading plan file ...")
        if pdf_bytes is None:
            if not file_path:
                raise ValueError("Either pdf_bytes or file_path is required")
            if self._file_store is None:
                raise ConfigurationError("No plan file store configured for file_path downloads.")
            try:
                pdf_bytes = self._file_store.fetch(file_path)
            except Exception as exc:
                raise IngestionError("download", str(exc)) from exc
            logger.info("  ✓ %.1f KB in %.1fs", len(pdf_bytes) / 1024, time.time() - t0)
        else:
            logger.info("  ⊘ Skipped (bytes supplied, %.1f KB)", len(pdf_bytes) / 1024)
        try:
            validate_pdf_bytes(pdf_bytes)
        except ValueError as exc:
            raise IngestionError("download", str(exc)) from exc

        # ── Stage 2: Text extraction ─────────────────────────────
        t0 = time.time()
        logger.info("[2/5] Extracting text ...")
        try:
            pages = extract_text_per_page(pdf_bytes)
            pages, warnings, ocr_used = apply_ocr_fallback(pages, pdf_bytes, file_name, self._ocr)
        except Exception as exc:
            raise IngestionError("extraction", str(exc)) from exc
        logger.info(
            "  ✓ %d pages, %d chars%s in %.1fs",
            len(pages), sum(len(p.text) for p in pages),
            " (OCR)" if ocr_used else "", time.time() - t0,
        )

        # ── Stage 3: Chunking ────────────────────────────────────
        t0 = time.time()
        logger.info("[3/5] Creating chunks ...")
        try:
            sheets = sheet_index if sheet_index is not None else build_sheet_index(pages)
            candidates = create_chunks(pages, sheets)
        except Exception as exc:
            raise IngestionError("chunking", str(exc)) from exc
        logger.info("  ✓ %d chunks in %.1fs", len(candidates), time.time() - t0)

        # ── Stage 4: Embedding ───────────────────────────────────
        t0 = time.time()
        logger.info("[4/5] Embedding chunks ...")
        try:
            chunks = build_text_chunks(plan_id, candidates, self._embedder) if candidates else []
        except Exception as exc:
            raise IngestionError("embedding", str(exc)) from exc
        logger.info("  ✓ %d vectors in %.1fs", len(chunks), time.time() - t0)

        # ── Stage 5: Storage ─────────────────────────────────────
        t0 = time.time()
        logger.info("[5/5] Replacing stored chunks ...")
        try:
            if chunks:
                written = self._store.replace_plan_chunks(plan_id, chunks)
            else:
                self._store.delete_plan_chunks(plan_id)
                written = 0
        except Exception as exc:
            raise IngestionError("storage", str(exc)) from exc
        logger.info("  ✓ %d rows in %.1fs", written, time.time() - t0)

        for warning in warnings:
            logger.warning("Plan %s: %s", plan_id, warning)

        logger.info("=" * 60)
        logger.info("DONE in %.1fs | %d pages | %d chunks | %d warnings",
                    time.time() - overall_start, len(pages), written, len(warnings))
        logger.info("=" * 60)

        return IngestionResult(
            plan_id=plan_id,
            chunk_count=written,
            page_count=len(pages),
            ocr_used=ocr_used,
            warnings=warnings,
        )


def build_default_pipeline() -> PlanIngestionPipeline:
    """Pipeline wired to OpenAI, local ChromaDB, storage and Tesseract from config."""
    return PlanIngestionPipeline(
        embedder=OpenAIEmbedder.from_config(),
        store=ChromaChunkStore.persistent(),
        file_store=PlanFileStore(),
        ocr_backend=TesseractOCR(),
    )


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _write_json(data, output_path: str) -> None:
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False, default=str)
    logger.info("Output written to: %s", output_path)


def _cmd_ingest(args) -> None:
    pipeline = build_default_pipeline()
    if args.file:
        path = Path(args.file)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")
        result = pipeline.run(args.plan_id, pdf_bytes=path.read_bytes(), file_name=path.name)
    else:
        result = pipeline.run(args.plan_id, file_path=args.storage_path)
    _print_json(result.model_dump())


def _cmd_search(args) -> None:
    retriever = PlanRetriever(OpenAIEmbedder.from_config(), ChromaChunkStore.persistent())
    hits = retriever.retrieve(args.plan_id, args.query, top_k=args.top_k)
    _print_json([h.model_dump() for h in hits])


def _cmd_pages(args) -> None:
    retriever = PlanRetriever(OpenAIEmbedder.from_config(), ChromaChunkStore.persistent())
    hits = retriever.fetch_chunks_by_page(args.plan_id, args.pages, max_chunks=args.max_chunks)
    _print_json([h.model_dump() for h in hits])


def _cmd_takeoff(args) -> None:
    from plan_takeoff.extraction import TakeoffAnalyzer, load_images_as_data_urls
    from plan_takeoff.missing_info import MissingInformationAnalyzer
    from plan_takeoff.providers import build_providers

    images = load_images_as_data_urls(args.images)
    analyzer = TakeoffAnalyzer(build_providers())
    result = asyncio.run(analyzer.analyze(images))
    payload = result.model_dump()
    if args.with_missing:
        payload["missing_information"] = (
            MissingInformationAnalyzer().analyze(result.items).model_dump()
        )
    if args.output:
        _write_json(payload, args.output)
    else:
        _print_json(payload)


def _cmd_missing(args) -> None:
    from plan_takeoff.missing_info import MissingInformationAnalyzer

    path = Path(args.takeoff_json)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    try:
        result = MergedTakeoffResult.model_validate_json(path.read_text(encoding="utf-8"))
    except Exception as exc:
        raise ValueError(f"{path} is not a takeoff result: {exc}") from exc
    _print_json(MissingInformationAnalyzer().analyze(result.items).model_dump())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="plan-takeoff",
        description="PlanTakeoff — plan ingestion, search and multi-model quantity takeoff",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Extract, chunk, embed and store a plan PDF")
    ingest.add_argument("plan_id")
    source = ingest.add_mutually_exclusive_group(required=True)
    source.add_argument("--file", help="Local PDF path")
    source.add_argument("--storage-path", help="Stored file_path (bucket/key or URL)")
    ingest.set_defaults(func=_cmd_ingest)

    search = sub.add_parser("search", help="Similarity search over a plan's chunks")
    search.add_argument("plan_id")
    search.add_argument("query")
    search.add_argument("--top-k", type=int, default=config.retrieval.top_k)
    search.set_defaults(func=_cmd_search)

    pages = sub.add_parser("pages", help="Fetch chunks for specific pages")
    pages.add_argument("plan_id")
    pages.add_argument("pages", nargs="+", type=int)
    pages.add_argument("--max-chunks", type=int, default=None)
    pages.set_defaults(func=_cmd_pages)

    takeoff = sub.add_parser("takeoff", help="Multi-model takeoff over plan images or PDFs")
    takeoff.add_argument("images", nargs="+", help="PNG/JPG/WEBP images or PDFs")
    takeoff.add_argument("--output", "-o", default=None, help="JSON output path (default: stdout)")
    takeoff.add_argument("--with-missing", action="store_true", help="Include missing-information report")
    takeoff.set_defaults(func=_cmd_takeoff)

    missing = sub.add_parser("missing", help="Missing-information report for a saved takeoff JSON")
    missing.add_argument("takeoff_json")
    missing.set_defaults(func=_cmd_missing)

    return parser


def main(argv=None):
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        args.func(args)
    except FileNotFoundError as exc:
        logger.error("File not found: %s", exc)
        sys.exit(1)
    except ValueError as exc:
        logger.error("Invalid input: %s", exc)
        sys.exit(1)
    except RuntimeError as exc:
        logger.error("Runtime error: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
