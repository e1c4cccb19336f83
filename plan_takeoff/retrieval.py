"""
retrieval.py — ChromaDB chunk store and plan-scoped retrieval.

One collection holds the chunks of every plan, keyed by a `plan_id`
metadata field, in cosine space. We always supply our own embeddings
(see embeddings.py), so the collection is created without an embedding
function and Chroma never tries to download a model.

Two read paths matter to the takeoff UI:
  - similarity search ("where are the door schedules?") for chat and
    takeoff prompting, and
  - page-scoped fetch, used when a user is looking at sheets 3 and 5 and
    the prompt should only see text from those sheets.

Writes are whole-plan: re-ingesting a plan deletes its rows and inserts
the new set. There is no partial append.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from plan_takeoff.config import config
from plan_takeoff.embeddings import Embedder, embed_texts
from plan_takeoff.schemas import RetrievedChunk, TextChunk

logger = logging.getLogger(__name__)

# Bookkeeping fields stored alongside chunk metadata in Chroma.
_INTERNAL_KEYS = ("plan_id", "page_number", "insert_seq")


class ChromaChunkStore:
    """
    Plan chunk persistence on top of a ChromaDB collection.

    Usage:
        store = ChromaChunkStore.persistent()
        store.replace_plan_chunks("plan-123", chunks)
        hits = store.match_plan_text_chunks("plan-123", query_vec, limit=6)
    """

    def __init__(
        self,
        client,
        collection_name: Optional[str] = None,
        insert_batch_size: Optional[int] = None,
    ):
        self._client = client
        self.collection_name = collection_name or config.storage.collection_name
        self.insert_batch_size = insert_batch_size or config.storage.insert_batch_size
        self._collection = client.get_or_create_collection(
            name=self.collection_name,
            embedding_function=None,
            metadata={"hnsw:space": "cosine"},
        )

    @classmethod
    def persistent(cls, persist_dir: Optional[str] = None, **kwargs) -> "ChromaChunkStore":
        import chromadb

        path = persist_dir or config.storage.chroma_persist_dir
        logger.info("Opening ChromaDB at %s", path)
        return cls(chromadb.PersistentClient(path=path), **kwargs)

    # ── Writes ────────────────────────────────────────────────────────────

    def delete_plan_chunks(self, plan_id: str) -> None:
        self._collection.delete(where={"plan_id": plan_id})

    def insert_chunks(self, chunks: Sequence[TextChunk], start_seq: int = 0) -> int:
        """Insert in batches; returns the number of rows written."""
        written = 0
        for start in range(0, len(chunks), self.insert_batch_size):
            batch = chunks[start:start + self.insert_batch_size]
            self._collection.add(
                ids=[c.id for c in batch],
                embeddings=[c.embedding for c in batch],
                documents=[c.snippet_text for c in batch],
                metadatas=[
                    _to_chroma_metadata(c, start_seq + start + i)
                    for i, c in enumerate(batch)
                ],
            )
            written += len(batch)
            logger.debug("Inserted chunk batch %d-%d", start, start + len(batch) - 1)
        return written

    def replace_plan_chunks(self, plan_id: str, chunks: Sequence[TextChunk]) -> int:
        """Delete every chunk for the plan, then insert the new set."""
        self.delete_plan_chunks(plan_id)
        written = self.insert_chunks(chunks)
        logger.info("Plan %s: stored %d chunks", plan_id, written)
        return written

    # ── Reads ─────────────────────────────────────────────────────────────

    def count(self, plan_id: str) -> int:
        result = self._collection.get(where={"plan_id": plan_id}, include=[])
        return len(result["ids"])

    def match_plan_text_chunks(
        self,
        plan_id: str,
        query_embedding: Sequence[float],
        limit: Optional[int] = None,
    ) -> List[RetrievedChunk]:
        """Nearest chunks for one plan, most similar first (similarity = 1 - distance)."""
        limit = limit or config.retrieval.top_k
        available = self.count(plan_id)
        if available == 0:
            return []

        result = self._collection.query(
            query_embeddings=[list(query_embedding)],
            n_results=min(limit, available),
            where={"plan_id": plan_id},
            include=["documents", "metadatas", "distances"],
        )
        hits = [
            _to_retrieved(chunk_id, doc, meta, similarity=1.0 - float(distance))
            for chunk_id, doc, meta, distance in zip(
                result["ids"][0],
                result["documents"][0],
                result["metadatas"][0],
                result["distances"][0],
            )
        ]
        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits

    def fetch_by_pages(
        self,
        plan_id: str,
        pages: Iterable[int],
        limit: int,
    ) -> List[RetrievedChunk]:
        """Chunks on the given pages, ordered by page then insertion order."""
        pages = sorted(set(int(p) for p in pages))
        if not pages:
            return []
        result = self._collection.get(
            where={"$and": [{"plan_id": plan_id}, {"page_number": {"$in": pages}}]},
            include=["documents", "metadatas"],
        )
        return _ordered(result, limit)

    def fetch_sample(self, plan_id: str, limit: Optional[int] = None) -> List[RetrievedChunk]:
        """The first `limit` chunks of a plan in insertion order."""
        limit = limit or config.retrieval.sample_size
        result = self._collection.get(
            where={"plan_id": plan_id},
            include=["documents", "metadatas"],
        )
        return _ordered(result, limit)


def _to_chroma_metadata(chunk: TextChunk, seq: int) -> Dict[str, Any]:
    # Chroma rejects None values
    meta = {k: v for k, v in chunk.metadata.model_dump().items() if v is not None}
    meta["plan_id"] = chunk.plan_id
    meta["insert_seq"] = seq
    if chunk.page_number is not None:
        meta["page_number"] = chunk.page_number
    return meta


def _to_retrieved(
    chunk_id: str,
    document: str,
    meta: Optional[Dict[str, Any]],
    similarity: Optional[float] = None,
) -> RetrievedChunk:
    meta = dict(meta or {})
    page_number = meta.get("page_number")
    return RetrievedChunk(
        id=chunk_id,
        page_number=int(page_number) if page_number is not None else None,
        snippet_text=document or "",
        metadata={k: v for k, v in meta.items() if k not in _INTERNAL_KEYS},
        similarity=similarity,
    )


def _ordered(result: Dict[str, Any], limit: int) -> List[RetrievedChunk]:
    rows = list(zip(result["ids"], result["documents"], result["metadatas"]))
    rows.sort(key=lambda r: (
        (r[2] or {}).get("page_number", 0),
        (r[2] or {}).get("insert_seq", 0),
    ))
    return [_to_retrieved(cid, doc, meta) for cid, doc, meta in rows[:limit]]


class PlanRetriever:
    """
    Query side of the chunk store. The query embedding comes from the same
    embedder used at ingestion time.
    """

    def __init__(self, embedder: Embedder, store: ChromaChunkStore):
        self._embedder = embedder
        self._store = store

    def retrieve(self, plan_id: str, query: str, top_k: Optional[int] = None) -> List[RetrievedChunk]:
        top_k = top_k or config.retrieval.top_k
        if not query or not query.strip():
            return []
        vector = embed_texts([query.strip()], self._embedder)[0]
        hits = self._store.match_plan_text_chunks(plan_id, vector.tolist(), limit=top_k)
        logger.debug("Plan %s: %d hits for %r", plan_id, len(hits), query)
        return hits

    def fetch_chunks_by_page(
        self,
        plan_id: str,
        pages: Iterable[int],
        max_chunks: Optional[int] = None,
    ) -> List[RetrievedChunk]:
        """
        Chunks for a set of pages. Duplicate page numbers collapse; the
        default cap is 12 chunks per distinct page, never less than 12.
        """
        unique_pages = sorted(set(int(p) for p in pages))
        if not unique_pages:
            return []
        per_page = config.retrieval.chunks_per_page
        limit = max_chunks or max(len(unique_pages) * per_page, per_page)
        return self._store.fetch_by_pages(plan_id, unique_pages, limit)

    def sample(self, plan_id: str, limit: Optional[int] = None) -> List[RetrievedChunk]:
        return self._store.fetch_sample(plan_id, limit)
