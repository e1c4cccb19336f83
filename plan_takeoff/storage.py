"""
storage.py — Fetch plan PDFs from object storage.

Plan rows store `file_path` in several historical shapes: a bare object
key, "bucket/key", a full public storage URL, or a plain http(s) link
from an external plan room. Uploads have also lived in more than one
bucket over time. So instead of trusting the path we build a list of
(bucket, path) candidates and try each until one resolves.

With a Supabase storage URL configured, each candidate is resolved by
asking the storage API for a short-lived signed URL. Without one, each
bucket is a directory under the local storage root, which is what the
CLI and the tests use.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple

import httpx

from plan_takeoff.config import StorageConfig, config
from plan_takeoff.exceptions import PlanFileNotFoundError

logger = logging.getLogger(__name__)

_PUBLIC_MARKER = "/storage/v1/object/public/"


def storage_candidates(
    file_path: str,
    default_bucket: str,
    fallback_buckets: Tuple[str, ...] = (),
) -> Tuple[List[str], List[Tuple[str, str]]]:
    """
    Work out which buckets and object keys to try for a stored file path.

    Returns (buckets, candidates) where candidates is an ordered,
    de-duplicated list of (bucket, key) pairs. Bucket order: the one
    detected in the path, the configured default, then the fallbacks.
    For each bucket the key with the bucket prefix stripped is tried
    before the path as given.
    """
    storage_path = file_path
    detected_bucket: Optional[str] = None

    if _PUBLIC_MARKER in file_path:
        after_public = file_path.split(_PUBLIC_MARKER, 1)[1]
        original_path = after_public or file_path
        bucket, _, rest = after_public.partition("/")
        if bucket and rest:
            detected_bucket, storage_path = bucket, rest
        else:
            storage_path = after_public
    else:
        original_path = file_path
        bucket, _, rest = file_path.partition("/")
        if bucket and rest:
            detected_bucket, storage_path = bucket, rest

    clean_path = storage_path.split("?", 1)[0]
    original_clean = original_path.split("?", 1)[0]

    buckets: List[str] = []
    for b in (detected_bucket, default_bucket, *fallback_buckets):
        if b and b.strip() and b not in buckets:
            buckets.append(b)

    candidates: List[Tuple[str, str]] = []
    for b in buckets:
        for key in (clean_path, original_clean):
            if key and (b, key) not in candidates:
                candidates.append((b, key))
    return buckets, candidates


class PlanFileStore:
    """
    Resolve a plan's stored `file_path` to PDF bytes.

    Usage:
        store = PlanFileStore()
        pdf_bytes = store.fetch("job-plans/plans/abc/set.pdf")
    """

    def __init__(
        self,
        storage_config: Optional[StorageConfig] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self._cfg = storage_config or config.storage
        self._http = http_client or httpx.Client(
            timeout=self._cfg.http_timeout, follow_redirects=True
        )

    @property
    def _headers(self) -> dict:
        key = self._cfg.service_key or ""
        return {"Authorization": f"Bearer {key}", "apikey": key}

    def fetch(self, file_path: str) -> bytes:
        if not file_path or not file_path.strip():
            raise ValueError("file_path is empty")

        if file_path.startswith(("http://", "https://")):
            return self._download(file_path)

        buckets, candidates = storage_candidates(
            file_path, self._cfg.default_bucket, self._cfg.fallback_buckets
        )
        for bucket, key in candidates:
            data = self._try_candidate(bucket, key)
            if data is not None:
                logger.info("Loaded plan file from %s/%s (%d bytes)", bucket, key, len(data))
                return data
            logger.debug("Plan file not in %s/%s", bucket, key)

        raise PlanFileNotFoundError(file_path, buckets)

    def _try_candidate(self, bucket: str, key: str) -> Optional[bytes]:
        if self._cfg.storage_url:
            signed_url = self._create_signed_url(bucket, key)
            if signed_url is None:
                return None
            return self._download(signed_url)

        path = Path(self._cfg.local_root) / bucket / key
        if not path.is_file():
            return None
        return path.read_bytes()

    def _create_signed_url(self, bucket: str, key: str) -> Optional[str]:
        """Signed URL for the object, or None if the object doesn't exist."""
        base = self._cfg.storage_url.rstrip("/")
        response = self._http.post(
            f"{base}/storage/v1/object/sign/{bucket}/{key}",
            headers=self._headers,
            json={"expiresIn": self._cfg.signed_url_ttl},
        )
        if response.status_code == 404 or (
            response.status_code >= 400 and "not found" in response.text.lower()
        ):
            return None
        if response.status_code != 200:
            raise RuntimeError(
                f"Failed to create signed URL in bucket '{bucket}' "
                f"({response.status_code}): {response.text}"
            )

        signed_path = response.json().get("signedURL")
        if not signed_path:
            return None
        if signed_path.startswith("/storage/"):
            return f"{base}{signed_path}"
        if signed_path.startswith("/"):
            return f"{base}/storage/v1{signed_path}"
        return signed_path

    def _download(self, url: str) -> bytes:
        response = self._http.get(url)
        if response.status_code != 200:
            raise RuntimeError(
                f"Failed to download plan file ({response.status_code} {response.reason_phrase})"
            )
        return response.content
