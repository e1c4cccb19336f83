"""
test_storage.py — Plan file lookup across buckets, local and signed-URL.

Storage HTTP is served by an httpx.MockTransport; no network is used.
"""

from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import httpx
import pytest

from plan_takeoff.config import StorageConfig
from plan_takeoff.exceptions import PlanFileNotFoundError
from plan_takeoff.storage import PlanFileStore, storage_candidates

PDF = b"%PDF-1.4 fake plan"
BASE = "https://project.supabase.example"


def test_candidates_for_bucket_prefixed_path():
    buckets, candidates = storage_candidates(
        "plans/abc/set.pdf", "job-plans", ("plan-files", "plans")
    )
    assert buckets == ["plans", "job-plans", "plan-files"]
    assert candidates[:4] == [
        ("plans", "abc/set.pdf"),
        ("plans", "plans/abc/set.pdf"),
        ("job-plans", "abc/set.pdf"),
        ("job-plans", "plans/abc/set.pdf"),
    ]
    assert len(candidates) == len(set(candidates)) == 6
    print("  ✓ test_candidates_for_bucket_prefixed_path")


def test_candidates_for_public_url_and_bare_key():
    url = f"{BASE}/storage/v1/object/public/job-plans/p1/set.pdf?download=1"
    buckets, candidates = storage_candidates(url, "job-plans", ("plan-files",))
    assert buckets == ["job-plans", "plan-files"]
    assert candidates[0] == ("job-plans", "p1/set.pdf")
    assert ("job-plans", "job-plans/p1/set.pdf") in candidates

    buckets, candidates = storage_candidates("set.pdf", "job-plans", ("plan-files",))
    assert buckets == ["job-plans", "plan-files"]
    assert candidates == [("job-plans", "set.pdf"), ("plan-files", "set.pdf")]
    print("  ✓ test_candidates_for_public_url_and_bare_key")


def test_local_fetch_tries_fallback_buckets(tmp_path):
    target = tmp_path / "plan-files" / "abc"
    target.mkdir(parents=True)
    (target / "set.pdf").write_bytes(PDF)

    store = PlanFileStore(StorageConfig(storage_url=None, local_root=str(tmp_path)))
    assert store.fetch("job-plans/abc/set.pdf") == PDF
    print("  ✓ test_local_fetch_tries_fallback_buckets")


def test_not_found_lists_buckets(tmp_path):
    store = PlanFileStore(StorageConfig(storage_url=None, local_root=str(tmp_path)))
    with pytest.raises(PlanFileNotFoundError) as exc_info:
        store.fetch("missing/set.pdf")
    message = str(exc_info.value)
    for bucket in ("missing", "job-plans", "plan-files", "plans"):
        assert bucket in message
    assert isinstance(exc_info.value, FileNotFoundError)

    with pytest.raises(ValueError):
        store.fetch("  ")
    print("  ✓ test_not_found_lists_buckets")


def _storage_transport(found_bucket: str, calls: list):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        path = request.url.path
        if request.method == "POST" and path.startswith("/storage/v1/object/sign/"):
            assert request.headers["apikey"] == "service-key"
            bucket_key = path[len("/storage/v1/object/sign/"):]
            if bucket_key == f"{found_bucket}/abc/set.pdf":
                return httpx.Response(200, json={"signedURL": f"/object/sign/{bucket_key}?token=t"})
            if bucket_key.startswith("job-plans/"):
                return httpx.Response(400, json={"error": "Object not found"})
            return httpx.Response(404, json={"error": "not_found"})
        if request.method == "GET" and request.url.params.get("token") == "t":
            return httpx.Response(200, content=PDF)
        return httpx.Response(500, text="unexpected request")

    return httpx.MockTransport(handler)


def test_signed_url_fallback_across_buckets():
    calls = []
    cfg = StorageConfig(storage_url=BASE, service_key="service-key")
    client = httpx.Client(transport=_storage_transport("plan-files", calls))
    store = PlanFileStore(cfg, http_client=client)

    assert store.fetch("abc/set.pdf") == PDF
    # "abc" looks like a bucket prefix, so it is tried first
    sign_calls = [p for m, p in calls if m == "POST"]
    assert sign_calls[0] == "/storage/v1/object/sign/abc/set.pdf"
    assert "/storage/v1/object/sign/job-plans/abc/set.pdf" in sign_calls
    assert sign_calls[-1] == "/storage/v1/object/sign/plan-files/abc/set.pdf"
    assert calls[-1] == ("GET", "/storage/v1/object/sign/plan-files/abc/set.pdf")
    print("  ✓ test_signed_url_fallback_across_buckets")


def test_signed_url_server_error_is_raised():
    def handler(request):
        return httpx.Response(500, text="storage is down")

    cfg = StorageConfig(storage_url=BASE, service_key="service-key")
    store = PlanFileStore(cfg, http_client=httpx.Client(transport=httpx.MockTransport(handler)))
    with pytest.raises(RuntimeError, match="storage is down"):
        store.fetch("abc/set.pdf")
    print("  ✓ test_signed_url_server_error_is_raised")


def test_direct_http_download():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        if request.url.host == "planroom.example":
            return httpx.Response(200, content=PDF)
        return httpx.Response(403)

    store = PlanFileStore(
        StorageConfig(storage_url=BASE, service_key="k"),
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    assert store.fetch("https://planroom.example/sets/42.pdf") == PDF
    assert seen == ["https://planroom.example/sets/42.pdf"]

    with pytest.raises(RuntimeError):
        store.fetch("https://elsewhere.example/private.pdf")
    print("  ✓ test_direct_http_download")
