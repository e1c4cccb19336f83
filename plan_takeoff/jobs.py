"""
jobs.py — In-process background job queue.

Ingestion and multi-model takeoff both take tens of seconds to minutes,
longer than an HTTP request should stay open. Work is submitted here,
the caller gets a job id back immediately, and polls the JobRecord.

A fixed pool of asyncio workers drains the queue. Jobs that touch the
same plan take a per-plan lock, so two ingestions of one plan never
interleave their delete-then-insert. Blocking work (pdfplumber,
Tesseract, the embedding HTTP calls) runs in a thread via
asyncio.to_thread so the event loop stays responsive.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from plan_takeoff.config import config
from plan_takeoff.schemas import JobRecord

logger = logging.getLogger(__name__)

JobFunc = Callable[..., Any]


class JobQueue:
    """
    Usage:
        queue = JobQueue(workers=2)
        await queue.start()
        job = await queue.submit("ingest", pipeline.run, plan_id="p1", pdf_bytes=data)
        ...
        queue.get(job.job_id).status   # queued → running → done | error
        await queue.stop()
    """

    def __init__(self, workers: Optional[int] = None):
        self.workers = workers or config.jobs.workers
        self._queue: asyncio.Queue = asyncio.Queue()
        self._jobs: Dict[str, JobRecord] = {}
        self._plan_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._tasks: List[asyncio.Task] = []

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(n), name=f"job-worker-{n}")
            for n in range(self.workers)
        ]
        logger.info("Job queue started with %d workers", self.workers)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Job queue stopped")

    async def submit(
        self,
        kind: str,
        func: JobFunc,
        *args: Any,
        plan_id: Optional[str] = None,
        **kwargs: Any,
    ) -> JobRecord:
        """Queue `func(*args, **kwargs)`. `plan_id` is passed through when given."""
        job = JobRecord(job_id=uuid.uuid4().hex[:12], kind=kind, plan_id=plan_id)
        self._jobs[job.job_id] = job
        if plan_id is not None:
            kwargs["plan_id"] = plan_id
        await self._queue.put((job.job_id, func, args, kwargs))
        logger.info("Queued %s job %s (plan=%s)", kind, job.job_id, plan_id)
        return job

    def get(self, job_id: str) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    def list_jobs(self) -> List[JobRecord]:
        return sorted(self._jobs.values(), key=lambda j: j.created_at)

    def delete(self, job_id: str) -> bool:
        """
        Forget a finished job. Queued or running jobs are kept, since a
        worker still holds their record; returns False for those and for
        unknown ids.
        """
        job = self._jobs.get(job_id)
        if job is None or job.status in ("queued", "running"):
            return False
        del self._jobs[job_id]
        return True

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        await self._queue.join()

    async def _worker(self, n: int) -> None:
        while True:
            job_id, func, args, kwargs = await self._queue.get()
            try:
                await self._run(job_id, func, args, kwargs)
            finally:
                self._queue.task_done()

    async def _run(self, job_id: str, func: JobFunc, args: Tuple, kwargs: Dict[str, Any]) -> None:
        job = self._jobs[job_id]
        lock = self._plan_locks[job.plan_id] if job.plan_id else None

        if lock is not None:
            await lock.acquire()
        try:
            job.status = "running"
            job.message = f"Running {job.kind}"
            if inspect.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = await asyncio.to_thread(func, *args, **kwargs)
            job.result = result
            job.status = "done"
            job.message = "Complete"
            logger.info("Job %s (%s) done", job_id, job.kind)
        except Exception as exc:
            # One failed job must not kill the worker
            logger.exception("Job %s (%s) failed", job_id, job.kind)
            job.status = "error"
            job.error = str(exc) or type(exc).__name__
            job.message = f"Failed: {job.error}"
        finally:
            job.finished_at = datetime.now(timezone.utc)
            if lock is not None:
                lock.release()
                self._drop_idle_lock(job.plan_id)

    def _drop_idle_lock(self, plan_id: str) -> None:
        # Locks exist only while a job for the plan is queued or running
        pending = any(
            j.plan_id == plan_id and j.status in ("queued", "running")
            for j in self._jobs.values()
        )
        lock = self._plan_locks.get(plan_id)
        if not pending and lock is not None and not lock.locked():
            del self._plan_locks[plan_id]
