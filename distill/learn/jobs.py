"""File-backed job queue for deferred pipeline work.

Producers (e.g. a session-end hook) submit jobs; a consumer process drains
them later. Every transition re-reads the document under the backend's
exclusive lock and checks the job's current status first, so two workers
never claim the same job. Execution is at-least-once: a worker that dies
leaves its job ``running`` until ``requeue_stale`` puts it back.

Document layout:
    {"jobs": [{...Job.to_dict()...}, ...]}
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any

from ..storage import DocumentBackend
from .models import Job, JobStatus, utcnow

logger = logging.getLogger(__name__)

JobHandler = Callable[[dict[str, Any]], Any]


class JobQueue:
    """Priority queue of Job records in one JSON document.

    Args:
        backend: Where the document lives.
        max_attempts: Failed jobs are requeued until they have run this often.
    """

    def __init__(self, backend: DocumentBackend, max_attempts: int = 3) -> None:
        self._backend = backend
        self.max_attempts = max_attempts

    @contextmanager
    def _locked(self) -> Iterator[list[Job]]:
        with self._backend.exclusive():
            doc = self._backend.load()
            jobs = [Job.from_dict(j) for j in doc.get("jobs", [])]
            before = [j.to_dict() for j in jobs]
            yield jobs
            after = [j.to_dict() for j in jobs]
            if after != before:
                self._backend.save({"jobs": after})

    def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        jobs = [Job.from_dict(j) for j in self._backend.load().get("jobs", [])]
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        return jobs

    def submit(
        self,
        type: str,
        payload: Mapping[str, Any] | None = None,
        priority: int = 0,
        dedupe_key: str | None = None,
    ) -> Job:
        """Queue a job. A live job with the same ``dedupe_key`` is returned instead."""
        with self._locked() as jobs:
            if dedupe_key:
                for job in jobs:
                    if job.dedupe_key == dedupe_key and job.status in (
                        JobStatus.QUEUED,
                        JobStatus.RUNNING,
                    ):
                        logger.debug("Job %s already covers %s", job.job_id, dedupe_key)
                        return job

            now = utcnow()
            job = Job(
                job_id=uuid.uuid4().hex[:12],
                type=type,
                status=JobStatus.QUEUED,
                priority=priority,
                payload=dict(payload or {}),
                created_at=now,
                updated_at=now,
                dedupe_key=dedupe_key,
            )
            jobs.append(job)
        logger.info("Queued %s job %s", type, job.job_id)
        return job

    def claim(self, types: Iterable[str] | None = None) -> Job | None:
        """Move the highest-priority, oldest queued job to running and return it."""
        wanted = set(types) if types is not None else None
        with self._locked() as jobs:
            queued = [
                j
                for j in jobs
                if j.status == JobStatus.QUEUED and (wanted is None or j.type in wanted)
            ]
            if not queued:
                return None
            job = min(queued, key=lambda j: (-j.priority, j.created_at, j.job_id))
            job.status = JobStatus.RUNNING
            job.attempts += 1
            job.updated_at = utcnow()
        return job

    def _finish(
        self, job_id: str, status: JobStatus, error: str | None = None, retry: bool = False
    ) -> Job | None:
        with self._locked() as jobs:
            for job in jobs:
                if job.job_id != job_id:
                    continue
                if job.status != JobStatus.RUNNING:
                    logger.warning("Job %s is %s, not running", job_id, job.status.value)
                    return None
                job.status = (
                    JobStatus.QUEUED if retry and job.attempts < self.max_attempts else status
                )
                job.error = error
                job.updated_at = utcnow()
                return job
        return None

    def complete(self, job_id: str) -> Job | None:
        return self._finish(job_id, JobStatus.DONE)

    def fail(self, job_id: str, error: str) -> Job | None:
        """Record a failure; the job is requeued while attempts remain."""
        return self._finish(job_id, JobStatus.FAILED, error, retry=True)

    def requeue_stale(self, older_than: timedelta, now: datetime | None = None) -> int:
        """Return running jobs untouched for ``older_than`` to the queue."""
        cutoff = (now or utcnow()) - older_than
        requeued = 0
        with self._locked() as jobs:
            for job in jobs:
                if job.status == JobStatus.RUNNING and job.updated_at < cutoff:
                    job.status = JobStatus.QUEUED
                    job.updated_at = now or utcnow()
                    requeued += 1
        if requeued:
            logger.info("Requeued %d stale job(s)", requeued)
        return requeued

    def run_pending(self, handlers: Mapping[str, JobHandler], limit: int = 10) -> dict[str, int]:
        """Drain up to ``limit`` jobs whose type has a handler.

        Returns:
            Counts of ``done`` and ``failed`` jobs.
        """
        counts = {"done": 0, "failed": 0}
        for _ in range(limit):
            job = self.claim(handlers.keys())
            if job is None:
                break
            try:
                handlers[job.type](job.payload)
            except Exception as e:
                logger.warning("Job %s (%s) failed: %s", job.job_id, job.type, e)
                self.fail(job.job_id, str(e) or type(e).__name__)
                counts["failed"] += 1
                continue
            self.complete(job.job_id)
            counts["done"] += 1
        return counts
