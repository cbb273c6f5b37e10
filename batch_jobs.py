"""In-process async batch jobs.

/api/create-ads-async stages the files, registers a job and hands the work to a
FastAPI background task. When the batch finishes the report is stored here and,
if the caller gave a callback_url, POSTed back with the job id and the caller's
correlation id.

Jobs live in memory only: a restart forgets them.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

import requests

from asset_staging import UploadedAsset
from bulk_ads import BatchOrchestrator, BatchReport, BatchRequest

logger = logging.getLogger(__name__)

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_SUCCEEDED = "succeeded"
JOB_FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BatchJob:
    job_id: str
    status: str = JOB_QUEUED
    correlation_id: Optional[str] = None
    callback_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    report: Optional[BatchReport] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "correlation_id": self.correlation_id,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "report": self.report.to_response() if self.report else None,
            "error": self.error,
        }


class JobRegistry:
    def __init__(self, max_jobs: int = 500):
        self.max_jobs = max_jobs
        self._jobs: "OrderedDict[str, BatchJob]" = OrderedDict()
        self._lock = threading.Lock()

    def create(self, *, correlation_id: str | None = None, callback_url: str | None = None) -> BatchJob:
        job = BatchJob(job_id=uuid.uuid4().hex, correlation_id=correlation_id, callback_url=callback_url)
        with self._lock:
            self._jobs[job.job_id] = job
            # Oldest finished jobs go first once the registry is full.
            while len(self._jobs) > self.max_jobs:
                oldest = next(
                    (k for k, j in self._jobs.items() if j.status in {JOB_SUCCEEDED, JOB_FAILED}),
                    None,
                )
                if oldest is None:
                    break
                del self._jobs[oldest]
        return job

    def get(self, job_id: str) -> Optional[BatchJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def update(self, job_id: str, **changes: Any) -> BatchJob:
        with self._lock:
            job = replace(self._jobs[job_id], **changes)
            self._jobs[job_id] = job
            return job


def notify_callback(job: BatchJob, *, timeout_s: int = 30) -> bool:
    """POST the job result to its callback_url. Failures are logged, not raised."""
    if not job.callback_url:
        return False
    body = {
        "job_id": job.job_id,
        "correlation_id": job.correlation_id,
        "status": job.status,
        "report": job.report.to_response() if job.report else None,
        "error": job.error,
    }
    try:
        resp = requests.post(job.callback_url, json=body, timeout=timeout_s)
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.error("Callback for job %s to %s failed: %s", job.job_id, job.callback_url, e)
        return False
    logger.info("Callback for job %s delivered (%s)", job.job_id, resp.status_code)
    return True


def run_batch_job(
    registry: JobRegistry,
    job_id: str,
    orchestrator: BatchOrchestrator,
    assets: Sequence[UploadedAsset],
    request: BatchRequest,
    *,
    thumbnail: bytes | None = None,
    prior_failures: Sequence[str] = (),
) -> BatchJob:
    registry.update(job_id, status=JOB_RUNNING)
    try:
        report = orchestrator.run(assets, request, thumbnail=thumbnail, prior_failures=prior_failures)
    except Exception as e:
        logger.exception("Batch job %s failed", job_id)
        job = registry.update(job_id, status=JOB_FAILED, error=str(e), finished_at=utcnow())
    else:
        job = registry.update(job_id, status=JOB_SUCCEEDED, report=report, finished_at=utcnow())
    notify_callback(job)
    return job
