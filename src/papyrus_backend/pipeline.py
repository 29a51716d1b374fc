"""
Submission and query side of the document pipeline.

This module is what the HTTP layer talks to:
- Accepting a validated generation request (idempotency, job record, first
  queue message)
- Reading job status with its event history
- Resolving the download URL of a completed job
- Listing a caller's jobs

Rendering, signing and delivery happen out of process in the stage workers
(see ``workers``).
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from uuid import uuid4

from .database import JobStatusStore
from .errors import BackingStoreUnavailable, JobNotFound, JobNotReady
from .idempotency import CachedResult, IdempotencyCache
from .job_queue import PipelineQueue
from .metrics import JOBS_SUBMITTED
from .models import GenerationRequest, JobResult, JobStage, JobStatusResponse, JobSummary
from .stages import GENERATE
from .storage import ObjectStore
from .utils import utcnow

logger = logging.getLogger(__name__)


class PipelineService:
    """
    Front door of the pipeline.

    Args:
        store: Job status store
        queue: Pipeline queues
        idempotency: Token cache used when the caller sends an idempotency key
        objects: Object store, used to refresh expired download URLs
        url_ttl: Lifetime of a refreshed download URL, in seconds
    """

    def __init__(
        self,
        store: JobStatusStore,
        queue: PipelineQueue,
        idempotency: IdempotencyCache,
        objects: ObjectStore,
        url_ttl: int = 3600,
    ) -> None:
        self.store = store
        self.queue = queue
        self.idempotency = idempotency
        self.objects = objects
        self.url_ttl = url_ttl

    def submit(
        self,
        request: GenerationRequest,
        scope: str,
        owner: Optional[str] = None,
        idempotency_token: Optional[str] = None,
    ) -> Tuple[str, bool]:
        """
        Accept a generation request.

        With a token, the token is bound to the new job id before anything
        else is written, so concurrent submissions sharing a token agree on
        one job and only the winner creates it. If the job cannot be recorded
        or queued the token is released again, so a retry creates a fresh job.

        Args:
            request: Validated payload
            scope: Caller accounting key; tokens are only shared within a scope
            owner: API key id recorded on the job
            idempotency_token: Value of the ``Idempotency-Key`` header

        Returns:
            (job_id, replayed) where ``replayed`` is True when an earlier
            submission with the same token is returned

        Raises:
            BackingStoreUnavailable: A store needed to accept the job is down
        """
        if idempotency_token:
            cached = self.idempotency.lookup(scope, idempotency_token)
            if cached is not None:
                logger.info(f"Replaying job {cached.job_id} for idempotency key {idempotency_token!r}")
                JOBS_SUBMITTED.labels(replayed="true").inc()
                return cached.job_id, True

        job_id = uuid4().hex
        if idempotency_token:
            winner = self.idempotency.store(scope, idempotency_token, CachedResult(job_id=job_id, created_at=time.time()))
            if winner.job_id != job_id:
                JOBS_SUBMITTED.labels(replayed="true").inc()
                return winner.job_id, True

        try:
            self._accept(job_id, request, owner)
        except Exception:
            if idempotency_token:
                self._release_token(scope, idempotency_token, job_id)
            raise

        logger.info(f"Accepted job {job_id} ({request.type}) for {owner or 'anonymous'}")
        JOBS_SUBMITTED.labels(replayed="false").inc()
        return job_id, False

    def _accept(self, job_id: str, request: GenerationRequest, owner: Optional[str]) -> None:
        payload = request.model_dump(mode="json")
        self.store.create(job_id, payload, owner=owner)
        try:
            self.queue.enqueue(GENERATE.queue, {"job_id": job_id, "payload": payload}, dedupe_key=GENERATE.dedupe_key(job_id))
        except BackingStoreUnavailable as exc:
            logger.error(f"Could not enqueue job {job_id}: {exc}")
            self.store.transition(job_id, JobStage.FAILED, {"error": "Failed to enqueue job"})
            raise

    def _release_token(self, scope: str, token: str, job_id: str) -> None:
        try:
            self.idempotency.release(scope, token, job_id)
        except BackingStoreUnavailable as exc:
            # The original failure is what the caller sees; the token expires with its TTL
            logger.error(f"Could not release idempotency key {token!r} from job {job_id}: {exc}")

    def get_status(self, job_id: str) -> JobStatusResponse:
        record = self.store.get(job_id)
        if record is None:
            raise JobNotFound(job_id)
        status = record.to_status()
        status.events = self.store.history(job_id)
        return status

    def get_result(self, job_id: str) -> JobResult:
        """
        Download URL of a completed job.

        An expired URL is re-signed from the stored signed artifact.

        Raises:
            JobNotFound: Unknown or purged job
            JobNotReady: The job has not completed
        """
        record = self.store.get(job_id)
        if record is None:
            raise JobNotFound(job_id)
        if record.stage is not JobStage.COMPLETED:
            raise JobNotReady(job_id, record.stage.value)

        url = record.result_url
        expires_at = _parse_timestamp(record.metadata.get("url_expires_at"))
        signed_ref = record.metadata.get("signed_ref")
        if signed_ref and (url is None or (expires_at is not None and expires_at <= utcnow())):
            url = self.objects.signed_url(signed_ref, self.url_ttl)
            expires_at = utcnow() + timedelta(seconds=self.url_ttl)
            logger.info(f"Refreshed download URL for job {job_id}")

        if url is None:
            raise JobNotReady(job_id, record.stage.value)
        return JobResult(job_id=job_id, url=url, expires_at=expires_at)

    def list_jobs(self, owner: Optional[str] = None, limit: int = 50) -> List[JobSummary]:
        return [record.to_summary() for record in self.store.list_jobs(owner=owner, limit=limit)]


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
