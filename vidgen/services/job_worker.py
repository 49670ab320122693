"""
Job Worker - executes queued generation jobs.

Per delivery:
    1. pending -> processing (anything else means another delivery got here
       first, or the job was cancelled: acknowledge and stop)
    2. submit to the provider, rotating credentials on failure
    3. poll until the provider reports a result (skipped when submit
       already returned the video)
    4. optionally download and copy the artifact to durable storage
    5. best-effort duration probe
    6. processing -> completed

Between steps the job is re-read; a job that left ``processing`` (cancelled)
aborts with no further side effects.

Failures are classified by error_classifier.is_retryable:
    retryable + attempts left -> job back to ``pending`` with a
        "Retry n/m: ..." note, queue redelivers after backoff
    otherwise -> ``failed`` + refund of the reserved cost, both in one
        transaction so a job is refunded exactly once

WorkerPool runs ``concurrency`` polling loops on a ThreadPoolExecutor and
settles each delivery on the queue (ack / retry / dead-letter).
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from vidgen.db import DatabaseError, transaction
from vidgen.services.error_classifier import ErrorKind, ProviderError, RetryableProviderError, is_retryable
from vidgen.services.job_service import InvalidTransitionError, JobNotFoundError, JobStatus
from vidgen.services.outbox_service import build_dispatch_payload
from vidgen.services.work_queue import Delivery
from vidgen.utils import log_event, truncate_error

logger = logging.getLogger("vidgen.worker")

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_POLL_TIMEOUT_SECONDS = 600.0
REFUND_DESCRIPTION = "Video generation failed - refund"


class WorkerOutcome:
    COMPLETED = "completed"
    RETRY = "retry"
    FAILED = "failed"
    SKIPPED = "skipped"    # job not pending: duplicate delivery or already terminal
    ABORTED = "aborted"    # job left processing mid-run (cancelled)


@dataclass
class WorkResult:
    outcome: str
    error: Optional[str] = None


class JobAbortedError(Exception):
    """The job is no longer ``processing``; stop without side effects."""
    def __init__(self, job_id: str, status: Optional[str]):
        super().__init__(f"Job {job_id} is {status}, aborting")
        self.job_id = job_id
        self.status = status


class JobWorker:
    def __init__(
        self,
        jobs,
        ledger,
        provider,
        credentials,
        storage=None,
        tx=transaction,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        poll_timeout_seconds: float = DEFAULT_POLL_TIMEOUT_SECONDS,
        unknown_errors_retryable: bool = True,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._jobs = jobs
        self._ledger = ledger
        self._provider = provider
        self._credentials = credentials
        self._storage = storage
        self._tx = tx
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_timeout_seconds = poll_timeout_seconds
        self.unknown_errors_retryable = unknown_errors_retryable
        self._sleep = sleep
        self._clock = clock

    # ─────────────────────────────────────────────────────────────
    # Entry point
    # ─────────────────────────────────────────────────────────────
    def handle(self, delivery: Delivery) -> WorkResult:
        job_id = delivery.job_id
        job = self._jobs.get(job_id)
        if job is None:
            logger.error("[WORKER] Job %s not found, dropping delivery", job_id)
            return WorkResult(WorkerOutcome.SKIPPED, "job not found")

        if job["status"] != JobStatus.PENDING:
            logger.info("[WORKER] Job %s is %s, nothing to do", job_id, job["status"])
            return WorkResult(WorkerOutcome.SKIPPED)

        # Redelivered after the final attempt's worker died
        if delivery.attempt > delivery.max_attempts:
            message = job.get("error_message") or "Retry attempts exhausted"
            return self._fail_and_refund(job, message)

        try:
            job = self._jobs.transition(job_id, JobStatus.PROCESSING)
        except InvalidTransitionError:
            return WorkResult(WorkerOutcome.SKIPPED)

        logger.info("[WORKER] Processing job %s (attempt %d/%d)", job_id, delivery.attempt, delivery.max_attempts)
        try:
            fields, credential = self._execute(job)
        except JobAbortedError as e:
            logger.info("[WORKER] %s", e)
            return WorkResult(WorkerOutcome.ABORTED)
        except Exception as e:
            return self._handle_failure(job, delivery, e)

        return self._complete(job, fields, credential)

    # ─────────────────────────────────────────────────────────────
    # Workflow
    # ─────────────────────────────────────────────────────────────
    def _execute(self, job: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
        job_id = job["id"]
        params = job.get("params") or {}

        submitted, credential = self._submit(job_id, params)
        if submitted.get("id"):
            self._set_fields(job_id, {"provider_task_id": str(submitted["id"])})
        else:
            self._ensure_processing(job_id)

        result = submitted
        if not (submitted.get("status") == "completed" and submitted.get("video_url")):
            if not submitted.get("id"):
                raise ProviderError("Provider returned neither a video nor a task id")
            result = self._poll(job_id, str(submitted["id"]), credential)

        video_url = result["video_url"]
        artifact_url = video_url
        file_size = None
        data = None
        if self._storage is not None:
            data = self._provider.download(video_url)
            self._ensure_processing(job_id)
            artifact_url = self._storage.store(data, f"{job_id}.mp4")
            file_size = len(data)

        duration = None
        metadata = self._probe(video_url, data)
        if metadata:
            duration = metadata.get("duration_seconds")
            file_size = file_size or metadata.get("file_size")

        return {
            "artifact_url": artifact_url,
            "thumbnail_url": result.get("thumbnail_url"),
            "duration_seconds": duration,
            "file_size": file_size,
            "error_message": None,
        }, credential

    def _submit(self, job_id: str, params: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
        """Submit once per credential until one succeeds or none are left."""
        tries = len(self._credentials)
        for attempt in range(tries):
            credential = self._credentials.next_credential()
            try:
                return self._provider.submit(params, credential), credential
            except ProviderError as e:
                self._credentials.report_failure(e, credential)
                if attempt + 1 < tries and self._credentials.has_available():
                    logger.warning(
                        "[WORKER] Job %s submit failed, rotating credential (%d/%d): %s",
                        job_id, attempt + 2, tries, e,
                    )
                    continue
                raise
        raise ProviderError("No credentials configured")

    def _poll(self, job_id: str, task_id: str, credential: str) -> Dict[str, Any]:
        deadline = self._clock() + self.poll_timeout_seconds
        while True:
            self._sleep(self.poll_interval_seconds)
            self._ensure_processing(job_id)
            status = self._provider.poll(task_id, credential)

            if status.get("status") == "completed":
                if not status.get("video_url"):
                    raise ProviderError("Video URL not received")
                return status
            if status.get("status") == "failed":
                raise ProviderError(status.get("error") or "Video generation failed")
            if self._clock() >= deadline:
                raise RetryableProviderError(
                    f"Timed out after {self.poll_timeout_seconds:.0f}s waiting for task {task_id}",
                    kind=ErrorKind.TIMEOUT,
                )

    def _probe(self, video_url: str, data: Optional[bytes]) -> Optional[Dict[str, Any]]:
        try:
            return self._provider.probe_metadata(video_url, data)
        except Exception as e:
            logger.warning("[WORKER] Metadata probe failed for %s: %s", video_url[:100], e)
            return None

    def _ensure_processing(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        status = job["status"] if job else None
        if status != JobStatus.PROCESSING:
            raise JobAbortedError(job_id, status)

    def _set_fields(self, job_id: str, fields: Dict[str, Any]) -> None:
        if self._jobs.set_fields(job_id, fields, JobStatus.PROCESSING) is None:
            job = self._jobs.get(job_id)
            raise JobAbortedError(job_id, job["status"] if job else None)

    # ─────────────────────────────────────────────────────────────
    # Outcomes
    # ─────────────────────────────────────────────────────────────
    def _complete(self, job: Dict[str, Any], fields: Dict[str, Any], credential: str) -> WorkResult:
        job_id = job["id"]
        try:
            self._jobs.transition(job_id, JobStatus.COMPLETED, fields)
        except InvalidTransitionError as e:
            logger.info("[WORKER] Job %s finished but is now %s, result discarded", job_id, e.current)
            return WorkResult(WorkerOutcome.ABORTED)

        self._credentials.report_success(credential)
        log_event("job_completed", {
            "job_id": job_id,
            "account_id": job["account_id"],
            "artifact_url": fields.get("artifact_url"),
            "duration_seconds": fields.get("duration_seconds"),
        })
        return WorkResult(WorkerOutcome.COMPLETED)

    def _handle_failure(self, job: Dict[str, Any], delivery: Delivery, error: Exception) -> WorkResult:
        job_id = job["id"]
        message = truncate_error(error) or type(error).__name__
        retryable = is_retryable(error, default_retryable=self.unknown_errors_retryable)

        if retryable and delivery.attempt < delivery.max_attempts:
            note = f"Retry {delivery.attempt}/{delivery.max_attempts}: {message}"
            try:
                self._jobs.transition(job_id, JobStatus.PENDING, {"error_message": note})
            except InvalidTransitionError:
                return WorkResult(WorkerOutcome.ABORTED)
            logger.warning("[WORKER] Job %s will be retried: %s", job_id, note)
            return WorkResult(WorkerOutcome.RETRY, message)

        logger.error(
            "[WORKER] Job %s failed permanently (attempt %d/%d, retryable=%s): %s",
            job_id, delivery.attempt, delivery.max_attempts, retryable, message,
        )
        return self._fail_and_refund(job, message)

    def _fail_and_refund(self, job: Dict[str, Any], message: str) -> WorkResult:
        """Terminal failure: status change and refund commit together or not at all."""
        job_id = job["id"]
        cost = int(job.get("cost_credits") or 0)
        try:
            with self._tx() as cur:
                self._jobs.transition(job_id, JobStatus.FAILED, {"error_message": message}, cur=cur)
                if cost > 0:
                    self._ledger.refund(job["account_id"], cost, job_id, REFUND_DESCRIPTION, cur=cur)
        except InvalidTransitionError as e:
            logger.info("[WORKER] Job %s already %s, no refund issued", job_id, e.current)
            return WorkResult(WorkerOutcome.ABORTED, message)

        log_event("job_failed", {"job_id": job_id, "account_id": job["account_id"], "refunded": cost})
        return WorkResult(WorkerOutcome.FAILED, message)


class WorkerPool:
    """
    Runs JobWorker over a WorkQueue with bounded concurrency.

    Each of the ``concurrency`` threads loops: dequeue, handle, settle.
    Idle threads sleep ``idle_sleep_seconds`` between empty polls.
    """

    def __init__(
        self,
        queue,
        worker: JobWorker,
        jobs,
        concurrency: int = 4,
        idle_sleep_seconds: float = 1.0,
        orphan_timeout_seconds: float = 1800.0,
        orphan_check_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._queue = queue
        self._worker = worker
        self._jobs = jobs
        self.concurrency = concurrency
        self.idle_sleep_seconds = idle_sleep_seconds
        self.orphan_timeout_seconds = orphan_timeout_seconds
        self.orphan_check_interval_seconds = orphan_check_interval_seconds
        self._clock = clock
        self._stop = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._recover_lock = threading.Lock()
        self._last_recovery: Optional[float] = None

    # ── lifecycle ─────────────────────────────────────────────
    def start(self) -> None:
        if self._executor is not None:
            return
        self._stop.clear()
        self._maybe_recover(force=True)
        self._executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="job_worker")
        for _ in range(self.concurrency):
            self._executor.submit(self._run_loop)
        logger.info("[WORKER] Pool started with %d workers", self.concurrency)

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        logger.info("[WORKER] Pool stopped")

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self._maybe_recover()
                result = self.run_once()
            except Exception:
                logger.exception("[WORKER] Loop iteration failed")
                result = None
            if result is None:
                self._stop.wait(self.idle_sleep_seconds)

    # ── one delivery ──────────────────────────────────────────
    def run_once(self) -> Optional[WorkResult]:
        """Process at most one delivery. Returns None when the queue is empty."""
        try:
            delivery = self._queue.dequeue()
        except DatabaseError as e:
            logger.error("[WORKER] Dequeue failed: %s", e)
            return None
        if delivery is None:
            return None

        try:
            result = self._worker.handle(delivery)
        except Exception as e:
            # Infrastructure failure (e.g. database); the job may be left in
            # processing, which orphan recovery picks up.
            logger.exception("[WORKER] Job %s crashed", delivery.job_id)
            self._queue.retry(delivery.job_id, truncate_error(e))
            return WorkResult(WorkerOutcome.RETRY, str(e))

        self._settle(delivery, result)
        return result

    def _settle(self, delivery: Delivery, result: WorkResult) -> None:
        if result.outcome == WorkerOutcome.RETRY:
            self._queue.retry(delivery.job_id, result.error or "retry")
        elif result.outcome == WorkerOutcome.FAILED:
            self._queue.dead_letter(delivery.job_id, result.error or "failed")
        else:
            self._queue.ack(delivery.job_id)

    # ── orphan recovery ───────────────────────────────────────
    def _maybe_recover(self, force: bool = False) -> None:
        if not self._recover_lock.acquire(blocking=False):
            return
        try:
            now = self._clock()
            if not force and self._last_recovery is not None \
                    and now - self._last_recovery < self.orphan_check_interval_seconds:
                return
            self._last_recovery = now
            self.recover_orphans()
        except DatabaseError as e:
            logger.error("[WORKER] Orphan recovery failed: %s", e)
        finally:
            self._recover_lock.release()

    def recover_orphans(self, limit: int = 100) -> int:
        """
        Return jobs stuck in ``processing`` (worker died mid-run) to ``pending``
        and make sure the queue holds them. Stale ``pending`` jobs whose queue
        entry is gone, completed or dead are revived; their spent attempts
        carry over, so an exhausted job is failed and refunded on the next
        delivery. Returns the number recovered.
        """
        recovered = 0
        for job in self._jobs.list_stale(JobStatus.PENDING, self.orphan_timeout_seconds, limit):
            if self._queue.revive(job["id"], build_dispatch_payload(job)):
                recovered += 1
                logger.warning("[WORKER] Revived stranded pending job %s", job["id"])

        for job in self._jobs.list_stale(JobStatus.PROCESSING, self.orphan_timeout_seconds, limit):
            job_id = job["id"]
            try:
                self._jobs.transition(
                    job_id,
                    JobStatus.PENDING,
                    {"error_message": "Recovered after worker stalled in processing"},
                )
            except (InvalidTransitionError, JobNotFoundError):
                continue
            self._queue.requeue(job_id, build_dispatch_payload(job))
            recovered += 1
            logger.warning("[WORKER] Recovered orphaned job %s", job_id)
        return recovered
