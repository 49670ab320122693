"""
Outbox Service - Durable hand-off of job intents to the work queue.

This service ensures every paid job reaches the queue by:
1. Writing an outbox record in the same transaction as the reservation and job
2. Relaying pending records to the queue from a periodic background sweep
3. Retrying failed relays after a cooldown, up to max_attempts
4. Leaving exhausted records in place (status='failed') for operators

Usage in the request flow:
    with transaction() as cur:
        ledger.reserve(..., cur=cur)
        job = jobs.create(..., cur=cur)
        outbox.stage(job["id"], build_dispatch_payload(job), cur=cur)
    # Transaction committed - the job can no longer be lost

Background usage:
    relay = OutboxRelay(outbox, queue)
    relay.start()      # sweeps every interval_seconds
    ...
    relay.stop()

Records are never deleted; ``queued`` rows are the audit trail.
"""

import json
import logging
import threading
from typing import Optional, Dict, Any, List

from vidgen.db import DatabaseError, fetch_one, fetch_all, transaction, use_cursor, Tables
from vidgen.utils import truncate_error

logger = logging.getLogger("vidgen.outbox")


class OutboxStatus:
    """Valid outbox statuses."""
    PENDING = "pending"
    QUEUED = "queued"
    FAILED = "failed"  # Retried while attempts < max_attempts

    ALL = (PENDING, QUEUED, FAILED)


DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INTERVAL_SECONDS = 10.0
DEFAULT_RETRY_COOLDOWN_SECONDS = 60.0
DEFAULT_PENDING_BATCH = 100
DEFAULT_FAILED_BATCH = 20


class RelayDeliveryFailure(Exception):
    """A record could not be handed to the work queue."""
    def __init__(self, job_id: str, attempts: int, cause: BaseException):
        super().__init__(f"Relay of job {job_id} failed (attempt {attempts}): {cause}")
        self.job_id = job_id
        self.attempts = attempts
        self.cause = cause


def build_dispatch_payload(job: Dict[str, Any]) -> Dict[str, Any]:
    """Denormalized queue payload for a job row."""
    return {
        "job_id": job["id"],
        "account_id": job["account_id"],
        "params": job.get("params") or {},
        "cost_credits": job["cost_credits"],
    }


class OutboxStore:
    """Persistence for outbox records."""

    def __init__(self, tx=transaction, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self._tx = tx
        self.max_attempts = max_attempts

    # ─────────────────────────────────────────────────────────────
    # Staging (call within the request transaction)
    # ─────────────────────────────────────────────────────────────
    def stage(self, job_id: str, payload: Dict[str, Any], cur=None) -> Dict[str, Any]:
        """Create the pending record for a job. Staging twice returns the existing row."""
        with use_cursor(self._tx, cur) as cur:
            cur.execute(
                f"""
                INSERT INTO {Tables.JOB_OUTBOX}
                (job_id, payload, status, attempts, created_at, updated_at)
                VALUES (%s, %s::jsonb, %s, 0, NOW(), NOW())
                ON CONFLICT (job_id) DO NOTHING
                RETURNING *
                """,
                (job_id, json.dumps(payload), OutboxStatus.PENDING),
            )
            row = fetch_one(cur)
            if row is None:
                cur.execute(f"SELECT * FROM {Tables.JOB_OUTBOX} WHERE job_id = %s", (job_id,))
                row = fetch_one(cur)
        logger.info("[OUTBOX] Staged job %s", job_id)
        return row

    # ─────────────────────────────────────────────────────────────
    # Relay queries
    # ─────────────────────────────────────────────────────────────
    def fetch_pending(self, limit: int = DEFAULT_PENDING_BATCH) -> List[Dict[str, Any]]:
        with self._tx() as cur:
            cur.execute(
                f"""
                SELECT * FROM {Tables.JOB_OUTBOX}
                WHERE status = %s
                ORDER BY created_at ASC
                LIMIT %s
                """,
                (OutboxStatus.PENDING, limit),
            )
            return fetch_all(cur)

    def fetch_retryable(
        self,
        limit: int = DEFAULT_FAILED_BATCH,
        cooldown_seconds: float = DEFAULT_RETRY_COOLDOWN_SECONDS,
    ) -> List[Dict[str, Any]]:
        """Failed records with attempts left whose cooldown has elapsed."""
        with self._tx() as cur:
            cur.execute(
                f"""
                SELECT * FROM {Tables.JOB_OUTBOX}
                WHERE status = %s
                  AND attempts < %s
                  AND (last_attempt_at IS NULL
                       OR last_attempt_at < NOW() - make_interval(secs => %s))
                ORDER BY last_attempt_at ASC NULLS FIRST
                LIMIT %s
                """,
                (OutboxStatus.FAILED, self.max_attempts, float(cooldown_seconds), limit),
            )
            return fetch_all(cur)

    def mark_queued(self, job_id: str) -> None:
        with self._tx() as cur:
            cur.execute(
                f"""
                UPDATE {Tables.JOB_OUTBOX}
                SET status = %s, last_error = NULL, updated_at = NOW()
                WHERE job_id = %s
                """,
                (OutboxStatus.QUEUED, job_id),
            )

    def mark_failed(self, job_id: str, error: str) -> Dict[str, Any]:
        """Record a failed relay attempt. Returns the updated row."""
        with self._tx() as cur:
            cur.execute(
                f"""
                UPDATE {Tables.JOB_OUTBOX}
                SET status = %s,
                    attempts = attempts + 1,
                    last_attempt_at = NOW(),
                    last_error = %s,
                    updated_at = NOW()
                WHERE job_id = %s
                RETURNING *
                """,
                (OutboxStatus.FAILED, error, job_id),
            )
            return fetch_one(cur)

    def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._tx() as cur:
            cur.execute(f"SELECT * FROM {Tables.JOB_OUTBOX} WHERE job_id = %s", (job_id,))
            return fetch_one(cur)

    # ─────────────────────────────────────────────────────────────
    # Operator views
    # ─────────────────────────────────────────────────────────────
    def get_stats(self) -> Dict[str, Any]:
        with self._tx() as cur:
            cur.execute(
                f"""
                SELECT
                    COUNT(*) FILTER (WHERE status = %s) AS pending,
                    COUNT(*) FILTER (WHERE status = %s) AS queued,
                    COUNT(*) FILTER (WHERE status = %s) AS failed,
                    COUNT(*) FILTER (WHERE status = %s AND attempts >= %s) AS exhausted,
                    EXTRACT(EPOCH FROM NOW() - MIN(created_at) FILTER (WHERE status = %s))
                        AS oldest_pending_age_seconds
                FROM {Tables.JOB_OUTBOX}
                """,
                (
                    OutboxStatus.PENDING,
                    OutboxStatus.QUEUED,
                    OutboxStatus.FAILED,
                    OutboxStatus.FAILED,
                    self.max_attempts,
                    OutboxStatus.PENDING,
                ),
            )
            row = fetch_one(cur) or {}

        age = row.get("oldest_pending_age_seconds")
        return {
            "pending": int(row.get("pending") or 0),
            "queued": int(row.get("queued") or 0),
            "failed": int(row.get("failed") or 0),
            "exhausted": int(row.get("exhausted") or 0),
            "oldest_pending_age_seconds": float(age) if age is not None else None,
        }

    def list_exhausted(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Records that ran out of relay attempts and need a human."""
        with self._tx() as cur:
            cur.execute(
                f"""
                SELECT * FROM {Tables.JOB_OUTBOX}
                WHERE status = %s AND attempts >= %s
                ORDER BY last_attempt_at DESC
                LIMIT %s
                """,
                (OutboxStatus.FAILED, self.max_attempts, limit),
            )
            return fetch_all(cur)


class OutboxRelay:
    """
    Periodic sweep from outbox to work queue.

    Thread-safe. A daemon timer fires every ``interval_seconds``; sweeps never
    overlap. Safe to run in several processes at once because enqueue is
    idempotent on job id.
    """

    def __init__(
        self,
        store: OutboxStore,
        queue,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        retry_cooldown_seconds: float = DEFAULT_RETRY_COOLDOWN_SECONDS,
        pending_batch: int = DEFAULT_PENDING_BATCH,
        failed_batch: int = DEFAULT_FAILED_BATCH,
    ):
        self._store = store
        self._queue = queue
        self.interval_seconds = interval_seconds
        self.retry_cooldown_seconds = retry_cooldown_seconds
        self.pending_batch = pending_batch
        self.failed_batch = failed_batch
        self._lock = threading.Lock()
        self._sweep_lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._running = False

    # ── lifecycle ─────────────────────────────────────────────
    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
        logger.info("[OUTBOX] Relay started (every %ss)", self.interval_seconds)
        self._tick()

    def stop(self) -> None:
        with self._lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        logger.info("[OUTBOX] Relay stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def _schedule_next(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._timer = threading.Timer(self.interval_seconds, self._tick)
            self._timer.daemon = True
            self._timer.start()

    def _tick(self) -> None:
        try:
            self.process_once()
        except DatabaseError as e:
            logger.error("[OUTBOX] Sweep failed: %s", e)
        finally:
            self._schedule_next()

    # ── sweep ─────────────────────────────────────────────────
    def process_once(self) -> Dict[str, int]:
        """
        Relay one batch of pending records and one batch of retryable failures.
        Returns counts for this sweep.
        """
        summary = {"pending": 0, "retried": 0, "queued": 0, "failed": 0, "exhausted": 0}
        if not self._sweep_lock.acquire(blocking=False):
            return summary
        try:
            pending = self._store.fetch_pending(self.pending_batch)
            retryable = self._store.fetch_retryable(self.failed_batch, self.retry_cooldown_seconds)
            summary["pending"] = len(pending)
            summary["retried"] = len(retryable)

            for record in pending + retryable:
                try:
                    self._deliver(record)
                    summary["queued"] += 1
                except RelayDeliveryFailure as failure:
                    summary["failed"] += 1
                    if failure.attempts >= self._store.max_attempts:
                        summary["exhausted"] += 1
        finally:
            self._sweep_lock.release()

        if summary["pending"] or summary["retried"]:
            logger.info(
                "[OUTBOX] Sweep: pending=%d retried=%d queued=%d failed=%d exhausted=%d",
                summary["pending"], summary["retried"], summary["queued"],
                summary["failed"], summary["exhausted"],
            )
        return summary

    def _deliver(self, record: Dict[str, Any]) -> None:
        """
        Hand one record to the queue.

        Raises:
            RelayDeliveryFailure: After recording the failed attempt
        """
        job_id = record["job_id"]
        try:
            self._queue.enqueue(job_id, record["payload"])
        except Exception as e:
            updated = self._store.mark_failed(job_id, truncate_error(e))
            attempts = int((updated or {}).get("attempts") or int(record.get("attempts") or 0) + 1)
            if attempts >= self._store.max_attempts:
                logger.error(
                    "[OUTBOX] Job %s could not be relayed after %d attempts, needs operator attention: %s",
                    job_id, attempts, e,
                )
            else:
                logger.warning("[OUTBOX] Relay of job %s failed (attempt %d): %s", job_id, attempts, e)
            raise RelayDeliveryFailure(job_id, attempts, e) from e

        self._store.mark_queued(job_id)
