"""
Job Service - Lifecycle state of generation jobs.

State machine:

    pending ──► processing ──► completed
       │            │  │
       │            │  └──► pending      (retryable failure, re-delivered by the queue)
       ├────────────┴─────► failed       (terminal failure, refunded)
       └────────────┴─────► cancelled    (user cancellation, refunded)

Transitions are optimistic: every UPDATE carries ``WHERE status = ANY(allowed)``
so two actors racing on one job (worker vs. cancellation, or two deliveries of
the same job) can never both win. The loser gets InvalidTransitionError.
"""

import json
import logging
import uuid
from typing import Optional, Dict, Any, List

from vidgen.db import fetch_one, fetch_all, transaction, use_cursor, Tables

logger = logging.getLogger("vidgen.jobs")


class JobStatus:
    """Valid job statuses."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ALL = (PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED)
    TERMINAL = frozenset({COMPLETED, FAILED, CANCELLED})


# target status -> statuses it may be entered from
ALLOWED_TRANSITIONS = {
    JobStatus.PROCESSING: (JobStatus.PENDING,),
    JobStatus.PENDING: (JobStatus.PROCESSING,),
    JobStatus.COMPLETED: (JobStatus.PROCESSING,),
    JobStatus.FAILED: (JobStatus.PENDING, JobStatus.PROCESSING),
    JobStatus.CANCELLED: (JobStatus.PENDING, JobStatus.PROCESSING),
}

# Columns a transition (or set_fields) may write alongside the status
UPDATABLE_FIELDS = frozenset({
    "artifact_url",
    "thumbnail_url",
    "duration_seconds",
    "file_size",
    "provider_task_id",
    "error_message",
})


# ─────────────────────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────────────────────
class JobError(Exception):
    """Base exception for job store errors."""
    pass


class JobNotFoundError(JobError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(JobError):
    """Raised when a status change is not allowed from the job's current status."""
    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(f"Invalid transition for job {job_id}: {current} -> {requested}")
        self.job_id = job_id
        self.current = current
        self.requested = requested


def can_transition(current: str, new_status: str) -> bool:
    return current in ALLOWED_TRANSITIONS.get(new_status, ())


def _check_fields(fields: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    fields = dict(fields or {})
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update job fields: {sorted(unknown)}")
    return fields


class JobStore:
    """Persistence for jobs with status-guarded transitions."""

    def __init__(self, tx=transaction):
        self._tx = tx

    def create(
        self,
        account_id: str,
        params: Dict[str, Any],
        reserved_cost: int,
        job_id: Optional[str] = None,
        cur=None,
    ) -> Dict[str, Any]:
        """Insert a new job in status ``pending``."""
        if reserved_cost < 0:
            raise ValueError(f"reserved_cost must be >= 0, got {reserved_cost}")
        job_id = job_id or str(uuid.uuid4())

        with use_cursor(self._tx, cur) as cur:
            cur.execute(
                f"""
                INSERT INTO {Tables.JOBS}
                (id, account_id, params, cost_credits, status, created_at, updated_at)
                VALUES (%s, %s, %s::jsonb, %s, %s, NOW(), NOW())
                RETURNING *
                """,
                (job_id, account_id, json.dumps(params or {}), reserved_cost, JobStatus.PENDING),
            )
            job = fetch_one(cur)

        logger.info("[JOBS] Created job %s for account %s (cost=%s)", job_id, account_id, reserved_cost)
        return job

    def get(self, job_id: str, cur=None) -> Optional[Dict[str, Any]]:
        with use_cursor(self._tx, cur) as cur:
            cur.execute(f"SELECT * FROM {Tables.JOBS} WHERE id = %s", (job_id,))
            return fetch_one(cur)

    def transition(
        self,
        job_id: str,
        new_status: str,
        fields: Optional[Dict[str, Any]] = None,
        cur=None,
    ) -> Dict[str, Any]:
        """
        Move a job to ``new_status`` if its current status allows it.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidTransitionError: If the current status does not allow the move
        """
        if new_status not in ALLOWED_TRANSITIONS:
            raise ValueError(f"Unknown target status: {new_status}")
        fields = _check_fields(fields)

        sets = ["status = %s", "updated_at = NOW()"]
        params: list = [new_status]
        for column in sorted(fields):
            sets.append(f"{column} = %s")
            params.append(fields[column])
        if new_status in JobStatus.TERMINAL:
            sets.append("completed_at = NOW()")
        params.extend([job_id, list(ALLOWED_TRANSITIONS[new_status])])

        with use_cursor(self._tx, cur) as cur:
            cur.execute(
                f"""
                UPDATE {Tables.JOBS}
                SET {", ".join(sets)}
                WHERE id = %s AND status = ANY(%s)
                RETURNING *
                """,
                tuple(params),
            )
            job = fetch_one(cur)
            if job is not None:
                logger.info("[JOBS] %s -> %s", job_id, new_status)
                return job

            cur.execute(f"SELECT status FROM {Tables.JOBS} WHERE id = %s", (job_id,))
            row = fetch_one(cur)

        if row is None:
            raise JobNotFoundError(job_id)
        logger.error("[JOBS] Rejected transition for %s: %s -> %s", job_id, row["status"], new_status)
        raise InvalidTransitionError(job_id, row["status"], new_status)

    def set_fields(
        self,
        job_id: str,
        fields: Dict[str, Any],
        expected_status: str,
        cur=None,
    ) -> Optional[Dict[str, Any]]:
        """
        Update non-status columns while the job is still in ``expected_status``.
        Returns None when the job has moved on (e.g. it was cancelled).
        """
        fields = _check_fields(fields)
        if not fields:
            return self.get(job_id, cur=cur)

        columns = sorted(fields)
        assignments = ", ".join(f"{c} = %s" for c in columns)
        with use_cursor(self._tx, cur) as cur:
            cur.execute(
                f"""
                UPDATE {Tables.JOBS}
                SET {assignments}, updated_at = NOW()
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                tuple(fields[c] for c in columns) + (job_id, expected_status),
            )
            return fetch_one(cur)

    def list_by_status(self, status: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Oldest-first jobs in ``status``."""
        if status not in JobStatus.ALL:
            raise ValueError(f"Unknown job status: {status}")
        with self._tx() as cur:
            cur.execute(
                f"""
                SELECT * FROM {Tables.JOBS}
                WHERE status = %s
                ORDER BY created_at ASC
                LIMIT %s
                """,
                (status, limit),
            )
            return fetch_all(cur)

    def list_stale(self, status: str, older_than_seconds: float, limit: int = 100) -> List[Dict[str, Any]]:
        """Jobs sitting in ``status`` without an update for ``older_than_seconds``."""
        with self._tx() as cur:
            cur.execute(
                f"""
                SELECT * FROM {Tables.JOBS}
                WHERE status = %s
                  AND updated_at < NOW() - make_interval(secs => %s)
                ORDER BY updated_at ASC
                LIMIT %s
                """,
                (status, float(older_than_seconds), limit),
            )
            return fetch_all(cur)

    def list_for_account(
        self,
        account_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        sql = f"SELECT * FROM {Tables.JOBS} WHERE account_id = %s"
        params: list = [account_id]
        if status:
            sql += " AND status = %s"
            params.append(status)
        sql += " ORDER BY created_at DESC LIMIT %s OFFSET %s"
        params.extend([limit, offset])
        with self._tx() as cur:
            cur.execute(sql, tuple(params))
            return fetch_all(cur)
