"""
Work Queue - durable at-least-once delivery of jobs to workers.

Backed by the ``work_queue`` table in the same PostgreSQL database, keyed by
job id:

- enqueue is idempotent (ON CONFLICT DO NOTHING): a job id is queued once,
  no matter how many producers (immediate path, outbox relay) submit it.
- dequeue claims the oldest due entry with FOR UPDATE SKIP LOCKED so any
  number of worker threads/processes can poll concurrently.
- a claimed entry is invisible until ``locked_until``; if the worker dies the
  entry is delivered again after the visibility timeout.
- retry schedules the next delivery with exponential backoff
  (base * 2 ** (attempts - 1)); an entry out of attempts becomes ``dead``.
- requeue puts an entry back to ``waiting`` from any state; orphan recovery
  uses it for jobs whose worker died mid-run.
- revive does the same only for an entry that is missing, ``completed`` or
  ``dead``; live entries are left alone. Orphan recovery uses it for
  ``pending`` jobs the queue has given up on.

Queue states: waiting -> active -> completed | waiting (retry) | dead
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from vidgen.db import fetch_one, fetch_all, transaction, Tables

logger = logging.getLogger("vidgen.queue")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_SECONDS = 2.0
DEFAULT_VISIBILITY_TIMEOUT_SECONDS = 900.0


class QueueState:
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEAD = "dead"

    ALL = (WAITING, ACTIVE, COMPLETED, DEAD)


@dataclass
class Delivery:
    """One claimed delivery of a job. ``attempt`` counts from 1."""
    job_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    attempt: int = 1
    max_attempts: int = DEFAULT_MAX_ATTEMPTS


class WorkQueue:
    """Contract the relay, dispatcher and worker pool depend on."""

    def enqueue(self, job_id: str, payload: Dict[str, Any]) -> bool:
        """Queue a job once. Returns False if the job id was already queued."""
        raise NotImplementedError

    def requeue(self, job_id: str, payload: Dict[str, Any]) -> None:
        """Make a job deliverable again whatever state its entry is in. Attempts are kept."""
        raise NotImplementedError

    def revive(self, job_id: str, payload: Dict[str, Any]) -> bool:
        """Requeue only if the entry is missing, completed or dead. Returns True if it was."""
        raise NotImplementedError

    def dequeue(self) -> Optional[Delivery]:
        raise NotImplementedError

    def ack(self, job_id: str) -> None:
        raise NotImplementedError

    def retry(self, job_id: str, error: str) -> bool:
        """Schedule another delivery. Returns False if the entry went dead instead."""
        raise NotImplementedError

    def dead_letter(self, job_id: str, error: str) -> None:
        raise NotImplementedError

    def remove(self, job_id: str) -> bool:
        """Best-effort removal of a job that has not been picked up yet."""
        raise NotImplementedError

    def stats(self) -> Dict[str, int]:
        raise NotImplementedError


class PgWorkQueue(WorkQueue):
    def __init__(
        self,
        tx=transaction,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
        visibility_timeout_seconds: float = DEFAULT_VISIBILITY_TIMEOUT_SECONDS,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._tx = tx
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.visibility_timeout_seconds = visibility_timeout_seconds

    def enqueue(self, job_id: str, payload: Dict[str, Any]) -> bool:
        with self._tx() as cur:
            cur.execute(
                f"""
                INSERT INTO {Tables.WORK_QUEUE}
                (job_id, payload, state, attempts, max_attempts, available_at, created_at, updated_at)
                VALUES (%s, %s::jsonb, %s, 0, %s, NOW(), NOW(), NOW())
                ON CONFLICT (job_id) DO NOTHING
                RETURNING job_id
                """,
                (job_id, json.dumps(payload or {}), QueueState.WAITING, self.max_attempts),
            )
            created = fetch_one(cur) is not None

        if created:
            logger.info("[QUEUE] Enqueued job %s", job_id)
        else:
            logger.info("[QUEUE] Job %s already queued, skipping", job_id)
        return created

    def requeue(self, job_id: str, payload: Dict[str, Any]) -> None:
        with self._tx() as cur:
            cur.execute(
                f"""
                INSERT INTO {Tables.WORK_QUEUE}
                (job_id, payload, state, attempts, max_attempts, available_at, created_at, updated_at)
                VALUES (%s, %s::jsonb, %s, 0, %s, NOW(), NOW(), NOW())
                ON CONFLICT (job_id) DO UPDATE
                SET state = EXCLUDED.state,
                    available_at = NOW(),
                    locked_until = NULL,
                    updated_at = NOW()
                """,
                (job_id, json.dumps(payload or {}), QueueState.WAITING, self.max_attempts),
            )
        logger.info("[QUEUE] Requeued job %s", job_id)

    def revive(self, job_id: str, payload: Dict[str, Any]) -> bool:
        with self._tx() as cur:
            cur.execute(
                f"""
                INSERT INTO {Tables.WORK_QUEUE} AS q
                (job_id, payload, state, attempts, max_attempts, available_at, created_at, updated_at)
                VALUES (%s, %s::jsonb, %s, 0, %s, NOW(), NOW(), NOW())
                ON CONFLICT (job_id) DO UPDATE
                SET state = EXCLUDED.state,
                    available_at = NOW(),
                    locked_until = NULL,
                    updated_at = NOW()
                WHERE q.state = ANY(%s)
                RETURNING job_id
                """,
                (
                    job_id,
                    json.dumps(payload or {}),
                    QueueState.WAITING,
                    self.max_attempts,
                    [QueueState.COMPLETED, QueueState.DEAD],
                ),
            )
            revived = fetch_one(cur) is not None

        if revived:
            logger.warning("[QUEUE] Revived job %s", job_id)
        return revived

    def dequeue(self) -> Optional[Delivery]:
        with self._tx() as cur:
            cur.execute(
                f"""
                UPDATE {Tables.WORK_QUEUE} AS q
                SET state = %s,
                    attempts = q.attempts + 1,
                    locked_until = NOW() + make_interval(secs => %s),
                    updated_at = NOW()
                WHERE q.job_id = (
                    SELECT job_id FROM {Tables.WORK_QUEUE}
                    WHERE (state = %s AND available_at <= NOW())
                       OR (state = %s AND locked_until < NOW())
                    ORDER BY available_at ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING q.*
                """,
                (
                    QueueState.ACTIVE,
                    float(self.visibility_timeout_seconds),
                    QueueState.WAITING,
                    QueueState.ACTIVE,
                ),
            )
            row = fetch_one(cur)

        if row is None:
            return None
        return Delivery(
            job_id=row["job_id"],
            payload=row["payload"] or {},
            attempt=int(row["attempts"]),
            max_attempts=int(row["max_attempts"]),
        )

    def ack(self, job_id: str) -> None:
        self._set_state(job_id, QueueState.COMPLETED, None)

    def retry(self, job_id: str, error: str) -> bool:
        with self._tx() as cur:
            cur.execute(
                f"""
                UPDATE {Tables.WORK_QUEUE}
                SET state = CASE WHEN attempts >= max_attempts THEN %s ELSE %s END,
                    available_at = NOW() + make_interval(
                        secs => %s * power(2, GREATEST(attempts - 1, 0))
                    ),
                    locked_until = NULL,
                    last_error = %s,
                    updated_at = NOW()
                WHERE job_id = %s
                RETURNING state, attempts, available_at
                """,
                (QueueState.DEAD, QueueState.WAITING, float(self.backoff_base_seconds), error, job_id),
            )
            row = fetch_one(cur)

        if row is None:
            logger.warning("[QUEUE] retry for unknown job %s", job_id)
            return False
        if row["state"] == QueueState.DEAD:
            logger.error("[QUEUE] Job %s exhausted %s attempts: %s", job_id, row["attempts"], error)
            return False
        logger.info("[QUEUE] Job %s rescheduled for %s (attempt %s)", job_id, row["available_at"], row["attempts"])
        return True

    def dead_letter(self, job_id: str, error: str) -> None:
        self._set_state(job_id, QueueState.DEAD, error)

    def remove(self, job_id: str) -> bool:
        with self._tx() as cur:
            cur.execute(
                f"DELETE FROM {Tables.WORK_QUEUE} WHERE job_id = %s AND state = %s",
                (job_id, QueueState.WAITING),
            )
            removed = cur.rowcount > 0
        logger.info("[QUEUE] remove %s -> %s", job_id, removed)
        return removed

    def stats(self) -> Dict[str, int]:
        with self._tx() as cur:
            cur.execute(f"SELECT state, COUNT(*) AS n FROM {Tables.WORK_QUEUE} GROUP BY state")
            rows = fetch_all(cur)
        counts = {state: 0 for state in QueueState.ALL}
        for row in rows:
            counts[row["state"]] = int(row["n"])
        return counts

    def _set_state(self, job_id: str, state: str, error: Optional[str]) -> None:
        with self._tx() as cur:
            cur.execute(
                f"""
                UPDATE {Tables.WORK_QUEUE}
                SET state = %s, locked_until = NULL,
                    last_error = COALESCE(%s, last_error), updated_at = NOW()
                WHERE job_id = %s
                """,
                (state, error, job_id),
            )
