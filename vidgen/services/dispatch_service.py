"""
Dispatch Service - entry points for the HTTP/CLI layer.

    request_job(account_id, params, cost) -> job_id
    cancel_job(job_id, account_id) -> job
    get_job_status(job_id, account_id=None) -> job

request_job commits reservation, job and outbox record as one unit, then
makes a best-effort immediate enqueue purely to cut latency. The outbox
relay enqueues the same job id independently; the queue keeps whichever
arrives first and ignores the other.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from vidgen.db import transaction
from vidgen.services.job_service import JobNotFoundError, JobStatus
from vidgen.services.outbox_service import build_dispatch_payload
from vidgen.utils import log_event

logger = logging.getLogger("vidgen.dispatch")

CANCEL_REFUND_DESCRIPTION = "Video generation cancelled - refund"


class DispatchService:
    def __init__(self, ledger, jobs, outbox, queue, pricing=None, tx=transaction):
        self._ledger = ledger
        self._jobs = jobs
        self._outbox = outbox
        self._queue = queue
        self._pricing = pricing
        self._tx = tx

    def quote(self, duration_seconds: float, model: Optional[str] = None) -> int:
        if self._pricing is None:
            raise RuntimeError("DispatchService was built without a pricing service")
        return self._pricing.calculate_cost(duration_seconds, model)

    def request_job(self, account_id: str, params: Dict[str, Any], cost: int) -> str:
        """
        Reserve ``cost`` credits and durably record the job.

        Raises:
            InsufficientFundsError: Balance too low; nothing is written
            AccountNotFoundError: Unknown account; nothing is written
        """
        if not isinstance(cost, int) or isinstance(cost, bool) or cost <= 0:
            raise ValueError(f"cost must be a positive integer, got {cost!r}")

        job_id = str(uuid.uuid4())
        with self._tx() as cur:
            self._ledger.reserve(
                account_id,
                cost,
                f"Video generation {job_id}",
                related_job_id=job_id,
                cur=cur,
            )
            job = self._jobs.create(account_id, params, cost, job_id=job_id, cur=cur)
            payload = build_dispatch_payload(job)
            self._outbox.stage(job_id, payload, cur=cur)

        log_event("job_requested", {"job_id": job_id, "account_id": account_id, "cost": cost})

        # Latency optimisation only; the relay guarantees delivery
        try:
            self._queue.enqueue(job_id, payload)
        except Exception as e:
            logger.warning("[DISPATCH] Immediate enqueue of %s failed, relay will pick it up: %s", job_id, e)

        return job_id

    def cancel_job(self, job_id: str, account_id: str) -> Dict[str, Any]:
        """
        Cancel a pending or processing job and refund its reserved cost.

        Raises:
            JobNotFoundError: Unknown job or not owned by ``account_id``
            InvalidTransitionError: Job already terminal
        """
        with self._tx() as cur:
            job = self._jobs.get(job_id, cur=cur)
            if job is None or job["account_id"] != account_id:
                raise JobNotFoundError(job_id)
            job = self._jobs.transition(
                job_id,
                JobStatus.CANCELLED,
                {"error_message": "Cancelled by user"},
                cur=cur,
            )
            cost = int(job.get("cost_credits") or 0)
            if cost > 0:
                self._ledger.refund(account_id, cost, job_id, CANCEL_REFUND_DESCRIPTION, cur=cur)

        logger.info("[DISPATCH] Job %s cancelled, %s credits refunded", job_id, cost)

        try:
            self._queue.remove(job_id)
        except Exception as e:
            logger.warning("[DISPATCH] Could not remove %s from queue: %s", job_id, e)
        return job

    def get_job_status(self, job_id: str, account_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Raises:
            JobNotFoundError: Unknown job, or not owned by ``account_id`` when given
        """
        job = self._jobs.get(job_id)
        if job is None or (account_id is not None and job["account_id"] != account_id):
            raise JobNotFoundError(job_id)
        return job
