"""
In-memory stand-ins for the database-backed stores, the work queue and the
provider, so pipeline behaviour can be exercised without PostgreSQL or
network access.

Each fake mirrors the public signature of the class it replaces (including
the optional ``cur`` argument) and enforces the same rules: balances never
go negative, job transitions follow ALLOWED_TRANSITIONS, enqueue is
idempotent per job id.
"""

from __future__ import annotations

import copy
from contextlib import contextmanager

import pytest

from vidgen.services.credential_pool import SingleCredential
from vidgen.services.dispatch_service import DispatchService
from vidgen.services.job_service import (
    ALLOWED_TRANSITIONS,
    InvalidTransitionError,
    JobNotFoundError,
    JobStatus,
    UPDATABLE_FIELDS,
    can_transition,
)
from vidgen.services.job_worker import JobWorker, WorkerPool
from vidgen.services.ledger_service import (
    AccountNotFoundError,
    InsufficientFundsError,
    LedgerEntryKind,
)
from vidgen.services.outbox_service import OutboxRelay, OutboxStatus
from vidgen.services.pricing_service import PricingService
from vidgen.services.work_queue import Delivery, QueueState


@contextmanager
def fake_tx():
    yield None


class FakeLedger:
    def __init__(self, balances=None):
        self.balances = dict(balances or {})
        self.entries = []

    def get_balance(self, account_id):
        if account_id not in self.balances:
            raise AccountNotFoundError(account_id)
        return self.balances[account_id]

    def reserve(self, account_id, amount, description, related_job_id=None, cur=None):
        return self._apply(account_id, -amount, LedgerEntryKind.RESERVE_DEBIT, description, related_job_id)

    def refund(self, account_id, amount, related_job_id, description, cur=None):
        return self._apply(account_id, amount, LedgerEntryKind.REFUND, description, related_job_id)

    def recharge(self, account_id, amount, description="Recharge", cur=None):
        return self._apply(account_id, amount, LedgerEntryKind.RECHARGE, description)

    def _apply(self, account_id, delta, kind, description, related_job_id=None):
        if account_id not in self.balances:
            raise AccountNotFoundError(account_id)
        balance = self.balances[account_id]
        if balance + delta < 0:
            raise InsufficientFundsError(account_id, balance, -delta)
        self.balances[account_id] = balance + delta
        entry = {
            "id": len(self.entries) + 1,
            "account_id": account_id,
            "amount": delta,
            "balance_after": balance + delta,
            "kind": kind,
            "description": description,
            "related_job_id": related_job_id,
        }
        self.entries.append(entry)
        return dict(entry)

    def refunds_for(self, job_id):
        return [e for e in self.entries if e["kind"] == LedgerEntryKind.REFUND and e["related_job_id"] == job_id]


class FakeJobStore:
    def __init__(self):
        self.jobs = {}
        self._seq = 0

    def create(self, account_id, params, reserved_cost, job_id=None, cur=None):
        self._seq += 1
        job_id = job_id or f"job-{self._seq}"
        self.jobs[job_id] = {
            "id": job_id,
            "account_id": account_id,
            "params": copy.deepcopy(params or {}),
            "cost_credits": reserved_cost,
            "status": JobStatus.PENDING,
            "artifact_url": None,
            "thumbnail_url": None,
            "duration_seconds": None,
            "file_size": None,
            "provider_task_id": None,
            "error_message": None,
            "completed_at": None,
        }
        return dict(self.jobs[job_id])

    def get(self, job_id, cur=None):
        job = self.jobs.get(job_id)
        return dict(job) if job else None

    def transition(self, job_id, new_status, fields=None, cur=None):
        if new_status not in ALLOWED_TRANSITIONS:
            raise ValueError(f"Unknown target status: {new_status}")
        job = self.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if not can_transition(job["status"], new_status):
            raise InvalidTransitionError(job_id, job["status"], new_status)
        self._write(job, fields)
        job["status"] = new_status
        if new_status in JobStatus.TERMINAL:
            job["completed_at"] = "now"
        return dict(job)

    def set_fields(self, job_id, fields, expected_status, cur=None):
        job = self.jobs.get(job_id)
        if job is None or job["status"] != expected_status:
            return None
        self._write(job, fields)
        return dict(job)

    def list_stale(self, status, older_than_seconds, limit=100):
        return [dict(j) for j in self.jobs.values() if j["status"] == status][:limit]

    @staticmethod
    def _write(job, fields):
        fields = dict(fields or {})
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update job fields: {sorted(unknown)}")
        job.update(fields)


class FakeOutboxStore:
    def __init__(self, max_attempts=3):
        self.max_attempts = max_attempts
        self.records = {}

    def stage(self, job_id, payload, cur=None):
        self.records.setdefault(job_id, {
            "job_id": job_id,
            "payload": copy.deepcopy(payload),
            "status": OutboxStatus.PENDING,
            "attempts": 0,
            "last_error": None,
        })
        return dict(self.records[job_id])

    def fetch_pending(self, limit=100):
        return [dict(r) for r in self.records.values() if r["status"] == OutboxStatus.PENDING][:limit]

    def fetch_retryable(self, limit=20, cooldown_seconds=60.0):
        return [
            dict(r) for r in self.records.values()
            if r["status"] == OutboxStatus.FAILED and r["attempts"] < self.max_attempts
        ][:limit]

    def mark_queued(self, job_id):
        self.records[job_id].update(status=OutboxStatus.QUEUED, last_error=None)

    def mark_failed(self, job_id, error):
        record = self.records[job_id]
        record.update(status=OutboxStatus.FAILED, attempts=record["attempts"] + 1, last_error=error)
        return dict(record)

    def get(self, job_id):
        record = self.records.get(job_id)
        return dict(record) if record else None


class FakeQueue:
    """Immediate-delivery queue; retries are due at once (no backoff)."""

    def __init__(self, max_attempts=3):
        self.max_attempts = max_attempts
        self.entries = {}
        self.enqueue_error = None
        self.enqueue_calls = []

    def enqueue(self, job_id, payload):
        self.enqueue_calls.append(job_id)
        if self.enqueue_error is not None:
            raise self.enqueue_error
        if job_id in self.entries:
            return False
        self.entries[job_id] = {"payload": payload, "state": QueueState.WAITING, "attempts": 0, "last_error": None}
        return True

    def requeue(self, job_id, payload):
        entry = self.entries.setdefault(job_id, {"payload": payload, "attempts": 0, "last_error": None})
        entry["state"] = QueueState.WAITING

    def revive(self, job_id, payload):
        entry = self.entries.get(job_id)
        if entry is not None and entry["state"] not in (QueueState.COMPLETED, QueueState.DEAD):
            return False
        self.requeue(job_id, payload)
        return True

    def dequeue(self):
        for job_id, entry in self.entries.items():
            if entry["state"] == QueueState.WAITING:
                entry["state"] = QueueState.ACTIVE
                entry["attempts"] += 1
                return Delivery(job_id, entry["payload"], entry["attempts"], self.max_attempts)
        return None

    def ack(self, job_id):
        self.entries[job_id]["state"] = QueueState.COMPLETED

    def retry(self, job_id, error):
        entry = self.entries[job_id]
        entry["last_error"] = error
        if entry["attempts"] >= self.max_attempts:
            entry["state"] = QueueState.DEAD
            return False
        entry["state"] = QueueState.WAITING
        return True

    def dead_letter(self, job_id, error):
        self.entries[job_id].update(state=QueueState.DEAD, last_error=error)

    def remove(self, job_id):
        entry = self.entries.get(job_id)
        if entry and entry["state"] == QueueState.WAITING:
            del self.entries[job_id]
            return True
        return False

    def stats(self):
        counts = {state: 0 for state in QueueState.ALL}
        for entry in self.entries.values():
            counts[entry["state"]] += 1
        return counts

    def state(self, job_id):
        entry = self.entries.get(job_id)
        return entry["state"] if entry else None


class FakeProvider:
    """
    Scripted provider. ``submit_results`` / ``poll_results`` are consumed in
    order; an exception instance in either list is raised instead of returned.
    Polling past the end of the script reports ``processing``.
    """

    def __init__(self, submit_results=None, poll_results=None, data=b"mp4-bytes", metadata=None):
        self.submit_results = list(submit_results or [])
        self.poll_results = list(poll_results or [])
        self.data = data
        self.metadata = metadata
        self.submit_calls = []
        self.poll_calls = []
        self.downloads = []
        self.on_poll = None

    def submit(self, params, credential):
        self.submit_calls.append((params, credential))
        return self._next(self.submit_results)

    def poll(self, task_id, credential):
        self.poll_calls.append((task_id, credential))
        if self.on_poll is not None:
            self.on_poll(task_id)
        if not self.poll_results:
            return {"id": task_id, "status": "processing", "video_url": None}
        return self._next(self.poll_results)

    def download(self, artifact_url):
        self.downloads.append(artifact_url)
        return self.data

    def probe_metadata(self, artifact_url, data=None):
        return self.metadata

    @staticmethod
    def _next(script):
        result = script.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


class FakeStorage:
    def __init__(self):
        self.stored = []

    def store(self, data, name, content_type="video/mp4"):
        self.stored.append((name, data, content_type))
        return f"https://cdn.test/videos/{name}"


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def completed_submit(video_url="https://cdn.example.com/out/v1.mp4", task_id="task_abc123"):
    return {"id": task_id, "status": "completed", "video_url": video_url, "thumbnail_url": None}


# ─────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────
@pytest.fixture
def ledger():
    return FakeLedger({"acct-1": 10})


@pytest.fixture
def jobs():
    return FakeJobStore()


@pytest.fixture
def outbox():
    return FakeOutboxStore(max_attempts=3)


@pytest.fixture
def queue():
    return FakeQueue(max_attempts=3)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dispatch(ledger, jobs, outbox, queue):
    return DispatchService(ledger, jobs, outbox, queue, pricing=PricingService(), tx=fake_tx)


@pytest.fixture
def relay(outbox, queue):
    return OutboxRelay(outbox, queue, interval_seconds=3600)


@pytest.fixture
def make_worker(ledger, jobs, provider, clock):
    def _make(credentials=None, storage=None, **kwargs):
        kwargs.setdefault("poll_interval_seconds", 5.0)
        kwargs.setdefault("poll_timeout_seconds", 60.0)
        return JobWorker(
            jobs,
            ledger,
            provider,
            credentials or SingleCredential("sk-test-000000000001"),
            storage=storage,
            tx=fake_tx,
            sleep=clock.advance,
            clock=clock,
            **kwargs,
        )
    return _make


@pytest.fixture
def make_pool(queue, jobs, make_worker):
    def _make(worker=None, **kwargs):
        return WorkerPool(queue, worker or make_worker(), jobs, concurrency=1, idle_sleep_seconds=0.01, **kwargs)
    return _make
