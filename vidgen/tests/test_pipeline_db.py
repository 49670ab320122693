"""
Integration tests against a real PostgreSQL database.

Exercise the SQL paths the in-memory tests cannot: row locking on reserve,
status-guarded transitions, the one-refund-per-job index, queue idempotency
and the ledger audit.

Requires DATABASE_URL; every test is skipped without it.

Run locally:
    DATABASE_URL=postgresql://... python -m pytest vidgen/tests/test_pipeline_db.py -v
"""

from __future__ import annotations

import threading
import uuid

import pytest

from conftest import FakeProvider
from vidgen.db import USE_DB, DatabaseIntegrityError, Tables, ensure_schema, fetch_one, transaction
from vidgen.services.credential_pool import SingleCredential
from vidgen.services.dispatch_service import DispatchService
from vidgen.services.error_classifier import ErrorKind, TerminalProviderError
from vidgen.services.job_service import InvalidTransitionError, JobStatus, JobStore
from vidgen.services.job_worker import JobWorker, WorkerOutcome
from vidgen.services.ledger_audit_service import LedgerAuditService
from vidgen.services.ledger_service import InsufficientFundsError, LedgerService
from vidgen.services.outbox_service import OutboxRelay, OutboxStatus, OutboxStore, RelayDeliveryFailure
from vidgen.services.work_queue import Delivery, PgWorkQueue, QueueState


@pytest.fixture(scope="module")
def schema():
    if not USE_DB:
        pytest.skip("Database not available")
    ensure_schema()


@pytest.fixture
def services(schema):
    ledger = LedgerService()
    jobs = JobStore()
    outbox = OutboxStore()
    queue = PgWorkQueue(max_attempts=3, backoff_base_seconds=2.0)
    dispatch = DispatchService(ledger, jobs, outbox, queue)
    return ledger, jobs, outbox, queue, dispatch


def _account(ledger, balance):
    account_id = f"test-{uuid.uuid4().hex[:8]}"
    ledger.create_account(account_id, balance)
    return account_id


def _queue_row(job_id):
    with transaction() as cur:
        cur.execute(f"SELECT * FROM {Tables.WORK_QUEUE} WHERE job_id = %s", (job_id,))
        return fetch_one(cur)


def _backdate_last_attempt(job_id, seconds):
    with transaction() as cur:
        cur.execute(
            f"UPDATE {Tables.JOB_OUTBOX} SET last_attempt_at = NOW() - make_interval(secs => %s) WHERE job_id = %s",
            (float(seconds), job_id),
        )


class TestLedger:
    def test_initial_balance_is_booked(self, services):
        ledger = services[0]
        account_id = _account(ledger, 10)

        assert ledger.get_balance(account_id) == 10
        entries = ledger.list_entries(account_id)
        assert len(entries) == 1
        assert entries[0]["balance_after"] == 10

    def test_concurrent_reserves_never_overdraw(self, services):
        ledger = services[0]
        account_id = _account(ledger, 5)
        outcomes = []

        def reserve():
            try:
                ledger.reserve(account_id, 3, "concurrent")
                outcomes.append("ok")
            except InsufficientFundsError:
                outcomes.append("insufficient")

        threads = [threading.Thread(target=reserve) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["insufficient", "ok"]
        assert ledger.get_balance(account_id) == 2

    def test_second_refund_for_job_is_rejected(self, services):
        ledger, _, _, _, dispatch = services
        account_id = _account(ledger, 10)
        job_id = dispatch.request_job(account_id, {"prompt": "x"}, 3)
        ledger.refund(account_id, 3, job_id, "first")

        with pytest.raises(DatabaseIntegrityError):
            ledger.refund(account_id, 3, job_id, "second")

        assert ledger.get_balance(account_id) == 10


class TestDispatchAndWorker:
    def test_request_is_atomic_on_insufficient_funds(self, services):
        ledger, jobs, _, _, dispatch = services
        account_id = _account(ledger, 2)

        with pytest.raises(InsufficientFundsError):
            dispatch.request_job(account_id, {"prompt": "x"}, 3)

        assert jobs.list_for_account(account_id) == []
        assert ledger.get_balance(account_id) == 2

    def test_terminal_failure_refunds_once_and_audits_clean(self, services):
        ledger, jobs, outbox, _, dispatch = services
        account_id = _account(ledger, 10)
        job_id = dispatch.request_job(account_id, {"prompt": "x", "duration": 10}, 3)
        assert outbox.get(job_id)["status"] == OutboxStatus.PENDING
        assert _queue_row(job_id)["state"] == QueueState.WAITING

        provider = FakeProvider(submit_results=[TerminalProviderError("Invalid prompt", 400, ErrorKind.INVALID_INPUT)])
        worker = JobWorker(jobs, ledger, provider, SingleCredential("sk-test-000000000001"), sleep=lambda s: None)

        result = worker.handle(Delivery(job_id, {}, attempt=1, max_attempts=3))
        again = worker.handle(Delivery(job_id, {}, attempt=2, max_attempts=3))

        assert result.outcome == WorkerOutcome.FAILED
        assert again.outcome == WorkerOutcome.SKIPPED
        assert jobs.get(job_id)["status"] == JobStatus.FAILED
        assert ledger.get_balance(account_id) == 10
        assert len(ledger.refund_entries_for_job(job_id)) == 1
        assert LedgerAuditService().audit_account(account_id)["issues"] == []

    def test_new_job_is_listed_as_pending(self, services):
        ledger, jobs, _, _, dispatch = services
        account_id = _account(ledger, 10)
        job_id = dispatch.request_job(account_id, {"prompt": "x"}, 2)

        pending_ids = [j["id"] for j in jobs.list_by_status(JobStatus.PENDING, limit=10000)]
        assert job_id in pending_ids
        with pytest.raises(ValueError):
            jobs.list_by_status("bogus")

    def test_cancel_then_complete_is_rejected(self, services):
        ledger, jobs, _, _, dispatch = services
        account_id = _account(ledger, 10)
        job_id = dispatch.request_job(account_id, {"prompt": "x"}, 4)
        jobs.transition(job_id, JobStatus.PROCESSING)

        dispatch.cancel_job(job_id, account_id)

        with pytest.raises(InvalidTransitionError):
            jobs.transition(job_id, JobStatus.COMPLETED, {"artifact_url": "https://cdn.example.com/v.mp4"})
        assert ledger.get_balance(account_id) == 10
        assert LedgerAuditService().audit_account(account_id)["issues"] == []


class TestWorkQueue:
    def test_enqueue_is_idempotent(self, services):
        ledger, _, _, queue, dispatch = services
        account_id = _account(ledger, 10)
        job_id = dispatch.request_job(account_id, {"prompt": "x"}, 1)

        assert queue.enqueue(job_id, {"job_id": job_id}) is False
        assert queue.remove(job_id) is True
        assert queue.enqueue(job_id, {"job_id": job_id}) is True

    def test_retry_schedules_backoff_and_requeue_resets(self, services):
        ledger, _, _, queue, dispatch = services
        account_id = _account(ledger, 10)
        job_id = dispatch.request_job(account_id, {"prompt": "x"}, 1)
        with transaction() as cur:
            cur.execute(
                f"UPDATE {Tables.WORK_QUEUE} SET state = %s, attempts = 1 WHERE job_id = %s",
                (QueueState.ACTIVE, job_id),
            )

        assert queue.retry(job_id, "upstream 503") is True
        row = _queue_row(job_id)
        assert row["state"] == QueueState.WAITING
        assert row["last_error"] == "upstream 503"
        assert row["available_at"] > row["updated_at"]

        queue.requeue(job_id, {"job_id": job_id})
        row = _queue_row(job_id)
        assert row["state"] == QueueState.WAITING
        assert row["attempts"] == 1

    def test_retry_past_max_attempts_goes_dead(self, services):
        ledger, _, _, queue, dispatch = services
        account_id = _account(ledger, 10)
        job_id = dispatch.request_job(account_id, {"prompt": "x"}, 1)
        with transaction() as cur:
            cur.execute(
                f"UPDATE {Tables.WORK_QUEUE} SET state = %s, attempts = 3 WHERE job_id = %s",
                (QueueState.ACTIVE, job_id),
            )

        assert queue.retry(job_id, "still failing") is False
        assert _queue_row(job_id)["state"] == QueueState.DEAD

    def test_revive_only_touches_finished_entries(self, services):
        ledger, _, _, queue, dispatch = services
        account_id = _account(ledger, 10)
        job_id = dispatch.request_job(account_id, {"prompt": "x"}, 1)

        assert queue.revive(job_id, {"job_id": job_id}) is False

        with transaction() as cur:
            cur.execute(
                f"UPDATE {Tables.WORK_QUEUE} SET state = %s, attempts = 3 WHERE job_id = %s",
                (QueueState.DEAD, job_id),
            )

        assert queue.revive(job_id, {"job_id": job_id}) is True
        row = _queue_row(job_id)
        assert row["state"] == QueueState.WAITING
        assert row["attempts"] == 3


class TestOutbox:
    def test_relay_marks_records_queued(self, services):
        ledger, _, outbox, queue, dispatch = services
        account_id = _account(ledger, 10)
        job_id = dispatch.request_job(account_id, {"prompt": "x"}, 1)

        OutboxRelay(outbox, queue).process_once()

        assert outbox.get(job_id)["status"] == OutboxStatus.QUEUED
        assert outbox.get_stats()["queued"] >= 1

    def test_failed_relay_waits_for_cooldown_and_never_vanishes(self, services):
        ledger, _, outbox, _, dispatch = services
        account_id = _account(ledger, 10)
        job_id = dispatch.request_job(account_id, {"prompt": "x"}, 1)

        class BrokerDown:
            def enqueue(self, job_id, payload):
                raise RuntimeError("broker unreachable")

        relay = OutboxRelay(outbox, BrokerDown(), retry_cooldown_seconds=60)

        def retryable_ids():
            return [r["job_id"] for r in outbox.fetch_retryable(limit=100000, cooldown_seconds=60)]

        stamps = []
        for attempt in range(1, outbox.max_attempts + 1):
            with pytest.raises(RelayDeliveryFailure) as failure:
                relay._deliver(outbox.get(job_id))
            assert failure.value.attempts == attempt

            record = outbox.get(job_id)
            assert record["status"] == OutboxStatus.FAILED
            assert record["last_error"] == "broker unreachable"
            stamps.append(record["last_attempt_at"])
            assert job_id not in retryable_ids()

            _backdate_last_attempt(job_id, 120)
            if attempt < outbox.max_attempts:
                assert job_id in retryable_ids()

        assert stamps == sorted(stamps)
        assert len(set(stamps)) == len(stamps)

        record = outbox.get(job_id)
        assert record["status"] == OutboxStatus.FAILED
        assert record["attempts"] == outbox.max_attempts
        assert job_id not in retryable_ids()
        assert job_id in [r["job_id"] for r in outbox.list_exhausted(limit=100000)]
