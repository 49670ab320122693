"""
Dispatch process: outbox relay + worker pool.

Run:
    vidgen-worker
    python -m vidgen.worker_main

Stops cleanly on SIGINT / SIGTERM.
"""

from __future__ import annotations

import logging
import signal
import threading
from dataclasses import dataclass

from vidgen.config import Config, config as default_config
from vidgen.db import init_db, transaction
from vidgen.services.credential_pool import build_credentials
from vidgen.services.dispatch_service import DispatchService
from vidgen.services.job_service import JobStore
from vidgen.services.job_worker import JobWorker, WorkerPool
from vidgen.services.ledger_service import LedgerService
from vidgen.services.outbox_service import OutboxRelay, OutboxStore
from vidgen.services.pricing_service import PricingService
from vidgen.services.storage_service import build_storage
from vidgen.services.video_provider import SoraVideoProvider
from vidgen.services.work_queue import PgWorkQueue

logger = logging.getLogger("vidgen.main")


@dataclass
class Pipeline:
    ledger: LedgerService
    jobs: JobStore
    outbox: OutboxStore
    queue: PgWorkQueue
    dispatch: DispatchService
    relay: OutboxRelay
    pool: WorkerPool


def build_pipeline(cfg: Config = default_config, tx=transaction) -> Pipeline:
    """Wire every component from configuration."""
    ledger = LedgerService(tx)
    jobs = JobStore(tx)
    outbox = OutboxStore(tx, max_attempts=cfg.OUTBOX_MAX_ATTEMPTS)
    queue = PgWorkQueue(
        tx,
        max_attempts=cfg.QUEUE_MAX_ATTEMPTS,
        backoff_base_seconds=cfg.QUEUE_BACKOFF_BASE_SECONDS,
        visibility_timeout_seconds=cfg.QUEUE_VISIBILITY_TIMEOUT_SECONDS,
    )
    default_model = cfg.PROVIDER_MODEL if cfg.PROVIDER_MODEL in cfg.CREDITS_PER_10S else "sora-2"
    pricing = PricingService(cfg.CREDITS_PER_10S, default_model=default_model)
    dispatch = DispatchService(ledger, jobs, outbox, queue, pricing=pricing, tx=tx)

    relay = OutboxRelay(
        outbox,
        queue,
        interval_seconds=cfg.OUTBOX_INTERVAL_SECONDS,
        retry_cooldown_seconds=cfg.OUTBOX_RETRY_COOLDOWN_SECONDS,
        pending_batch=cfg.OUTBOX_PENDING_BATCH,
        failed_batch=cfg.OUTBOX_FAILED_BATCH,
    )

    worker = JobWorker(
        jobs,
        ledger,
        SoraVideoProvider(
            cfg.PROVIDER_API_BASE,
            model=cfg.PROVIDER_MODEL,
            timeout=(cfg.PROVIDER_CONNECT_TIMEOUT, cfg.PROVIDER_READ_TIMEOUT),
        ),
        build_credentials(
            cfg.PROVIDER_API_KEYS,
            max_failures=cfg.CREDENTIAL_MAX_FAILURES,
            cooldown_seconds=cfg.CREDENTIAL_COOLDOWN_SECONDS,
        ),
        storage=build_storage(cfg),
        tx=tx,
        poll_interval_seconds=cfg.PROVIDER_POLL_INTERVAL_SECONDS,
        poll_timeout_seconds=cfg.PROVIDER_POLL_TIMEOUT_SECONDS,
        unknown_errors_retryable=cfg.PROVIDER_UNKNOWN_ERRORS_RETRYABLE,
    )
    pool = WorkerPool(
        queue,
        worker,
        jobs,
        concurrency=cfg.WORKER_CONCURRENCY,
        idle_sleep_seconds=cfg.WORKER_IDLE_SLEEP_SECONDS,
        orphan_timeout_seconds=cfg.ORPHAN_TIMEOUT_SECONDS,
    )
    return Pipeline(ledger, jobs, outbox, queue, dispatch, relay, pool)


def main() -> int:
    logging.basicConfig(
        level=getattr(logging, default_config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(threadName)s: %(message)s",
    )
    default_config.log_summary()
    for warning in default_config.validate():
        logger.warning("[CONFIG] %s", warning)

    init_db()
    pipeline = build_pipeline(default_config)

    stopping = threading.Event()

    def _shutdown(signum, _frame):
        logger.info("[MAIN] Signal %s received, shutting down", signum)
        stopping.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    pipeline.relay.start()
    pipeline.pool.start()
    try:
        while not stopping.wait(1.0):
            pass
    finally:
        pipeline.relay.stop()
        pipeline.pool.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
