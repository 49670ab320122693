"""Services package for the dispatch pipeline."""

from vidgen.services.ledger_service import (
    AccountNotFoundError,
    InsufficientFundsError,
    LedgerEntryKind,
    LedgerService,
)
from vidgen.services.job_service import InvalidTransitionError, JobNotFoundError, JobStatus, JobStore
from vidgen.services.outbox_service import OutboxRelay, OutboxStatus, OutboxStore, RelayDeliveryFailure
from vidgen.services.work_queue import Delivery, PgWorkQueue, WorkQueue
from vidgen.services.credential_pool import (
    CredentialPool,
    NoAvailableCredentialError,
    SingleCredential,
    build_credentials,
)
from vidgen.services.error_classifier import (
    ProviderError,
    RetryableProviderError,
    TerminalProviderError,
    is_retryable,
)
from vidgen.services.video_provider import SoraVideoProvider, VideoProvider
from vidgen.services.storage_service import build_storage
from vidgen.services.pricing_service import PricingService
from vidgen.services.job_worker import JobWorker, WorkerPool, WorkerOutcome
from vidgen.services.dispatch_service import DispatchService

__all__ = [
    "AccountNotFoundError",
    "InsufficientFundsError",
    "LedgerEntryKind",
    "LedgerService",
    "InvalidTransitionError",
    "JobNotFoundError",
    "JobStatus",
    "JobStore",
    "OutboxRelay",
    "OutboxStatus",
    "OutboxStore",
    "RelayDeliveryFailure",
    "Delivery",
    "PgWorkQueue",
    "WorkQueue",
    "CredentialPool",
    "NoAvailableCredentialError",
    "SingleCredential",
    "build_credentials",
    "ProviderError",
    "RetryableProviderError",
    "TerminalProviderError",
    "is_retryable",
    "SoraVideoProvider",
    "VideoProvider",
    "build_storage",
    "PricingService",
    "JobWorker",
    "WorkerPool",
    "WorkerOutcome",
    "DispatchService",
]
