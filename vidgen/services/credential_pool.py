"""
Credential Pool - rotates provider API keys.

A slot is marked unavailable when the provider reports quota exhaustion or
after ``max_failures`` consecutive failures. Unavailable slots become usable
again once ``cooldown_seconds`` have passed since their last failure; this is
checked lazily whenever a credential is requested, so no timer thread is needed.

The pool is in-memory and rebuilt from configuration at process start.
With exactly one configured key, ``build_credentials`` returns a
SingleCredential instead, which never rotates or tracks availability.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from vidgen.services.error_classifier import is_quota_error
from vidgen.utils import mask_secret

logger = logging.getLogger("vidgen.credentials")

DEFAULT_MAX_FAILURES = 3
DEFAULT_COOLDOWN_SECONDS = 300.0


class NoAvailableCredentialError(Exception):
    """Raised when every credential in the pool is cooling down."""
    # Keys recover after the cooldown, so a later delivery may succeed
    retryable = True

    def __init__(self, pool_size: int):
        super().__init__(f"No available API credentials ({pool_size} configured, all unavailable)")
        self.pool_size = pool_size


@dataclass
class CredentialSlot:
    credential: str
    is_available: bool = True
    failure_count: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None


class CredentialPool:
    """Thread-safe round-robin over multiple credentials."""

    def __init__(
        self,
        credentials: Sequence[str],
        max_failures: int = DEFAULT_MAX_FAILURES,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        keys = [c.strip() for c in credentials if c and c.strip()]
        if not keys:
            raise ValueError("CredentialPool needs at least one credential")
        self._slots: List[CredentialSlot] = [CredentialSlot(credential=k) for k in keys]
        self._max_failures = max_failures
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._index = 0
        self._lock = threading.Lock()
        logger.info("[CREDENTIALS] Pool initialised with %d credentials", len(self._slots))

    def __len__(self) -> int:
        return len(self._slots)

    # ── selection ─────────────────────────────────────────────
    def next_credential(self) -> str:
        """
        Return the next available credential, starting at the current index.

        Raises:
            NoAvailableCredentialError: If every slot is unavailable
        """
        with self._lock:
            self._reset_cooled_down()
            total = len(self._slots)
            for offset in range(total):
                idx = (self._index + offset) % total
                if self._slots[idx].is_available:
                    self._index = idx
                    return self._slots[idx].credential
        logger.error("[CREDENTIALS] All %d credentials unavailable", len(self._slots))
        raise NoAvailableCredentialError(len(self._slots))

    def has_available(self) -> bool:
        with self._lock:
            self._reset_cooled_down()
            return any(slot.is_available for slot in self._slots)

    # ── feedback ──────────────────────────────────────────────
    def report_success(self, credential: Optional[str] = None) -> None:
        """Clear the failure count of ``credential`` (or the current slot)."""
        with self._lock:
            slot = self._slots[self._resolve(credential)]
            slot.failure_count = 0
            slot.is_available = True
            slot.last_success_time = self._clock()

    def report_failure(self, error: BaseException, credential: Optional[str] = None) -> bool:
        """
        Count a failure against ``credential`` (or the current slot) and move
        the round-robin pointer past it.

        Returns True if the slot was marked unavailable.
        """
        with self._lock:
            idx = self._resolve(credential)
            slot = self._slots[idx]
            slot.failure_count += 1
            slot.last_failure_time = self._clock()

            quota = is_quota_error(error)
            disabled = quota or slot.failure_count >= self._max_failures
            if disabled:
                slot.is_available = False
            self._index = (idx + 1) % len(self._slots)

        if disabled:
            logger.error(
                "[CREDENTIALS] %s marked unavailable (%s)",
                mask_secret(slot.credential),
                "quota exhausted" if quota else "max failures",
            )
        else:
            logger.warning(
                "[CREDENTIALS] %s failed (%d/%d): %s",
                mask_secret(slot.credential), slot.failure_count, self._max_failures, error,
            )
        return disabled

    # ── reporting ─────────────────────────────────────────────
    def status(self) -> Dict:
        with self._lock:
            self._reset_cooled_down()
            available = sum(1 for s in self._slots if s.is_available)
            return {
                "mode": "pool",
                "total": len(self._slots),
                "available": available,
                "unavailable": len(self._slots) - available,
                "current_index": self._index,
                "slots": [
                    {
                        "credential": mask_secret(s.credential),
                        "is_available": s.is_available,
                        "failure_count": s.failure_count,
                        "last_failure_time": s.last_failure_time,
                        "last_success_time": s.last_success_time,
                    }
                    for s in self._slots
                ],
            }

    # ── internals (call with lock held) ───────────────────────
    def _resolve(self, credential: Optional[str]) -> int:
        if credential is not None:
            for idx, slot in enumerate(self._slots):
                if slot.credential == credential:
                    return idx
        return self._index

    def _reset_cooled_down(self) -> None:
        now = self._clock()
        for slot in self._slots:
            if (
                not slot.is_available
                and slot.last_failure_time is not None
                and now - slot.last_failure_time >= self._cooldown
            ):
                slot.is_available = True
                slot.failure_count = 0
                logger.info("[CREDENTIALS] %s reset after cooldown", mask_secret(slot.credential))


class SingleCredential:
    """One fixed credential: no rotation, no availability bookkeeping."""

    def __init__(self, credential: str):
        if not credential or not credential.strip():
            raise ValueError("SingleCredential needs a non-empty credential")
        self._credential = credential.strip()

    def __len__(self) -> int:
        return 1

    def next_credential(self) -> str:
        return self._credential

    def has_available(self) -> bool:
        return True

    def report_success(self, credential: Optional[str] = None) -> None:
        pass

    def report_failure(self, error: BaseException, credential: Optional[str] = None) -> bool:
        return False

    def status(self) -> Dict:
        return {"mode": "single", "total": 1, "credential": mask_secret(self._credential)}


def build_credentials(
    credentials: Sequence[str],
    max_failures: int = DEFAULT_MAX_FAILURES,
    cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
):
    """Pick the credential strategy for the configured keys."""
    keys = [c for c in credentials if c and c.strip()]
    if len(keys) == 1:
        return SingleCredential(keys[0])
    return CredentialPool(keys, max_failures=max_failures, cooldown_seconds=cooldown_seconds)
