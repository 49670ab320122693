"""
Configuration module for the vidgen dispatch pipeline.
Centralizes all environment variables and settings.

Usage:
    from vidgen.config import config

    if config.HAS_DATABASE:
        ...

    keys = config.PROVIDER_API_KEYS
"""

import logging
import os
from pathlib import Path
from typing import Dict, List
from dataclasses import dataclass, field
from dotenv import load_dotenv

# Load .env file (safe - won't override existing env vars)
load_dotenv()

logger = logging.getLogger("vidgen.config")


def _get_env(key: str, default: str = "") -> str:
    """Safely get and strip an environment variable."""
    return os.getenv(key, default).strip()


def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get an environment variable as boolean."""
    val = _get_env(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    if val in ("false", "0", "no", "off"):
        return False
    return default


def _get_env_int(key: str, default: int = 0) -> int:
    """Get an environment variable as integer."""
    try:
        return int(_get_env(key, str(default)))
    except ValueError:
        return default


def _get_env_float(key: str, default: float = 0.0) -> float:
    """Get an environment variable as float."""
    try:
        return float(_get_env(key, str(default)))
    except ValueError:
        return default


def _get_env_list(key: str, default: List[str] = None) -> List[str]:
    """Get a comma-separated environment variable as list."""
    val = _get_env(key, "")
    if not val:
        return default or []
    return [item.strip() for item in val.split(",") if item.strip()]


def _fix_database_url(url: str) -> str:
    """
    Normalize DATABASE_URL scheme.
    Some hosts hand out 'postgres://' but psycopg3 requires 'postgresql://'.
    """
    if url and url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


# Credits per 10 seconds of output, per model.
DEFAULT_CREDITS_PER_10S = {
    "sora-2": 3,
    "sora-2-hd": 4,
    "sora-2-pro": 5,
}


@dataclass
class Config:
    """
    Pipeline configuration with all settings.
    Loaded from environment variables with sensible defaults.
    """

    # ─────────────────────────────────────────────────────────────
    # Paths
    # ─────────────────────────────────────────────────────────────
    APP_DIR: Path = field(default_factory=lambda: Path(__file__).resolve().parent)

    # ─────────────────────────────────────────────────────────────
    # Database
    # ─────────────────────────────────────────────────────────────
    _DATABASE_URL_RAW: str = field(default_factory=lambda: _get_env("DATABASE_URL"))
    APP_SCHEMA: str = field(default_factory=lambda: _get_env("APP_SCHEMA", "vidgen"))
    DB_CONNECT_TIMEOUT: int = field(default_factory=lambda: _get_env_int("DB_CONNECT_TIMEOUT", 10))

    @property
    def DATABASE_URL(self) -> str:
        """Database URL with the scheme normalized for psycopg3."""
        return _fix_database_url(self._DATABASE_URL_RAW)

    @property
    def HAS_DATABASE(self) -> bool:
        """True if a database URL is configured."""
        return bool(self.DATABASE_URL)

    # ─────────────────────────────────────────────────────────────
    # Generation Provider
    # ─────────────────────────────────────────────────────────────
    PROVIDER_API_BASE: str = field(
        default_factory=lambda: _get_env("PROVIDER_API_BASE", "https://api.openai.com/v1").rstrip("/")
    )
    _PROVIDER_API_KEYS_RAW: List[str] = field(default_factory=lambda: _get_env_list("PROVIDER_API_KEYS"))
    _PROVIDER_API_KEY_SINGLE: str = field(default_factory=lambda: _get_env("PROVIDER_API_KEY"))
    PROVIDER_MODEL: str = field(default_factory=lambda: _get_env("PROVIDER_MODEL", "sora-2"))
    PROVIDER_CONNECT_TIMEOUT: float = field(default_factory=lambda: _get_env_float("PROVIDER_CONNECT_TIMEOUT", 15.0))
    PROVIDER_READ_TIMEOUT: float = field(default_factory=lambda: _get_env_float("PROVIDER_READ_TIMEOUT", 300.0))
    PROVIDER_POLL_INTERVAL_SECONDS: float = field(
        default_factory=lambda: _get_env_float("PROVIDER_POLL_INTERVAL_SECONDS", 5.0)
    )
    PROVIDER_POLL_TIMEOUT_SECONDS: float = field(
        default_factory=lambda: _get_env_float("PROVIDER_POLL_TIMEOUT_SECONDS", 600.0)
    )
    # Unrecognized provider errors are retried (bounded by QUEUE_MAX_ATTEMPTS)
    PROVIDER_UNKNOWN_ERRORS_RETRYABLE: bool = field(
        default_factory=lambda: _get_env_bool("PROVIDER_UNKNOWN_ERRORS_RETRYABLE", True)
    )

    @property
    def PROVIDER_API_KEYS(self) -> List[str]:
        """
        All configured provider credentials.
        PROVIDER_API_KEYS (comma separated) wins over the single PROVIDER_API_KEY.
        """
        if self._PROVIDER_API_KEYS_RAW:
            return list(self._PROVIDER_API_KEYS_RAW)
        if self._PROVIDER_API_KEY_SINGLE:
            return [self._PROVIDER_API_KEY_SINGLE]
        return []

    @property
    def PROVIDER_CONFIGURED(self) -> bool:
        return bool(self.PROVIDER_API_KEYS)

    # ─────────────────────────────────────────────────────────────
    # Credential Pool
    # ─────────────────────────────────────────────────────────────
    CREDENTIAL_MAX_FAILURES: int = field(default_factory=lambda: _get_env_int("CREDENTIAL_MAX_FAILURES", 3))
    CREDENTIAL_COOLDOWN_SECONDS: float = field(
        default_factory=lambda: _get_env_float("CREDENTIAL_COOLDOWN_SECONDS", 300.0)
    )

    # ─────────────────────────────────────────────────────────────
    # Outbox Relay
    # ─────────────────────────────────────────────────────────────
    OUTBOX_INTERVAL_SECONDS: float = field(default_factory=lambda: _get_env_float("OUTBOX_INTERVAL_SECONDS", 10.0))
    OUTBOX_MAX_ATTEMPTS: int = field(default_factory=lambda: _get_env_int("OUTBOX_MAX_ATTEMPTS", 3))
    OUTBOX_RETRY_COOLDOWN_SECONDS: float = field(
        default_factory=lambda: _get_env_float("OUTBOX_RETRY_COOLDOWN_SECONDS", 60.0)
    )
    OUTBOX_PENDING_BATCH: int = field(default_factory=lambda: _get_env_int("OUTBOX_PENDING_BATCH", 100))
    OUTBOX_FAILED_BATCH: int = field(default_factory=lambda: _get_env_int("OUTBOX_FAILED_BATCH", 20))

    # ─────────────────────────────────────────────────────────────
    # Work Queue / Workers
    # ─────────────────────────────────────────────────────────────
    QUEUE_MAX_ATTEMPTS: int = field(default_factory=lambda: _get_env_int("QUEUE_MAX_ATTEMPTS", 3))
    QUEUE_BACKOFF_BASE_SECONDS: float = field(
        default_factory=lambda: _get_env_float("QUEUE_BACKOFF_BASE_SECONDS", 2.0)
    )
    QUEUE_VISIBILITY_TIMEOUT_SECONDS: float = field(
        default_factory=lambda: _get_env_float("QUEUE_VISIBILITY_TIMEOUT_SECONDS", 900.0)
    )
    WORKER_CONCURRENCY: int = field(default_factory=lambda: _get_env_int("WORKER_CONCURRENCY", 4))
    WORKER_IDLE_SLEEP_SECONDS: float = field(
        default_factory=lambda: _get_env_float("WORKER_IDLE_SLEEP_SECONDS", 1.0)
    )
    ORPHAN_TIMEOUT_SECONDS: float = field(default_factory=lambda: _get_env_float("ORPHAN_TIMEOUT_SECONDS", 1800.0))

    # ─────────────────────────────────────────────────────────────
    # Artifact Storage
    # ─────────────────────────────────────────────────────────────
    STORAGE_PROVIDER: str = field(default_factory=lambda: _get_env("STORAGE_PROVIDER", "s3").lower())
    AWS_REGION: str = field(default_factory=lambda: _get_env("AWS_REGION", "us-east-1"))
    AWS_S3_BUCKET: str = field(default_factory=lambda: _get_env("AWS_S3_BUCKET"))
    AWS_ACCESS_KEY_ID: str = field(default_factory=lambda: _get_env("AWS_ACCESS_KEY_ID"))
    AWS_SECRET_ACCESS_KEY: str = field(default_factory=lambda: _get_env("AWS_SECRET_ACCESS_KEY"))
    LOCAL_STORAGE_DIR: str = field(default_factory=lambda: _get_env("LOCAL_STORAGE_DIR", "uploads"))
    PUBLIC_BASE_URL: str = field(default_factory=lambda: _get_env("PUBLIC_BASE_URL", "http://localhost:3000").rstrip("/"))

    @property
    def AWS_CONFIGURED(self) -> bool:
        """True if AWS S3 is configured."""
        return bool(self.AWS_S3_BUCKET and self.AWS_ACCESS_KEY_ID and self.AWS_SECRET_ACCESS_KEY)

    @property
    def STORAGE_ENABLED(self) -> bool:
        """True if produced artifacts should be copied to durable storage."""
        if self.STORAGE_PROVIDER == "s3":
            return self.AWS_CONFIGURED
        return self.STORAGE_PROVIDER == "local"

    # ─────────────────────────────────────────────────────────────
    # Pricing
    # ─────────────────────────────────────────────────────────────
    PRICE_SORA_2: int = field(default_factory=lambda: _get_env_int("PRICE_SORA_2", DEFAULT_CREDITS_PER_10S["sora-2"]))
    PRICE_SORA_2_HD: int = field(
        default_factory=lambda: _get_env_int("PRICE_SORA_2_HD", DEFAULT_CREDITS_PER_10S["sora-2-hd"])
    )
    PRICE_SORA_2_PRO: int = field(
        default_factory=lambda: _get_env_int("PRICE_SORA_2_PRO", DEFAULT_CREDITS_PER_10S["sora-2-pro"])
    )

    @property
    def CREDITS_PER_10S(self) -> Dict[str, int]:
        return {
            "sora-2": self.PRICE_SORA_2,
            "sora-2-hd": self.PRICE_SORA_2_HD,
            "sora-2-pro": self.PRICE_SORA_2_PRO,
        }

    # ─────────────────────────────────────────────────────────────
    # Logging & Debug
    # ─────────────────────────────────────────────────────────────
    LOG_LEVEL: str = field(default_factory=lambda: _get_env("LOG_LEVEL", "INFO").upper())

    def log_summary(self) -> None:
        """Log configuration summary for debugging."""
        logger.info("=" * 60)
        logger.info("[CONFIG] vidgen dispatch configuration")
        logger.info("=" * 60)
        logger.info("  Database configured: %s (schema=%s)", self.HAS_DATABASE, self.APP_SCHEMA)
        logger.info("  Provider base: %s", self.PROVIDER_API_BASE)
        logger.info("  Provider credentials: %d", len(self.PROVIDER_API_KEYS))
        logger.info("  Storage: %s (enabled=%s)", self.STORAGE_PROVIDER, self.STORAGE_ENABLED)
        logger.info("-" * 60)
        logger.info(
            "  Outbox: every %ss, max_attempts=%d, cooldown=%ss",
            self.OUTBOX_INTERVAL_SECONDS, self.OUTBOX_MAX_ATTEMPTS, self.OUTBOX_RETRY_COOLDOWN_SECONDS,
        )
        logger.info(
            "  Queue: max_attempts=%d, backoff_base=%ss, workers=%d",
            self.QUEUE_MAX_ATTEMPTS, self.QUEUE_BACKOFF_BASE_SECONDS, self.WORKER_CONCURRENCY,
        )
        logger.info("=" * 60)

    def validate(self) -> List[str]:
        """
        Validate configuration and return list of warnings.
        Returns empty list if all critical config is present.
        """
        warnings = []

        if not self.HAS_DATABASE:
            warnings.append("DATABASE_URL not set - the pipeline cannot persist jobs")
        if not self.PROVIDER_CONFIGURED:
            warnings.append("PROVIDER_API_KEYS / PROVIDER_API_KEY not set - generation will fail")
        if self.STORAGE_PROVIDER == "s3" and not self.AWS_CONFIGURED:
            warnings.append("STORAGE_PROVIDER=s3 but AWS is not configured - provider URLs will be stored as-is")
        if self.STORAGE_PROVIDER not in ("s3", "local", "none"):
            warnings.append(f"Unknown STORAGE_PROVIDER={self.STORAGE_PROVIDER!r} - storage disabled")
        if self.OUTBOX_INTERVAL_SECONDS <= 0:
            warnings.append("OUTBOX_INTERVAL_SECONDS must be positive")
        if self.QUEUE_MAX_ATTEMPTS < 1:
            warnings.append("QUEUE_MAX_ATTEMPTS must be at least 1")
        if self.WORKER_CONCURRENCY < 1:
            warnings.append("WORKER_CONCURRENCY must be at least 1")

        return warnings

    def to_dict(self) -> dict:
        """Export safe configuration as dictionary (no secrets)."""
        return {
            "has_database": self.HAS_DATABASE,
            "app_schema": self.APP_SCHEMA,
            "provider_api_base": self.PROVIDER_API_BASE,
            "provider_credentials": len(self.PROVIDER_API_KEYS),
            "provider_model": self.PROVIDER_MODEL,
            "unknown_errors_retryable": self.PROVIDER_UNKNOWN_ERRORS_RETRYABLE,
            "storage_provider": self.STORAGE_PROVIDER,
            "storage_enabled": self.STORAGE_ENABLED,
            "outbox_interval_seconds": self.OUTBOX_INTERVAL_SECONDS,
            "outbox_max_attempts": self.OUTBOX_MAX_ATTEMPTS,
            "queue_max_attempts": self.QUEUE_MAX_ATTEMPTS,
            "worker_concurrency": self.WORKER_CONCURRENCY,
            "credits_per_10s": self.CREDITS_PER_10S,
        }


# ─────────────────────────────────────────────────────────────
# Singleton instance
# ─────────────────────────────────────────────────────────────
config = Config()
