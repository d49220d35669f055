"""
Extraction worker configuration.

Single source of truth for worker-level defaults and queue tunables.
Per-job fields (priority, max_attempts) are stored on the job row.
"""
from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class WorkerConfig:
    """Immutable worker configuration loaded once at startup."""

    # --- Polling / sleep ---
    poll_interval_seconds: float = 5.0
    error_sleep_seconds: float = 5.0

    # --- Queue (the API reads these too) ---
    default_max_attempts: int = 3
    auto_retry: bool = True  # failed job goes back to pending while attempts < max_attempts
    stuck_timeout_minutes: int = 60  # diagnostics only; nothing is reset automatically
    cleanup_days: int = 30

    # --- Extraction black box ---
    extractor_factory: str | None = None  # registered name or "package.module:callable"
    extraction_timeout_seconds: float | None = None  # None = no timeout

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - [WORKER] - %(levelname)s - %(message)s"


def load_worker_config() -> WorkerConfig:
    """Build WorkerConfig from environment variables (with defaults)."""
    def _float(key: str, default: float) -> float:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            return float(raw)
        except (TypeError, ValueError):
            return default

    def _int(key: str, default: int) -> int:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            return int(raw)
        except (TypeError, ValueError):
            return default

    def _bool(key: str, default: bool) -> bool:
        raw = os.getenv(key)
        if raw is None:
            return default
        return raw.strip().lower() in ("1", "true", "yes")

    def _opt_float(key: str) -> float | None:
        raw = os.getenv(key)
        if not raw:
            return None
        try:
            return float(raw)
        except (TypeError, ValueError):
            return None

    return WorkerConfig(
        poll_interval_seconds=_float("WORKER_POLL_INTERVAL", 5.0),
        error_sleep_seconds=_float("WORKER_ERROR_SLEEP", 5.0),
        default_max_attempts=_int("QUEUE_DEFAULT_MAX_ATTEMPTS", 3),
        auto_retry=_bool("WORKER_AUTO_RETRY", True),
        stuck_timeout_minutes=_int("QUEUE_STUCK_JOB_TIMEOUT_MINUTES", 60),
        cleanup_days=_int("QUEUE_CLEANUP_DAYS", 30),
        extractor_factory=os.getenv("EXTRACTOR_FACTORY") or None,
        extraction_timeout_seconds=_opt_float("WORKER_EXTRACTION_TIMEOUT"),
        log_level=os.getenv("WORKER_LOG_LEVEL", "INFO"),
        log_format=os.getenv(
            "WORKER_LOG_FORMAT",
            "%(asctime)s - [WORKER] - %(levelname)s - %(message)s",
        ),
    )
