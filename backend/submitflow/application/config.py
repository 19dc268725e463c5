"""Execution policy for the asynchronous request core."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class AsyncExecutionConfig:
    """Thresholds and retry policy shared by the Dispatcher, worker and schedulers.

    Built once at startup (see ``from_settings``) and passed explicitly; nothing in
    the core reads settings or the environment on its own.

    max_attempts is the TOTAL number of tries, so max_attempts=3 means: try, retry,
    retry.

    lease_sec bounds how long a ``processing`` record may go without a write before
    it is considered abandoned. It must cover one upstream call plus the longest
    retry delay, since neither writes to the record.
    """

    sync_threshold_ms: int = 25_000
    inline_margin_ms: int = 250
    max_attempts: int = 3
    base_delay_sec: float = 1.0
    max_delay_sec: float = 60.0
    ttl_sec: int = 60 * 60
    lease_sec: float = 300.0
    local_workers: int = 8
    poll_initial_interval_sec: float = 0.1
    poll_max_interval_sec: float = 0.4

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.sync_threshold_ms < 0 or self.inline_margin_ms < 0:
            raise ValueError("sync threshold and inline margin must not be negative")
        if self.base_delay_sec < 0 or self.max_delay_sec < self.base_delay_sec:
            raise ValueError("retry delays must satisfy 0 <= base_delay_sec <= max_delay_sec")
        if self.ttl_sec <= 0:
            raise ValueError("ttl_sec must be positive")
        if self.lease_sec <= self.max_delay_sec:
            raise ValueError("lease_sec must exceed max_delay_sec")
        if self.local_workers < 1:
            raise ValueError("local_workers must be >= 1")

    @classmethod
    def from_settings(cls, settings: Any) -> "AsyncExecutionConfig":
        return cls(
            sync_threshold_ms=int(getattr(settings, "ASYNC_SYNC_THRESHOLD_MS", 25_000)),
            inline_margin_ms=int(getattr(settings, "ASYNC_INLINE_MARGIN_MS", 250)),
            max_attempts=int(getattr(settings, "ASYNC_MAX_ATTEMPTS", 3)),
            base_delay_sec=float(getattr(settings, "ASYNC_RETRY_BASE_DELAY_SEC", 1.0)),
            max_delay_sec=float(getattr(settings, "ASYNC_RETRY_MAX_DELAY_SEC", 60.0)),
            ttl_sec=int(getattr(settings, "ASYNC_REQUEST_TTL_SEC", 60 * 60)),
            lease_sec=float(getattr(settings, "ASYNC_PROCESSING_LEASE_SEC", 300.0)),
            local_workers=int(getattr(settings, "ASYNC_LOCAL_WORKERS", 8)),
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the attempt that follows ``attempt`` (1-based)."""
        exponent = min(max(attempt, 1) - 1, 62)
        return min(self.base_delay_sec * (2**exponent), self.max_delay_sec)
