"""Dispatcher: decides per request between inline and out-of-band execution."""

from __future__ import annotations

import logging
import re
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from submitflow.application.config import AsyncExecutionConfig
from submitflow.application.retry import RetryWorker, invoke_unit
from submitflow.domain.errors import InvalidRequestIdError, StoreUnavailableError
from submitflow.domain.models.async_request import (
    AsyncRequestRecord,
    AsyncRequestStatus,
    ErrorDescriptor,
)
from submitflow.domain.models.unit import ExecutionUnit
from submitflow.domain.providers.interfaces import AsyncRequestStore

if TYPE_CHECKING:
    from submitflow.infrastructure.identity.hasher import IdentityHasher

logger = logging.getLogger(__name__)

REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def validate_request_id(request_id: Any) -> str:
    if not isinstance(request_id, str) or not REQUEST_ID_PATTERN.match(request_id):
        raise InvalidRequestIdError(
            "requestId must be 1-128 characters of letters, digits, '.', '_', ':' or '-'"
        )
    return request_id


def _log_inline_failure(request_id: str) -> Callable[[Future], None]:
    # The caller may have stopped waiting, so nobody else reads this future.
    def callback(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error(
                "Inline attempt raised; the record stays processing until its lease expires",
                exc_info=exc,
                extra={"request_id": request_id},
            )

    return callback


@dataclass(slots=True)
class DispatchResult:
    request_id: str
    status: AsyncRequestStatus
    result: Any = None
    error: Optional[ErrorDescriptor] = None
    attempt: int = 0
    persisted: bool = True

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_record(cls, record: AsyncRequestRecord) -> "DispatchResult":
        return cls(
            request_id=record.request_id,
            status=record.status,
            result=record.result,
            error=record.error,
            attempt=record.attempt,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "status": self.status.value,
            "result": self.result,
            "error": self.error.as_dict() if self.error else None,
            "attempt": self.attempt,
        }


class Dispatcher:
    """Runs execution units for callers who either wait or poll.

    With no store configured the Dispatcher degrades to plain synchronous
    execution: no persistence, no idempotency, no polling.
    """

    def __init__(
        self,
        *,
        store: Optional[AsyncRequestStore],
        hasher: "IdentityHasher",
        config: AsyncExecutionConfig,
        worker: Optional[RetryWorker] = None,
        inline_executor: Optional[Executor] = None,
    ) -> None:
        if store is not None and worker is None:
            raise ValueError("A retry worker is required when a store is configured")
        self.store = store
        self.hasher = hasher
        self.config = config
        self.worker = worker
        self._inline_executor = inline_executor or ThreadPoolExecutor(
            max_workers=config.local_workers, thread_name_prefix="submitflow-inline"
        )

    @property
    def persistent(self) -> bool:
        return self.store is not None

    # public API -----------------------------------------------------------------

    def run(
        self,
        caller_id: str,
        request_id: str,
        wait_budget_ms: int,
        unit: ExecutionUnit,
    ) -> DispatchResult:
        validate_request_id(request_id)
        if self.store is None:
            return self._run_unpersisted(request_id, unit)

        hashed_caller_id = self.hasher.hash(caller_id)
        record = self.store.get(hashed_caller_id, request_id)
        if record is None:
            record, created = self.store.create_if_absent(
                AsyncRequestRecord.new(
                    hashed_caller_id, request_id, ttl_sec=self.config.ttl_sec
                )
            )
            if created:
                logger.info(
                    "Request recorded",
                    extra={"hashed_caller_id": hashed_caller_id, "request_id": request_id},
                )

        if record.is_terminal:
            logger.info(
                "Replaying terminal request",
                extra={"request_id": request_id, "status": record.status.value},
            )
            return DispatchResult.from_record(record)
        if record.status is not AsyncRequestStatus.PENDING:
            if not record.lease_expired(self.config.lease_sec):
                logger.info(
                    "Request already in flight",
                    extra={"request_id": request_id, "attempt": record.attempt},
                )
                return DispatchResult.from_record(record)
            logger.warning(
                "Reclaiming request whose lease expired",
                extra={"request_id": request_id, "attempt": record.attempt},
            )
            if record.attempt >= self.config.max_attempts:
                assert self.worker is not None
                self.worker.dead_letter_stalled(record)
                return self._current(record)

        if wait_budget_ms < self.config.sync_threshold_ms:
            return self._dispatch_async(record, unit)
        return self._dispatch_inline(record, unit, wait_budget_ms)

    def get_status(self, caller_id: str, request_id: str) -> Optional[AsyncRequestRecord]:
        """Read-only lookup; None means unknown (never created, or expired)."""
        validate_request_id(request_id)
        if self.store is None:
            return None
        return self.store.get(self.hasher.hash(caller_id), request_id)

    def wait(
        self, caller_id: str, request_id: str, wait_ms: int
    ) -> Optional[AsyncRequestRecord]:
        """Poll until the record is terminal or ``wait_ms`` elapses.

        Returns the last record seen, which is non-terminal on timeout.
        """
        validate_request_id(request_id)
        if self.store is None:
            return None
        hashed_caller_id = self.hasher.hash(caller_id)
        deadline = time.monotonic() + max(wait_ms, 0) / 1000
        interval = self.config.poll_initial_interval_sec
        record: Optional[AsyncRequestRecord] = None
        while True:
            try:
                record = self.store.get(hashed_caller_id, request_id)
            except StoreUnavailableError as exc:
                logger.warning(
                    "Error checking request status during wait",
                    extra={"request_id": request_id, "error": str(exc)},
                )
            if record is not None and record.is_terminal:
                return record
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return record
            time.sleep(min(interval, remaining))
            interval = min(interval * 2, self.config.poll_max_interval_sec)

    def shutdown(self, wait: bool = True) -> None:
        self._inline_executor.shutdown(wait=wait)

    # helpers --------------------------------------------------------------------

    def _dispatch_async(
        self, record: AsyncRequestRecord, unit: ExecutionUnit
    ) -> DispatchResult:
        assert self.store is not None and self.worker is not None
        expected_status, expected_attempt = record.status, record.attempt
        record.transition(AsyncRequestStatus.PROCESSING)
        record.refresh_ttl(self.config.ttl_sec)
        if not self.store.conditional_update(
            record, expected_status=expected_status, expected_attempt=expected_attempt
        ):
            return self._current(record)
        logger.info(
            "Handing request to retry scheduler", extra={"request_id": record.request_id}
        )
        self.worker.hand_off(record, unit)
        return DispatchResult.from_record(record)

    def _dispatch_inline(
        self, record: AsyncRequestRecord, unit: ExecutionUnit, wait_budget_ms: int
    ) -> DispatchResult:
        assert self.worker is not None
        if not self.worker.claim(record):
            return self._current(record)
        snapshot = DispatchResult.from_record(record)
        budget_sec = max(wait_budget_ms - self.config.inline_margin_ms, 0) / 1000
        logger.info(
            "Executing request inline",
            extra={"request_id": record.request_id, "budget_sec": budget_sec},
        )
        future = self._inline_executor.submit(self.worker.run_claimed, record, unit)
        future.add_done_callback(_log_inline_failure(record.request_id))
        try:
            finished = future.result(timeout=budget_sec)
        except FuturesTimeoutError:
            logger.info(
                "Wait budget elapsed; attempt continues in the background",
                extra={"request_id": record.request_id},
            )
            return snapshot
        return DispatchResult.from_record(finished)

    def _current(self, record: AsyncRequestRecord) -> DispatchResult:
        assert self.store is not None
        latest = self.store.get(record.hashed_caller_id, record.request_id)
        return DispatchResult.from_record(latest or record)

    def _run_unpersisted(self, request_id: str, unit: ExecutionUnit) -> DispatchResult:
        logger.info("No request store configured; executing synchronously", extra={"request_id": request_id})
        outcome = invoke_unit(unit)
        if outcome.ok:
            return DispatchResult(
                request_id=request_id,
                status=AsyncRequestStatus.COMPLETED,
                result=outcome.value,
                attempt=1,
                persisted=False,
            )
        return DispatchResult(
            request_id=request_id,
            status=AsyncRequestStatus.FAILED,
            error=outcome.to_error(),
            attempt=1,
            persisted=False,
        )
