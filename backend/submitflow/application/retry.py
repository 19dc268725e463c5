"""Retry worker: runs one execution attempt and decides what happens next."""

from __future__ import annotations

import logging
from typing import Optional

from submitflow.application.config import AsyncExecutionConfig
from submitflow.domain.models.async_request import (
    AsyncRequestRecord,
    ErrorDescriptor,
    ErrorKind,
)
from submitflow.domain.models.unit import ExecutionUnit, FailureClass, UnitOutcome
from submitflow.domain.providers.interfaces import AsyncRequestStore, RetryScheduler

logger = logging.getLogger(__name__)


def invoke_unit(unit: ExecutionUnit) -> UnitOutcome:
    """Run a unit, treating anything it raises as a transient failure."""
    try:
        return unit.execute()
    except Exception as exc:  # noqa: BLE001 - failures below the Dispatcher are data
        logger.exception("Execution unit raised", extra={"unit_kind": unit.kind})
        return UnitOutcome.transient(f"{type(exc).__name__}: {exc}")


class RetryWorker:
    """Drives the per-record state machine for out-of-band execution.

    Attempts for the same record are serialised through the store's conditional
    update: an attempt only runs after it has moved the record from the
    (status, attempt) pair it observed to ``processing``/``attempt + 1``.
    """

    def __init__(
        self,
        *,
        store: AsyncRequestStore,
        scheduler: RetryScheduler,
        config: AsyncExecutionConfig,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.config = config

    # public API -----------------------------------------------------------------

    def execute(
        self, hashed_caller_id: str, request_id: str, unit: ExecutionUnit
    ) -> Optional[AsyncRequestRecord]:
        record = self.store.get(hashed_caller_id, request_id)
        if record is None:
            logger.warning(
                "Dropping delivery for unknown or expired request",
                extra={"hashed_caller_id": hashed_caller_id, "request_id": request_id},
            )
            return None
        if record.is_terminal:
            logger.info(
                "Ignoring redelivery of terminal request",
                extra={"request_id": request_id, "status": record.status.value},
            )
            return record
        if not self.claim(record):
            logger.info(
                "Attempt already claimed elsewhere",
                extra={"request_id": request_id, "attempt": record.attempt},
            )
            return self.store.get(hashed_caller_id, request_id)
        return self.run_claimed(record, unit)

    def claim(self, record: AsyncRequestRecord) -> bool:
        """Bump the attempt counter; True only if this caller won the record."""
        expected_status, expected_attempt = record.status, record.attempt
        record.begin_attempt(ttl_sec=self.config.ttl_sec)
        return self.store.conditional_update(
            record, expected_status=expected_status, expected_attempt=expected_attempt
        )

    def run_claimed(
        self, record: AsyncRequestRecord, unit: ExecutionUnit
    ) -> AsyncRequestRecord:
        outcome = invoke_unit(unit)
        expected_status, expected_attempt = record.status, record.attempt

        if outcome.ok:
            record.complete(outcome.value, ttl_sec=self.config.ttl_sec)
            logger.info(
                "Request completed",
                extra={"request_id": record.request_id, "attempt": record.attempt},
            )
        elif outcome.failure is FailureClass.PERMANENT:
            record.fail(outcome.to_error(), ttl_sec=self.config.ttl_sec)
            logger.warning(
                "Request failed permanently",
                extra={
                    "request_id": record.request_id,
                    "attempt": record.attempt,
                    "error": outcome.message,
                },
            )
        elif record.attempt < self.config.max_attempts:
            delay = self.config.backoff_delay(record.attempt)
            logger.warning(
                "Transient failure, scheduling retry",
                extra={
                    "request_id": record.request_id,
                    "attempt": record.attempt,
                    "delay_sec": delay,
                    "error": outcome.message,
                },
            )
            return self.hand_off(record, unit, delay_sec=delay)
        else:
            record.fail(
                ErrorDescriptor(
                    kind=ErrorKind.EXHAUSTED_RETRIES,
                    message=f"Gave up after {record.attempt} attempts",
                    status_code=outcome.status_code,
                    last_error=outcome.to_error().as_dict(),
                ),
                ttl_sec=self.config.ttl_sec,
            )
            logger.error(
                "Retries exhausted, request dead-lettered",
                extra={"request_id": record.request_id, "attempt": record.attempt},
            )

        if not self.store.conditional_update(
            record, expected_status=expected_status, expected_attempt=expected_attempt
        ):
            logger.warning(
                "Record changed underneath a running attempt; outcome discarded",
                extra={"request_id": record.request_id, "attempt": record.attempt},
            )
        return record

    def dead_letter_stalled(self, record: AsyncRequestRecord) -> bool:
        """Fail a record whose lease expired; False if someone else moved it first."""
        expected_status, expected_attempt = record.status, record.attempt
        kind = (
            ErrorKind.EXHAUSTED_RETRIES
            if record.attempt >= self.config.max_attempts
            else ErrorKind.TRANSIENT
        )
        record.fail(
            ErrorDescriptor(
                kind=kind,
                message=f"No attempt finished within the lease after attempt {record.attempt}",
            ),
            ttl_sec=self.config.ttl_sec,
        )
        stored = self.store.conditional_update(
            record, expected_status=expected_status, expected_attempt=expected_attempt
        )
        if stored:
            logger.error(
                "Stalled request dead-lettered",
                extra={"request_id": record.request_id, "attempt": record.attempt},
            )
        return stored

    def hand_off(
        self,
        record: AsyncRequestRecord,
        unit: ExecutionUnit,
        *,
        delay_sec: float = 0.0,
    ) -> AsyncRequestRecord:
        """Queue the next attempt; a queue that refuses the work fails the record."""
        try:
            self.scheduler.schedule(
                record.hashed_caller_id, record.request_id, unit, delay_sec=delay_sec
            )
        except Exception as exc:  # noqa: BLE001 - broker faults become record state
            logger.exception(
                "Unable to enqueue request", extra={"request_id": record.request_id}
            )
            expected_status, expected_attempt = record.status, record.attempt
            record.fail(
                ErrorDescriptor(kind=ErrorKind.ENQUEUE_FAILED, message=str(exc)),
                ttl_sec=self.config.ttl_sec,
            )
            self.store.conditional_update(
                record, expected_status=expected_status, expected_attempt=expected_attempt
            )
        return record
