"""Retry scheduler delivering attempts through the Celery broker."""

from __future__ import annotations

import logging
from typing import Any, Optional

from submitflow.domain.models.unit import ExecutionUnit

logger = logging.getLogger(__name__)


class CeleryRetryScheduler:
    """Enqueues ``execute_async_request_task`` with a countdown.

    Units travel as (kind, payload); the worker process rebuilds them from the unit
    registry.
    """

    def __init__(self, task: Optional[Any] = None) -> None:
        self._task = task

    @property
    def task(self) -> Any:
        if self._task is None:
            from submitflow.application.tasks import execute_async_request_task

            self._task = execute_async_request_task
        return self._task

    def schedule(
        self,
        hashed_caller_id: str,
        request_id: str,
        unit: ExecutionUnit,
        *,
        delay_sec: float = 0.0,
    ) -> None:
        self.task.apply_async(
            args=[hashed_caller_id, request_id, unit.kind, dict(unit.payload)],
            countdown=max(delay_sec, 0.0),
        )
        logger.info(
            "Enqueued attempt",
            extra={"request_id": request_id, "unit_kind": unit.kind, "delay_sec": delay_sec},
        )


def from_env() -> CeleryRetryScheduler:
    return CeleryRetryScheduler()
