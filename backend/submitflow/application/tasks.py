"""Celery tasks delivering out-of-band execution attempts."""

from __future__ import annotations

import logging
from typing import Any, Dict

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(name="submitflow.application.tasks.execute_async_request")
def execute_async_request_task(
    hashed_caller_id: str,
    request_id: str,
    unit_kind: str,
    unit_payload: Dict[str, Any],
) -> dict | None:
    """Run one attempt; retries are re-enqueued by the worker, not by Celery."""
    from submitflow.bootstrap import container, get_worker

    worker = get_worker()
    if worker is None:
        logger.warning(
            "Received attempt without a configured request store",
            extra={"request_id": request_id},
        )
        return None
    unit = container.units.build(unit_kind, unit_payload)
    record = worker.execute(hashed_caller_id, request_id, unit)
    return record.as_dict() if record is not None else None
