from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from submitflow.domain.models.async_request import utcnow
from submitflow.domain.providers.interfaces import AsyncRequestStore

if TYPE_CHECKING:
    from submitflow.application.retry import RetryWorker

logger = logging.getLogger(__name__)


class AsyncRequestReaper:
    """Physically removes request records whose TTL has passed, and dead-letters
    ``processing`` records that nothing is executing any more."""

    def __init__(
        self,
        store: AsyncRequestStore | None = None,
        *,
        worker: "RetryWorker | None" = None,
    ) -> None:
        if store is None and worker is None:
            from submitflow.bootstrap import get_worker

            worker = get_worker()
        if store is None and worker is not None:
            store = worker.store
        self.store = store
        self.worker = worker

    def reap(self, *, now=None) -> dict[str, int]:
        if self.store is None:
            return {"deleted": 0}
        now = now or utcnow()
        deleted = self.store.purge_expired(now=now)
        if deleted:
            logger.info("Purged expired async requests", extra={"count": deleted})
        return {"deleted": deleted}

    def recover_stalled(self, *, now=None, limit: int = 100) -> dict[str, int]:
        if self.worker is None:
            return {"dead_lettered": 0}
        now = now or utcnow()
        # Resubmissions get one full lease to reclaim a record before the sweep fails it.
        cutoff = now - timedelta(seconds=self.worker.config.lease_sec * 2)
        dead_lettered = 0
        for record in self.worker.store.find_stalled(updated_before=cutoff, limit=limit):
            if self.worker.dead_letter_stalled(record):
                dead_lettered += 1
        if dead_lettered:
            logger.warning(
                "Dead-lettered stalled async requests", extra={"count": dead_lettered}
            )
        return {"dead_lettered": dead_lettered}
