"""In-process retry scheduler used for development, single-node deployments and tests."""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional

from submitflow.domain.models.unit import ExecutionUnit

if TYPE_CHECKING:
    from submitflow.application.retry import RetryWorker

logger = logging.getLogger(__name__)


@dataclass(order=True)
class _ScheduledJob:
    due_at: float
    sequence: int
    hashed_caller_id: str = field(compare=False)
    request_id: str = field(compare=False)
    unit: ExecutionUnit = field(compare=False)


class LocalRetryScheduler:
    """Runs delayed attempts on a thread pool.

    Jobs for the same (hashed caller, request id) key never overlap: each run holds
    a per-key lock, on top of the store's conditional update.
    """

    def __init__(self, *, max_workers: int = 8, worker: Optional["RetryWorker"] = None):
        self._worker = worker
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="submitflow-retry"
        )
        self._heap: List[_ScheduledJob] = []
        self._sequence = itertools.count()
        self._condition = threading.Condition()
        self._key_locks: Dict[tuple[str, str], threading.Lock] = {}
        self._outstanding = 0
        self._closed = False
        self._thread: Optional[threading.Thread] = None

    def attach(self, worker: "RetryWorker") -> None:
        self._worker = worker

    def schedule(
        self,
        hashed_caller_id: str,
        request_id: str,
        unit: ExecutionUnit,
        *,
        delay_sec: float = 0.0,
    ) -> None:
        if self._worker is None:
            raise RuntimeError("LocalRetryScheduler has no worker attached")
        with self._condition:
            if self._closed:
                raise RuntimeError("LocalRetryScheduler is shut down")
            job = _ScheduledJob(
                due_at=time.monotonic() + max(delay_sec, 0.0),
                sequence=next(self._sequence),
                hashed_caller_id=hashed_caller_id,
                request_id=request_id,
                unit=unit,
            )
            heapq.heappush(self._heap, job)
            self._outstanding += 1
            self._ensure_thread()
            self._condition.notify_all()
        logger.debug(
            "Scheduled local attempt",
            extra={"request_id": request_id, "delay_sec": delay_sec},
        )

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no job is queued or running; False if ``timeout`` elapsed first."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while self._outstanding:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._condition.wait(remaining)
            return True

    def shutdown(self, wait: bool = True) -> None:
        with self._condition:
            self._closed = True
            dropped = len(self._heap)
            request_ids = [job.request_id for job in self._heap]
            self._outstanding -= dropped
            self._heap.clear()
            self._condition.notify_all()
        if dropped:
            logger.warning(
                "Dropped queued attempts on shutdown; their records recover once the lease expires",
                extra={"count": dropped, "request_ids": request_ids},
            )
        if self._thread is not None and wait:
            self._thread.join()
        self._executor.shutdown(wait=wait)

    @property
    def pending(self) -> int:
        with self._condition:
            return self._outstanding

    # helpers ---------------------------------------------------------------------

    def _ensure_thread(self) -> None:
        if self._thread is None:
            self._thread = threading.Thread(
                target=self._loop, name="submitflow-retry-timer", daemon=True
            )
            self._thread.start()

    def _loop(self) -> None:
        while True:
            with self._condition:
                while not self._closed:
                    if self._heap:
                        wait_for = self._heap[0].due_at - time.monotonic()
                        if wait_for <= 0:
                            break
                        self._condition.wait(wait_for)
                    else:
                        self._condition.wait()
                if self._closed:
                    return
                job = heapq.heappop(self._heap)
            self._executor.submit(self._run, job)

    def _run(self, job: _ScheduledJob) -> None:
        key = (job.hashed_caller_id, job.request_id)
        with self._condition:
            lock = self._key_locks.setdefault(key, threading.Lock())
        try:
            with lock:
                assert self._worker is not None
                self._worker.execute(job.hashed_caller_id, job.request_id, job.unit)
        except Exception:  # noqa: BLE001 - the record keeps its state for the next poll
            logger.exception(
                "Local attempt crashed", extra={"request_id": job.request_id}
            )
        finally:
            with self._condition:
                self._outstanding -= 1
                if self._outstanding == 0:
                    self._key_locks.clear()
                self._condition.notify_all()


def from_settings() -> LocalRetryScheduler:
    from django.conf import settings

    return LocalRetryScheduler(max_workers=int(getattr(settings, "ASYNC_LOCAL_WORKERS", 8)))
