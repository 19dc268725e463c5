"""In-memory request store useful for development and unit tests."""

from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Dict, List, Optional

from submitflow.domain.models.async_request import (
    AsyncRequestRecord,
    AsyncRequestStatus,
    utcnow,
)
from submitflow.domain.providers.interfaces import AsyncRequestStore


class InMemoryAsyncRequestStore(AsyncRequestStore):
    """Thread-safe dict of record copies; callers never share state with the store."""

    def __init__(self) -> None:
        self._records: Dict[tuple[str, str], AsyncRequestRecord] = {}
        self._lock = threading.Lock()

    def create_if_absent(
        self, record: AsyncRequestRecord
    ) -> tuple[AsyncRequestRecord, bool]:
        with self._lock:
            existing = self._records.get(record.key)
            if existing is not None and not existing.is_expired():
                return copy.deepcopy(existing), False
            self._records[record.key] = copy.deepcopy(record)
            return copy.deepcopy(record), True

    def conditional_update(
        self,
        record: AsyncRequestRecord,
        *,
        expected_status: AsyncRequestStatus,
        expected_attempt: int,
    ) -> bool:
        with self._lock:
            current = self._records.get(record.key)
            if current is None or current.is_expired():
                return False
            if current.status is not expected_status or current.attempt != expected_attempt:
                return False
            self._records[record.key] = copy.deepcopy(record)
            return True

    def get(self, hashed_caller_id: str, request_id: str) -> Optional[AsyncRequestRecord]:
        with self._lock:
            record = self._records.get((hashed_caller_id, request_id))
            if record is None or record.is_expired():
                return None
            return copy.deepcopy(record)

    def purge_expired(self, *, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._lock:
            expired = [key for key, record in self._records.items() if record.is_expired(now)]
            for key in expired:
                del self._records[key]
        return len(expired)

    def find_stalled(
        self, *, updated_before: datetime, limit: int = 100
    ) -> List[AsyncRequestRecord]:
        with self._lock:
            stalled = [
                copy.deepcopy(record)
                for record in self._records.values()
                if record.status is AsyncRequestStatus.PROCESSING
                and record.updated_at <= updated_before
                and not record.is_expired()
            ]
        stalled.sort(key=lambda record: record.updated_at)
        return stalled[:limit]

    def __len__(self) -> int:
        return len(self._records)


def from_env() -> InMemoryAsyncRequestStore:
    return InMemoryAsyncRequestStore()
