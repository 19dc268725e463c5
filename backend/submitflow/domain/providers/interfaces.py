"""Ports consumed by the Dispatcher and retry worker."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from submitflow.domain.models.async_request import AsyncRequestRecord, AsyncRequestStatus
from submitflow.domain.models.unit import ExecutionUnit


class AsyncRequestStore(Protocol):
    """Durable key-value store of request records keyed on (hashed caller, request id).

    Implementations raise ``StoreUnavailableError`` when the backend cannot be reached.
    Expired records are invisible to ``get`` even before they are physically removed.
    """

    def create_if_absent(
        self, record: AsyncRequestRecord
    ) -> tuple[AsyncRequestRecord, bool]:  # pragma: no cover
        ...

    def conditional_update(
        self,
        record: AsyncRequestRecord,
        *,
        expected_status: AsyncRequestStatus,
        expected_attempt: int,
    ) -> bool:  # pragma: no cover
        ...

    def get(
        self, hashed_caller_id: str, request_id: str
    ) -> Optional[AsyncRequestRecord]:  # pragma: no cover
        ...

    def purge_expired(self, *, now: Optional[datetime] = None) -> int:  # pragma: no cover
        ...

    def find_stalled(
        self, *, updated_before: datetime, limit: int = 100
    ) -> List[AsyncRequestRecord]:  # pragma: no cover
        """Unexpired ``processing`` records last written at or before ``updated_before``."""
        ...


class RetryScheduler(Protocol):
    """Delivers execution attempts out of band, optionally after a delay."""

    def schedule(
        self,
        hashed_caller_id: str,
        request_id: str,
        unit: ExecutionUnit,
        *,
        delay_sec: float = 0.0,
    ) -> None:  # pragma: no cover
        ...
