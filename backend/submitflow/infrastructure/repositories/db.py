from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from django.apps import apps
from django.db import DatabaseError, IntegrityError, transaction

from submitflow.domain.errors import StoreUnavailableError
from submitflow.domain.models.async_request import (
    AsyncRequestRecord,
    AsyncRequestStatus,
    ErrorDescriptor,
    utcnow,
)
from submitflow.domain.providers.interfaces import AsyncRequestStore

logger = logging.getLogger(__name__)


class DjangoAsyncRequestStore(AsyncRequestStore):
    """Django ORM backed request store.

    Conditional updates are a single ``UPDATE ... WHERE status = ? AND attempt = ?``
    so the database row is the only concurrency control needed across workers.
    """

    def __init__(self) -> None:
        self.model = apps.get_model("asyncrequests", "AsyncRequestRow")

    def create_if_absent(
        self, record: AsyncRequestRecord
    ) -> tuple[AsyncRequestRecord, bool]:
        fields = self._serialize(record)
        try:
            try:
                with transaction.atomic():
                    self.model.objects.create(
                        hashed_caller_id=record.hashed_caller_id,
                        request_id=record.request_id,
                        **fields,
                    )
                return record, True
            except IntegrityError:
                pass
            # An expired row still occupies the key until the reaper removes it.
            replaced = self._key_filter(record).filter(expires_at__lte=utcnow()).update(**fields)
            if replaced:
                return record, True
            existing = self._key_filter(record).first()
        except DatabaseError as exc:
            raise self._unavailable("create_if_absent", exc) from exc
        if existing is None:  # pragma: no cover - deleted between statements
            return record, False
        return self._to_domain(existing), False

    def conditional_update(
        self,
        record: AsyncRequestRecord,
        *,
        expected_status: AsyncRequestStatus,
        expected_attempt: int,
    ) -> bool:
        try:
            updated = (
                self._key_filter(record)
                .filter(
                    status=expected_status.value,
                    attempt=expected_attempt,
                    expires_at__gt=utcnow(),
                )
                .update(**self._serialize(record, include_created=False))
            )
        except DatabaseError as exc:
            raise self._unavailable("conditional_update", exc) from exc
        return updated == 1

    def get(self, hashed_caller_id: str, request_id: str) -> Optional[AsyncRequestRecord]:
        try:
            row = self.model.objects.filter(
                hashed_caller_id=hashed_caller_id,
                request_id=request_id,
                expires_at__gt=utcnow(),
            ).first()
        except DatabaseError as exc:
            raise self._unavailable("get", exc) from exc
        return self._to_domain(row) if row is not None else None

    def purge_expired(self, *, now: Optional[datetime] = None) -> int:
        try:
            deleted, _ = self.model.objects.filter(expires_at__lte=now or utcnow()).delete()
        except DatabaseError as exc:
            raise self._unavailable("purge_expired", exc) from exc
        return deleted

    def find_stalled(
        self, *, updated_before: datetime, limit: int = 100
    ) -> List[AsyncRequestRecord]:
        try:
            rows = list(
                self.model.objects.filter(
                    status=AsyncRequestStatus.PROCESSING.value,
                    updated_at__lte=updated_before,
                    expires_at__gt=utcnow(),
                ).order_by("updated_at")[:limit]
            )
        except DatabaseError as exc:
            raise self._unavailable("find_stalled", exc) from exc
        return [self._to_domain(row) for row in rows]

    # helpers -----------------------------------------------------------

    def _key_filter(self, record: AsyncRequestRecord):
        return self.model.objects.filter(
            hashed_caller_id=record.hashed_caller_id, request_id=record.request_id
        )

    def _serialize(
        self, record: AsyncRequestRecord, *, include_created: bool = True
    ) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "status": record.status.value,
            "attempt": record.attempt,
            "result": record.result,
            "error": record.error.as_dict() if record.error else None,
            "updated_at": record.updated_at,
            "expires_at": record.expires_at,
        }
        if include_created:
            fields["created_at"] = record.created_at
        return fields

    def _to_domain(self, row) -> AsyncRequestRecord:
        return AsyncRequestRecord(
            hashed_caller_id=row.hashed_caller_id,
            request_id=row.request_id,
            status=AsyncRequestStatus(row.status),
            attempt=row.attempt,
            result=row.result,
            error=ErrorDescriptor.from_dict(row.error) if row.error else None,
            created_at=row.created_at,
            updated_at=row.updated_at,
            expires_at=row.expires_at,
        )

    def _unavailable(self, operation: str, exc: Exception) -> StoreUnavailableError:
        logger.error(
            "Async request store operation failed",
            extra={"operation": operation, "error": str(exc)},
        )
        return StoreUnavailableError(
            f"Async request store unavailable during {operation}: {exc}",
            operation=operation,
        )


def from_env() -> DjangoAsyncRequestStore:
    return DjangoAsyncRequestStore()
