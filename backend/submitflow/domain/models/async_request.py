"""Domain objects tracking the lifecycle of an asynchronous request."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from submitflow.domain.errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AsyncRequestStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AsyncRequestStatus.COMPLETED, AsyncRequestStatus.FAILED)


class ErrorKind(str, Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"
    EXHAUSTED_RETRIES = "exhausted-retries"
    ENQUEUE_FAILED = "enqueue-failed"


@dataclass(slots=True)
class ErrorDescriptor:
    """Structured failure stored on a failed record."""

    kind: ErrorKind
    message: str
    status_code: Optional[int] = None
    data: Any = None
    last_error: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.status_code is not None:
            payload["status_code"] = self.status_code
        if self.data is not None:
            payload["data"] = self.data
        if self.last_error is not None:
            payload["last_error"] = self.last_error
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorDescriptor":
        status_code = data.get("status_code")
        return cls(
            kind=ErrorKind(data["kind"]),
            message=str(data.get("message", "")),
            status_code=int(status_code) if status_code is not None else None,
            data=data.get("data"),
            last_error=data.get("last_error"),
        )


@dataclass(slots=True)
class AsyncRequestRecord:
    """One row per (hashed caller, request id) pair.

    ``attempt`` counts execution invocations, including the first one. ``result``
    and ``error`` are only ever populated by the matching terminal transition.
    """

    hashed_caller_id: str
    request_id: str
    status: AsyncRequestStatus = AsyncRequestStatus.PENDING
    attempt: int = 0
    result: Any = None
    error: Optional[ErrorDescriptor] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        hashed_caller_id: str,
        request_id: str,
        *,
        ttl_sec: int,
        now: Optional[datetime] = None,
    ) -> "AsyncRequestRecord":
        now = now or utcnow()
        return cls(
            hashed_caller_id=hashed_caller_id,
            request_id=request_id,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=ttl_sec),
        )

    @property
    def key(self) -> tuple[str, str]:
        return (self.hashed_caller_id, self.request_id)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())

    def lease_expired(self, lease_sec: float, now: Optional[datetime] = None) -> bool:
        """True for a processing record nobody has written to within ``lease_sec``."""
        if self.status is not AsyncRequestStatus.PROCESSING:
            return False
        return self.updated_at + timedelta(seconds=lease_sec) <= (now or utcnow())

    def transition(self, target: AsyncRequestStatus) -> None:
        """Advance the record, enforcing forward-only transitions."""
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"Invalid transition {self.status.value} -> {target.value}")
        self.status = target
        self.updated_at = utcnow()

    def begin_attempt(self, *, ttl_sec: int) -> None:
        self.transition(AsyncRequestStatus.PROCESSING)
        self.attempt += 1
        self.refresh_ttl(ttl_sec)

    def complete(self, result: Any, *, ttl_sec: int) -> None:
        self.transition(AsyncRequestStatus.COMPLETED)
        self.result = result
        self.error = None
        self.refresh_ttl(ttl_sec)

    def fail(self, error: ErrorDescriptor, *, ttl_sec: int) -> None:
        self.transition(AsyncRequestStatus.FAILED)
        self.error = error
        self.result = None
        self.refresh_ttl(ttl_sec)

    def refresh_ttl(self, ttl_sec: int) -> None:
        self.expires_at = self.updated_at + timedelta(seconds=ttl_sec)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "status": self.status.value,
            "attempt": self.attempt,
            "result": self.result,
            "error": self.error.as_dict() if self.error else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


# processing -> processing is the retry path: a new attempt on a claimed record.
_ALLOWED_TRANSITIONS: Dict[AsyncRequestStatus, List[AsyncRequestStatus]] = {
    AsyncRequestStatus.PENDING: [AsyncRequestStatus.PROCESSING],
    AsyncRequestStatus.PROCESSING: [
        AsyncRequestStatus.PROCESSING,
        AsyncRequestStatus.COMPLETED,
        AsyncRequestStatus.FAILED,
    ],
    AsyncRequestStatus.COMPLETED: [],
    AsyncRequestStatus.FAILED: [],
}
