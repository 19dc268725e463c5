"""Execution units: the upstream operation a handler asks the core to run."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from submitflow.domain.models.async_request import ErrorDescriptor, ErrorKind


class FailureClass(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(slots=True)
class UnitOutcome:
    """Result of one execution attempt: a value, or a classified failure."""

    value: Any = None
    failure: Optional[FailureClass] = None
    message: str = ""
    status_code: Optional[int] = None
    data: Any = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: Any) -> "UnitOutcome":
        return cls(value=value)

    @classmethod
    def transient(
        cls, message: str, *, status_code: Optional[int] = None, data: Any = None
    ) -> "UnitOutcome":
        return cls(
            failure=FailureClass.TRANSIENT,
            message=message,
            status_code=status_code,
            data=data,
        )

    @classmethod
    def permanent(
        cls, message: str, *, status_code: Optional[int] = None, data: Any = None
    ) -> "UnitOutcome":
        return cls(
            failure=FailureClass.PERMANENT,
            message=message,
            status_code=status_code,
            data=data,
        )

    def to_error(self) -> ErrorDescriptor:
        if self.failure is None:
            raise ValueError("Successful outcome has no error descriptor")
        return ErrorDescriptor(
            kind=ErrorKind(self.failure.value),
            message=self.message,
            status_code=self.status_code,
            data=self.data,
        )


class ExecutionUnit(Protocol):
    """Performs one upstream call.

    ``kind`` and ``payload`` identify the unit well enough for a worker in another
    process to rebuild it from the unit registry, so ``payload`` must be JSON
    serialisable.
    """

    kind: str
    payload: Dict[str, Any]

    def execute(self) -> UnitOutcome:  # pragma: no cover - interface
        ...


class UnitFailure(Exception):
    """Raised from inside a callable unit to signal a classified failure."""

    failure = FailureClass.TRANSIENT

    def __init__(self, message: str, *, status_code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.data = data

    def to_outcome(self) -> UnitOutcome:
        return UnitOutcome(
            failure=self.failure,
            message=self.message,
            status_code=self.status_code,
            data=self.data,
        )


class TransientUnitError(UnitFailure):
    failure = FailureClass.TRANSIENT


class PermanentUnitError(UnitFailure):
    failure = FailureClass.PERMANENT


@dataclass
class CallableUnit:
    """Adapts a plain function into an execution unit.

    The function receives the payload and returns the result; it signals failures
    by raising ``TransientUnitError`` or ``PermanentUnitError``.
    """

    func: Callable[[Dict[str, Any]], Any]
    payload: Dict[str, Any] = field(default_factory=dict)
    kind: str = "callable"

    def execute(self) -> UnitOutcome:
        try:
            value = self.func(self.payload)
        except UnitFailure as exc:
            return exc.to_outcome()
        return UnitOutcome.success(value)
