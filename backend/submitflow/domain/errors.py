"""Exceptions that cross the Dispatcher boundary."""

from __future__ import annotations


class InvalidRequestIdError(ValueError):
    """The client-supplied request identifier is missing or malformed."""


class InvalidCallerIdError(ValueError):
    """The caller identifier cannot be hashed (empty or not a string)."""


class InvalidTransitionError(ValueError):
    pass


class StoreUnavailableError(RuntimeError):
    """The durable request store could not be read or written."""

    def __init__(self, message: str, *, operation: str | None = None):
        super().__init__(message)
        self.operation = operation


class SaltNotInitializedError(RuntimeError):
    pass
