"""Domain exceptions raised by the dispatch engine."""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for dispatch-engine failures."""


class TaskStoreError(DispatchError):
    """The task store could not complete an operation (e.g. database unavailable)."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Task store operation '{operation}' failed{detail}")


__all__ = ["DispatchError", "TaskStoreError"]
