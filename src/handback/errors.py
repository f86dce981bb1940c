"""Typed errors raised by the session lifecycle subsystem."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from handback.models import Task


class HandbackError(Exception):
    """Base class for all handback errors."""


class TaskNotFoundError(HandbackError):
    """Raised when no rule of reference resolution produced a candidate."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"no task found matching: {reference}")


class AmbiguousTaskError(HandbackError):
    """Raised when a reference matches more than one task."""

    def __init__(self, reference: str, matches: list[Task]):
        self.reference = reference
        self.matches = matches
        super().__init__(
            f"ambiguous task reference: '{reference}' matches {len(matches)} tasks"
        )


class MissingSessionError(HandbackError):
    """Raised when a resume is requested but no agent session is linked."""

    def __init__(self, task_id: str, display_id: str | None = None):
        self.task_id = task_id
        self.display_id = display_id or task_id
        super().__init__(f"no agent session linked to task {self.display_id}")


class UnsupportedToolError(HandbackError):
    def __init__(self, tool: str, supported: Iterable[str] = ()):
        self.tool = tool
        self.supported = list(supported)
        super().__init__(f"unsupported tool: {tool} (supported: {', '.join(self.supported)})")


class InvalidSessionRefError(HandbackError):
    def __init__(self, tool: str, ref: str, reason: str):
        self.tool = tool
        self.ref = ref
        self.reason = reason
        super().__init__(f"invalid session reference for {tool}: {reason}")


class InvalidTransitionError(HandbackError):
    """Raised when a session record status would move backwards or out of a terminal state."""

    def __init__(self, current: str, new: str, record_id: str):
        self.current = current
        self.new = new
        self.record_id = record_id
        super().__init__(
            f"Invalid session status transition for {record_id}: {current} -> {new}"
        )


class TaskStateError(HandbackError):
    """Raised when a task is not in the column an operation requires."""

    def __init__(self, task_id: str, column: str, message: str):
        self.task_id = task_id
        self.column = column
        super().__init__(message)


class StoreError(HandbackError):
    """Wraps a failure of the underlying record store."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        self.operation = operation
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"database error during {operation}{detail}")


class ToolLaunchError(HandbackError):
    """Raised when the agent tool process cannot be started."""

    def __init__(self, tool: str, executable: str, cause: BaseException):
        self.tool = tool
        self.executable = executable
        self.cause = cause
        super().__init__(f"failed to launch {tool} ({executable}): {cause}")
