"""Error taxonomy for brewops operations.

Process outcomes (spawn failures, non-zero exits, cancellation) travel as
values attached to a completion or an operation record. Only caller mistakes
such as starting a second operation are raised at the call site.
"""

from typing import List, Optional


class BrewOpsError(Exception):
    """Base class for all brewops errors."""


class SpawnFailure(BrewOpsError):
    """The command could not be started (not found, not executable, bad cwd)."""

    def __init__(self, command: str, reason: str, exit_code: int = 127):
        self.command = command
        self.reason = reason
        self.exit_code = exit_code
        super().__init__(f"Could not start {command}: {reason}")


class NonZeroExit(BrewOpsError):
    """The process ran and reported failure."""

    def __init__(self, exit_code: int, tail: Optional[List[str]] = None):
        self.exit_code = exit_code
        self.tail = list(tail or [])
        super().__init__(f"Command failed with exit code {exit_code}")


class OperationCancelled(BrewOpsError):
    """Terminal outcome of a cancelled operation. Not a failure."""

    def __init__(self, exit_code: int):
        self.exit_code = exit_code
        super().__init__("Operation was cancelled")


class AlreadyRunning(BrewOpsError):
    """An operation is in progress; a second one cannot start."""

    def __init__(self, label: str = ""):
        self.label = label
        message = f"Another operation is running: {label}" if label else "Another operation is running"
        super().__init__(message)


class StreamAlreadyConsumed(BrewOpsError):
    """The line stream of a process handle can only be iterated once."""


class QueryError(BrewOpsError):
    """A read-only state query ran but failed or produced unusable output."""

    def __init__(self, query: str, message: str, exit_code: Optional[int] = None):
        self.query = query
        self.exit_code = exit_code
        super().__init__(f"{query}: {message}")


class ReconciliationFailure(BrewOpsError):
    """Refreshing state after an operation failed; displayed state may be stale."""

    def __init__(self, query: str, cause: Exception):
        self.query = query
        self.cause = cause
        super().__init__(f"State refresh failed during {query}: {cause}")


class BrewNotFound(BrewOpsError):
    """Homebrew is not installed or not in any known location."""

    def __init__(self, searched: List[str]):
        self.searched = list(searched)
        super().__init__("Homebrew is not installed or not in PATH")
