"""Exception hierarchy shared by every graphsync component."""

from __future__ import annotations


class GraphsyncError(Exception):
    pass


class GraphValidationError(GraphsyncError):
    """The graph is structurally invalid; nothing may be written."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        head = problems[0] if problems else "invalid task graph"
        more = f" (+{len(problems) - 1} more)" if len(problems) > 1 else ""
        super().__init__(f"{head}{more}")


class ConfigValidationError(GraphsyncError, ValueError):
    pass


class IdentityConflictError(GraphsyncError):
    pass


class SnapshotError(GraphsyncError):
    pass


class BreakdownError(GraphsyncError):
    pass


class ProducerError(GraphsyncError):
    pass


# ---------------------------------------------------------------------------
# Tracker errors
# ---------------------------------------------------------------------------


class TrackerError(GraphsyncError):
    def __init__(self, message: str, *, status: int = 0) -> None:
        super().__init__(message)
        self.status = status


class TransientTrackerError(TrackerError):
    """Network failure, timeout or server error. Safe to retry."""

    def __init__(
        self,
        message: str,
        *,
        status: int = 0,
        unreachable: bool = False,
    ) -> None:
        super().__init__(message, status=status)
        self.unreachable = unreachable


class RateLimitError(TransientTrackerError):
    def __init__(
        self,
        message: str,
        *,
        status: int = 429,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status=status)
        self.retry_after = retry_after


class RetryExhaustedError(TransientTrackerError):
    def __init__(self, message: str, *, attempts: int, last: TransientTrackerError) -> None:
        super().__init__(message, status=last.status, unreachable=last.unreachable)
        self.attempts = attempts
        self.last = last


class FatalTrackerError(TrackerError):
    """The run cannot continue against this tracker."""


class AuthenticationError(FatalTrackerError):
    pass


class TrackerUnreachableError(FatalTrackerError):
    pass


class ItemNotFoundError(TrackerError):
    def __init__(self, item_id: str) -> None:
        super().__init__(f"tracker item not found: {item_id}", status=404)
        self.item_id = item_id


class HierarchyUnsupportedError(TrackerError):
    pass
