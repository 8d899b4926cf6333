from __future__ import annotations

from .base import CLOSED, OPEN, TrackerClient, TrackerItem, item_ref
from .github import GitHubTracker
from .local import LocalTracker
from .retry import RetryPolicy

__all__ = [
    "CLOSED",
    "GitHubTracker",
    "LocalTracker",
    "OPEN",
    "RetryPolicy",
    "TrackerClient",
    "TrackerItem",
    "item_ref",
]
