"""Tracker capability surface shared by every tracker implementation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

OPEN = "open"
CLOSED = "closed"
ITEM_STATES = (OPEN, CLOSED)


@dataclass(frozen=True)
class TrackerItem:
    id: str
    title: str
    body: str = ""
    labels: frozenset[str] = field(default_factory=frozenset)
    state: str = OPEN

    @property
    def is_open(self) -> bool:
        return self.state == OPEN


@runtime_checkable
class TrackerClient(Protocol):
    """Operations the engine needs from an issue tracker.

    Implementations own retry/backoff: a TransientTrackerError escaping any
    method means the retry budget is already spent.
    """

    supports_hierarchy: bool

    def create_item(self, title: str, body: str, labels: list[str]) -> str: ...

    def update_item(
        self,
        item_id: str,
        *,
        title: str | None = None,
        body: str | None = None,
        labels: list[str] | None = None,
        state: str | None = None,
    ) -> None: ...

    def add_label(self, item_id: str, label: str) -> None: ...

    def remove_label(self, item_id: str, label: str) -> None: ...

    def get_item(self, item_id: str) -> TrackerItem: ...

    def get_item_state(self, item_id: str) -> str: ...

    def find_item_by_metadata_id(
        self, node_id: str, *, document: str = "", refresh: bool = False
    ) -> str | None: ...

    def find_items_by_title(self, title: str) -> list[TrackerItem]: ...

    def comment(self, item_id: str, text: str) -> None: ...

    def add_sub_item(self, parent_id: str, child_id: str) -> None: ...

    def list_sub_items(self, parent_id: str) -> list[str]: ...


def item_ref(item_id: str) -> str:
    return f"#{item_id}"


def sort_item_ids(ids: list[str]) -> list[str]:
    """Oldest first: numeric ids compare numerically, others lexically."""
    return sorted(ids, key=lambda i: (0, int(i), "") if i.isdigit() else (1, 0, i))
