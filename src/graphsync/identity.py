"""Node <-> tracker item identity: the persisted mapping and its two-tier resolver."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

from rich.console import Console

from .errors import IdentityConflictError
from .tracker.base import TrackerClient

MAPPED = "mapped"
RECOVERED = "recovered"
ABSENT = "absent"


class IdentityMapping:
    """Bidirectional node id <-> item id association. Bindings are permanent."""

    def __init__(self, pairs: dict[str, str] | None = None) -> None:
        self._by_node: dict[str, str] = {}
        self._by_item: dict[str, str] = {}
        for node_id, item_id in (pairs or {}).items():
            self.bind(node_id, item_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._by_node

    def __len__(self) -> int:
        return len(self._by_node)

    def __iter__(self) -> Iterator[str]:
        return iter(self._by_node)

    def bind(self, node_id: str, item_id: str) -> bool:
        """Record node_id -> item_id. Returns False when already bound identically."""
        current = self._by_node.get(node_id)
        if current == item_id:
            return False
        if current is not None:
            raise IdentityConflictError(
                f"node {node_id} is already bound to item #{current}, refusing #{item_id}"
            )
        owner = self._by_item.get(item_id)
        if owner is not None:
            raise IdentityConflictError(
                f"item #{item_id} is already bound to node {owner}, refusing node {node_id}"
            )
        self._by_node[node_id] = item_id
        self._by_item[item_id] = node_id
        return True

    def item_for(self, node_id: str) -> str | None:
        return self._by_node.get(node_id)

    def node_for(self, item_id: str) -> str | None:
        return self._by_item.get(item_id)

    def items(self) -> list[tuple[str, str]]:
        return list(self._by_node.items())

    def copy(self) -> IdentityMapping:
        return IdentityMapping(self.to_dict())

    def to_dict(self) -> dict[str, str]:
        return dict(self._by_node)

    @classmethod
    def from_dict(cls, d: dict[str, str] | None) -> IdentityMapping:
        return cls({str(k): str(v) for k, v in (d or {}).items()})


@dataclass(frozen=True)
class Resolution:
    node_id: str
    item_id: str | None
    source: str

    @property
    def found(self) -> bool:
        return self.item_id is not None


class IdentityResolver:
    """Mapping first, then a tracker query for the node id in item metadata.

    Queries are scoped to one document: the same node id in two documents
    names two different items.

    One resolver lives for one run; answers are memoised so a node never
    resolves to two different items within that run.
    """

    def __init__(
        self,
        tracker: TrackerClient,
        mapping: IdentityMapping,
        *,
        document: str = "",
        console: Console | None = None,
    ) -> None:
        self.tracker = tracker
        self.mapping = mapping
        self.document = document
        self.console = console or Console(stderr=True)
        self._memo: dict[str, Resolution] = {}

    def resolve(self, node_id: str) -> Resolution:
        memo = self._memo.get(node_id)
        if memo is not None and memo.found:
            return memo

        item_id = self.mapping.item_for(node_id)
        if item_id is not None:
            return self._remember(Resolution(node_id, item_id, MAPPED))

        recovered = self.tracker.find_item_by_metadata_id(node_id, document=self.document)
        if recovered is not None:
            self.mapping.bind(node_id, recovered)
            self.console.print(
                f"  [yellow]recovered identity[/yellow] {node_id} -> #{recovered} "
                "[dim](missing from mapping)[/dim]"
            )
            return self._remember(Resolution(node_id, recovered, RECOVERED))

        return Resolution(node_id, None, ABSENT)

    def record(self, node_id: str, item_id: str) -> Resolution:
        self.mapping.bind(node_id, item_id)
        return self._remember(Resolution(node_id, item_id, MAPPED))

    def _remember(self, resolution: Resolution) -> Resolution:
        self._memo[resolution.node_id] = resolution
        return resolution
