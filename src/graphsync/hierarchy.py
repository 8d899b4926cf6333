"""Parent/child links between tracker items: native sub-items or cross-references."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from rich.console import Console

from .body import has_related, with_related
from .config import HIERARCHY_STRATEGIES
from .errors import ConfigValidationError, FatalTrackerError, HierarchyUnsupportedError, TrackerError
from .graph import TaskGraph
from .identity import IdentityMapping
from .tracker.base import TrackerClient, item_ref

AUTO = "auto"
NATIVE = "native"
CROSS_REFERENCE = "cross-reference"


def sub_item_line(child_id: str) -> str:
    return f"- Sub-issue: {item_ref(child_id)}"


def parent_item_line(parent_id: str) -> str:
    return f"- Parent issue: {item_ref(parent_id)}"


class NativeLinkStrategy:
    name = NATIVE

    def __init__(self, tracker: TrackerClient) -> None:
        self.tracker = tracker
        self._children: dict[str, set[str]] = {}

    def _known(self, parent_id: str) -> set[str]:
        if parent_id not in self._children:
            self._children[parent_id] = set(self.tracker.list_sub_items(parent_id))
        return self._children[parent_id]

    def is_linked(self, parent_id: str, child_id: str) -> bool:
        return child_id in self._known(parent_id)

    def link(self, parent_id: str, child_id: str) -> bool:
        if self.is_linked(parent_id, child_id):
            return False
        self.tracker.add_sub_item(parent_id, child_id)
        self._children[parent_id].add(child_id)
        return True


class CrossReferenceLinkStrategy:
    """Writes reciprocal notes into the Related Items section of both bodies."""

    name = CROSS_REFERENCE

    def __init__(self, tracker: TrackerClient) -> None:
        self.tracker = tracker

    def is_linked(self, parent_id: str, child_id: str) -> bool:
        parent = self.tracker.get_item(parent_id)
        if not has_related(parent.body, sub_item_line(child_id)):
            return False
        child = self.tracker.get_item(child_id)
        return has_related(child.body, parent_item_line(parent_id))

    def link(self, parent_id: str, child_id: str) -> bool:
        wrote = False
        for item_id, line in ((parent_id, sub_item_line(child_id)), (child_id, parent_item_line(parent_id))):
            item = self.tracker.get_item(item_id)
            if has_related(item.body, line):
                continue
            self.tracker.update_item(item_id, body=with_related(item.body, line))
            wrote = True
        return wrote


@dataclass
class LinkResult:
    parent_id: str
    linked: list[str] = field(default_factory=list)
    already: list[str] = field(default_factory=list)
    fallback: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "parent_id": self.parent_id,
            "linked": list(self.linked),
            "already": list(self.already),
            "fallback": list(self.fallback),
            "failed": dict(self.failed),
        }


class HierarchyLinker:
    def __init__(
        self,
        tracker: TrackerClient,
        *,
        strategy: str = AUTO,
        console: Console | None = None,
    ) -> None:
        if strategy not in HIERARCHY_STRATEGIES:
            raise ConfigValidationError(
                f"hierarchy strategy must be one of: {', '.join(HIERARCHY_STRATEGIES)} (got {strategy!r})"
            )
        self.tracker = tracker
        self.mode = strategy
        self.console = console or Console(stderr=True)
        self.native = NativeLinkStrategy(tracker)
        self.cross = CrossReferenceLinkStrategy(tracker)
        self._native_ok = strategy != CROSS_REFERENCE and bool(getattr(tracker, "supports_hierarchy", False))

    @property
    def active_strategy(self) -> str:
        return NATIVE if self._native_ok else CROSS_REFERENCE

    def is_linked(self, parent_id: str, child_id: str) -> bool:
        if self._native_ok:
            try:
                if self.native.is_linked(parent_id, child_id):
                    return True
            except HierarchyUnsupportedError:
                pass
        return self.cross.is_linked(parent_id, child_id)

    def link(self, parent_id: str, child_ids: list[str]) -> LinkResult:
        result = LinkResult(parent_id)
        for child_id in child_ids:
            try:
                self._link_one(parent_id, child_id, result)
            except FatalTrackerError:
                raise
            except TrackerError as exc:
                result.failed[child_id] = str(exc)
                self.console.print(
                    f"  [red]link failed[/red] {item_ref(parent_id)} -> {item_ref(child_id)}: {exc}"
                )
        return result

    def link_graph(
        self,
        graph: TaskGraph,
        mapping: IdentityMapping,
        node_ids: Iterable[str] | None = None,
    ) -> list[LinkResult]:
        """Link every mapped parent (optionally only those in node_ids) to its mapped children."""
        wanted = set(node_ids) if node_ids is not None else None
        results: list[LinkResult] = []
        for node in graph:
            if not node.children or (wanted is not None and node.id not in wanted):
                continue
            parent_id = mapping.item_for(node.id)
            if parent_id is None:
                continue
            child_ids = [mapping.item_for(c) for c in node.children]
            mapped = [c for c in child_ids if c is not None]
            if mapped:
                results.append(self.link(parent_id, mapped))
        return results

    def _link_one(self, parent_id: str, child_id: str, result: LinkResult) -> None:
        if self.mode == NATIVE and not self._native_ok:
            raise HierarchyUnsupportedError("tracker has no native sub-items")
        tried_native = False
        if self._native_ok:
            tried_native = True
            try:
                wrote = self.native.link(parent_id, child_id)
            except HierarchyUnsupportedError as exc:
                if self.mode == NATIVE:
                    raise
                self._native_ok = False
                self.console.print(
                    f"  [yellow]native sub-items unavailable[/yellow] [dim]({exc})[/dim]; "
                    "using cross-references for the rest of this run"
                )
            except FatalTrackerError:
                raise
            except TrackerError as exc:
                if self.mode == NATIVE:
                    raise
                self.console.print(
                    f"  [yellow]native link {item_ref(parent_id)} -> {item_ref(child_id)} failed[/yellow] "
                    f"[dim]({exc})[/dim]; writing cross-references"
                )
            else:
                (result.linked if wrote else result.already).append(child_id)
                return

        wrote = self.cross.link(parent_id, child_id)
        (result.linked if wrote else result.already).append(child_id)
        if tried_native:
            result.fallback.append(child_id)
