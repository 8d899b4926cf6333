"""Dependency state machine: keeps the blocked label in step with dependency items."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from rich.console import Console

from .config import LabelConfig
from .errors import FatalTrackerError, ItemNotFoundError, TrackerError
from .graph import TaskGraph, TaskNode
from .identity import IdentityMapping
from .tracker.base import CLOSED, TrackerClient, item_ref

UNBLOCKED = "unblocked"
BLOCKED = "blocked"


@dataclass(frozen=True)
class Evaluation:
    node_id: str
    state: str
    open_dependencies: tuple[str, ...] = ()
    unresolved: tuple[str, ...] = ()

    @property
    def blocked(self) -> bool:
        return self.state == BLOCKED


def evaluate(node: TaskNode, mapping: IdentityMapping, states: Mapping[str, str]) -> Evaluation:
    """Blocked iff any dependency item is open or cannot be resolved.

    `states` maps item id -> item state; an item missing from it is treated
    as unresolved.
    """
    open_deps: list[str] = []
    unresolved: list[str] = []
    for dep in node.dependencies:
        item_id = mapping.item_for(dep)
        if item_id is None or item_id not in states:
            unresolved.append(dep)
        elif states[item_id] != CLOSED:
            open_deps.append(dep)
    state = BLOCKED if open_deps or unresolved else UNBLOCKED
    return Evaluation(node.id, state, tuple(open_deps), tuple(unresolved))


@dataclass
class SweepResult:
    evaluations: list[Evaluation] = field(default_factory=list)
    labelled: list[str] = field(default_factory=list)
    unlabelled: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    unmapped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def mutations(self) -> int:
        return len(self.labelled) + len(self.unlabelled)

    def extend(self, other: SweepResult) -> None:
        self.evaluations.extend(other.evaluations)
        self.labelled.extend(other.labelled)
        self.unlabelled.extend(other.unlabelled)
        self.unchanged.extend(other.unchanged)
        self.unmapped.extend(other.unmapped)
        self.failed.update(other.failed)
        self.warnings.extend(other.warnings)

    def state_of(self, node_id: str) -> str | None:
        for ev in self.evaluations:
            if ev.node_id == node_id:
                return ev.state
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "blocked": [ev.node_id for ev in self.evaluations if ev.blocked],
            "unblocked": [ev.node_id for ev in self.evaluations if not ev.blocked],
            "labelled": list(self.labelled),
            "unlabelled": list(self.unlabelled),
            "unchanged": list(self.unchanged),
            "unmapped": list(self.unmapped),
            "failed": dict(self.failed),
            "warnings": list(self.warnings),
        }


class DependencyStateMachine:
    def __init__(
        self,
        tracker: TrackerClient,
        *,
        labels: LabelConfig | None = None,
        console: Console | None = None,
    ) -> None:
        self.tracker = tracker
        self.labels = labels or LabelConfig()
        self.console = console or Console(stderr=True)

    def sweep(
        self,
        graph: TaskGraph,
        mapping: IdentityMapping,
        node_ids: Iterable[str] | None = None,
    ) -> SweepResult:
        """Evaluate nodes and set the blocked label to match. Re-running is a no-op."""
        wanted = set(node_ids) if node_ids is not None else None
        targets = [n for n in graph if wanted is None or n.id in wanted]
        result = SweepResult()
        states = self._prefetch(targets, mapping, result)

        for node in targets:
            item_id = mapping.item_for(node.id)
            if item_id is None:
                result.unmapped.append(node.id)
                continue
            ev = evaluate(node, mapping, states)
            result.evaluations.append(ev)
            for dep in ev.unresolved:
                result.warnings.append(f"{node.id}: dependency {dep} is unresolved; keeping it blocked")
            try:
                self._apply(node.id, item_id, ev, result)
            except FatalTrackerError:
                raise
            except TrackerError as exc:
                result.failed[node.id] = str(exc)
                self.console.print(f"  [red]blocked-label update failed[/red] {node.id}: {exc}")

        for warning in result.warnings:
            self.console.print(f"  [yellow]warning[/yellow] {warning}")
        return result

    def on_item_closed(self, item_id: str, graph: TaskGraph, mapping: IdentityMapping) -> SweepResult:
        return self._dependents_of(item_id, graph, mapping)

    def on_item_reopened(self, item_id: str, graph: TaskGraph, mapping: IdentityMapping) -> SweepResult:
        return self._dependents_of(item_id, graph, mapping)

    # -- internals ----------------------------------------------------------

    def _dependents_of(self, item_id: str, graph: TaskGraph, mapping: IdentityMapping) -> SweepResult:
        node_id = mapping.node_for(str(item_id))
        if node_id is None:
            return SweepResult()
        dependents = [n.id for n in graph.dependents(node_id)]
        if not dependents:
            return SweepResult()
        return self.sweep(graph, mapping, dependents)

    def _prefetch(
        self,
        targets: list[TaskNode],
        mapping: IdentityMapping,
        result: SweepResult,
    ) -> dict[str, str]:
        states: dict[str, str] = {}
        for node in targets:
            for dep in node.dependencies:
                item_id = mapping.item_for(dep)
                if item_id is None or item_id in states:
                    continue
                try:
                    states[item_id] = self.tracker.get_item_state(item_id)
                except ItemNotFoundError:
                    result.warnings.append(f"dependency {dep} maps to {item_ref(item_id)}, which no longer exists")
                except FatalTrackerError:
                    raise
                except TrackerError as exc:
                    result.warnings.append(f"dependency {dep}: state of {item_ref(item_id)} unavailable ({exc})")
        return states

    def _apply(self, node_id: str, item_id: str, ev: Evaluation, result: SweepResult) -> None:
        item = self.tracker.get_item(item_id)
        labelled = self.labels.blocked in item.labels
        if ev.blocked and not labelled:
            self.tracker.add_label(item_id, self.labels.blocked)
            result.labelled.append(node_id)
            self.console.print(f"  [yellow]blocked[/yellow] {node_id} {item_ref(item_id)}")
        elif not ev.blocked and labelled:
            self.tracker.remove_label(item_id, self.labels.blocked)
            result.unlabelled.append(node_id)
            self.console.print(f"  [green]unblocked[/green] {node_id} {item_ref(item_id)}")
        else:
            result.unchanged.append(node_id)
