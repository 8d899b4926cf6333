"""Reconciler: materialise graph nodes as tracker items, idempotently."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from rich.console import Console

from .body import metadata_node_id, node_fingerprint, parse_body, render_body
from .config import LabelConfig
from .errors import (
    FatalTrackerError,
    IdentityConflictError,
    ItemNotFoundError,
    TrackerError,
    TrackerUnreachableError,
    TransientTrackerError,
)
from .graph import TaskGraph, TaskNode, validate_graph
from .identity import IdentityMapping, IdentityResolver
from .tracker.base import CLOSED, TrackerClient, TrackerItem, item_ref
from .util import utc_now_iso

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"
SKIPPED = "skipped"
FAILED = "failed"
AMBIGUOUS = "ambiguous"
OUTCOME_STATUSES = (CREATED, UPDATED, UNCHANGED, SKIPPED, FAILED, AMBIGUOUS)


@dataclass
class NodeOutcome:
    node_id: str
    status: str
    item_id: str | None = None
    error: str = ""
    note: str = ""
    unreachable: bool = field(default=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "status": self.status,
            "item_id": self.item_id,
            "error": self.error,
            "note": self.note,
        }


@dataclass
class ReconcileSummary:
    outcomes: list[NodeOutcome] = field(default_factory=list)

    def add(self, outcome: NodeOutcome) -> None:
        self.outcomes.append(outcome)

    def ids(self, status: str) -> list[str]:
        return [o.node_id for o in self.outcomes if o.status == status]

    @property
    def created(self) -> list[str]:
        return self.ids(CREATED)

    @property
    def updated(self) -> list[str]:
        return self.ids(UPDATED)

    @property
    def failed(self) -> list[str]:
        return self.ids(FAILED)

    @property
    def ambiguous(self) -> list[str]:
        return self.ids(AMBIGUOUS)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.ambiguous

    def counts(self) -> dict[str, int]:
        return {status: len(self.ids(status)) for status in OUTCOME_STATUSES}

    def to_dict(self) -> dict[str, Any]:
        return {
            "counts": self.counts(),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


NodeCallback = Callable[[NodeOutcome], None]


def desired_labels(node: TaskNode, labels: LabelConfig) -> set[str]:
    """Structural labels for a node; the blocked label is not included."""
    return {
        labels.task,
        labels.priority(node.priority),
        labels.leaf if node.is_leaf else labels.parent,
    }


def _metadata_matches(meta: dict[str, Any] | None, node: TaskNode, document: str) -> bool:
    if not meta:
        return False
    deps = {str(x) for x in meta.get("dependencies") or []}
    parent = meta.get("parent")
    return (
        str(meta.get("id")) == node.id
        and str(meta.get("document") or "") == document
        and meta.get("fingerprint") == node_fingerprint(node)
        and meta.get("complexity") == node.complexity
        and deps == set(node.dependencies)
        and (str(parent) if parent is not None else None) == node.parent
    )


class Reconciler:
    def __init__(
        self,
        tracker: TrackerClient,
        *,
        labels: LabelConfig | None = None,
        console: Console | None = None,
        unreachable_limit: int = 3,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.tracker = tracker
        self.labels = labels or LabelConfig()
        self.console = console or Console(stderr=True)
        self.unreachable_limit = unreachable_limit
        self.clock = clock

    def reconcile(
        self,
        graph: TaskGraph,
        mapping: IdentityMapping,
        *,
        only: Iterable[str] | None = None,
        processed: Iterable[str] | None = None,
        on_node: NodeCallback | None = None,
    ) -> ReconcileSummary:
        """Create or update one tracker item per node, in graph order.

        The graph is validated before the first tracker call; a structural
        problem raises GraphValidationError with nothing written. Node-level
        failures are recorded and the run moves on. Fatal tracker errors
        propagate.
        """
        validate_graph(graph)

        resolver = IdentityResolver(self.tracker, mapping, document=graph.document, console=self.console)
        scope = set(only) if only is not None else None
        done = set(processed or ())
        summary = ReconcileSummary()
        unreachable_streak = 0
        reached = False

        for node in graph:
            if scope is not None and node.id not in scope:
                continue
            if node.id in done:
                summary.add(NodeOutcome(node.id, SKIPPED, mapping.item_for(node.id), note="already processed"))
                continue

            outcome = self._reconcile_node(node, resolver)
            self._report(outcome)
            summary.add(outcome)

            if outcome.status == FAILED and outcome.unreachable:
                unreachable_streak += 1
            else:
                reached = True
                unreachable_streak = 0

            if on_node is not None:
                on_node(outcome)

            if not reached and unreachable_streak >= self.unreachable_limit:
                raise TrackerUnreachableError(
                    f"tracker unreachable: first {unreachable_streak} node(s) all failed to connect"
                )

        return summary

    # -- per node -----------------------------------------------------------

    def _reconcile_node(self, node: TaskNode, resolver: IdentityResolver) -> NodeOutcome:
        try:
            resolution = resolver.resolve(node.id)
            if resolution.found:
                assert resolution.item_id is not None
                return self._update(node, resolution.item_id, resolver.document)
            return self._create(node, resolver)
        except FatalTrackerError:
            raise
        except TransientTrackerError as exc:
            return NodeOutcome(node.id, FAILED, error=str(exc), unreachable=exc.unreachable)
        except IdentityConflictError as exc:
            return NodeOutcome(node.id, AMBIGUOUS, error=str(exc))
        except ItemNotFoundError as exc:
            return NodeOutcome(
                node.id,
                FAILED,
                item_id=exc.item_id,
                error=f"mapped item {item_ref(exc.item_id)} no longer exists",
            )
        except TrackerError as exc:
            return NodeOutcome(node.id, FAILED, error=str(exc))

    def _create(self, node: TaskNode, resolver: IdentityResolver) -> NodeOutcome:
        foreign = [
            item for item in self.tracker.find_items_by_title(node.title)
            if metadata_node_id(item.body) is None
        ]
        if foreign:
            refs = ", ".join(item_ref(item.id) for item in foreign)
            return NodeOutcome(
                node.id,
                AMBIGUOUS,
                error=f"item(s) {refs} share the title {node.title!r} but carry no task metadata",
            )

        document = resolver.document
        body = render_body(node, document=document, generated_at=self.clock())
        labels = desired_labels(node, self.labels)
        if node.dependencies:
            labels.add(self.labels.blocked)
        item_id = self.tracker.create_item(node.title, body, sorted(labels))

        canonical = self.tracker.find_item_by_metadata_id(node.id, document=document, refresh=True)
        if canonical is None or canonical == item_id:
            resolver.record(node.id, item_id)
            return NodeOutcome(node.id, CREATED, item_id)

        # Another run created an item for this node first; the oldest item wins.
        self.tracker.comment(
            item_id,
            f"Duplicate of {item_ref(canonical)}: created concurrently for task {node.id}.",
        )
        self.tracker.update_item(item_id, state=CLOSED)
        resolver.record(node.id, canonical)
        adopted = self._update(node, canonical, document)
        adopted.note = f"adopted {item_ref(canonical)}, closed duplicate {item_ref(item_id)}"
        return adopted

    def _update(self, node: TaskNode, item_id: str, document: str) -> NodeOutcome:
        item = self.tracker.get_item(item_id)
        parsed = parse_body(item.body)
        if parsed.key is not None and parsed.key != (document, node.id):
            owner = f"{parsed.document}#{parsed.node_id}" if parsed.document else parsed.node_id
            wanted = f"{document}#{node.id}" if document else node.id
            raise IdentityConflictError(
                f"item {item_ref(item_id)} carries metadata for task {owner}, not {wanted}"
            )

        changes: dict[str, Any] = {}
        if item.title != node.title:
            changes["title"] = node.title
        if not _metadata_matches(parsed.metadata, node, document):
            changes["body"] = render_body(
                node, document=document, generated_at=self.clock(), related=parsed.related
            )
        new_labels = self._merged_labels(node, item)
        if new_labels is not None:
            changes["labels"] = new_labels

        if not changes:
            return NodeOutcome(node.id, UNCHANGED, item_id)
        self.tracker.update_item(item_id, **changes)
        return NodeOutcome(node.id, UPDATED, item_id, note="changed: " + ", ".join(sorted(changes)))

    def _merged_labels(self, node: TaskNode, item: TrackerItem) -> list[str] | None:
        want = desired_labels(node, self.labels)
        have = {label for label in item.labels if self.labels.is_structural(label)}
        if want == have:
            return None
        return sorted((set(item.labels) - have) | want)

    def _report(self, outcome: NodeOutcome) -> None:
        ref = item_ref(outcome.item_id) if outcome.item_id else "-"
        if outcome.status == CREATED:
            self.console.print(f"  [green]created[/green] {outcome.node_id} -> {ref}")
        elif outcome.status == UPDATED:
            self.console.print(f"  [cyan]updated[/cyan] {outcome.node_id} -> {ref} [dim]{outcome.note}[/dim]")
        elif outcome.status == UNCHANGED:
            self.console.print(f"  [dim]unchanged {outcome.node_id} -> {ref} {outcome.note}[/dim]")
        elif outcome.status == AMBIGUOUS:
            self.console.print(f"  [yellow]ambiguous[/yellow] {outcome.node_id}: {outcome.error}")
        elif outcome.status == FAILED:
            self.console.print(f"  [red]failed[/red] {outcome.node_id}: {outcome.error}")
