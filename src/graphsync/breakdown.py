"""Manual breakdown: split one existing node into bounded subtasks."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from .errors import BreakdownError, GraphValidationError, ProducerError
from .graph import PRIORITIES, ExpansionRecord, TaskGraph, TaskNode, qualify_subtask_id, validate_graph
from .util import utc_now_iso


class SubtaskSource(Protocol):
    def expand_task(
        self,
        node_id: str,
        *,
        depth: int,
        complexity_threshold: int,
    ) -> list[dict[str, Any]]: ...


@dataclass
class BreakdownResult:
    node_id: str
    graph: TaskGraph
    added: list[str] = field(default_factory=list)
    record: ExpansionRecord | None = None
    noop: bool = False
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "added": list(self.added),
            "noop": self.noop,
            "record": self.record.to_dict() if self.record else None,
            "warnings": list(self.warnings),
        }


def _next_free_id(graph: TaskGraph, parent_id: str, taken: set[str]) -> str:
    n = 1
    while f"{parent_id}.{n}" in graph or f"{parent_id}.{n}" in taken:
        n += 1
    return f"{parent_id}.{n}"


def _child_nodes(
    graph: TaskGraph,
    parent: TaskNode,
    raw: list[dict[str, Any]],
    warnings: list[str],
) -> list[TaskNode]:
    taken: set[str] = set()
    ids: dict[str, str] = {}
    for idx, sub in enumerate(raw):
        if not isinstance(sub, dict):
            raise ProducerError(f"subtask {idx} of {parent.id} is not an object")
        if sub.get("id") in (None, ""):
            raise ProducerError(f"subtask {idx} of {parent.id} has no id")
        candidate = qualify_subtask_id(parent.id, sub["id"])
        if candidate in graph or candidate in taken:
            candidate = _next_free_id(graph, parent.id, taken)
        taken.add(candidate)
        ids[str(sub["id"]).strip()] = candidate

    nodes: list[TaskNode] = []
    for sub in raw:
        node_id = ids[str(sub["id"]).strip()]
        title = str(sub.get("title") or "").strip()
        if not title:
            raise ProducerError(f"subtask {node_id} has no title")
        complexity = sub.get("complexity", 0)
        if isinstance(complexity, bool) or not isinstance(complexity, int) or complexity < 0:
            raise ProducerError(f"subtask {node_id}: complexity must be a non-negative integer")
        priority = str(sub.get("priority") or parent.priority).strip().lower()
        if priority not in PRIORITIES:
            priority = parent.priority

        deps: list[str] = []
        for dep in sub.get("dependencies") or []:
            ref = ids.get(str(dep).strip(), str(dep).strip())
            if ref in taken or ref in graph or ref in graph.external:
                if ref not in deps and ref != node_id:
                    deps.append(ref)
            else:
                warnings.append(f"{node_id}: dropped unknown dependency {dep}")

        nodes.append(
            TaskNode(
                id=node_id,
                title=title,
                description=str(sub.get("description") or ""),
                complexity=complexity,
                priority=priority,
                dependencies=tuple(deps),
                parent=parent.id,
                details=str(sub.get("details") or ""),
                test_strategy=str(sub.get("test_strategy") or sub.get("testStrategy") or ""),
            )
        )
    return nodes


def expand(
    graph: TaskGraph,
    node_id: str,
    depth_limit: int,
    complexity_threshold: int,
    *,
    source: SubtaskSource,
    force: bool = False,
    clock: Callable[[], str] = utc_now_iso,
) -> BreakdownResult:
    """Expand `node_id` into subtasks, re-expanding oversized leaves up to `depth_limit`.

    Works on a copy; the input graph is left untouched. Calling again with the
    same arguments is a no-op. Different arguments on an expanded node need
    `force`.
    """
    if node_id not in graph:
        raise BreakdownError(f"unknown task: {node_id}")
    if depth_limit < 1:
        raise BreakdownError(f"depth must be at least 1 (got {depth_limit})")
    if not 1 <= complexity_threshold <= 100:
        raise BreakdownError(f"complexity threshold must be 1-100 (got {complexity_threshold})")

    previous = graph.expansions.get(node_id)
    if previous is not None and not force:
        if previous.depth == depth_limit and previous.threshold == complexity_threshold:
            return BreakdownResult(node_id, graph, record=previous, noop=True)
        raise BreakdownError(
            f"{node_id} was already expanded with depth={previous.depth}, "
            f"threshold={previous.threshold}; use force to expand it again"
        )

    work = graph.copy()
    result = BreakdownResult(node_id, work)

    def descend(parent: TaskNode, level: int, raw: list[dict[str, Any]] | None) -> None:
        if raw is None:
            raw = source.expand_task(
                parent.id,
                depth=depth_limit - level + 1,
                complexity_threshold=complexity_threshold,
            )
        if not raw:
            result.warnings.append(f"producer returned no subtasks for {parent.id}")
            return
        for sub, child in zip(raw, _child_nodes(work, parent, raw, result.warnings)):
            parent.children.append(child.id)
            work.add(child)
            result.added.append(child.id)
            nested = sub.get("subtasks")
            if level >= depth_limit:
                if nested:
                    result.warnings.append(f"{child.id}: ignored subtasks below depth {depth_limit}")
                continue
            if isinstance(nested, list) and nested:
                # expand-task already answered for this child
                descend(child, level + 1, nested)
            elif child.complexity > complexity_threshold:
                descend(child, level + 1, None)

    descend(work.node(node_id), 1, None)

    try:
        validate_graph(work)
    except GraphValidationError as exc:
        raise BreakdownError("expansion produced an invalid graph: " + "; ".join(exc.problems)) from exc

    children = tuple(previous.children if previous else ()) + tuple(result.added)
    result.record = ExpansionRecord(
        depth=depth_limit,
        threshold=complexity_threshold,
        children=children,
        expanded_at=clock(),
    )
    work.expansions[node_id] = result.record
    return result


def carry_expansions(previous: TaskGraph, graph: TaskGraph) -> list[str]:
    """Copy earlier breakdowns from `previous` into a freshly produced `graph`.

    Mutates `graph`: each recorded expansion gets its subtasks and record back
    under the same parent. Returns warnings for breakdowns that no longer fit.
    """
    warnings: list[str] = []
    for node_id, record in previous.expansions.items():
        if node_id in graph.expansions:
            continue
        target = graph.get(node_id)
        if target is None:
            warnings.append(f"{node_id}: task is gone; dropped its breakdown")
            continue
        if target.children:
            warnings.append(f"{node_id}: now has subtasks from the producer; dropped its breakdown")
            continue

        owned = set(record.children)
        carried = [previous.get(child_id) for child_id in record.children]
        clashes = [n.id for n in carried if n is not None and n.id in graph]
        if any(n is None for n in carried) or clashes:
            warnings.append(
                f"{node_id}: breakdown subtasks clash with the graph ({', '.join(clashes) or 'missing'}); dropped it"
            )
            continue

        for old in carried:
            assert old is not None
            deps: list[str] = []
            for dep in old.dependencies:
                if dep in owned or dep in graph or dep in graph.external:
                    deps.append(dep)
                else:
                    warnings.append(f"{old.id}: dropped dependency on removed task {dep}")
            child = TaskNode.from_dict(
                {
                    **old.to_dict(),
                    "dependencies": deps,
                    "children": [c for c in old.children if c in owned],
                }
            )
            graph.add(child)
            if child.parent == node_id:
                target.children.append(child.id)
        graph.expansions[node_id] = record
    return warnings
