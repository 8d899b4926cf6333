"""Task graph model: nodes, metadata, producer payload loading and validation."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Iterator

from .errors import GraphValidationError
from .util import sha256_file, sha256_text

PRIORITIES = ("high", "medium", "low")
METADATA_FIELDS = ("prd_path", "generated_at", "complexity_threshold", "max_depth")
REQUIRED_TASK_FIELDS = ("id", "title", "complexity", "priority")


@dataclass
class TaskNode:
    id: str
    title: str
    description: str = ""
    complexity: int = 0
    priority: str = "medium"
    dependencies: tuple[str, ...] = ()
    parent: str | None = None
    children: list[str] = field(default_factory=list)
    details: str = ""
    test_strategy: str = ""

    @property
    def is_leaf(self) -> bool:
        return not self.children

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "complexity": self.complexity,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "parent": self.parent,
            "children": list(self.children),
            "details": self.details,
            "test_strategy": self.test_strategy,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TaskNode:
        return cls(
            id=str(d["id"]),
            title=str(d.get("title") or ""),
            description=str(d.get("description") or ""),
            complexity=d.get("complexity", 0),
            priority=str(d.get("priority") or "medium"),
            dependencies=_dedupe(str(x) for x in d.get("dependencies") or []),
            parent=str(d["parent"]) if d.get("parent") is not None else None,
            children=[str(x) for x in d.get("children") or []],
            details=str(d.get("details") or ""),
            test_strategy=str(d.get("test_strategy") or ""),
        )


@dataclass
class GraphMetadata:
    prd_path: str = ""
    generated_at: str = ""
    content_hash: str = ""
    complexity_threshold: int = 40
    max_depth: int = 3

    @property
    def document(self) -> str:
        return document_key(self.prd_path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "prd_path": self.prd_path,
            "generated_at": self.generated_at,
            "content_hash": self.content_hash,
            "complexity_threshold": self.complexity_threshold,
            "max_depth": self.max_depth,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> GraphMetadata:
        return cls(
            prd_path=str(d.get("prd_path") or ""),
            generated_at=str(d.get("generated_at") or ""),
            content_hash=str(d.get("content_hash") or ""),
            complexity_threshold=int(d.get("complexity_threshold") or 40),
            max_depth=int(d.get("max_depth") or 3),
        )


@dataclass(frozen=True)
class ExpansionRecord:
    depth: int
    threshold: int
    children: tuple[str, ...]
    expanded_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "depth": self.depth,
            "threshold": self.threshold,
            "children": list(self.children),
            "expanded_at": self.expanded_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ExpansionRecord:
        return cls(
            depth=int(d["depth"]),
            threshold=int(d["threshold"]),
            children=tuple(str(x) for x in d.get("children") or []),
            expanded_at=str(d.get("expanded_at") or ""),
        )


class TaskGraph:
    """Ordered collection of task nodes. Insertion order is processing order."""

    def __init__(
        self,
        nodes: list[TaskNode] | None = None,
        *,
        version: str = "",
        metadata: GraphMetadata | None = None,
        external: set[str] | None = None,
        expansions: dict[str, ExpansionRecord] | None = None,
    ) -> None:
        self.version = version
        self.metadata = metadata or GraphMetadata()
        self.external: set[str] = set(external or ())
        self.expansions: dict[str, ExpansionRecord] = dict(expansions or {})
        self.warnings: list[str] = []
        self._nodes: list[TaskNode] = []
        self._index: dict[str, TaskNode] = {}
        for node in nodes or []:
            self.add(node)

    def __iter__(self) -> Iterator[TaskNode]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._index

    def add(self, node: TaskNode) -> None:
        self._nodes.append(node)
        self._index.setdefault(node.id, node)

    def get(self, node_id: str) -> TaskNode | None:
        return self._index.get(node_id)

    def node(self, node_id: str) -> TaskNode:
        found = self._index.get(node_id)
        if found is None:
            raise KeyError(node_id)
        return found

    def ids(self) -> list[str]:
        return [n.id for n in self._nodes]

    def dependents(self, node_id: str) -> list[TaskNode]:
        return [n for n in self._nodes if node_id in n.dependencies]

    def copy(self) -> TaskGraph:
        clone = TaskGraph.from_dict(self.to_dict())
        clone.warnings = list(self.warnings)
        return clone

    @property
    def document(self) -> str:
        """Identity namespace of this graph: its normalised source document path."""
        return self.metadata.document

    # -- serialization ------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "metadata": self.metadata.to_dict(),
            "external": sorted(self.external),
            "expansions": {k: v.to_dict() for k, v in self.expansions.items()},
            "nodes": [n.to_dict() for n in self._nodes],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TaskGraph:
        return cls(
            [TaskNode.from_dict(n) for n in d.get("nodes") or []],
            version=str(d.get("version") or ""),
            metadata=GraphMetadata.from_dict(d.get("metadata") or {}),
            external={str(x) for x in d.get("external") or []},
            expansions={
                str(k): ExpansionRecord.from_dict(v)
                for k, v in (d.get("expansions") or {}).items()
            },
        )

    @classmethod
    def from_producer(
        cls,
        payload: Any,
        *,
        base_dir: Path | None = None,
    ) -> TaskGraph:
        """Build a graph from graph-producer output, flattening nested subtasks."""
        problems: list[str] = []
        if not isinstance(payload, dict):
            raise GraphValidationError(["task graph must be a JSON object"])
        if not payload.get("version"):
            problems.append("missing required field: version")
        tasks = payload.get("tasks")
        if not isinstance(tasks, list):
            problems.append("'tasks' must be an array")
            raise GraphValidationError(problems)

        raw_meta = payload.get("metadata")
        raw_meta = raw_meta if isinstance(raw_meta, dict) else {}
        warnings = [
            f"missing metadata field: {name}"
            for name in METADATA_FIELDS
            if raw_meta.get(name) in (None, "")
        ]

        nodes: list[TaskNode] = []
        for idx, task in enumerate(tasks):
            _flatten_task(task, f"tasks[{idx}]", None, None, nodes, problems)
        if problems:
            raise GraphValidationError(problems)

        metadata = GraphMetadata(
            prd_path=str(raw_meta.get("prd_path") or ""),
            generated_at=str(raw_meta.get("generated_at") or ""),
            complexity_threshold=_as_int(raw_meta.get("complexity_threshold"), 40),
            max_depth=_as_int(raw_meta.get("max_depth"), 3),
        )
        metadata.content_hash = _content_hash(metadata.prd_path, tasks, base_dir)

        graph = cls(
            nodes,
            version=str(payload.get("version")),
            metadata=metadata,
            external={str(x) for x in payload.get("external") or []},
        )
        graph.warnings = warnings
        return graph


def document_key(prd_path: str) -> str:
    text = (prd_path or "").strip().replace("\\", "/")
    if not text:
        return ""
    return PurePosixPath(text).as_posix().removeprefix("./")


def _dedupe(values: Any) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for value in values:
        text = str(value).strip()
        if text:
            seen.setdefault(text, None)
    return tuple(seen)


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def qualify_subtask_id(parent_id: str, raw: Any) -> str:
    text = str(raw).strip()
    if text.startswith(f"{parent_id}."):
        return text
    return f"{parent_id}.{text}"


def _flatten_task(
    task: Any,
    where: str,
    parent_id: str | None,
    sibling_ids: dict[str, str] | None,
    out: list[TaskNode],
    problems: list[str],
) -> str | None:
    if not isinstance(task, dict):
        problems.append(f"{where}: task must be an object")
        return None
    missing = [
        name for name in REQUIRED_TASK_FIELDS if task.get(name) in (None, "")
    ]
    if missing:
        problems.append(f"{where}: missing required field(s): {', '.join(missing)}")
        return None

    complexity = task.get("complexity")
    if isinstance(complexity, bool) or not isinstance(complexity, int) or complexity < 0:
        problems.append(
            f"{where}: complexity must be a non-negative integer, got: {complexity!r}"
        )
        return None
    priority = str(task.get("priority")).strip().lower()
    if priority not in PRIORITIES:
        problems.append(f"{where}: priority must be high/medium/low, got: {priority}")
        return None

    raw_id = str(task["id"]).strip()
    node_id = qualify_subtask_id(parent_id, raw_id) if parent_id else raw_id

    deps_raw = task.get("dependencies") or []
    if not isinstance(deps_raw, list):
        problems.append(f"{where}: dependencies must be an array")
        return None
    if sibling_ids:
        deps = _dedupe(sibling_ids.get(str(d).strip(), d) for d in deps_raw)
    else:
        deps = _dedupe(deps_raw)

    node = TaskNode(
        id=node_id,
        title=str(task["title"]).strip(),
        description=str(task.get("description") or ""),
        complexity=complexity,
        priority=priority,
        dependencies=deps,
        parent=parent_id,
        details=str(task.get("details") or ""),
        test_strategy=str(task.get("test_strategy") or task.get("testStrategy") or ""),
    )
    out.append(node)

    subtasks = task.get("subtasks") or []
    if not isinstance(subtasks, list):
        problems.append(f"{where}: subtasks must be an array")
        return node_id
    siblings = {
        str(s["id"]).strip(): qualify_subtask_id(node_id, s["id"])
        for s in subtasks
        if isinstance(s, dict) and s.get("id") not in (None, "")
    }
    for idx, sub in enumerate(subtasks):
        child_id = _flatten_task(
            sub, f"{where}.subtasks[{idx}]", node_id, siblings, out, problems
        )
        if child_id is not None:
            node.children.append(child_id)
    return node_id


def _content_hash(prd_path: str, tasks: list[Any], base_dir: Path | None) -> str:
    if prd_path:
        candidates = [Path(prd_path)]
        if base_dir is not None:
            candidates.append(base_dir / prd_path)
        for candidate in candidates:
            if candidate.is_file():
                return sha256_file(candidate)
    return sha256_text(json.dumps(tasks, sort_keys=True, separators=(",", ":")))


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def find_cycle(graph: TaskGraph) -> list[str] | None:
    """Return one dependency cycle as a closed path (A, B, ..., A), or None."""
    white, grey, black = 0, 1, 2
    color = {n.id: white for n in graph}

    for start in graph.ids():
        if color[start] != white:
            continue
        path: list[str] = [start]
        stack: list[Iterator[str]] = [iter(graph.node(start).dependencies)]
        color[start] = grey
        while stack:
            advanced = False
            for dep in stack[-1]:
                if dep not in color:
                    continue
                if color[dep] == grey:
                    return path[path.index(dep) :] + [dep]
                if color[dep] == white:
                    color[dep] = grey
                    path.append(dep)
                    stack.append(iter(graph.node(dep).dependencies))
                    advanced = True
                    break
            if not advanced:
                color[path.pop()] = black
                stack.pop()
    return None


def validate_graph(graph: TaskGraph) -> None:
    """Raise GraphValidationError listing every structural problem found."""
    problems: list[str] = []
    seen: set[str] = set()

    def resolves(ref: str) -> bool:
        return ref in graph or ref in graph.external

    for node in graph:
        if not node.id:
            problems.append("node with empty id")
            continue
        if node.id in seen:
            problems.append(f"duplicate node id: {node.id}")
            continue
        seen.add(node.id)

        if not node.title.strip():
            problems.append(f"{node.id}: empty title")
        if (
            isinstance(node.complexity, bool)
            or not isinstance(node.complexity, int)
            or node.complexity < 0
        ):
            problems.append(f"{node.id}: complexity must be a non-negative integer")
        if node.priority not in PRIORITIES:
            problems.append(f"{node.id}: invalid priority {node.priority!r}")

        for dep in node.dependencies:
            if dep == node.id:
                problems.append(f"{node.id}: depends on itself")
            elif not resolves(dep):
                problems.append(f"{node.id}: unresolved dependency {dep}")

        if node.parent is not None:
            if not resolves(node.parent):
                problems.append(f"{node.id}: unresolved parent {node.parent}")
            elif node.parent in graph:
                count = graph.node(node.parent).children.count(node.id)
                if count != 1:
                    problems.append(
                        f"{node.id}: parent {node.parent} lists it {count} times"
                    )

        for child_id in node.children:
            if not resolves(child_id):
                problems.append(f"{node.id}: unresolved child {child_id}")
            elif child_id in graph and graph.node(child_id).parent != node.id:
                problems.append(
                    f"{node.id}: child {child_id} names a different parent"
                )

    if not any(p.startswith("duplicate node id") for p in problems):
        cycle = find_cycle(graph)
        if cycle:
            problems.append("dependency cycle: " + " -> ".join(cycle))

    if problems:
        raise GraphValidationError(problems)


def load_graph(path: Path) -> TaskGraph:
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise GraphValidationError([f"task graph file not found: {path}"]) from None
    except json.JSONDecodeError as exc:
        raise GraphValidationError([f"invalid JSON in {path}: {exc}"]) from exc
    return TaskGraph.from_producer(payload, base_dir=Path(path).resolve().parent)


def graph_summary(graph: TaskGraph) -> dict[str, Any]:
    nodes = list(graph)
    return {
        "version": graph.version,
        "total_tasks": len(nodes),
        "complexity_distribution": {
            "high": sum(1 for n in nodes if n.complexity > 70),
            "medium": sum(1 for n in nodes if 30 < n.complexity <= 70),
            "low": sum(1 for n in nodes if n.complexity <= 30),
        },
        "priority_distribution": {
            p: sum(1 for n in nodes if n.priority == p) for p in PRIORITIES
        },
        "expanded": sorted(graph.expansions),
    }
