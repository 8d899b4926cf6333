from __future__ import annotations

import copy
from typing import Any, Callable

import pytest
from rich.console import Console

from graphsync.graph import TaskGraph
from graphsync.tracker.local import LocalTracker


class RecordingTracker(LocalTracker):
    """In-memory tracker that records every mutating call."""

    def __init__(self, *, supports_hierarchy: bool = True) -> None:
        super().__init__(None, supports_hierarchy=supports_hierarchy)
        self.calls: list[tuple[str, tuple]] = []

    def create_item(self, title, body, labels):
        self.calls.append(("create_item", (title,)))
        return super().create_item(title, body, labels)

    def update_item(self, item_id, **fields):
        self.calls.append(("update_item", (item_id, tuple(sorted(k for k, v in fields.items() if v is not None)))))
        return super().update_item(item_id, **fields)

    def add_label(self, item_id, label):
        self.calls.append(("add_label", (item_id, label)))
        return super().add_label(item_id, label)

    def remove_label(self, item_id, label):
        self.calls.append(("remove_label", (item_id, label)))
        return super().remove_label(item_id, label)

    def comment(self, item_id, text):
        self.calls.append(("comment", (item_id,)))
        return super().comment(item_id, text)

    def add_sub_item(self, parent_id, child_id):
        self.calls.append(("add_sub_item", (parent_id, child_id)))
        return super().add_sub_item(parent_id, child_id)

    @property
    def mutations(self) -> int:
        return len(self.calls)

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def reset(self) -> None:
        self.calls.clear()


def _fill(spec: dict[str, Any]) -> dict[str, Any]:
    task = {
        "title": f"Task {spec['id']}",
        "description": f"Description of task {spec['id']}",
        "complexity": 20,
        "priority": "medium",
        "dependencies": [],
    }
    task.update(spec)
    if "subtasks" in task:
        task["subtasks"] = [_fill(sub) for sub in task["subtasks"]]
    return task


def producer_payload(tasks: list[dict[str, Any]], **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "version": "0.19.0",
        "metadata": {
            "prd_path": "docs/feature.prd.md",
            "generated_at": "2026-01-05T10:00:00Z",
            "complexity_threshold": 40,
            "max_depth": 3,
        },
        "tasks": [_fill(t) for t in tasks],
    }
    payload.update(extra)
    return payload


SAMPLE_TASKS = [
    {"id": "1", "title": "Set up project skeleton", "priority": "high", "complexity": 20},
    {
        "id": "2",
        "title": "Build REST API",
        "complexity": 55,
        "dependencies": ["1"],
        "subtasks": [
            {"id": "1", "title": "Design schema", "complexity": 30},
            {"id": "2", "title": "Implement endpoints", "complexity": 35, "dependencies": ["1"]},
        ],
    },
    {"id": "3", "title": "Build dashboard UI", "priority": "low", "complexity": 80, "dependencies": ["2"]},
]


@pytest.fixture
def console() -> Console:
    return Console(quiet=True)


@pytest.fixture
def tracker() -> RecordingTracker:
    return RecordingTracker()


@pytest.fixture
def make_payload() -> Callable[..., dict[str, Any]]:
    return producer_payload


@pytest.fixture
def make_graph() -> Callable[..., TaskGraph]:
    def _make(tasks: list[dict[str, Any]], **extra: Any) -> TaskGraph:
        return TaskGraph.from_producer(producer_payload(tasks, **extra))

    return _make


@pytest.fixture
def sample_tasks() -> list[dict[str, Any]]:
    return copy.deepcopy(SAMPLE_TASKS)


@pytest.fixture
def sample_graph(make_graph, sample_tasks) -> TaskGraph:
    return make_graph(sample_tasks)
