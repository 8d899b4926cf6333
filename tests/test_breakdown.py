from __future__ import annotations

import pytest

from graphsync.breakdown import carry_expansions, expand
from graphsync.errors import BreakdownError, ProducerError
from graphsync.graph import validate_graph


class ScriptedProducer:
    """Answers expand-task from a dict of node id -> subtasks."""

    def __init__(self, answers):
        self.answers = answers
        self.calls = []

    def expand_task(self, node_id, *, depth, complexity_threshold):
        self.calls.append((node_id, depth, complexity_threshold))
        return [dict(s) for s in self.answers.get(node_id, [])]


@pytest.fixture
def graph(make_graph):
    return make_graph([
        {"id": "1", "title": "Auth service", "complexity": 50, "priority": "high"},
        {"id": "2", "dependencies": ["1"]},
    ])


def test_depth_one_bounds_children(graph) -> None:
    producer = ScriptedProducer({
        "1": [
            {"id": 1, "title": "Token issuing", "complexity": 25},
            {"id": 2, "title": "Token refresh", "complexity": 45, "dependencies": [1]},
        ],
        "1.2": [{"id": 1, "title": "never asked", "complexity": 5}],
    })

    result = expand(graph, "1", 1, 30, source=producer)

    assert result.added == ["1.1", "1.2"]
    assert producer.calls == [("1", 1, 30)]
    new = result.graph
    for child_id in result.added:
        child = new.node(child_id)
        assert child.parent == "1"
        assert child.priority == "high"
    assert new.node("1").children == ["1.1", "1.2"]
    assert new.node("1.2").dependencies == ("1.1",)
    assert new.expansions["1"].children == ("1.1", "1.2")
    assert "1.1" not in graph
    validate_graph(new)


def test_oversized_children_are_expanded_again_until_the_limit(graph) -> None:
    producer = ScriptedProducer({
        "1": [{"id": 1, "title": "Big piece", "complexity": 45}, {"id": 2, "title": "Small", "complexity": 10}],
        "1.1": [{"id": 1, "title": "Half A", "complexity": 20}, {"id": 2, "title": "Half B", "complexity": 25}],
    })

    result = expand(graph, "1", 2, 30, source=producer)

    assert result.added == ["1.1", "1.1.1", "1.1.2", "1.2"]
    assert producer.calls == [("1", 2, 30), ("1.1", 1, 30)]
    assert result.graph.node("1.1").children == ["1.1.1", "1.1.2"]
    for node_id in result.added:
        node = result.graph.node(node_id)
        depth = node_id.count(".")
        assert node.complexity <= 30 or depth == 2 or node.children


def test_same_arguments_twice_is_a_noop(graph) -> None:
    producer = ScriptedProducer({"1": [{"id": 1, "title": "Only child", "complexity": 10}]})
    first = expand(graph, "1", 1, 30, source=producer)

    second = expand(first.graph, "1", 1, 30, source=producer)

    assert second.noop
    assert second.added == []
    assert len(producer.calls) == 1
    assert second.graph.node("1").children == ["1.1"]


def test_different_arguments_need_force(graph) -> None:
    producer = ScriptedProducer({"1": [{"id": 1, "title": "Only child", "complexity": 10}]})
    first = expand(graph, "1", 1, 30, source=producer)

    with pytest.raises(BreakdownError, match="already expanded"):
        expand(first.graph, "1", 2, 20, source=producer)

    forced = expand(first.graph, "1", 2, 20, source=producer, force=True)
    assert forced.added == ["1.2"]
    assert forced.graph.node("1").children == ["1.1", "1.2"]
    assert forced.record.children == ("1.1", "1.2")
    assert forced.record.depth == 2


def test_argument_and_node_checks(graph) -> None:
    producer = ScriptedProducer({})
    with pytest.raises(BreakdownError, match="unknown task"):
        expand(graph, "9", 1, 30, source=producer)
    with pytest.raises(BreakdownError):
        expand(graph, "1", 0, 30, source=producer)
    with pytest.raises(BreakdownError):
        expand(graph, "1", 1, 0, source=producer)


def test_malformed_subtasks_are_producer_errors(graph) -> None:
    producer = ScriptedProducer({"1": [{"id": 1, "complexity": 10}]})
    with pytest.raises(ProducerError, match="no title"):
        expand(graph, "1", 1, 30, source=producer)


def test_empty_answer_is_a_warning(graph) -> None:
    result = expand(graph, "1", 1, 30, source=ScriptedProducer({}))

    assert result.added == []
    assert result.warnings == ["producer returned no subtasks for 1"]


def test_nested_answers_are_used_without_asking_again(graph) -> None:
    producer = ScriptedProducer({
        "1": [
            {
                "id": 1,
                "title": "Big piece",
                "complexity": 45,
                "subtasks": [
                    {"id": 1, "title": "Half A", "complexity": 20},
                    {"id": 2, "title": "Half B", "complexity": 25, "dependencies": [1]},
                ],
            },
            {"id": 2, "title": "Small", "complexity": 10},
        ],
    })

    result = expand(graph, "1", 2, 30, source=producer)

    assert result.added == ["1.1", "1.1.1", "1.1.2", "1.2"]
    assert producer.calls == [("1", 2, 30)]
    assert result.graph.node("1.1").children == ["1.1.1", "1.1.2"]
    assert result.graph.node("1.1.2").dependencies == ("1.1.1",)

    shallow = expand(graph, "1", 1, 30, source=producer)
    assert shallow.added == ["1.1", "1.2"]
    assert shallow.warnings == ["1.1: ignored subtasks below depth 1"]


TASKS = [
    {"id": "1", "title": "Auth service", "complexity": 50},
    {"id": "2", "dependencies": ["1"]},
    {"id": "3", "title": "Audit log"},
]


def test_carry_expansions_restores_an_earlier_breakdown(make_graph) -> None:
    producer = ScriptedProducer({
        "1": [
            {"id": 1, "title": "Token issuing", "complexity": 25},
            {"id": 2, "title": "Token refresh", "complexity": 25, "dependencies": [1]},
        ],
    })
    expanded = expand(make_graph(TASKS), "1", 1, 30, source=producer)
    fresh = make_graph(TASKS)

    warnings = carry_expansions(expanded.graph, fresh)

    assert warnings == []
    assert fresh.ids() == ["1", "2", "3", "1.1", "1.2"]
    assert fresh.node("1").children == ["1.1", "1.2"]
    assert fresh.node("1.2").dependencies == ("1.1",)
    assert fresh.expansions["1"] == expanded.record
    validate_graph(fresh)

    again = expand(fresh, "1", 1, 30, source=producer)
    assert again.noop
    assert len(producer.calls) == 1


def test_carry_expansions_drops_what_no_longer_fits(make_graph) -> None:
    producer = ScriptedProducer({
        "1": [{"id": 1, "title": "Token issuing", "complexity": 25, "dependencies": ["3"]}],
        "3": [{"id": 1, "title": "Audit schema", "complexity": 10}],
    })
    first = expand(make_graph(TASKS), "1", 1, 30, source=producer)
    previous = expand(first.graph, "3", 1, 30, source=producer).graph
    assert previous.node("1.1").dependencies == ("3",)

    gone = make_graph(TASKS[:2])
    warnings = carry_expansions(previous, gone)
    assert "3: task is gone; dropped its breakdown" in warnings
    assert "1.1: dropped dependency on removed task 3" in warnings
    assert gone.node("1.1").dependencies == ()
    assert "3.1" not in gone

    split = make_graph([
        {**TASKS[0], "subtasks": [{"id": "1", "title": "Producer split"}]},
        TASKS[1],
        TASKS[2],
    ])
    warnings = carry_expansions(previous, split)
    assert "1: now has subtasks from the producer; dropped its breakdown" in warnings
    assert "1" not in split.expansions
    assert split.node("1.1").title == "Producer split"
    assert split.node("3").children == ["3.1"]
