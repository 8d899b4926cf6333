from __future__ import annotations

import pytest

from graphsync.body import parse_body, with_related
from graphsync.errors import (
    AuthenticationError,
    GraphValidationError,
    RetryExhaustedError,
    TrackerUnreachableError,
    TransientTrackerError,
)
from graphsync.identity import IdentityMapping
from graphsync.reconcile import AMBIGUOUS, CREATED, FAILED, SKIPPED, UNCHANGED, UPDATED, Reconciler
from graphsync.tracker.base import CLOSED, OPEN
from graphsync.tracker.local import LocalTracker


def _unreachable(what: str) -> RetryExhaustedError:
    last = TransientTrackerError(f"{what}: connection refused", unreachable=True)
    return RetryExhaustedError(f"{what} failed after 4 attempts", attempts=4, last=last)


class FlakyTracker(LocalTracker):
    """Fails item creation for chosen titles as if retries were exhausted."""

    def __init__(self, failing_titles: set[str]) -> None:
        super().__init__()
        self.failing_titles = failing_titles

    def create_item(self, title, body, labels):
        if title in self.failing_titles:
            raise _unreachable(f"create {title}")
        return super().create_item(title, body, labels)


class DownTracker(LocalTracker):
    def find_item_by_metadata_id(self, node_id, *, document="", refresh=False):
        raise _unreachable("index")


class RejectingTracker(LocalTracker):
    def find_items_by_title(self, title):
        raise AuthenticationError("401 Bad credentials", status=401)


class StaleIndexTracker(LocalTracker):
    """A shared tracker whose metadata index lags unless refreshed."""

    def __init__(self, shared: LocalTracker) -> None:
        super().__init__()
        self._rows = shared._rows

    def find_item_by_metadata_id(self, node_id, *, document="", refresh=False):
        if not refresh:
            return None
        return super().find_item_by_metadata_id(node_id, document=document, refresh=True)


def test_creates_one_item_per_node_with_structural_labels(sample_graph, tracker, console) -> None:
    mapping = IdentityMapping()

    summary = Reconciler(tracker, console=console).reconcile(sample_graph, mapping)

    assert summary.created == ["1", "2", "2.1", "2.2", "3"]
    assert summary.ok
    items = {mapping.node_for(item.id): item for item in tracker.items()}
    assert items["1"].labels == {"task", "priority:high", "leaf"}
    assert items["2"].labels == {"task", "priority:medium", "parent", "blocked"}
    assert items["2.2"].labels == {"task", "priority:medium", "leaf", "blocked"}
    assert parse_body(items["2.2"].body).dependencies == ("2.1",)


def test_second_run_on_unchanged_graph_performs_no_mutations(sample_graph, tracker, console) -> None:
    mapping = IdentityMapping()
    reconciler = Reconciler(tracker, console=console)
    reconciler.reconcile(sample_graph, mapping)
    tracker.reset()

    summary = reconciler.reconcile(sample_graph, mapping)

    assert tracker.mutations == 0
    assert summary.counts()[UNCHANGED] == 5


def test_unchanged_without_mapping_recovers_instead_of_duplicating(sample_graph, tracker, console) -> None:
    Reconciler(tracker, console=console).reconcile(sample_graph, IdentityMapping())
    tracker.reset()

    fresh = IdentityMapping()
    summary = Reconciler(tracker, console=console).reconcile(sample_graph, fresh)

    assert tracker.mutations == 0
    assert summary.counts()[UNCHANGED] == 5
    assert len(fresh) == 5


def test_changed_node_is_rewritten_and_keeps_related_section(make_graph, tracker, console) -> None:
    mapping = IdentityMapping()
    reconciler = Reconciler(tracker, console=console)
    reconciler.reconcile(make_graph([{"id": "1", "title": "Login"}]), mapping)
    item_id = mapping.item_for("1")
    item = tracker.get_item(item_id)
    tracker.update_item(item_id, body=with_related(item.body, "- Parent issue: #99"))
    tracker.add_label(item_id, "needs-review")
    tracker.reset()

    summary = reconciler.reconcile(
        make_graph([{"id": "1", "title": "Login flow", "description": "OAuth", "priority": "high"}]),
        mapping,
    )

    assert summary.updated == ["1"]
    item = tracker.get_item(item_id)
    assert item.title == "Login flow"
    assert "OAuth" in item.body
    assert "- Parent issue: #99" in parse_body(item.body).related
    assert item.labels == {"task", "priority:high", "leaf", "needs-review"}
    assert tracker.names() == ["update_item"]


def test_same_titled_foreign_item_is_ambiguous_and_not_duplicated(make_graph, tracker, console) -> None:
    tracker.create_item("Login", "Filed by hand.", ["bug"])
    tracker.reset()
    mapping = IdentityMapping()

    summary = Reconciler(tracker, console=console).reconcile(
        make_graph([{"id": "1", "title": "Login"}, {"id": "2", "title": "Logout"}]),
        mapping,
    )

    assert summary.ambiguous == ["1"]
    assert summary.created == ["2"]
    assert not summary.ok
    assert "1" not in mapping
    assert [name for name in tracker.names()] == ["create_item"]


def test_cycle_aborts_before_any_tracker_write(make_graph, tracker, console) -> None:
    graph = make_graph([
        {"id": "A", "dependencies": ["C"]},
        {"id": "B", "dependencies": ["A"]},
        {"id": "C", "dependencies": ["B"]},
    ])

    with pytest.raises(GraphValidationError):
        Reconciler(tracker, console=console).reconcile(graph, IdentityMapping())

    assert tracker.mutations == 0
    assert tracker.items() == []


def test_exhausted_retries_fail_the_node_and_the_run_continues(make_graph, console) -> None:
    tracker = FlakyTracker({"Task 2"})
    graph = make_graph([{"id": "1"}, {"id": "2"}, {"id": "3"}])
    outcomes = []

    summary = Reconciler(tracker, console=console).reconcile(
        graph, IdentityMapping(), on_node=outcomes.append
    )

    assert summary.created == ["1", "3"]
    assert summary.failed == ["2"]
    assert [o.status for o in outcomes] == [CREATED, FAILED, CREATED]
    assert "after 4 attempts" in outcomes[1].error


def test_unreachable_tracker_aborts_after_limit(make_graph, console) -> None:
    graph = make_graph([{"id": str(i)} for i in range(1, 6)])
    outcomes = []

    with pytest.raises(TrackerUnreachableError):
        Reconciler(DownTracker(), console=console, unreachable_limit=3).reconcile(
            graph, IdentityMapping(), on_node=outcomes.append
        )

    assert [o.node_id for o in outcomes] == ["1", "2", "3"]


def test_authentication_failure_propagates(make_graph, console) -> None:
    with pytest.raises(AuthenticationError):
        Reconciler(RejectingTracker(), console=console).reconcile(
            make_graph([{"id": "1"}]), IdentityMapping()
        )


def test_processed_nodes_are_skipped_and_only_limits_scope(sample_graph, tracker, console) -> None:
    reconciler = Reconciler(tracker, console=console)

    summary = reconciler.reconcile(sample_graph, IdentityMapping(), processed=["1", "2"], only=["1", "2", "3"])

    assert summary.ids(SKIPPED) == ["1", "2"]
    assert summary.created == ["3"]
    assert len(tracker.items()) == 1


def test_concurrent_runs_converge_to_one_open_item_per_node(sample_graph, console) -> None:
    shared = LocalTracker()
    run_a = Reconciler(StaleIndexTracker(shared), console=console)
    run_b = Reconciler(StaleIndexTracker(shared), console=console)
    mapping_a, mapping_b = IdentityMapping(), IdentityMapping()

    run_a.reconcile(sample_graph, mapping_a)
    summary_b = run_b.reconcile(sample_graph, mapping_b)

    open_items = shared.items(state=OPEN)
    assert len(open_items) == len(sample_graph)
    assert len(shared.items(state=CLOSED)) == len(sample_graph)
    assert mapping_a.to_dict() == mapping_b.to_dict()
    assert all("adopted" in o.note for o in summary_b.outcomes)
    duplicate = shared.items(state=CLOSED)[0]
    assert shared.comments(duplicate.id)[0].startswith("Duplicate of #")


def test_item_owned_by_another_node_is_ambiguous(make_graph, tracker, console) -> None:
    reconciler = Reconciler(tracker, console=console)
    mapping = IdentityMapping()
    reconciler.reconcile(make_graph([{"id": "1"}, {"id": "2"}]), mapping)

    crossed = IdentityMapping({"1": mapping.item_for("2")})
    summary = reconciler.reconcile(make_graph([{"id": "1"}]), crossed)

    assert summary.ambiguous == ["1"]
    assert summary.outcomes[0].status == AMBIGUOUS


def test_deleted_mapped_item_fails_the_node(make_graph, tracker, console) -> None:
    summary = Reconciler(tracker, console=console).reconcile(
        make_graph([{"id": "1"}]), IdentityMapping({"1": "404"})
    )

    assert summary.failed == ["1"]
    assert "#404 no longer exists" in summary.outcomes[0].error
    assert summary.outcomes[0].status != UPDATED


def test_same_node_ids_in_two_documents_get_separate_items(make_graph, tracker, console) -> None:
    reconciler = Reconciler(tracker, console=console)
    auth = make_graph(
        [{"id": "1", "title": "Auth service"}, {"id": "2", "title": "Login page"}],
        metadata={"prd_path": "docs/auth.prd.md"},
    )
    billing = make_graph(
        [{"id": "1", "title": "Billing service"}, {"id": "2", "title": "Invoice page"}],
        metadata={"prd_path": "./docs/billing.prd.md"},
    )
    auth_mapping, billing_mapping = IdentityMapping(), IdentityMapping()

    reconciler.reconcile(auth, auth_mapping)
    summary = reconciler.reconcile(billing, billing_mapping)

    assert summary.created == ["1", "2"]
    assert len(tracker.items()) == 4
    assert {item.title for item in tracker.items()} == {
        "Auth service", "Login page", "Billing service", "Invoice page",
    }
    billing_item = tracker.get_item(billing_mapping.item_for("1"))
    assert parse_body(billing_item.body).key == ("docs/billing.prd.md", "1")

    crossed = IdentityMapping({"1": auth_mapping.item_for("1")})
    conflict = reconciler.reconcile(billing, crossed, only=["1"])
    assert conflict.ambiguous == ["1"]
    assert tracker.get_item(auth_mapping.item_for("1")).title == "Auth service"
