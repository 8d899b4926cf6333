from __future__ import annotations

from pathlib import Path

import pytest

from graphsync.config import SyncConfig
from graphsync.errors import AuthenticationError, BreakdownError, SnapshotError
from graphsync.snapshot import ABORTED, COMPLETED, FAILED, SnapshotStore
from graphsync.sync import SyncRunner, discover_documents
from graphsync.tracker.local import LocalTracker


class FakeProducer:
    def __init__(self, subtasks=None, payload=None) -> None:
        self.subtasks = subtasks or {}
        self.payload = payload
        self.parsed: list[Path] = []
        self.expanded: list[str] = []

    def parse_prd(self, prd_path, output, *, complexity_threshold, max_depth):
        self.parsed.append(prd_path)
        return self.payload

    def expand_task(self, node_id, *, depth, complexity_threshold):
        self.expanded.append(node_id)
        return [dict(s) for s in self.subtasks.get(node_id, [])]


class InterruptingTracker(LocalTracker):
    """Shares rows with another tracker and is interrupted after `limit` creates."""

    def __init__(self, shared: LocalTracker, limit: int) -> None:
        super().__init__()
        self._rows = shared._rows
        self.limit = limit
        self.created = 0

    def create_item(self, title, body, labels):
        if self.created == self.limit:
            raise KeyboardInterrupt
        self.created += 1
        return super().create_item(title, body, labels)


class RevokedTokenTracker(LocalTracker):
    def find_items_by_title(self, title):
        raise AuthenticationError("401 Bad credentials", status=401)


@pytest.fixture
def config(tmp_path: Path) -> SyncConfig:
    return SyncConfig(repo_root=tmp_path, state_dir=tmp_path / ".graphsync")


def _runner(config, tracker, console, producer=None) -> SyncRunner:
    return SyncRunner(config, tracker=tracker, producer=producer or FakeProducer(), console=console)


def _document(make_graph, prd_path, titles):
    tasks = [{"id": str(i), "title": title} for i, title in enumerate(titles, start=1)]
    tasks[-1]["dependencies"] = ["1"]
    return make_graph(tasks, metadata={"prd_path": prd_path, "generated_at": "2026-01-05T10:00:00Z"})


def test_sync_creates_items_sweeps_links_and_snapshots(config, sample_graph, tracker, console) -> None:
    runner = _runner(config, tracker, console)

    report = runner.sync(sample_graph, run_id="run-1")

    assert report.ok
    assert report.exit_code == 0
    assert report.status == COMPLETED
    assert report.reconcile.created == sample_graph.ids()
    assert report.snapshot_path is not None and report.snapshot_path.is_file()

    snapshot = SnapshotStore(config.snapshot_dir).load("run-1")
    assert snapshot.complete
    assert snapshot.progress.processed == sample_graph.ids()
    parent = snapshot.mapping.item_for("2")
    children = [snapshot.mapping.item_for("2.1"), snapshot.mapping.item_for("2.2")]
    assert tracker.list_sub_items(parent) == children
    assert "blocked" in tracker.get_item(snapshot.mapping.item_for("3")).labels


def test_rerun_seeds_mapping_from_latest_snapshot(
    config, sample_graph, sample_tasks, make_graph, tracker, console
) -> None:
    _runner(config, tracker, console).sync(sample_graph)
    tracker.reset()

    sample_tasks[0]["title"] = "Set up project skeleton and CI"
    report = _runner(config, tracker, console).sync(make_graph(sample_tasks))

    assert report.reconcile.updated == ["1"]
    assert report.reconcile.created == []
    assert tracker.names() == ["update_item"]
    assert len(tracker.items()) == len(sample_graph)


def test_interrupted_run_resumes_without_duplicates(config, sample_graph, console) -> None:
    shared = LocalTracker()
    interrupted = _runner(config, InterruptingTracker(shared, limit=2), console)

    with pytest.raises(KeyboardInterrupt):
        interrupted.sync(sample_graph, run_id="run-int")

    store = SnapshotStore(config.snapshot_dir)
    snapshot = store.load("run-int")
    assert snapshot.progress.status == ABORTED
    assert snapshot.progress.processed == ["1", "2"]
    assert len(shared.items()) == 2

    report = _runner(config, shared, console).resume("run-int")

    assert report.ok
    assert report.reconcile.created == ["2.1", "2.2", "3"]
    assert len(shared.items()) == len(sample_graph)
    assert store.load("run-int").complete


def test_fatal_tracker_error_aborts_and_checkpoints(config, sample_graph, console) -> None:
    runner = _runner(config, RevokedTokenTracker(), console)

    with pytest.raises(AuthenticationError):
        runner.sync(sample_graph, run_id="run-auth")

    snapshot = SnapshotStore(config.snapshot_dir).load("run-auth")
    assert snapshot.progress.status == ABORTED
    assert "401" in snapshot.progress.error


def test_node_failures_mark_the_run_failed(config, make_graph, tracker, console) -> None:
    tracker.create_item("Task 1", "Filed by hand.", [])

    report = _runner(config, tracker, console).sync(make_graph([{"id": "1"}, {"id": "2"}]))

    assert report.status == FAILED
    assert report.exit_code == 1
    assert report.reconcile.ambiguous == ["1"]


def test_dry_run_writes_nothing(config, sample_graph, console) -> None:
    dry = SyncConfig(repo_root=config.repo_root, state_dir=config.state_dir, dry_run=True)
    runner = SyncRunner(dry, producer=FakeProducer(), console=console)

    report = runner.sync(sample_graph)

    assert report.dry_run
    assert report.reconcile.created == sample_graph.ids()
    assert report.snapshot_path is None
    assert not config.snapshot_dir.exists()
    assert not (config.state_dir / "tracker.jsonl").exists()


def test_parse_runs_producer_then_syncs(config, sample_tasks, make_payload, tracker, console) -> None:
    producer = FakeProducer(payload=make_payload(sample_tasks))
    prd = config.repo_root / "docs" / "feature.prd.md"

    report = _runner(config, tracker, console, producer).parse(prd)

    assert producer.parsed == [prd]
    assert len(report.reconcile.created) == 5


def test_breakdown_adds_children_and_announces_them(config, sample_graph, tracker, console) -> None:
    producer = FakeProducer({
        "3": [
            {"id": 1, "title": "Dashboard layout", "complexity": 20},
            {"id": 2, "title": "Dashboard charts", "complexity": 25, "dependencies": [1]},
        ]
    })
    runner = _runner(config, tracker, console, producer)
    runner.sync(sample_graph)
    tracker.reset()

    report = runner.breakdown("3", depth=1, threshold=30)

    assert report.ok
    assert report.breakdown.added == ["3.1", "3.2"]
    assert report.reconcile.created == ["3.1", "3.2"]
    assert report.reconcile.updated == ["3"]
    latest = SnapshotStore(config.snapshot_dir).latest()
    assert latest.kind == "breakdown"
    parent_item = latest.mapping.item_for("3")
    children = [latest.mapping.item_for("3.1"), latest.mapping.item_for("3.2")]
    assert tracker.list_sub_items(parent_item) == children
    assert "parent" in tracker.get_item(parent_item).labels
    assert "blocked" in tracker.get_item(children[1]).labels
    assert tracker.comments(parent_item)[0].startswith("Broken down into 2 subtask(s)")

    tracker.reset()
    again = runner.breakdown("3", depth=1, threshold=30)
    assert again.breakdown.noop
    assert tracker.mutations == 0

    with pytest.raises(BreakdownError):
        runner.breakdown("3", depth=2, threshold=30)


def test_breakdown_needs_a_recorded_run(config, tracker, console) -> None:
    with pytest.raises(SnapshotError, match="no runs recorded"):
        _runner(config, tracker, console).breakdown("1")


def test_item_events_reevaluate_dependents(config, make_graph, tracker, console) -> None:
    runner = _runner(config, tracker, console)
    runner.sync(make_graph([{"id": "1"}, {"id": "2", "dependencies": ["1"]}]), run_id="run-ev")
    mapping = SnapshotStore(config.snapshot_dir).load("run-ev").mapping
    tracker.close(mapping.item_for("1"))

    result = runner.on_item_event(mapping.item_for("1"), "closed")

    assert result.unlabelled == ["2"]
    assert runner.on_item_event(mapping.item_for("1"), "edited").evaluations == []


def test_resync_keeps_earlier_breakdown(config, sample_graph, sample_tasks, make_graph, tracker, console) -> None:
    producer = FakeProducer({
        "3": [
            {"id": 1, "title": "Dashboard layout", "complexity": 20},
            {"id": 2, "title": "Dashboard charts", "complexity": 25, "dependencies": [1]},
        ]
    })
    runner = _runner(config, tracker, console, producer)
    runner.sync(sample_graph)
    runner.breakdown("3", depth=1, threshold=30)
    tracker.reset()

    report = runner.sync(make_graph(sample_tasks))

    assert report.ok
    assert report.reconcile.created == []
    latest = SnapshotStore(config.snapshot_dir).latest()
    assert latest.kind == "sync"
    assert latest.graph.ids()[-2:] == ["3.1", "3.2"]
    assert latest.graph.node("3").children == ["3.1", "3.2"]
    assert latest.graph.expansions["3"].children == ("3.1", "3.2")
    assert "parent" in tracker.get_item(latest.mapping.item_for("3")).labels
    assert "remove_label" not in tracker.names()

    again = runner.breakdown("3", depth=1, threshold=30)
    assert again.breakdown.noop
    assert producer.expanded == ["3"]


def test_documents_keep_separate_identities(config, make_graph, tracker, console) -> None:
    runner = _runner(config, tracker, console)
    auth = _document(make_graph, "docs/auth.prd.md", ["Auth service", "Login page"])
    billing = _document(make_graph, "docs/billing.prd.md", ["Billing service", "Invoice page"])

    runner.sync(auth, run_id="run-auth")
    report = runner.sync(billing, run_id="run-billing")

    assert report.ok
    assert report.reconcile.created == ["1", "2"]
    assert sorted(item.title for item in tracker.items()) == [
        "Auth service", "Billing service", "Invoice page", "Login page",
    ]

    tracker.reset()
    again = runner.sync(_document(make_graph, "docs/auth.prd.md", ["Auth service", "Login page"]))
    assert again.reconcile.created == []
    assert again.reconcile.updated == []
    assert len(tracker.items()) == 4

    store = SnapshotStore(config.snapshot_dir)
    auth_items = store.load("run-auth").mapping
    billing_items = store.load("run-billing").mapping
    assert tracker.get_item(auth_items.item_for("1")).title == "Auth service"
    assert tracker.get_item(billing_items.item_for("1")).title == "Billing service"
    assert sorted(store.latest_by_document()) == ["docs/auth.prd.md", "docs/billing.prd.md"]


def test_item_events_reach_every_document(config, make_graph, tracker, console) -> None:
    runner = _runner(config, tracker, console)
    runner.sync(_document(make_graph, "docs/auth.prd.md", ["Auth service", "Login page"]), run_id="run-auth")
    runner.sync(_document(make_graph, "docs/billing.prd.md", ["Billing service", "Invoice page"]), run_id="run-billing")
    auth = SnapshotStore(config.snapshot_dir).load("run-auth").mapping
    billing = SnapshotStore(config.snapshot_dir).load("run-billing").mapping
    tracker.close(auth.item_for("1"))

    result = runner.on_item_event(auth.item_for("1"), "closed")

    assert result.unlabelled == ["2"]
    assert "blocked" not in tracker.get_item(auth.item_for("2")).labels
    assert "blocked" in tracker.get_item(billing.item_for("2")).labels


def test_breakdown_picks_the_document_that_holds_the_task(config, make_graph, tracker, console) -> None:
    producer = FakeProducer({"2": [{"id": 1, "title": "Invoice PDF", "complexity": 10}]})
    runner = _runner(config, tracker, console, producer)
    runner.sync(_document(make_graph, "docs/auth.prd.md", ["Auth service", "Login page"]))
    runner.sync(_document(make_graph, "docs/billing.prd.md", ["Billing service", "Invoice page"]))

    with pytest.raises(BreakdownError, match="several documents"):
        runner.breakdown("2", depth=1, threshold=30)
    with pytest.raises(BreakdownError, match="not in any recorded run"):
        runner.breakdown("9", depth=1, threshold=30)

    report = runner.breakdown("2", depth=1, threshold=30, document="./docs/billing.prd.md")

    assert report.breakdown.added == ["2.1"]
    latest = SnapshotStore(config.snapshot_dir).latest(document="docs/billing.prd.md")
    assert latest.kind == "breakdown"
    assert tracker.get_item(latest.mapping.item_for("2.1")).title == "Invoice PDF"


def test_runs_lists_briefs(config, sample_graph, tracker, console) -> None:
    runner = _runner(config, tracker, console)
    runner.sync(sample_graph, run_id="run-a")

    runs = runner.runs()

    assert [r["run_id"] for r in runs] == ["run-a"]
    assert runs[0]["status"] == COMPLETED
    assert runs[0]["nodes"] == len(sample_graph)


def test_discover_documents_matches_glob(config) -> None:
    root = config.repo_root
    for rel in ("docs/a.prd.md", "docs/sub/b.prd.md", "docs/readme.md", ".graphsync/graphs/c.prd.md"):
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("x", encoding="utf-8")

    found = [p.relative_to(root).as_posix() for p in discover_documents(config)]

    assert found == ["docs/a.prd.md", "docs/sub/b.prd.md"]
