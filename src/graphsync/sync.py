"""Sync pipeline: validate, reconcile, sweep blocked labels, link hierarchy, snapshot."""

from __future__ import annotations

import fnmatch
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rich.console import Console

from .blocking import DependencyStateMachine, SweepResult
from .breakdown import BreakdownResult, carry_expansions, expand
from .config import SyncConfig
from .errors import BreakdownError, ConfigValidationError, FatalTrackerError, SnapshotError, TrackerError
from .graph import TaskGraph, document_key, validate_graph
from .hierarchy import HierarchyLinker, LinkResult
from .identity import IdentityMapping
from .producer import GraphProducer
from .reconcile import AMBIGUOUS, FAILED, NodeOutcome, ReconcileSummary, Reconciler
from .snapshot import (
    ABORTED,
    COMPLETED,
    PHASE_DONE,
    PHASE_LINK,
    PHASE_SWEEP,
    RUNNING,
    RunProgress,
    Snapshot,
    SnapshotStore,
    replay,
)
from .snapshot import FAILED as RUN_FAILED
from .tracker.base import TrackerClient, item_ref
from .tracker.github import GitHubTracker
from .tracker.local import LocalTracker
from .tracker.retry import SleepFn
from .util import new_run_id


def make_tracker(
    config: SyncConfig,
    *,
    console: Console | None = None,
    sleep: SleepFn = time.sleep,
) -> TrackerClient:
    if config.dry_run:
        return LocalTracker()
    if config.tracker.kind == "local":
        return LocalTracker.from_state_dir(config.state_dir)
    if not config.tracker.repository:
        raise ConfigValidationError(
            "tracker.repository is not set (configure it, set GITHUB_REPOSITORY, or add an origin remote)"
        )
    if not config.tracker.token:
        raise ConfigValidationError("GITHUB_TOKEN is not set")
    return GitHubTracker(
        repository=config.tracker.repository,
        token=config.tracker.token,
        api_url=config.tracker.api_url,
        timeout=config.tracker.timeout,
        retry=config.retry.policy(sleep),
        console=console,
        index_label=config.labels.task,
    )


def discover_documents(config: SyncConfig) -> list[Path]:
    """Requirements documents under the repo matching prd_path_glob."""
    pattern = config.prd_path_glob
    found: list[Path] = []
    for path in sorted(config.repo_root.rglob("*")):
        if not path.is_file() or config.state_dir in path.parents:
            continue
        rel = path.relative_to(config.repo_root).as_posix()
        if fnmatch.fnmatch(rel, pattern):
            found.append(path)
    return found


@dataclass
class RunReport:
    run_id: str
    status: str
    reconcile: ReconcileSummary
    sweep: SweepResult | None = None
    links: list[LinkResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    dry_run: bool = False
    snapshot_path: Path | None = None
    breakdown: BreakdownResult | None = None

    @property
    def ok(self) -> bool:
        if not self.reconcile.ok:
            return False
        if self.sweep is not None and self.sweep.failed:
            return False
        return all(link.ok for link in self.links)

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "dry_run": self.dry_run,
            "ok": self.ok,
            "snapshot": str(self.snapshot_path) if self.snapshot_path else None,
            "reconcile": self.reconcile.to_dict(),
            "sweep": self.sweep.to_dict() if self.sweep else None,
            "links": [link.to_dict() for link in self.links],
            "breakdown": self.breakdown.to_dict() if self.breakdown else None,
            "warnings": list(self.warnings),
        }


class SyncRunner:
    def __init__(
        self,
        config: SyncConfig,
        *,
        tracker: TrackerClient | None = None,
        store: SnapshotStore | None = None,
        producer: GraphProducer | None = None,
        console: Console | None = None,
    ) -> None:
        self.config = config
        self.console = console or Console(stderr=True)
        self.tracker = tracker if tracker is not None else make_tracker(config, console=self.console)
        self.store = store or SnapshotStore(config.snapshot_dir)
        self.persist = not config.dry_run
        self.producer = producer or GraphProducer(
            config.producer_binary,
            state_dir=config.state_dir,
            cwd=config.repo_root,
            console=self.console,
        )
        self.reconciler = Reconciler(
            self.tracker,
            labels=config.labels,
            console=self.console,
            unreachable_limit=config.unreachable_limit,
        )
        self.blocking = DependencyStateMachine(self.tracker, labels=config.labels, console=self.console)
        self.linker = HierarchyLinker(
            self.tracker,
            strategy=config.hierarchy_strategy,
            console=self.console,
        )

    # -- entry points -------------------------------------------------------

    def sync(self, graph: TaskGraph, *, run_id: str | None = None) -> RunReport:
        warnings = list(graph.warnings)
        previous = self.previous_run(graph.document)
        if previous is not None and previous.graph.expansions:
            graph = graph.copy()
            warnings += carry_expansions(previous.graph, graph)
        validate_graph(graph)
        mapping = previous.mapping.copy() if previous is not None else IdentityMapping()
        snapshot = Snapshot(run_id or new_run_id(), graph, mapping)
        self.console.print(
            f"[bold]sync[/bold] {snapshot.run_id}: {len(graph)} task(s)"
            + (f" [dim]{graph.document}[/dim]" if graph.document else "")
            + (" [yellow](dry run)[/yellow]" if self.config.dry_run else "")
        )
        return self._drive(snapshot, warnings=warnings)

    def parse(self, prd_path: Path, *, output: Path | None = None) -> RunReport:
        target = output or self.config.state_dir / "graphs" / f"{Path(prd_path).stem}.json"
        payload = self.producer.parse_prd(
            Path(prd_path),
            target,
            complexity_threshold=self.config.complexity_threshold,
            max_depth=self.config.max_depth,
        )
        graph = TaskGraph.from_producer(payload, base_dir=self.config.repo_root)
        if not graph.metadata.prd_path:
            graph.metadata.prd_path = self._relative(Path(prd_path))
        return self.sync(graph)

    def resume(self, run_id: str) -> RunReport:
        snapshot = self.store.load(run_id)
        state = replay(snapshot)
        if state.resume_point is None:
            self.console.print(f"[dim]{run_id}: every task already processed; re-checking labels and links[/dim]")
        else:
            self.console.print(f"[bold]resume[/bold] {run_id} from task {state.resume_point}")
        snapshot.mapping = state.mapping
        snapshot.progress = state.progress
        scope = self._breakdown_scope(snapshot)
        return self._drive(snapshot, scope=scope)

    def sweep(self, run_id: str | None = None) -> SweepResult:
        """Re-evaluate blocked labels for one run, or for every document's latest run."""
        if run_id:
            snapshot = self.store.load(run_id)
            return self.blocking.sweep(snapshot.graph, snapshot.mapping)
        result = SweepResult()
        for snapshot in self._latest_runs():
            result.extend(self.blocking.sweep(snapshot.graph, snapshot.mapping))
        return result

    def on_item_event(self, item_id: str, action: str) -> SweepResult:
        """Dependency-closure trigger: re-evaluate dependents of a closed/reopened item."""
        result = SweepResult()
        if action not in ("closed", "reopened"):
            return result
        for snapshot in self._latest_runs():
            if action == "closed":
                found = self.blocking.on_item_closed(item_id, snapshot.graph, snapshot.mapping)
            else:
                found = self.blocking.on_item_reopened(item_id, snapshot.graph, snapshot.mapping)
            result.extend(found)
        return result

    def breakdown(
        self,
        node_id: str,
        *,
        depth: int | None = None,
        threshold: int | None = None,
        force: bool = False,
        document: str | None = None,
    ) -> RunReport:
        base = self._run_containing(node_id, document)
        depth = depth if depth is not None else self.config.breakdown_max_depth
        threshold = threshold if threshold is not None else self.config.complexity_threshold

        result = expand(
            base.graph,
            node_id,
            depth,
            threshold,
            source=self.producer,
            force=force,
        )
        if result.noop:
            self.console.print(f"[dim]{node_id} already expanded with depth={depth}, threshold={threshold}[/dim]")
            return RunReport(
                base.run_id,
                base.progress.status,
                ReconcileSummary(),
                warnings=list(result.warnings),
                dry_run=self.config.dry_run,
                breakdown=result,
            )

        scope = [node_id, *result.added]
        snapshot = Snapshot(
            new_run_id(),
            result.graph,
            base.mapping.copy(),
            progress=RunProgress(processed=[n.id for n in result.graph if n.id not in scope]),
            kind="breakdown",
        )
        self.console.print(
            f"[bold]breakdown[/bold] {node_id}: {len(result.added)} new task(s) "
            f"(depth={depth}, threshold={threshold})"
        )
        report = self._drive(snapshot, scope=scope, warnings=list(result.warnings))
        report.breakdown = result
        self._announce_breakdown(node_id, result, snapshot.mapping, report)
        return report

    def runs(self) -> list[dict[str, Any]]:
        return [s.brief() for s in self.store.list()]

    def previous_run(self, document: str) -> Snapshot | None:
        """Latest run of the same document; its mapping seeds the next run."""
        if self.config.dry_run:
            return None
        return self.store.latest(document=document)

    # -- pipeline -----------------------------------------------------------

    def _latest_runs(self) -> list[Snapshot]:
        runs = list(self.store.latest_by_document().values())
        if not runs:
            raise SnapshotError("no runs recorded yet; run `graphsync sync` first")
        return runs

    def _run_containing(self, node_id: str, document: str | None) -> Snapshot:
        if document is not None:
            document = document_key(document)
            latest = self.store.latest(document=document)
            if latest is None:
                raise SnapshotError(f"no runs recorded for {document or 'the default document'}")
            if node_id not in latest.graph:
                raise BreakdownError(f"task {node_id} is not in the latest run of {document} ({latest.run_id})")
            return latest

        runs = self._latest_runs()
        holders = [s for s in runs if node_id in s.graph]
        if not holders:
            raise BreakdownError(f"task {node_id} is not in any recorded run")
        if len(holders) > 1:
            names = ", ".join(s.document or "(default)" for s in holders)
            raise BreakdownError(f"task {node_id} exists in several documents ({names}); pick one")
        return holders[0]

    def _relative(self, path: Path) -> str:
        try:
            return path.resolve().relative_to(self.config.repo_root.resolve()).as_posix()
        except ValueError:
            return path.as_posix()

    @staticmethod
    def _breakdown_scope(snapshot: Snapshot) -> list[str] | None:
        if snapshot.kind != "breakdown":
            return None
        done = set(snapshot.progress.processed)
        return [n.id for n in snapshot.graph if n.id not in done] or None

    def _checkpoint(self, snapshot: Snapshot) -> Path | None:
        if not self.persist:
            return None
        return self.store.save(snapshot)

    def _drive(
        self,
        snapshot: Snapshot,
        *,
        scope: list[str] | None = None,
        warnings: list[str] | None = None,
    ) -> RunReport:
        graph = snapshot.graph
        mapping = snapshot.mapping
        progress = snapshot.progress
        progress.status = RUNNING
        progress.error = ""
        self._checkpoint(snapshot)

        def on_node(outcome: NodeOutcome) -> None:
            if outcome.status in (FAILED, AMBIGUOUS):
                progress.mark_failed(outcome.node_id, outcome.error)
            else:
                progress.mark_processed(outcome.node_id)
            self._checkpoint(snapshot)

        sweep: SweepResult | None = None
        links: list[LinkResult] = []
        try:
            summary = self.reconciler.reconcile(
                graph,
                mapping,
                only=scope,
                processed=list(progress.processed),
                on_node=on_node,
            )
            progress.phase = PHASE_SWEEP
            self._checkpoint(snapshot)

            sweep = self.blocking.sweep(graph, mapping, scope)
            progress.phase = PHASE_LINK
            self._checkpoint(snapshot)

            links = self.linker.link_graph(graph, mapping, scope)
            progress.phase = PHASE_DONE
        except KeyboardInterrupt:
            progress.status = ABORTED
            progress.error = "interrupted"
            self._checkpoint(snapshot)
            self.console.print(f"[yellow]interrupted[/yellow]; resume with `graphsync resume {snapshot.run_id}`")
            raise
        except FatalTrackerError as exc:
            progress.status = ABORTED
            progress.error = str(exc)
            self._checkpoint(snapshot)
            raise

        report = RunReport(
            snapshot.run_id,
            RUNNING,
            summary,
            sweep=sweep,
            links=links,
            warnings=list(warnings or []) + list(sweep.warnings if sweep else []),
            dry_run=self.config.dry_run,
        )
        progress.status = COMPLETED if report.ok else RUN_FAILED
        report.status = progress.status
        snapshot.summary = {
            "counts": summary.counts(),
            "blocked": len([ev for ev in sweep.evaluations if ev.blocked]) if sweep else 0,
            "linked": sum(len(link.linked) for link in links),
        }
        report.snapshot_path = self._checkpoint(snapshot)
        return report

    def _announce_breakdown(
        self,
        node_id: str,
        result: BreakdownResult,
        mapping: IdentityMapping,
        report: RunReport,
    ) -> None:
        parent_item = mapping.item_for(node_id)
        if parent_item is None or result.record is None:
            return
        refs: list[str] = []
        for child_id in result.added:
            item_id = mapping.item_for(child_id)
            if item_id is not None:
                refs.append(f"- {item_ref(item_id)} {child_id}")
        text = (
            f"Broken down into {len(result.added)} subtask(s) "
            f"(depth {result.record.depth}, complexity threshold {result.record.threshold}):\n\n"
            + "\n".join(refs)
        )
        try:
            self.tracker.comment(parent_item, text)
        except FatalTrackerError:
            raise
        except TrackerError as exc:
            report.warnings.append(f"could not comment on {item_ref(parent_item)}: {exc}")
