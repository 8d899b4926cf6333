"""Run snapshots: self-contained JSON records that double as resume points."""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import SnapshotError
from .graph import TaskGraph
from .identity import IdentityMapping
from .jsonl import read_json, write_json
from .util import utc_now_iso

SNAPSHOT_FORMAT = 1
HASH_PREFIX_LEN = 12
RUN_ID_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")

RUNNING = "running"
COMPLETED = "completed"
ABORTED = "aborted"
FAILED = "failed"

PHASE_RECONCILE = "reconcile"
PHASE_SWEEP = "sweep"
PHASE_LINK = "link"
PHASE_DONE = "done"


@dataclass
class RunProgress:
    processed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    phase: str = PHASE_RECONCILE
    status: str = RUNNING
    error: str = ""

    def mark_processed(self, node_id: str) -> None:
        self.failed.pop(node_id, None)
        if node_id not in self.processed:
            self.processed.append(node_id)

    def mark_failed(self, node_id: str, error: str) -> None:
        self.failed[node_id] = error

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": list(self.processed),
            "failed": dict(self.failed),
            "phase": self.phase,
            "status": self.status,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> RunProgress:
        return cls(
            processed=[str(x) for x in d.get("processed") or []],
            failed={str(k): str(v) for k, v in (d.get("failed") or {}).items()},
            phase=str(d.get("phase") or PHASE_RECONCILE),
            status=str(d.get("status") or RUNNING),
            error=str(d.get("error") or ""),
        )


@dataclass
class Snapshot:
    run_id: str
    graph: TaskGraph
    mapping: IdentityMapping
    progress: RunProgress = field(default_factory=RunProgress)
    kind: str = "sync"
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = ""
    summary: dict[str, Any] = field(default_factory=dict)
    saved_ns: int = 0

    @property
    def source_hash(self) -> str:
        return self.graph.metadata.content_hash

    @property
    def document(self) -> str:
        return self.graph.document

    @property
    def complete(self) -> bool:
        return self.progress.status == COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "format": SNAPSHOT_FORMAT,
            "run_id": self.run_id,
            "kind": self.kind,
            "document": self.document,
            "source_hash": self.source_hash,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "saved_ns": self.saved_ns,
            "progress": self.progress.to_dict(),
            "summary": self.summary,
            "mapping": self.mapping.to_dict(),
            "graph": self.graph.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Snapshot:
        if not isinstance(d, dict) or "run_id" not in d or "graph" not in d:
            raise SnapshotError("not a graphsync snapshot")
        return cls(
            run_id=str(d["run_id"]),
            graph=TaskGraph.from_dict(d["graph"]),
            mapping=IdentityMapping.from_dict(d.get("mapping")),
            progress=RunProgress.from_dict(d.get("progress") or {}),
            kind=str(d.get("kind") or "sync"),
            created_at=str(d.get("created_at") or ""),
            updated_at=str(d.get("updated_at") or ""),
            summary=dict(d.get("summary") or {}),
            saved_ns=int(d.get("saved_ns") or 0),
        )

    def brief(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "kind": self.kind,
            "document": self.document,
            "source_hash": self.source_hash,
            "status": self.progress.status,
            "phase": self.progress.phase,
            "processed": len(self.progress.processed),
            "failed": len(self.progress.failed),
            "nodes": len(self.graph),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class ReplayState:
    graph: TaskGraph
    mapping: IdentityMapping
    resume_point: str | None
    progress: RunProgress


def replay(snapshot: Snapshot) -> ReplayState:
    """Rebuild the in-memory state of a run from its snapshot."""
    done = set(snapshot.progress.processed)
    resume_point = next((n.id for n in snapshot.graph if n.id not in done), None)
    progress = RunProgress.from_dict(snapshot.progress.to_dict())
    return ReplayState(snapshot.graph, snapshot.mapping.copy(), resume_point, progress)


class SnapshotStore:
    """Snapshots under <state>/snapshots/<source-hash-prefix>/<run-id>.json."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def path_for(self, run_id: str, source_hash: str) -> Path:
        prefix = (source_hash or "unknown")[:HASH_PREFIX_LEN]
        return self.root / prefix / f"{run_id}.json"

    def save(self, snapshot: Snapshot) -> Path:
        snapshot.updated_at = utc_now_iso()
        snapshot.saved_ns = time.time_ns()
        path = self.path_for(snapshot.run_id, snapshot.source_hash)
        try:
            write_json(path, snapshot.to_dict())
        except OSError as exc:
            raise SnapshotError(f"failed to write snapshot {path}: {exc}") from exc
        return path

    def _read(self, path: Path) -> Snapshot:
        try:
            payload = read_json(path)
        except (OSError, json.JSONDecodeError) as exc:
            raise SnapshotError(f"unreadable snapshot {path}: {exc}") from exc
        return Snapshot.from_dict(payload)

    def load(self, run_id: str) -> Snapshot:
        if not RUN_ID_RE.fullmatch(run_id or ""):
            raise SnapshotError(f"invalid run id: {run_id!r}")
        matches = sorted(self.root.glob(f"*/{run_id}.json")) if self.root.exists() else []
        if not matches:
            raise SnapshotError(f"no snapshot for run {run_id}")
        return self._read(matches[0])

    def list(self) -> list[Snapshot]:
        if not self.root.exists():
            return []
        snapshots: list[Snapshot] = []
        for path in self.root.glob("*/*.json"):
            try:
                snapshots.append(self._read(path))
            except SnapshotError:
                continue
        return sorted(snapshots, key=lambda s: (s.updated_at or s.created_at, s.saved_ns, s.run_id))

    def latest(
        self,
        source_hash: str | None = None,
        *,
        document: str | None = None,
    ) -> Snapshot | None:
        candidates = [
            s for s in self.list()
            if (source_hash is None or s.source_hash == source_hash)
            and (document is None or s.document == document)
        ]
        return candidates[-1] if candidates else None

    def latest_by_document(self) -> dict[str, Snapshot]:
        """Most recent snapshot for every document that has one."""
        found: dict[str, Snapshot] = {}
        for snapshot in self.list():
            found[snapshot.document] = snapshot
        return found
