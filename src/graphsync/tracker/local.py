"""JSONL-backed tracker for offline runs, dry runs and tests."""

from __future__ import annotations

from pathlib import Path

from ..body import metadata_key
from ..errors import HierarchyUnsupportedError, ItemNotFoundError, TrackerError
from ..jsonl import read_jsonl, write_jsonl
from ..util import utc_now_iso
from .base import CLOSED, ITEM_STATES, OPEN, TrackerItem, sort_item_ids


class LocalTracker:
    """Issue tracker stored in .graphsync/tracker.jsonl (or in memory when path is None)."""

    def __init__(self, path: Path | None = None, *, supports_hierarchy: bool = True) -> None:
        self.path = path
        self.supports_hierarchy = supports_hierarchy
        self._rows: list[dict] = []

    @classmethod
    def from_state_dir(cls, state_dir: Path) -> LocalTracker:
        return cls(state_dir / "tracker.jsonl")

    # -- read helpers -------------------------------------------------------

    def _load(self) -> list[dict]:
        if self.path is None:
            return self._rows
        return read_jsonl(self.path)

    def _save(self, rows: list[dict]) -> None:
        if self.path is None:
            self._rows = rows
            return
        write_jsonl(self.path, rows)

    def _find(self, rows: list[dict], item_id: str) -> dict:
        for r in rows:
            if r["id"] == item_id:
                return r
        raise ItemNotFoundError(item_id)

    @staticmethod
    def _item(row: dict) -> TrackerItem:
        return TrackerItem(
            id=row["id"],
            title=row["title"],
            body=row.get("body", ""),
            labels=frozenset(row.get("labels", [])),
            state=row.get("state", OPEN),
        )

    # -- capability surface ---------------------------------------------------

    def create_item(self, title: str, body: str, labels: list[str]) -> str:
        rows = self._load()
        next_id = max((int(r["id"]) for r in rows), default=0) + 1
        now = utc_now_iso()
        rows.append(
            {
                "id": str(next_id),
                "title": title,
                "body": body,
                "labels": sorted(set(labels)),
                "state": OPEN,
                "comments": [],
                "sub_items": [],
                "created_at": now,
                "updated_at": now,
            }
        )
        self._save(rows)
        return str(next_id)

    def update_item(
        self,
        item_id: str,
        *,
        title: str | None = None,
        body: str | None = None,
        labels: list[str] | None = None,
        state: str | None = None,
    ) -> None:
        rows = self._load()
        row = self._find(rows, item_id)
        if title is not None:
            row["title"] = title
        if body is not None:
            row["body"] = body
        if labels is not None:
            row["labels"] = sorted(set(labels))
        if state is not None:
            if state not in ITEM_STATES:
                raise TrackerError(f"invalid state: {state}", status=422)
            row["state"] = state
        row["updated_at"] = utc_now_iso()
        self._save(rows)

    def add_label(self, item_id: str, label: str) -> None:
        rows = self._load()
        row = self._find(rows, item_id)
        row["labels"] = sorted(set(row.get("labels", [])) | {label})
        row["updated_at"] = utc_now_iso()
        self._save(rows)

    def remove_label(self, item_id: str, label: str) -> None:
        rows = self._load()
        row = self._find(rows, item_id)
        row["labels"] = sorted(set(row.get("labels", [])) - {label})
        row["updated_at"] = utc_now_iso()
        self._save(rows)

    def get_item(self, item_id: str) -> TrackerItem:
        return self._item(self._find(self._load(), item_id))

    def get_item_state(self, item_id: str) -> str:
        return self.get_item(item_id).state

    def find_item_by_metadata_id(
        self, node_id: str, *, document: str = "", refresh: bool = False
    ) -> str | None:
        wanted = (document, node_id)
        matches = [r["id"] for r in self._load() if metadata_key(r.get("body")) == wanted]
        return sort_item_ids(matches)[0] if matches else None

    def find_items_by_title(self, title: str) -> list[TrackerItem]:
        wanted = title.strip()
        return [self._item(r) for r in self._load() if r["title"].strip() == wanted]

    def comment(self, item_id: str, text: str) -> None:
        rows = self._load()
        row = self._find(rows, item_id)
        row.setdefault("comments", []).append({"body": text, "created_at": utc_now_iso()})
        self._save(rows)

    def comments(self, item_id: str) -> list[str]:
        return [c["body"] for c in self._find(self._load(), item_id).get("comments", [])]

    def add_sub_item(self, parent_id: str, child_id: str) -> None:
        if not self.supports_hierarchy:
            raise HierarchyUnsupportedError("sub-items are disabled for this tracker")
        rows = self._load()
        parent = self._find(rows, parent_id)
        self._find(rows, child_id)
        for r in rows:
            if r is not parent and child_id in r.get("sub_items", []):
                raise TrackerError(f"#{child_id} already has a parent (#{r['id']})", status=422)
        if child_id not in parent.setdefault("sub_items", []):
            parent["sub_items"].append(child_id)
            self._save(rows)

    def list_sub_items(self, parent_id: str) -> list[str]:
        if not self.supports_hierarchy:
            raise HierarchyUnsupportedError("sub-items are disabled for this tracker")
        return list(self._find(self._load(), parent_id).get("sub_items", []))

    # -- inspection ---------------------------------------------------------

    def items(self, *, state: str | None = None) -> list[TrackerItem]:
        rows = self._load()
        if state:
            rows = [r for r in rows if r.get("state", OPEN) == state]
        return [self._item(r) for r in rows]

    def close(self, item_id: str) -> None:
        self.update_item(item_id, state=CLOSED)

    def reopen(self, item_id: str) -> None:
        self.update_item(item_id, state=OPEN)
