"""GitHub Issues tracker over the REST v3 API."""

from __future__ import annotations

import json
import socket
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any

from rich.console import Console

from .. import __version__
from ..body import metadata_key
from ..errors import (
    AuthenticationError,
    FatalTrackerError,
    HierarchyUnsupportedError,
    ItemNotFoundError,
    RateLimitError,
    TrackerError,
    TransientTrackerError,
)
from .base import CLOSED, OPEN, TrackerItem, sort_item_ids
from .retry import RetryPolicy

DEFAULT_API_URL = "https://api.github.com"
PAGE_SIZE = 100
INDEX_SKEW_SECONDS = 300


def _http_json(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    body: Any | None = None,
    timeout: float = 20.0,
) -> tuple[int, dict[str, str], Any]:
    data = None
    if body is not None:
        data = json.dumps(body, ensure_ascii=False).encode("utf-8")

    req = urllib.request.Request(url, data=data, method=method)
    req.add_header("Content-Type", "application/json")
    req.add_header("User-Agent", f"graphsync/{__version__}")
    if headers:
        for k, v in headers.items():
            req.add_header(k, v)

    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
            resp_headers = {k.lower(): v for k, v in resp.headers.items()}
            return resp.status, resp_headers, json.loads(raw) if raw.strip() else None
    except urllib.error.HTTPError as e:
        raw = e.read().decode("utf-8", errors="replace")
        resp_headers = {k.lower(): v for k, v in (e.headers or {}).items()}
        try:
            payload = json.loads(raw) if raw.strip() else None
        except json.JSONDecodeError:
            payload = raw
        return e.code, resp_headers, payload
    except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as e:
        return 0, {}, {"error": str(e)}


def _message(payload: Any) -> str:
    if isinstance(payload, dict):
        return str(payload.get("message") or payload.get("error") or "")
    return str(payload or "")


def _retry_after(headers: dict[str, str], now: float) -> float | None:
    if headers.get("retry-after"):
        try:
            return float(headers["retry-after"])
        except ValueError:
            return None
    if headers.get("x-ratelimit-remaining") == "0" and headers.get("x-ratelimit-reset"):
        try:
            return max(0.0, float(headers["x-ratelimit-reset"]) - now)
        except ValueError:
            return None
    return None


def raise_for_status(
    status: int,
    headers: dict[str, str],
    payload: Any,
    *,
    what: str,
    now: float | None = None,
) -> None:
    if 200 <= status < 300:
        return
    message = _message(payload)
    detail = f"{what}: {status} {message}".strip()
    if status == 0:
        raise TransientTrackerError(f"{what}: {message or 'connection failed'}", unreachable=True)
    if status in (403, 429):
        retry_after = _retry_after(headers, time.time() if now is None else now)
        if retry_after is not None or status == 429 or "rate limit" in message.lower():
            raise RateLimitError(
                detail,
                status=status,
                retry_after=retry_after if retry_after is not None else 60.0,
            )
    if status == 401:
        raise AuthenticationError(detail, status=status)
    if status == 403:
        raise FatalTrackerError(detail, status=status)
    if status == 404:
        raise ItemNotFoundError(what)
    if status >= 500 or status == 408:
        raise TransientTrackerError(detail, status=status)
    raise TrackerError(detail, status=status)


@dataclass
class GitHubTracker:
    repository: str
    token: str
    api_url: str = DEFAULT_API_URL
    timeout: float = 20.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    console: Console | None = None
    index_label: str | None = "task"
    supports_hierarchy: bool = True

    _index: dict[tuple[str, str], str] | None = field(default=None, repr=False)
    _index_since: str = field(default="", repr=False)

    # -- transport ----------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _url(self, path: str, params: dict[str, Any] | None = None) -> str:
        url = self.api_url.rstrip("/") + path
        if params:
            url += "?" + urllib.parse.urlencode(params)
        return url

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: Any | None = None,
        params: dict[str, Any] | None = None,
        what: str | None = None,
    ) -> Any:
        label = what or f"{method} {path}"

        def once() -> Any:
            status, headers, payload = _http_json(
                method,
                self._url(path, params),
                headers=self._headers(),
                body=body,
                timeout=self.timeout,
            )
            raise_for_status(status, headers, payload, what=label)
            return payload

        return self.retry.call(once, describe=label, console=self.console)

    def _repo_path(self, suffix: str) -> str:
        return f"/repos/{self.repository}{suffix}"

    def _paginate(self, path: str, params: dict[str, Any]) -> list[dict]:
        rows: list[dict] = []
        page = 1
        while True:
            batch = self._request("GET", path, params={**params, "per_page": PAGE_SIZE, "page": page})
            if not isinstance(batch, list):
                break
            rows.extend(batch)
            if len(batch) < PAGE_SIZE:
                break
            page += 1
        return rows

    # -- capability surface ---------------------------------------------------

    def create_item(self, title: str, body: str, labels: list[str]) -> str:
        payload = self._request(
            "POST",
            self._repo_path("/issues"),
            body={"title": title, "body": body, "labels": sorted(set(labels))},
            what=f"create issue {title!r}",
        )
        item_id = str(payload["number"])
        key = metadata_key(body)
        if self._index is not None and key is not None:
            current = self._index.get(key)
            if current is None or sort_item_ids([current, item_id])[0] == item_id:
                self._index[key] = item_id
        return item_id

    def update_item(
        self,
        item_id: str,
        *,
        title: str | None = None,
        body: str | None = None,
        labels: list[str] | None = None,
        state: str | None = None,
    ) -> None:
        patch: dict[str, Any] = {}
        if title is not None:
            patch["title"] = title
        if body is not None:
            patch["body"] = body
        if labels is not None:
            patch["labels"] = sorted(set(labels))
        if state is not None:
            patch["state"] = state
        if not patch:
            return
        self._request("PATCH", self._repo_path(f"/issues/{item_id}"), body=patch, what=f"update #{item_id}")

    def add_label(self, item_id: str, label: str) -> None:
        self._request(
            "POST",
            self._repo_path(f"/issues/{item_id}/labels"),
            body={"labels": [label]},
            what=f"label #{item_id} +{label}",
        )

    def remove_label(self, item_id: str, label: str) -> None:
        try:
            self._request(
                "DELETE",
                self._repo_path(f"/issues/{item_id}/labels/{urllib.parse.quote(label, safe='')}"),
                what=f"label #{item_id} -{label}",
            )
        except ItemNotFoundError:
            # GitHub answers 404 when the label is not on the issue.
            return

    def get_item(self, item_id: str) -> TrackerItem:
        try:
            payload = self._request("GET", self._repo_path(f"/issues/{item_id}"), what=f"issue #{item_id}")
        except ItemNotFoundError:
            raise ItemNotFoundError(item_id) from None
        return _item_from_payload(payload)

    def get_item_state(self, item_id: str) -> str:
        return self.get_item(item_id).state

    def _scan_index(self, index: dict[tuple[str, str], str], since: str = "") -> None:
        params: dict[str, Any] = {"state": "all", "sort": "created", "direction": "asc"}
        if self.index_label:
            params["labels"] = self.index_label
        if since:
            params["since"] = since
        for row in self._paginate(self._repo_path("/issues"), params):
            if "pull_request" in row:
                continue
            key = metadata_key(row.get("body"))
            if key is None:
                continue
            number = str(row["number"])
            current = index.get(key)
            if current is None or sort_item_ids([current, number])[0] == number:
                index[key] = number

    def find_item_by_metadata_id(
        self, node_id: str, *, document: str = "", refresh: bool = False
    ) -> str | None:
        """Lowest-numbered issue whose metadata block names node_id in document.

        The first call lists every indexed issue; refresh=True only fetches
        issues updated since the previous scan (with clock-skew slack).
        """
        if self._index is None or refresh:
            started = time.time() - INDEX_SKEW_SECONDS
            if self._index is None:
                self._index = {}
                self._scan_index(self._index)
            else:
                self._scan_index(self._index, self._index_since)
            self._index_since = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(started))
        return self._index.get((document, node_id))

    def find_items_by_title(self, title: str) -> list[TrackerItem]:
        query = f'repo:{self.repository} is:issue in:title "{title}"'
        payload = self._request("GET", "/search/issues", params={"q": query, "per_page": 20}, what="title search")
        items = [
            _item_from_payload(row)
            for row in (payload or {}).get("items") or []
            if str(row.get("title", "")).strip() == title.strip()
        ]
        order = {item_id: pos for pos, item_id in enumerate(sort_item_ids([i.id for i in items]))}
        return sorted(items, key=lambda i: order[i.id])

    def comment(self, item_id: str, text: str) -> None:
        self._request(
            "POST",
            self._repo_path(f"/issues/{item_id}/comments"),
            body={"body": text},
            what=f"comment on #{item_id}",
        )

    def add_sub_item(self, parent_id: str, child_id: str) -> None:
        child = self._request("GET", self._repo_path(f"/issues/{child_id}"), what=f"issue #{child_id}")
        try:
            self._request(
                "POST",
                self._repo_path(f"/issues/{parent_id}/sub_issues"),
                body={"sub_issue_id": child["id"]},
                what=f"sub-issue #{parent_id} -> #{child_id}",
            )
        except ItemNotFoundError as exc:
            raise HierarchyUnsupportedError(str(exc), status=404) from exc
        except (TransientTrackerError, FatalTrackerError):
            raise
        except TrackerError as exc:
            if "already" in str(exc).lower():
                return
            raise HierarchyUnsupportedError(str(exc), status=exc.status) from exc

    def list_sub_items(self, parent_id: str) -> list[str]:
        try:
            rows = self._paginate(self._repo_path(f"/issues/{parent_id}/sub_issues"), {})
        except ItemNotFoundError as exc:
            raise HierarchyUnsupportedError(str(exc), status=404) from exc
        except (TransientTrackerError, FatalTrackerError):
            raise
        except TrackerError as exc:
            raise HierarchyUnsupportedError(str(exc), status=exc.status) from exc
        return [str(row["number"]) for row in rows]


def _item_from_payload(payload: dict[str, Any]) -> TrackerItem:
    labels = frozenset(
        str(label["name"]) if isinstance(label, dict) else str(label)
        for label in payload.get("labels") or []
    )
    return TrackerItem(
        id=str(payload["number"]),
        title=str(payload.get("title") or ""),
        body=str(payload.get("body") or ""),
        labels=labels,
        state=CLOSED if payload.get("state") == CLOSED else OPEN,
    )
