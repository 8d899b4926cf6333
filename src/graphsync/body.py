"""Tracker item body codec: YAML metadata block, generated sections, related items."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

import yaml

from . import __version__
from .graph import TaskNode
from .util import sha256_text, utc_now_iso

GENERATOR = "graphsync"
RELATED_HEADING = "## Related Items"


@dataclass(frozen=True)
class ParsedBody:
    metadata: dict[str, Any] | None
    content: str
    related: list[str] = field(default_factory=list)

    @property
    def node_id(self) -> str | None:
        if not self.metadata or self.metadata.get("id") is None:
            return None
        return str(self.metadata["id"])

    @property
    def document(self) -> str:
        if not self.metadata:
            return ""
        return str(self.metadata.get("document") or "")

    @property
    def key(self) -> tuple[str, str] | None:
        node_id = self.node_id
        return (self.document, node_id) if node_id is not None else None

    @property
    def dependencies(self) -> tuple[str, ...]:
        if not self.metadata:
            return ()
        return tuple(str(x) for x in self.metadata.get("dependencies") or [])


def node_fingerprint(node: TaskNode) -> str:
    """Digest of every authoritative node field written into the item."""
    payload = {
        "title": node.title,
        "description": node.description,
        "details": node.details,
        "test_strategy": node.test_strategy,
        "complexity": node.complexity,
        "priority": node.priority,
        "parent": node.parent,
        "dependencies": sorted(node.dependencies),
    }
    return sha256_text(json.dumps(payload, sort_keys=True))[:16]


def render_metadata(
    node: TaskNode,
    *,
    document: str = "",
    generated_at: str | None = None,
) -> dict[str, Any]:
    return {
        "id": node.id,
        "document": document or None,
        "parent": node.parent,
        "dependencies": list(node.dependencies),
        "complexity": node.complexity,
        "priority": node.priority,
        "fingerprint": node_fingerprint(node),
        "generated_by": GENERATOR,
        "generator_version": __version__,
        "generated_at": generated_at or utc_now_iso(),
    }


def render_body(
    node: TaskNode,
    *,
    document: str = "",
    generated_at: str | None = None,
    related: list[str] | None = None,
) -> str:
    meta = yaml.safe_dump(
        render_metadata(node, document=document, generated_at=generated_at),
        sort_keys=False,
        default_flow_style=None,
        allow_unicode=True,
    )
    sections = [f"---\n{meta}---", "## Description", node.description.strip() or "_No description._"]
    if node.details.strip():
        sections += ["## Implementation Details", node.details.strip()]
    if node.test_strategy.strip():
        sections += ["## Test Strategy", node.test_strategy.strip()]

    details = [
        f"- **ID**: {node.id}",
        f"- **Complexity Score**: {node.complexity}",
        f"- **Priority**: {node.priority}",
    ]
    if node.parent:
        details.append(f"- **Parent**: {node.parent}")
    if node.dependencies:
        details.append(f"- **Dependencies**: {', '.join(node.dependencies)}")
    sections += ["## Task Details", "\n".join(details)]

    text = "\n\n".join(sections) + "\n"
    if related:
        text = _append_related(text, related)
    return text


def _split_frontmatter(text: str) -> tuple[dict[str, Any] | None, str]:
    if not text.startswith("---"):
        return None, text
    first_nl = text.find("\n")
    if first_nl < 0 or text[:first_nl].strip() != "---":
        return None, text
    end = text.find("\n---", first_nl)
    if end < 0:
        return None, text
    try:
        meta = yaml.safe_load(text[first_nl + 1 : end + 1])
    except yaml.YAMLError:
        return None, text
    if not isinstance(meta, dict):
        return None, text
    rest = text[end + len("\n---") :]
    return meta, rest.lstrip("-").lstrip("\n")


def parse_body(text: str | None) -> ParsedBody:
    raw = (text or "").replace("\r\n", "\n")
    meta, rest = _split_frontmatter(raw)
    content, related = _split_related(rest)
    return ParsedBody(metadata=meta, content=content, related=related)


def metadata_node_id(text: str | None) -> str | None:
    return parse_body(text).node_id


def metadata_key(text: str | None) -> tuple[str, str] | None:
    """(document, node id) named by the metadata block, or None."""
    return parse_body(text).key


def _split_related(text: str) -> tuple[str, list[str]]:
    idx = text.rfind(RELATED_HEADING)
    if idx < 0:
        return text, []
    lines = [
        line.strip()
        for line in text[idx + len(RELATED_HEADING) :].splitlines()
        if line.strip().startswith("- ")
    ]
    return text[:idx].rstrip() + "\n", lines


def _append_related(text: str, lines: list[str]) -> str:
    content, existing = _split_related(text)
    merged = list(existing)
    for line in lines:
        if line not in merged:
            merged.append(line)
    if not merged:
        return content
    return content.rstrip() + f"\n\n{RELATED_HEADING}\n\n" + "\n".join(merged) + "\n"


def has_related(text: str | None, line: str) -> bool:
    return line in parse_body(text).related


def with_related(text: str | None, line: str) -> str:
    """Return text with `line` in its related-items section (added at most once)."""
    return _append_related(text or "", [line])
