"""Configuration: .graphsync/config.toml plus environment overrides."""

from __future__ import annotations

import os
import re
import time
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import tomli_w

from .errors import ConfigValidationError
from .tracker.retry import RetryPolicy, SleepFn
from .util import CommandError, parse_bool, run_capture

STATE_DIR_NAME = ".graphsync"
CONFIG_FILE_NAME = "config.toml"
TRACKER_KINDS = ("github", "local")
HIERARCHY_STRATEGIES = ("auto", "native", "cross-reference")
DEFAULT_API_URL = "https://api.github.com"

_REMOTE_RE = re.compile(r"github\.com[:/]([^/]+)/([^/]+?)(?:\.git)?/?$")

# keys `graphsync config set` may write
CONFIG_KEYS = (
    "sync.complexity_threshold",
    "sync.max_depth",
    "sync.breakdown_max_depth",
    "sync.prd_path_glob",
    "sync.dry_run",
    "sync.unreachable_limit",
    "tracker.kind",
    "tracker.repository",
    "tracker.api_url",
    "tracker.timeout",
    "retry.max_attempts",
    "retry.base_delay",
    "retry.max_delay",
    "labels.task",
    "labels.blocked",
    "labels.parent",
    "labels.leaf",
    "labels.priority_prefix",
    "hierarchy.strategy",
    "producer.binary",
)

# env var -> (section, key)
ENV_OVERRIDES = {
    "COMPLEXITY_THRESHOLD": ("sync", "complexity_threshold"),
    "MAX_DEPTH": ("sync", "max_depth"),
    "BREAKDOWN_MAX_DEPTH": ("sync", "breakdown_max_depth"),
    "PRD_PATH_GLOB": ("sync", "prd_path_glob"),
    "DRY_RUN": ("sync", "dry_run"),
    "GITHUB_REPOSITORY": ("tracker", "repository"),
    "GITHUB_API_URL": ("tracker", "api_url"),
    "GRAPHSYNC_TRACKER": ("tracker", "kind"),
    "TASKMASTER_BIN": ("producer", "binary"),
    "GRAPHSYNC_HIERARCHY": ("hierarchy", "strategy"),
}


@dataclass(frozen=True)
class LabelConfig:
    task: str = "task"
    blocked: str = "blocked"
    parent: str = "parent"
    leaf: str = "leaf"
    priority_prefix: str = "priority:"

    def priority(self, priority: str) -> str:
        return f"{self.priority_prefix}{priority}"

    def is_structural(self, label: str) -> bool:
        """Labels whose presence the reconciler owns (blocked is owned by the state machine)."""
        return label in (self.task, self.parent, self.leaf) or label.startswith(self.priority_prefix)


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 60.0

    def policy(self, sleep: SleepFn = time.sleep) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            sleep=sleep,
        )


@dataclass(frozen=True)
class TrackerConfig:
    kind: str = "github"
    repository: str = ""
    api_url: str = DEFAULT_API_URL
    timeout: float = 20.0
    token: str = field(default="", repr=False)


@dataclass(frozen=True)
class SyncConfig:
    repo_root: Path
    state_dir: Path
    complexity_threshold: int = 40
    max_depth: int = 3
    breakdown_max_depth: int = 2
    prd_path_glob: str = "docs/**.prd.md"
    dry_run: bool = False
    unreachable_limit: int = 3
    hierarchy_strategy: str = "auto"
    producer_binary: str = "taskmaster"
    webhook_secret: str = field(default="", repr=False)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    labels: LabelConfig = field(default_factory=LabelConfig)
    source: Path | None = None

    @property
    def snapshot_dir(self) -> Path:
        return self.state_dir / "snapshots"

    def as_dict(self) -> dict[str, Any]:
        return {
            "repo_root": str(self.repo_root),
            "state_dir": str(self.state_dir),
            "source": str(self.source) if self.source else None,
            "sync": {
                "complexity_threshold": self.complexity_threshold,
                "max_depth": self.max_depth,
                "breakdown_max_depth": self.breakdown_max_depth,
                "prd_path_glob": self.prd_path_glob,
                "dry_run": self.dry_run,
                "unreachable_limit": self.unreachable_limit,
            },
            "tracker": {
                "kind": self.tracker.kind,
                "repository": self.tracker.repository,
                "api_url": self.tracker.api_url,
                "timeout": self.tracker.timeout,
                "token": "***" if self.tracker.token else "",
            },
            "retry": {
                "max_attempts": self.retry.max_attempts,
                "base_delay": self.retry.base_delay,
                "max_delay": self.retry.max_delay,
            },
            "labels": {
                "task": self.labels.task,
                "blocked": self.labels.blocked,
                "parent": self.labels.parent,
                "leaf": self.labels.leaf,
                "priority_prefix": self.labels.priority_prefix,
            },
            "hierarchy": {"strategy": self.hierarchy_strategy},
            "producer": {"binary": self.producer_binary},
        }


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def _as_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    if not stripped:
        return None
    return stripped


def _require_str(value: object, *, key: str) -> str:
    text = _as_str(value)
    if text is None:
        raise ConfigValidationError(f"value for '{key}' must be a non-empty string")
    return text


def _as_int(value: object, *, key: str, lo: int, hi: int) -> int:
    if isinstance(value, bool):
        raise ConfigValidationError(f"value {value!r} for '{key}' must be an integer")
    if isinstance(value, str) and re.fullmatch(r"\s*\d+\s*", value):
        value = int(value)
    if not isinstance(value, int):
        raise ConfigValidationError(f"value {value!r} for '{key}' must be an integer")
    if value < lo or value > hi:
        raise ConfigValidationError(f"value {value} for '{key}' must be between {lo} and {hi}")
    return value


def _as_float(value: object, *, key: str, lo: float) -> float:
    if isinstance(value, bool):
        raise ConfigValidationError(f"value {value!r} for '{key}' must be a number")
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ConfigValidationError(f"value {value!r} for '{key}' must be a number") from None
    if number < lo:
        raise ConfigValidationError(f"value {number} for '{key}' must be >= {lo}")
    return number


def _as_bool(value: object, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (str, int)):
        parsed = parse_bool(str(value))
        if parsed is not None:
            return parsed
    raise ConfigValidationError(
        f"value {value!r} for '{key}' must be a boolean (true/false/yes/no/1/0)"
    )


def _as_enum(value: object, *, key: str, choices: tuple[str, ...]) -> str:
    text = (_as_str(value) or "").lower()
    if text not in choices:
        raise ConfigValidationError(
            f"value {value!r} for '{key}' must be one of: {', '.join(choices)}"
        )
    return text


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    if not isinstance(value, dict):
        raise ConfigValidationError(f"[{name}] must be a table")
    return value


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def resolve_state_dir(
    cwd: Path | None = None,
    *,
    create: bool = False,
    env: Mapping[str, str] | None = None,
) -> Path:
    """Return the graphsync state directory.

    Resolution order:
    1. GRAPHSYNC_STATE_DIR
    2. nearest existing .graphsync directory from cwd upward
    3. cwd/.graphsync
    """
    environ = os.environ if env is None else env
    raw = environ.get("GRAPHSYNC_STATE_DIR", "").strip()
    if raw:
        state_dir = Path(raw).expanduser().resolve()
    else:
        start = (cwd or Path.cwd()).resolve()
        state_dir = start / STATE_DIR_NAME
        for base in (start, *start.parents):
            candidate = base / STATE_DIR_NAME
            if candidate.is_dir():
                state_dir = candidate
                break

    if create:
        state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir


def parse_remote_url(url: str) -> str | None:
    match = _REMOTE_RE.search(url.strip())
    if not match:
        return None
    return f"{match.group(1)}/{match.group(2)}"


def detect_repository(repo_root: Path, env: Mapping[str, str] | None = None) -> str:
    environ = os.environ if env is None else env
    explicit = environ.get("GITHUB_REPOSITORY", "").strip()
    if explicit:
        return explicit
    try:
        remote = run_capture(["git", "remote", "get-url", "origin"], cwd=repo_root)
    except (CommandError, FileNotFoundError):
        return ""
    return parse_remote_url(remote) or ""


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigValidationError(f"{path}: invalid TOML: {exc}") from exc


def _apply_env(raw: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    merged = {k: dict(v) if isinstance(v, dict) else v for k, v in raw.items()}
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_name, "").strip()
        if value:
            merged.setdefault(section, {})
            if not isinstance(merged[section], dict):
                raise ConfigValidationError(f"[{section}] must be a table")
            merged[section][key] = value
    return merged


def load_config(
    repo_root: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
    detect_repo: bool = True,
) -> SyncConfig:
    environ = os.environ if env is None else env
    root = (repo_root or Path.cwd()).resolve()
    state_dir = resolve_state_dir(root, env=environ)
    path = state_dir / CONFIG_FILE_NAME

    raw: dict[str, Any] = _read_toml(path) if path.is_file() else {}
    return _build_config(
        _apply_env(raw, environ),
        root=root,
        state_dir=state_dir,
        environ=environ,
        detect_repo=detect_repo,
        source=path if path.is_file() else None,
    )


def _build_config(
    raw: dict[str, Any],
    *,
    root: Path,
    state_dir: Path,
    environ: Mapping[str, str],
    detect_repo: bool,
    source: Path | None,
) -> SyncConfig:
    sync = _section(raw, "sync")
    tracker = _section(raw, "tracker")
    retry = _section(raw, "retry")
    labels = _section(raw, "labels")
    hierarchy = _section(raw, "hierarchy")
    producer = _section(raw, "producer")

    defaults = LabelConfig()
    label_cfg = LabelConfig(
        task=_require_str(labels.get("task", defaults.task), key="labels.task"),
        blocked=_require_str(labels.get("blocked", defaults.blocked), key="labels.blocked"),
        parent=_require_str(labels.get("parent", defaults.parent), key="labels.parent"),
        leaf=_require_str(labels.get("leaf", defaults.leaf), key="labels.leaf"),
        priority_prefix=_require_str(
            labels.get("priority_prefix", defaults.priority_prefix),
            key="labels.priority_prefix",
        ),
    )

    repository = _as_str(tracker.get("repository")) or ""
    if not repository and detect_repo:
        repository = detect_repository(root, environ)
    tracker_cfg = TrackerConfig(
        kind=_as_enum(tracker.get("kind", "github"), key="tracker.kind", choices=TRACKER_KINDS),
        repository=repository,
        api_url=_as_str(tracker.get("api_url")) or DEFAULT_API_URL,
        timeout=_as_float(tracker.get("timeout", 20.0), key="tracker.timeout", lo=1.0),
        token=environ.get("GITHUB_TOKEN", "").strip(),
    )

    retry_cfg = RetryConfig(
        max_attempts=_as_int(retry.get("max_attempts", 4), key="retry.max_attempts", lo=1, hi=20),
        base_delay=_as_float(retry.get("base_delay", 1.0), key="retry.base_delay", lo=0.0),
        max_delay=_as_float(retry.get("max_delay", 60.0), key="retry.max_delay", lo=0.0),
    )

    return SyncConfig(
        repo_root=root,
        state_dir=state_dir,
        complexity_threshold=_as_int(
            sync.get("complexity_threshold", 40), key="complexity_threshold", lo=1, hi=100
        ),
        max_depth=_as_int(sync.get("max_depth", 3), key="max_depth", lo=1, hi=10),
        breakdown_max_depth=_as_int(
            sync.get("breakdown_max_depth", 2), key="breakdown_max_depth", lo=1, hi=5
        ),
        prd_path_glob=_require_str(sync.get("prd_path_glob", "docs/**.prd.md"), key="prd_path_glob"),
        dry_run=_as_bool(sync.get("dry_run", False), key="dry_run"),
        unreachable_limit=_as_int(
            sync.get("unreachable_limit", 3), key="unreachable_limit", lo=1, hi=100
        ),
        hierarchy_strategy=_as_enum(
            hierarchy.get("strategy", "auto"),
            key="hierarchy.strategy",
            choices=HIERARCHY_STRATEGIES,
        ),
        producer_binary=_require_str(producer.get("binary", "taskmaster"), key="producer.binary"),
        webhook_secret=environ.get("GRAPHSYNC_WEBHOOK_SECRET", "").strip(),
        tracker=tracker_cfg,
        retry=retry_cfg,
        labels=label_cfg,
        source=source,
    )


def default_config_toml() -> str:
    return """\
[sync]
complexity_threshold = 40
max_depth = 3
breakdown_max_depth = 2
prd_path_glob = "docs/**.prd.md"
dry_run = false

[tracker]
kind = "github"
# repository = "owner/name"
timeout = 20

[retry]
max_attempts = 4
base_delay = 1.0
max_delay = 60.0

[labels]
task = "task"
blocked = "blocked"
parent = "parent"
leaf = "leaf"
priority_prefix = "priority:"

[hierarchy]
strategy = "auto"

[producer]
binary = "taskmaster"
"""


# ---------------------------------------------------------------------------
# Editing
# ---------------------------------------------------------------------------


def _split_key(key: str) -> tuple[str, str]:
    if key not in CONFIG_KEYS:
        raise ConfigValidationError(f"unknown config key '{key}' (known: {', '.join(CONFIG_KEYS)})")
    section, _, name = key.partition(".")
    return section, name


def parse_value(text: str) -> Any:
    """Read a command-line value as a TOML scalar; anything else is a plain string."""
    try:
        value = tomllib.loads(f"value = {text}")["value"]
    except tomllib.TOMLDecodeError:
        return text
    if isinstance(value, (dict, list)):
        return text
    return value


def config_value(config: SyncConfig, key: str) -> Any:
    section, name = _split_key(key)
    return config.as_dict()[section][name]


def _write_toml(path: Path, raw: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        tomli_w.dump(raw, f)


def set_config_value(config: SyncConfig, key: str, text: str) -> SyncConfig:
    """Write `key` into the config file and return the reloaded configuration.

    The file is only written when the result still validates. Comments in an
    existing file are not preserved.
    """
    section, name = _split_key(key)
    path = config.state_dir / CONFIG_FILE_NAME
    raw = _read_toml(path) if path.is_file() else {}
    table = _section(raw, section)
    raw[section] = {**table, name: parse_value(text)}
    updated = _build_config(
        raw,
        root=config.repo_root,
        state_dir=config.state_dir,
        environ={},
        detect_repo=False,
        source=path,
    )
    _write_toml(path, raw)
    return updated


def reset_config(config: SyncConfig, key: str | None = None) -> None:
    """Drop one key from the config file, or restore the whole default file."""
    path = config.state_dir / CONFIG_FILE_NAME
    if key is None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(default_config_toml(), encoding="utf-8")
        return
    section, name = _split_key(key)
    if not path.is_file():
        return
    raw = _read_toml(path)
    table = dict(_section(raw, section))
    if name not in table:
        return
    del table[name]
    if table:
        raw[section] = table
    else:
        raw.pop(section, None)
    _write_toml(path, raw)
