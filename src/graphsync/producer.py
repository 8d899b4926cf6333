"""Wrapper around the external task-graph producer CLI (taskmaster)."""

from __future__ import annotations

import json
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Any

from rich.console import Console

from .errors import ProducerError
from .util import CommandError, run_capture, which

DEFAULT_BINARY = "taskmaster"
OUTPUT_FORMAT = "json"


class GraphProducer:
    def __init__(
        self,
        binary: str = DEFAULT_BINARY,
        *,
        state_dir: Path | None = None,
        cwd: Path | None = None,
        timeout: float = 600.0,
        console: Console | None = None,
    ) -> None:
        self.binary = binary
        self.state_dir = state_dir
        self.cwd = cwd
        self.timeout = timeout
        self.console = console or Console(stderr=True)

    def locate(self) -> str:
        """Binary lookup: <state>/bin/<name>, an explicit path, then PATH."""
        if self.state_dir is not None:
            local = self.state_dir / "bin" / Path(self.binary).name
            if local.is_file() and os.access(local, os.X_OK):
                return str(local)
        explicit = Path(self.binary).expanduser()
        if explicit.is_absolute() or os.sep in self.binary:
            if explicit.is_file() and os.access(explicit, os.X_OK):
                return str(explicit)
            raise ProducerError(f"graph producer not executable: {self.binary}")
        found = which(self.binary)
        if found:
            return found
        raise ProducerError(
            f"graph producer {self.binary!r} not found "
            "(install it on PATH or set TASKMASTER_BIN)"
        )

    def _run(self, args: list[str], output: Path) -> dict[str, Any]:
        argv = [self.locate(), *args]
        self.console.print(f"[dim]$ {' '.join(argv)}[/dim]")
        try:
            run_capture(argv, cwd=self.cwd, timeout=self.timeout)
        except CommandError as exc:
            detail = (exc.stderr or exc.stdout).strip().splitlines()
            raise ProducerError(
                f"{args[0]} failed (exit {exc.returncode})" + (f": {detail[-1]}" if detail else "")
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise ProducerError(f"{args[0]} timed out after {self.timeout:.0f}s") from exc
        except OSError as exc:
            raise ProducerError(f"cannot run graph producer: {exc}") from exc

        if not output.is_file():
            raise ProducerError(f"{args[0]} did not write {output}")
        try:
            payload = json.loads(output.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ProducerError(f"{args[0]} wrote invalid JSON to {output}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ProducerError(f"{args[0]} output must be a JSON object")
        return payload

    def parse_prd(
        self,
        prd_path: Path,
        output: Path,
        *,
        complexity_threshold: int,
        max_depth: int,
    ) -> dict[str, Any]:
        if not Path(prd_path).is_file():
            raise ProducerError(f"requirements document not found: {prd_path}")
        output.parent.mkdir(parents=True, exist_ok=True)
        payload = self._run(
            [
                "parse-prd",
                "--input", str(prd_path),
                "--output", str(output),
                "--complexity-threshold", str(complexity_threshold),
                "--max-depth", str(max_depth),
                "--format", OUTPUT_FORMAT,
            ],
            output,
        )
        if not isinstance(payload.get("tasks"), list):
            raise ProducerError("parse-prd output has no 'tasks' array")
        return payload

    def expand_task(
        self,
        node_id: str,
        *,
        depth: int,
        complexity_threshold: int,
        output: Path | None = None,
    ) -> list[dict[str, Any]]:
        """Ask the producer to split one task; returns the raw subtask objects."""
        with tempfile.TemporaryDirectory(prefix="graphsync-expand-") as tmp:
            target = output or Path(tmp) / "expanded.json"
            payload = self._run(
                [
                    "expand-task",
                    "--id", node_id,
                    "--output", str(target),
                    "--depth", str(depth),
                    "--complexity-threshold", str(complexity_threshold),
                    "--format", OUTPUT_FORMAT,
                ],
                target,
            )
        expanded = payload.get("expanded_task")
        if expanded is not None and str(expanded) != node_id:
            raise ProducerError(f"expand-task answered for {expanded}, expected {node_id}")
        subtasks = payload.get("subtasks")
        if not isinstance(subtasks, list):
            raise ProducerError("expand-task output has no 'subtasks' array")
        return [s for s in subtasks if isinstance(s, dict)]
