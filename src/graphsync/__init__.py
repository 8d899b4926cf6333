from __future__ import annotations

from typing import TYPE_CHECKING

__all__ = [
    "__version__",
    "Reconciler",
    "SyncConfig",
    "SyncRunner",
    "TaskGraph",
    "load_graph",
]

__version__ = "0.1.0"

if TYPE_CHECKING:
    from .config import SyncConfig
    from .graph import TaskGraph, load_graph
    from .reconcile import Reconciler
    from .sync import SyncRunner


def __getattr__(name: str):
    if name in {"TaskGraph", "load_graph"}:
        from .graph import TaskGraph, load_graph

        return {"TaskGraph": TaskGraph, "load_graph": load_graph}[name]
    if name == "SyncConfig":
        from .config import SyncConfig

        return SyncConfig
    if name == "Reconciler":
        from .reconcile import Reconciler

        return Reconciler
    if name == "SyncRunner":
        from .sync import SyncRunner

        return SyncRunner
    raise AttributeError(f"module 'graphsync' has no attribute {name!r}")
