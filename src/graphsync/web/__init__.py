"""graphsync webhook service: FastAPI app factory."""

from __future__ import annotations

from typing import Callable

from fastapi import FastAPI
from rich.console import Console

from .. import __version__
from ..config import SyncConfig, load_config
from ..sync import SyncRunner
from ..util import find_repo_root

RunnerFactory = Callable[[], SyncRunner]


def create_app(
    config: SyncConfig | None = None,
    *,
    runner_factory: RunnerFactory | None = None,
) -> FastAPI:
    config = config or load_config(find_repo_root())

    def _default_runner() -> SyncRunner:
        return SyncRunner(config, console=Console(stderr=True))

    app = FastAPI(title="graphsync", version=__version__)
    app.state.config = config
    app.state.runner_factory = runner_factory or _default_runner

    from .routes import router

    app.include_router(router)

    return app
