"""Webhook and API routes for the graphsync service."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field, ValidationError

from .. import __version__
from ..errors import BreakdownError, GraphsyncError, ProducerError, SnapshotError, TrackerError

router = APIRouter()

ITEM_ACTIONS = ("closed", "reopened")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _runner(req: Request):
    return req.app.state.runner_factory()


def _secret(req: Request) -> str:
    return req.app.state.config.webhook_secret


async def _in_executor(fn, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))


def signature_for(secret: str, payload: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, payload: bytes, header: str | None) -> bool:
    if not secret:
        return True
    if not header:
        return False
    return hmac.compare_digest(signature_for(secret, payload), header.strip())


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class IssueRef(BaseModel):
    number: int


class IssuesEvent(BaseModel):
    action: str
    issue: IssueRef


class BreakdownRequest(BaseModel):
    node_id: str = Field(min_length=1)
    depth: int | None = Field(default=None, ge=1, le=5)
    threshold: int | None = Field(default=None, ge=1, le=100)
    force: bool = False
    document: str | None = None


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------


@router.get("/health")
async def health():
    return {"status": "ok", "version": __version__}


@router.get("/runs")
async def list_runs(request: Request):
    runner = _runner(request)
    return await _in_executor(runner.runs)


@router.get("/runs/{run_id}")
async def get_run(request: Request, run_id: str):
    runner = _runner(request)
    try:
        snapshot = await _in_executor(runner.store.load, run_id)
    except SnapshotError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {
        **snapshot.brief(),
        "progress": snapshot.progress.to_dict(),
        "summary": snapshot.summary,
        "mapping": snapshot.mapping.to_dict(),
    }


@router.post("/breakdown")
async def breakdown(request: Request, body: BreakdownRequest):
    runner = _runner(request)
    try:
        report = await _in_executor(
            runner.breakdown,
            body.node_id,
            depth=body.depth,
            threshold=body.threshold,
            force=body.force,
            document=body.document,
        )
    except SnapshotError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except BreakdownError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (ProducerError, TrackerError) as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except GraphsyncError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return report.to_dict()


@router.post("/webhooks/github")
async def github_webhook(request: Request):
    raw = await request.body()
    if not verify_signature(_secret(request), raw, request.headers.get("x-hub-signature-256")):
        raise HTTPException(status_code=401, detail="invalid signature")

    event = request.headers.get("x-github-event", "")
    if event == "ping":
        return {"ok": True, "event": "ping"}
    if event != "issues":
        return {"ok": True, "ignored": f"event {event or 'unknown'}"}

    try:
        payload: Any = json.loads(raw or b"{}")
        parsed = IssuesEvent.model_validate(payload)
    except (json.JSONDecodeError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=f"malformed issues payload: {exc}") from exc

    if parsed.action not in ITEM_ACTIONS:
        return {"ok": True, "ignored": f"action {parsed.action}"}

    runner = _runner(request)
    item_id = str(parsed.issue.number)
    try:
        result = await _in_executor(runner.on_item_event, item_id, parsed.action)
    except SnapshotError as exc:
        return {"ok": True, "ignored": str(exc)}
    except TrackerError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"ok": True, "item_id": item_id, "action": parsed.action, "sweep": result.to_dict()}
