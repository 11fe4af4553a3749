"""
FastAPI application exposing the orchestration engine.

Endpoints:
  POST /runs                 Resolve an upload set and start a pipeline run
  GET  /runs/current         State of the current or most recent run
  POST /runs/current/cancel  Terminate the active run
  GET  /progress             Server-sent event stream of the progress log
  GET  /health               Health check
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from .config import load_config
from .errors import (
    NoActiveRunError,
    ResolutionError,
    RunAlreadyInProgressError,
    RunFailedToStart,
)
from .models import UploadedFile
from .progress import DEFAULT_POLL_INTERVAL, ProgressStreamer, format_sse
from .runs import RunManager
from .version import __version__
from .workspace import Workspace

log = logging.getLogger(__name__)


class UploadedFileModel(BaseModel):
    original_name: str
    stored_path: str


class RunStartRequest(BaseModel):
    files: list[UploadedFileModel]


class RunStartResponse(BaseModel):
    run_id: str
    status: str
    samples: list[str]
    message: str


def create_app(config: dict[str, Any] | None = None, manager: RunManager | None = None) -> FastAPI:
    """Build the application around one RunManager and one ProgressStreamer."""
    config = config if config is not None else load_config()
    if manager is None:
        manager = RunManager(Workspace(config.get("base_dir", "uploads"), config), config)
    streamer = ProgressStreamer(
        manager.progress_log, config.get("poll_interval", DEFAULT_POLL_INTERVAL)
    )

    app = FastAPI(
        title="consensusflow",
        description="Paired-end read processing pipeline with live progress streaming",
        version=__version__,
    )
    app.state.manager = manager
    app.state.streamer = streamer

    # ── Health ────────────────────────────────────────────────────────────

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "service": "consensusflow",
            "version": __version__,
            "run_active": manager.is_active,
            "subscribers": streamer.subscriber_count,
        }

    # ── Runs ──────────────────────────────────────────────────────────────

    @app.post("/runs", response_model=RunStartResponse, status_code=202)
    async def start_run(req: RunStartRequest):
        """Validate the upload set and start the pipeline without waiting for it."""
        uploads = [UploadedFile(f.original_name, f.stored_path) for f in req.files]
        try:
            state = manager.start(uploads)
        except ResolutionError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except RunAlreadyInProgressError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except RunFailedToStart as e:
            log.error("Run could not start: %s", e)
            raise HTTPException(status_code=500, detail=str(e))

        return RunStartResponse(
            run_id=state.run_id,
            status=state.status.value,
            samples=state.samples,
            message="Pipeline execution started.",
        )

    @app.get("/runs/current")
    async def current_run():
        if manager.state is None:
            raise HTTPException(status_code=404, detail="No pipeline run has been started")
        return manager.state.to_dict()

    @app.post("/runs/current/cancel")
    async def cancel_run():
        try:
            state = manager.cancel()
        except NoActiveRunError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return state.to_dict()

    # ── Progress ──────────────────────────────────────────────────────────

    @app.get("/progress")
    async def progress(request: Request, follow: bool = True):
        """Replay the progress log from the start, then follow it.

        With ``follow=false`` the stream ends once no run is active.
        """
        until = None if follow else (lambda: not manager.is_active)

        async def frames():
            async with aclosing(streamer.subscribe(until=until)) as events:
                async for event in events:
                    if await request.is_disconnected():
                        break
                    yield format_sse(event)

        return StreamingResponse(
            frames(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    return app
