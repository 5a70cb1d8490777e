"""Operator status API for the margin watcher."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from .audit import read_audit_entries
from .watcher import RiskWatcher, WatcherState

logger = logging.getLogger(__name__)

MAX_AUDIT_ENTRIES = 500


def get_watcher(request: Request) -> RiskWatcher:
    return request.app.state.watcher


def _health_payload(watcher: RiskWatcher) -> Dict[str, Any]:
    report = watcher.last_report
    overall = "healthy"
    if watcher.state is not WatcherState.RUNNING:
        overall = "stopped"
    elif report is not None and report.error:
        overall = "degraded"
    return {
        "status": overall,
        "state": watcher.state.value,
        "tick_in_progress": watcher.tick_in_progress,
        "last_tick_at": report.started_at.isoformat() if report else None,
        "last_tick_error": report.error if report else None,
    }


def create_app(
    watcher: RiskWatcher,
    *,
    audit_log_path: Optional[Path] = None,
    autostart: bool = False,
) -> FastAPI:
    """Build the status app. With ``autostart`` the watcher follows the app lifecycle."""

    app = FastAPI(title="Margin Watcher")
    app.state.watcher = watcher
    app.state.audit_log_path = audit_log_path

    if autostart:

        @app.on_event("startup")
        async def _start_watcher() -> None:
            watcher.start()

        @app.on_event("shutdown")
        async def _stop_watcher() -> None:
            watcher.stop()
            await watcher.join()

    @app.get("/healthz", response_class=JSONResponse)
    async def healthz(watcher: RiskWatcher = Depends(get_watcher)) -> JSONResponse:
        return JSONResponse(_health_payload(watcher))

    @app.get("/api/watcher", response_class=JSONResponse)
    async def api_watcher(watcher: RiskWatcher = Depends(get_watcher)) -> JSONResponse:
        report = watcher.last_report
        return JSONResponse(
            {
                "state": watcher.state.value,
                "tick_in_progress": watcher.tick_in_progress,
                "config": watcher.config.to_payload(),
                "last_report": report.to_payload() if report else None,
            }
        )

    @app.post("/api/watcher/tick", response_class=JSONResponse)
    async def api_tick(watcher: RiskWatcher = Depends(get_watcher)) -> JSONResponse:
        report = await watcher.tick()
        if report is None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A risk tick is already in progress")
        logger.info("Manual risk tick completed", extra={"tick_id": report.tick_id})
        return JSONResponse(report.to_payload())

    @app.get("/api/metrics", response_class=JSONResponse)
    async def api_metrics(watcher: RiskWatcher = Depends(get_watcher)) -> JSONResponse:
        return JSONResponse(watcher.metrics.snapshot())

    @app.get("/api/audit", response_class=JSONResponse)
    async def api_audit(request: Request, limit: int = 100, action: Optional[str] = None) -> JSONResponse:
        path: Optional[Path] = request.app.state.audit_log_path
        if path is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Audit logging is disabled")
        if limit < 1 or limit > MAX_AUDIT_ENTRIES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"limit must be between 1 and {MAX_AUDIT_ENTRIES}",
            )
        return JSONResponse({"entries": read_audit_entries(path, limit=limit, action=action)})

    return app
