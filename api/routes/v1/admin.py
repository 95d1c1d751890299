"""
api/routes/v1/admin.py -- Operator endpoints for the session reaper.

Routes:
  POST /api/v1/admin/sessions/sweep  -- run one sweep now (admin only)
  GET  /api/v1/admin/sessions/sweep  -- reaper status and last result (admin only)

A manual sweep shares the reaper's running guard with the scheduled task: if
one is already in progress the response has skipped=true and nothing runs.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import ReaperStatusResponse, SweepStatsResponse
from auth.dependencies import require_admin
from auth.models import Account
from auth.reaper import SessionReaper
from core.config import get_settings

router = APIRouter()


@router.post("/admin/sessions/sweep", response_model=SweepStatsResponse)
def trigger_sweep(request: Request, admin: Account = Depends(require_admin)) -> SweepStatsResponse:
    """Run a sweep synchronously in the request's worker thread."""
    reaper: SessionReaper = request.app.state.session_reaper
    return SweepStatsResponse.from_stats(reaper.sweep())


@router.get("/admin/sessions/sweep", response_model=ReaperStatusResponse)
def sweep_status(request: Request, admin: Account = Depends(require_admin)) -> ReaperStatusResponse:
    reaper: SessionReaper = request.app.state.session_reaper
    settings = get_settings()
    last = reaper.last_stats
    return ReaperStatusResponse(
        enabled=settings.reaper_enabled,
        running=reaper.is_running,
        interval_seconds=settings.reaper_interval_seconds,
        inactivity_days=settings.session_inactivity_days,
        last_run=SweepStatsResponse.from_stats(last) if last is not None else None,
    )
