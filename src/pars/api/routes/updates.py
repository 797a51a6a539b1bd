"""
Update API Routes - Status, update check, update / rollback runs and history

Runs are streamed back as Server-Sent Events; everything that can be rejected
(auth, body, password, backup lookup, lock) is rejected before the stream
starts, with a plain JSON error.
"""
from typing import AsyncIterator

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from pars.api.auth import get_orchestrator, require_admin, verify_admin_password
from pars.api.schemas import RollbackRequest, UpdateCheckRequest, UpdateExecuteRequest
from pars.models import AdminUser
from pars.services.command_runner import ExecutionError
from pars.services.progress import ProgressChannel, format_sse
from pars.services.update_orchestrator import BackupNotFoundError, LockHeldError, UpdateOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _clamp_page(page: int, limit: int):
    return max(1, page), min(MAX_PAGE_SIZE, max(1, limit))


async def _event_stream(channel: ProgressChannel) -> AsyncIterator[str]:
    async for event in channel:
        yield format_sse(event)


def _stream(channel: ProgressChannel) -> StreamingResponse:
    return StreamingResponse(_event_stream(channel), media_type="text/event-stream", headers=_SSE_HEADERS)


@router.get("/status", summary="Deployment status")
async def get_update_status(orchestrator: UpdateOrchestrator = Depends(get_orchestrator)):
    """
    Current version, tool availability, lock state and the latest run

    Stale IN_PROGRESS runs are swept before the status is read.
    """
    return {"data": await orchestrator.get_status()}


@router.post("/check", summary="Check the remote for new commits")
async def check_for_updates(
    payload: UpdateCheckRequest,
    orchestrator: UpdateOrchestrator = Depends(get_orchestrator),
):
    try:
        result = await orchestrator.check_for_updates(str(payload.repo_url), payload.branch)
    except ExecutionError as e:
        logger.error("update_check_failed", repo_url=str(payload.repo_url), error=str(e))
        raise HTTPException(status_code=500, detail=f"Update check failed: {e}")

    return {"data": result.to_dict()}


@router.post("/execute", summary="Run an update (SSE)")
async def execute_update(
    payload: UpdateExecuteRequest,
    user: AdminUser = Depends(require_admin),
    orchestrator: UpdateOrchestrator = Depends(get_orchestrator),
):
    await verify_admin_password(user, payload.password)

    try:
        channel = await orchestrator.start_update(str(payload.repo_url), payload.branch, triggered_by=user.email)
    except LockHeldError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return _stream(channel)


@router.post("/rollback", summary="Roll back to a backup (SSE)")
async def execute_rollback(
    payload: RollbackRequest,
    user: AdminUser = Depends(require_admin),
    orchestrator: UpdateOrchestrator = Depends(get_orchestrator),
):
    await verify_admin_password(user, payload.password)

    try:
        channel = await orchestrator.start_rollback(str(payload.backup_id), triggered_by=user.email)
    except BackupNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except LockHeldError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return _stream(channel)


@router.get("/log", summary="Update and rollback history")
async def list_update_logs(
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    orchestrator: UpdateOrchestrator = Depends(get_orchestrator),
):
    page, limit = _clamp_page(page, limit)
    rows, total = await orchestrator.list_logs(page, limit)
    return {"data": rows, "total": total, "page": page, "limit": limit}


@router.get("/backups", summary="Recorded backups")
async def list_backups(
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    orchestrator: UpdateOrchestrator = Depends(get_orchestrator),
):
    """Backups, newest first, with whether their files are still on disk"""
    page, limit = _clamp_page(page, limit)
    rows, total = await orchestrator.list_backups(page, limit)
    return {"data": rows, "total": total, "page": page, "limit": limit}
