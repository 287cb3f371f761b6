"""
Chain Mirror - Sync API

- GET  /sync/status    cursors and last pass report
- POST /sync/trigger   request a pass (queued if one is running)
- WS   /sync/updates   one JSON message per completed pass
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect, status

from chainmirror.models.schemas import SyncStatusResponse, TriggerResponse
from chainmirror.services.runtime import SyncRuntime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


def get_runtime(request: Request) -> SyncRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Synchronizer not running",
        )
    return runtime


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(runtime: SyncRuntime = Depends(get_runtime)):
    coordinator = runtime.coordinator
    return SyncStatusResponse(
        running=coordinator.is_running,
        pending=coordinator.has_pending,
        passes_completed=coordinator.passes_completed,
        cursors=coordinator.cursors(),
        last_report=coordinator.last_report,
    )


@router.post("/trigger", response_model=TriggerResponse)
async def trigger_sync(runtime: SyncRuntime = Depends(get_runtime)):
    """Request a sync pass."""
    return TriggerResponse(started=runtime.coordinator.trigger("api"))


@router.websocket("/updates")
async def sync_updates(websocket: WebSocket):
    """Stream pass reports to the client as they complete."""
    runtime = getattr(websocket.app.state, "runtime", None)
    if runtime is None:
        await websocket.close(code=1013, reason="Synchronizer not running")
        return

    await websocket.accept()
    broadcaster = runtime.coordinator.broadcaster
    queue = broadcaster.subscribe()
    logger.info(f"[SYNC] Update subscriber connected ({broadcaster.subscriber_count} total)")
    try:
        while True:
            report = await queue.get()
            await websocket.send_json(report.model_dump(mode="json"))
    except WebSocketDisconnect:
        logger.info("[SYNC] Update subscriber disconnected")
    finally:
        broadcaster.unsubscribe(queue)
