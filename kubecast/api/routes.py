"""HTTP and WebSocket route handlers."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request, WebSocket

from kubecast.api.schemas import HealthResponse, WatcherStatus
from kubecast.hub import CloseReason, HubClosedError, SubscriberSession

_log = structlog.get_logger(component="api.routes")

# "Try again later": the hub is shutting down.
_WS_CLOSE_TRY_AGAIN = 1013

router = APIRouter()


@router.get("/healthz", response_model=HealthResponse)
async def healthz(request: Request) -> HealthResponse:
    from kubecast import __version__

    hub = request.app.state.hub
    watcher = request.app.state.watcher
    connected = bool(watcher is not None and watcher.connected)
    return HealthResponse(
        status="ok" if connected and not hub.closed else "degraded",
        version=__version__,
        subscribers=hub.subscriber_count,
        watcher=WatcherStatus(
            connected=connected,
            cursor=watcher.cursor if watcher is not None else None,
        ),
    )


async def subscribe(websocket: WebSocket) -> None:
    """Stream normalized cluster events to one client until either side leaves.

    The session is registered before the handshake completes so that a
    client never misses an event published between accept and its first
    read; anything published in that window is queued.
    """
    hub = websocket.app.state.hub
    config = websocket.app.state.config
    session = SubscriberSession(
        websocket,
        hub,
        queue_depth=config.subscriber.queue_depth,
        overflow_policy=config.subscriber.overflow_policy,
    )
    try:
        hub.register(session)
    except HubClosedError:
        # Closing before accept would surface as an HTTP 403 on the handshake.
        await websocket.accept()
        await websocket.close(code=_WS_CLOSE_TRY_AGAIN)
        return

    try:
        await websocket.accept()
    except Exception as exc:
        _log.info("subscriber_handshake_failed", subscriber_id=session.id, error=str(exc))
        hub.unregister(session.id, CloseReason.SEND_FAILED)
        return

    client = websocket.client
    _log.info(
        "subscriber_connected",
        subscriber_id=session.id,
        peer=f"{client.host}:{client.port}" if client else "",
    )
    await session.run()
