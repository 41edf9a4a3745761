"""FastAPI application factory for kubecast.

Usage::

    from kubecast.api.app import create_app

    app = create_app(hub=hub, watcher=watcher, config=config)

The factory is used by both the production bootstrap (``kubecast.app``) and
the tests.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from kubecast.api.routes import router, subscribe
from kubecast.api.schemas import ErrorResponse
from kubecast.hub import FanOutHub
from kubecast.models.config import KubeCastConfig

_log = structlog.get_logger(component="api.app")


def create_app(
    hub: FanOutHub,
    watcher: Any = None,
    config: KubeCastConfig | None = None,
) -> FastAPI:
    """Create and configure the kubecast FastAPI application.

    Args:
        hub:     FanOutHub new WebSocket sessions register with.
        watcher: Optional EventWatcher, read for health reporting only.
        config:  KubeCastConfig. Supplies the WebSocket path and the
                 per-subscriber queue settings.

    Returns:
        Configured FastAPI application, ready to be served by uvicorn.
    """
    from kubecast import __version__

    config = config or KubeCastConfig()

    app = FastAPI(
        title="kubecast",
        summary="Kubernetes event stream over WebSocket",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )

    app.state.hub = hub
    app.state.watcher = watcher
    app.state.config = config

    app.include_router(router)
    app.add_api_websocket_route(config.api.ws_path, subscribe)
    app.mount("/metrics", make_asgi_app())

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Catch-all for unhandled exceptions; never expose stack traces."""
        _log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error=str(exc),
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="INTERNAL_ERROR",
                detail="An unexpected error occurred.",
            ).model_dump(),
        )

    return app
