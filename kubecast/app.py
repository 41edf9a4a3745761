"""Application bootstrap for kubecast.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → K8s client → hub → watcher → REST/WebSocket

Shutdown runs in the order the pipeline drains: the watcher stops producing,
the hub closes every subscriber and waits (bounded) for their queues to
flush, then the HTTP server and the K8s client are closed. Each step's error
is caught and logged independently so one failure does not prevent the rest
from shutting down cleanly.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

import uvicorn

from kubecast.collector.normalizer import normalize
from kubecast.config import load_config
from kubecast.models.config import KubeCastConfig
from kubecast.models.events import Change
from kubecast.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog

    from kubecast.collector.watcher import EventWatcher
    from kubecast.hub import FanOutHub

_SERVER_STOP_TIMEOUT_SECONDS = 5


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves SIGTERM/SIGINT to KubeCastApp.

    uvicorn would otherwise close every WebSocket on a signal before the
    hub gets to drain its subscribers.
    """

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class KubeCastApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    ``stop()`` is idempotent: calling it on an app that was never started (or
    already stopped) is safe.
    """

    def __init__(self, config: KubeCastConfig | None = None) -> None:
        self.config: KubeCastConfig | None = config
        self.exit_code = 0

        self._api_client: Any = None
        self._hub: FanOutHub | None = None
        self._watcher: EventWatcher | None = None
        self._rest_server: Any = None
        self._rest_task: asyncio.Task[None] | None = None

        self._shutdown_requested = asyncio.Event()
        self._running = False
        self._stopped = False
        self._log: structlog.stdlib.BoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        The caller (main()) turns this into a non-zero exit.
        """
        # --- 1. Configuration -------------------------------------------
        if self.config is None:
            self.config = load_config()

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info("kubecast starting", version=_kubecast_version())

        # --- 3. Kubernetes client ----------------------------------------
        await self._start_k8s_client()

        # --- 4. Fan-out hub ----------------------------------------------
        self._start_hub()

        # --- 5. Event watcher --------------------------------------------
        await self._start_watcher()

        # --- 6. REST / WebSocket server ----------------------------------
        await self._start_rest()

        self._running = True
        self._log.info(
            "kubecast started",
            port=self.config.api.port,
            ws_path=self.config.api.ws_path,
            overflow_policy=self.config.subscriber.overflow_policy.value,
        )

    async def _start_k8s_client(self) -> None:
        """Load in-cluster config or kubeconfig and build the ApiClient."""
        assert self._log is not None
        self._log.debug("starting k8s client")
        try:
            from kubernetes_asyncio import client as k8s_client
            from kubernetes_asyncio import config as k8s_config

            try:
                # load_incluster_config() is synchronous in kubernetes-asyncio
                k8s_config.load_incluster_config()
                self._log.info("k8s client configured from in-cluster service account")
            except k8s_config.ConfigException:
                await k8s_config.load_kube_config()
                self._log.info("k8s client configured from kubeconfig")

            self._api_client = k8s_client.ApiClient()
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    def _start_hub(self) -> None:
        from kubecast.hub import FanOutHub

        assert self._log is not None
        self._hub = FanOutHub()
        self._log.info("fan-out hub started")

    async def _start_watcher(self) -> None:
        """Start the single cluster-wide event watch."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting event watcher")
        try:
            from kubernetes_asyncio import client as k8s_client

            from kubecast.collector.watcher import EventWatcher

            v1 = k8s_client.CoreV1Api(self._api_client)
            watcher = EventWatcher(v1, config=self.config.watch)
            await watcher.start(self._on_change, self._on_fatal)
            self._watcher = watcher
            self._log.info("event watcher started")
        except Exception as exc:
            raise _ComponentError("watcher", exc) from exc

    async def _start_rest(self) -> None:
        """Start the uvicorn server hosting /healthz, /metrics and the WebSocket."""
        assert self._log is not None
        assert self.config is not None
        assert self._hub is not None
        self._log.debug("starting rest api")
        try:
            from kubecast.api import create_app

            fastapi_app = create_app(hub=self._hub, watcher=self._watcher, config=self.config)
            uv_config = uvicorn.Config(
                app=fastapi_app,
                host=self.config.api.host,
                port=self.config.api.port,
                lifespan="off",
                log_config=None,  # structlog handles all logging
                access_log=False,
            )
            server = _EmbeddedServer(uv_config)
            task = asyncio.create_task(server.serve(), name="rest-server")
            # uvicorn exiting on its own (bind failure) ends the app.
            task.add_done_callback(lambda _t: self.request_shutdown())
            self._rest_server = server
            self._rest_task = task
            self._log.info("rest api started", host=self.config.api.host, port=self.config.api.port)
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc

    # ------------------------------------------------------------------
    # Pipeline callbacks
    # ------------------------------------------------------------------

    def _on_change(self, change: Change) -> None:
        assert self._hub is not None
        self._hub.publish(normalize(change))

    def _on_fatal(self, exc: Exception) -> None:
        log = self._log or get_logger("app")
        log.critical("event watcher failed permanently; shutting down", error=str(exc))
        self.exit_code = 1
        self.request_shutdown()

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def request_shutdown(self) -> None:
        self._shutdown_requested.set()

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_requested.wait()

    async def stop(self) -> None:
        """Gracefully stop all components in pipeline order."""
        if self._stopped or self._log is None:
            return
        self._stopped = True
        self._running = False
        log = self._log
        log.info("kubecast shutting down")

        if self._watcher is not None:
            await self._guard("watcher", self._watcher.stop())

        if self._hub is not None:
            assert self.config is not None
            self._hub.shutdown()
            await self._guard("hub", self._hub.wait_closed(self.config.shutdown_grace_seconds))

        await self._stop_rest()
        await self._stop_k8s_client()

        log.info("kubecast stopped")

    async def _guard(self, name: str, awaitable: Any) -> None:
        """Await a shutdown step, logging instead of raising on failure."""
        log = self._log or get_logger("app")
        try:
            await awaitable
        except Exception as exc:
            log.error("component stop raised an error", component=name, error=str(exc))

    async def _stop_rest(self) -> None:
        if self._rest_server is None or self._rest_task is None:
            return
        log = self._log or get_logger("app")
        self._rest_server.should_exit = True
        try:
            await asyncio.wait_for(asyncio.shield(self._rest_task), timeout=_SERVER_STOP_TIMEOUT_SECONDS)
        except TimeoutError:
            log.warning("rest server stop timed out", timeout=_SERVER_STOP_TIMEOUT_SECONDS)
            self._rest_task.cancel()
            await asyncio.gather(self._rest_task, return_exceptions=True)
        except Exception as exc:
            log.error("rest server exited with an error", error=str(exc))

    async def _stop_k8s_client(self) -> None:
        """Close the kubernetes-asyncio ApiClient connection pool."""
        if self._api_client is None:
            return
        log = self._log or get_logger("app")
        try:
            await self._api_client.close()
        except Exception as exc:
            log.debug("k8s client close raised (non-fatal)", error=str(exc))


def _kubecast_version() -> str:
    from kubecast import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main() -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = KubeCastApp()
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, app.request_shutdown)

    try:
        await app.start()
        await app.wait_for_shutdown()
    except _ComponentError as exc:
        # A mandatory component failed; log and exit non-zero
        log = get_logger("app")
        log.critical(
            "fatal startup error",
            component=exc.component,
            error=str(exc.cause),
        )
        app.exit_code = 1
    finally:
        await app.stop()

    if app.exit_code:
        raise SystemExit(app.exit_code)


def run() -> None:
    """Console-script entry point (``kubecast``)."""
    asyncio.run(main())
