"""HTTP / WebSocket front door for kubecast.

Exposes:
    create_app -- FastAPI application factory.
"""

from kubecast.api.app import create_app

__all__ = ["create_app"]
