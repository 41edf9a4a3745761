"""Pydantic response models for the kubecast HTTP endpoints."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Error envelope returned for every non-2xx HTTP response."""

    error: str
    detail: str


class WatcherStatus(BaseModel):
    connected: bool
    cursor: str | None = None


class HealthResponse(BaseModel):
    """Body of ``GET /healthz``."""

    status: Literal["ok", "degraded"]
    version: str
    subscribers: int
    watcher: WatcherStatus
