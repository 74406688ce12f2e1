"""Shared Pydantic response models for the calwatch HTTP surface.

Provides the error envelope and health payload used across all endpoints.
Endpoint-specific models live in the submodules.
"""

from __future__ import annotations

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    code: str
    message: str
    user_id: str | None = None


class ErrorResponse(BaseModel):
    """Standard error envelope: ``{"error": {"code": ..., "message": ...}}``."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = "ok"
    scheduler_running: bool = False
