"""Pydantic response schema for the upload endpoint."""

from __future__ import annotations

from pydantic import BaseModel, Field


class UploadResponse(BaseModel):
    """Result of ``POST /upload``.

    ``reason`` and ``stage`` are only set for pipeline rejections; operational
    errors carry a ``message`` alone.
    """

    message: str = Field(..., description="Terse, client-safe outcome message")
    reason: str | None = Field(
        default=None,
        description="Machine-readable rejection code, e.g. 'content_mismatch'",
    )
    stage: str | None = Field(
        default=None,
        description="Pipeline stage that rejected the file, e.g. 'content_check'",
    )
