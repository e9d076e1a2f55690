"""Pydantic request/response schemas for the FastAPI endpoints."""

from typing import Any, Literal

from pydantic import BaseModel


class ExtractRequest(BaseModel):
    """Body of an extraction request: a base64 string or data URI."""

    image: str | None = None


class ExtractResponse(BaseModel):
    """Successful extraction envelope; ``data`` is a camelCase invoice record."""

    status: Literal["success"] = "success"
    data: dict[str, Any]


class ErrorResponse(BaseModel):
    """Error envelope.

    ``status`` is ``"fail"`` for client-side problems and ``"error"`` for
    server or upstream failures. ``kind`` names the pipeline error.
    """

    status: Literal["fail", "error"]
    kind: str
    message: str


class HealthResponse(BaseModel):
    """Response schema for the health check endpoint."""

    status: str
    version: str
    uptime_s: float
    timestamp: str
    tesseract_available: bool
    engines: dict[str, bool]
