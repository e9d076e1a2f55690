"""FastAPI adapter for the invoice extraction pipeline.

Exposes the pipeline's single entry point over HTTP and maps each pipeline
error kind to a status code and error envelope. The pipeline is started
and shut down with the application lifespan.
"""

import shutil
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from invoice_ocr import __version__
from invoice_ocr.pipeline.orchestrator import InvoicePipeline, build_pipeline
from invoice_ocr.utils.config import load_config
from invoice_ocr.utils.exceptions import (
    EngineNotReadyError,
    ExtractionParseError,
    ImageProcessingError,
    InputError,
    InvoiceExtractionError,
    RecognitionFailure,
    UpstreamServiceError,
)
from invoice_ocr.utils.logger import get_logger

from .schemas import ErrorResponse, ExtractRequest, ExtractResponse, HealthResponse

logger = get_logger(__name__)

_ERROR_STATUS: dict[type[InvoiceExtractionError], tuple[int, str]] = {
    InputError: (400, "fail"),
    ImageProcessingError: (422, "fail"),
    EngineNotReadyError: (503, "error"),
    RecognitionFailure: (502, "error"),
    ExtractionParseError: (502, "error"),
    UpstreamServiceError: (502, "error"),
}


def _create_pipeline() -> InvoicePipeline:
    """Build the pipeline from the on-disk configuration."""
    return build_pipeline(load_config())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    app.state.pipeline = None
    app.state.started_at = time.monotonic()
    try:
        app.state.pipeline = _create_pipeline()
        app.state.pipeline.start()
    except UpstreamServiceError:
        logger.exception("Pipeline failed to start; extraction requests will be rejected")
    try:
        yield
    finally:
        if app.state.pipeline is not None:
            app.state.pipeline.shutdown()


app = FastAPI(
    title="Invoice OCR API",
    description="Extract structured invoice data from photographed or scanned invoices",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_pipeline(request: Request) -> InvoicePipeline:
    pipeline = request.app.state.pipeline
    if pipeline is None:
        raise EngineNotReadyError(reason="unavailable")
    return pipeline


def error_status(exc: InvoiceExtractionError) -> tuple[int, str]:
    """HTTP status code and envelope status for a pipeline error."""
    for error_type in type(exc).__mro__:
        if error_type in _ERROR_STATUS:
            return _ERROR_STATUS[error_type]
    return 500, "error"


@app.exception_handler(InvoiceExtractionError)
async def handle_pipeline_error(
    request: Request, exc: InvoiceExtractionError
) -> JSONResponse:
    status_code, status = error_status(exc)
    if status == "error":
        logger.error("Extraction failed (%s): %s", exc.kind, exc)
    else:
        logger.info("Rejected extraction request (%s): %s", exc.kind, exc)
    body = ErrorResponse(status=status, kind=exc.kind, message=exc.message)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(RequestValidationError)
async def handle_malformed_body(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return await handle_pipeline_error(
        request, InputError("Request body must be a JSON object with an 'image' string")
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unexpected error while handling %s", request.url.path)
    body = ErrorResponse(status="error", kind="InternalError", message="Internal server error")
    return JSONResponse(status_code=500, content=body.model_dump())


@app.get("/api/v1/health", response_model=HealthResponse)
def health_check(request: Request) -> HealthResponse:
    """Return service health and engine readiness."""
    pipeline: InvoicePipeline | None = request.app.state.pipeline
    ready = pipeline is not None and pipeline.is_ready
    return HealthResponse(
        status="healthy" if ready else "degraded",
        version=__version__,
        uptime_s=round(time.monotonic() - request.app.state.started_at, 3),
        timestamp=datetime.now(timezone.utc).isoformat(),
        tesseract_available=shutil.which("tesseract") is not None,
        engines=pipeline.recognizer.engine_status() if pipeline is not None else {},
    )


@app.post(
    "/api/v1/invoices/extract",
    response_model=ExtractResponse,
    responses={
        400: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
def extract_invoice(
    body: ExtractRequest,
    pipeline: Annotated[InvoicePipeline, Depends(get_pipeline)],
) -> ExtractResponse:
    """Extract structured invoice data from a base64-encoded image."""
    record = pipeline.extract_invoice(body.image)
    return ExtractResponse(data=record.to_json_dict())
