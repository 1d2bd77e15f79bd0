"""FastAPI application factory and upload routes for gridstream."""

import logging
import secrets
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile

from gridstream.config import GridStreamConfig
from gridstream.engine import GridFsStorage
from gridstream.errors import GridStreamError, LimitUnexpectedFile
from gridstream.models import ConnectionState, FileStream, UploadRequest

logger = logging.getLogger(__name__)

# Read size for forwarding multipart file parts: 64 KB
_READ_SIZE = 64 * 1024

# Module-level singleton so multiple create_app() calls (e.g. in tests)
# don't re-register the same Prometheus collectors in the global registry.
_instrumentator = None


def _get_instrumentator():
    global _instrumentator
    if _instrumentator is None:
        from prometheus_fastapi_instrumentator import Instrumentator

        _instrumentator = Instrumentator(
            should_instrument_requests_inprogress=True,
            excluded_handlers=["/metrics"],
        )
    return _instrumentator


@dataclass
class RequestContext:
    """Request-scoped object handed to resolver hooks.

    Attributes:
        request_id: The id assigned to the HTTP request.
        headers: The request headers (lower-cased names).
        body: Non-file form fields; repeated fields become lists.
        request: The underlying Starlette request.
    """

    request_id: str
    headers: dict[str, str] = field(default_factory=dict)
    body: dict[str, Any] = field(default_factory=dict)
    request: Request | None = None


async def _iter_upload(upload: UploadFile) -> AsyncIterator[bytes]:
    """Yield the bytes of a multipart file part in fixed-size reads."""
    while True:
        chunk = await upload.read(_READ_SIZE)
        if not chunk:
            return
        yield chunk


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(config: GridStreamConfig, storage: GridFsStorage | None = None) -> FastAPI:
    """Create and configure the gridstream FastAPI application.

    The lifespan context manager builds the storage engine from
    ``config.storage`` (unless one is passed in), starts its connection on
    startup and closes it on shutdown.

    Args:
        config: The loaded gridstream configuration.
        storage: A ready-made storage engine, e.g. one built with Python
            resolver hooks or a pre-built handle.

    Returns:
        A configured FastAPI application ready to run.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = app.state.storage
        if engine is None:
            engine = GridFsStorage(config.storage)
            app.state.storage = engine
        engine.start()
        logger.info("Storage engine started (backend=%s)", config.storage.backend)

        yield

        await engine.close()
        logger.info("Storage engine closed")

    app = FastAPI(
        title="gridstream",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )
    app.state.config = config
    app.state.storage = storage

    _register_exception_handlers(app)
    _register_middleware(app)

    if config.observability.metrics:
        import gridstream.metrics as _metrics

        _metrics.init_metrics()
        _get_instrumentator().instrument(app, metric_namespace="gridstream").expose(
            app, endpoint="/metrics"
        )

    _setup_routes(app, config)

    return app


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


def _register_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers on the FastAPI app."""

    @app.exception_handler(GridStreamError)
    async def gridstream_error_handler(request: Request, exc: GridStreamError) -> Response:
        """Render GridStreamError exceptions as JSON error bodies."""
        return JSONResponse(
            {"error": exc.to_dict(), "request_id": getattr(request.state, "request_id", "")},
            status_code=exc.http_status,
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> Response:
        """Catch unexpected exceptions and return InternalError."""
        logger.exception("Unhandled exception in request handler")
        return JSONResponse(
            {
                "error": {
                    "code": "InternalError",
                    "message": "We encountered an internal error. Please try again.",
                },
                "request_id": getattr(request.state, "request_id", ""),
            },
            status_code=500,
        )


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


def _register_middleware(app: FastAPI) -> None:
    """Register request id and access log middleware."""

    _QUIET_PATHS = {"/metrics", "/health"}

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next) -> Response:
        """Assign a request id, echo it in ``x-request-id`` and log the request."""
        request_id = secrets.token_hex(8)
        request.state.request_id = request_id
        start = time.monotonic()

        response = await call_next(request)

        duration_ms = round((time.monotonic() - start) * 1000, 2)
        response.headers["x-request-id"] = request_id

        if request.url.path not in _QUIET_PATHS:
            logger.info(
                "%s %s %d %.2fms",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": duration_ms,
                    "request_id": request_id,
                },
            )

        return response


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _collect_parts(form, expected_field: str, max_count: int) -> tuple[list[FileStream], dict]:
    """Split a parsed form into file streams and plain fields.

    Raises:
        LimitUnexpectedFile: If a file arrives on another field than
            ``expected_field`` (when set), or more than ``max_count`` files
            arrive (when non-zero).
    """
    files: list[FileStream] = []
    body: dict[str, Any] = {}
    for name, value in form.multi_items():
        if isinstance(value, UploadFile):
            if expected_field and name != expected_field:
                raise LimitUnexpectedFile(f"Unexpected field '{name}'", field=name)
            files.append(
                FileStream(
                    field_name=name,
                    original_filename=value.filename or "",
                    content_type=value.content_type,
                    stream=_iter_upload(value),
                )
            )
            if max_count and len(files) > max_count:
                raise LimitUnexpectedFile(
                    f"Too many files on field '{name}' (max {max_count})", field=name
                )
        elif name in body:
            previous = body[name]
            body[name] = previous + [value] if isinstance(previous, list) else [previous, value]
        else:
            body[name] = value
    return files, body


def _setup_routes(app: FastAPI, config: GridStreamConfig) -> None:
    """Register the upload and health routes on the application."""

    health_check_enabled = config.observability.health_check

    async def _upload(request: Request, expected_field: str) -> Response:
        engine: GridFsStorage = request.app.state.storage
        request_id = request.state.request_id
        form = await request.form()
        try:
            files, body = _collect_parts(form, expected_field, config.upload.max_count)
            context = RequestContext(
                request_id=request_id,
                headers=dict(request.headers),
                body=body,
                request=request,
            )
            result = await engine.handle(
                UploadRequest(files=files, context=context, request_id=request_id)
            )
        finally:
            await form.close()

        if result.ok:
            return JSONResponse(
                {
                    "headers": context.headers,
                    "files": [r.to_dict() for r in result.files],
                    "body": body,
                }
            )
        return JSONResponse(result.to_dict(), status_code=result.error.http_status)

    @app.get("/health")
    async def health_check(request: Request) -> Response:
        """Return health status.

        When health_check is enabled, report the connection state: 200 while
        starting or ready, 503 once errored or closed. When disabled, return
        a static ``{"status": "ok"}``.
        """
        if not health_check_enabled:
            return JSONResponse({"status": "ok"})

        engine = request.app.state.storage
        if engine is None:
            return JSONResponse({"status": "degraded", "connection": None}, status_code=503)
        state = engine.state
        if state is ConnectionState.READY:
            status, code = "ok", 200
        elif state in (ConnectionState.PENDING, ConnectionState.CONNECTING):
            status, code = "starting", 200
        else:
            status, code = "degraded", 503
        return JSONResponse({"status": status, "connection": state.value}, status_code=code)

    @app.post("/upload")
    async def upload(request: Request) -> Response:
        """Store every file part of a multipart request."""
        return await _upload(request, config.upload.field_name)

    @app.post("/upload/{field_name}")
    async def upload_field(field_name: str, request: Request) -> Response:
        """Store the file parts submitted under ``field_name`` only."""
        return await _upload(request, field_name)
