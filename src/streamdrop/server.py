"""FastAPI application factory and route setup for StreamDrop."""

import email.utils
import logging
import secrets
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from streamdrop.assembly import ReassemblyEngine
from streamdrop.chunks import ChunkStore
from streamdrop.config import StreamDropConfig
from streamdrop.errors import (
    InternalError,
    MethodNotAllowed,
    StreamDropError,
    Unauthorized,
    UnsatisfiableRange,
    ValidationError,
)
from streamdrop.handlers.object import ObjectHandler
from streamdrop.handlers.upload import UploadHandler, is_chunk_request
from streamdrop.identity import IdentityValidator, extract_bearer_token
from streamdrop.metadata import SessionStore, create_session_store
from streamdrop.sessions import UploadSessionManager
from streamdrop.storage.backend import ObjectStore
from streamdrop.storage.local import LocalStorageBackend
from streamdrop.sweeper import UploadSweeper

logger = logging.getLogger(__name__)

# Module-level singleton so multiple create_app() calls (e.g. in tests)
# don't re-register the same Prometheus gauge in the global registry.
_instrumentator = None


def _get_instrumentator():
    global _instrumentator
    if _instrumentator is None:
        from prometheus_fastapi_instrumentator import Instrumentator

        _instrumentator = Instrumentator(
            should_instrument_requests_inprogress=True,
            excluded_handlers=["/metrics", "/health", "/healthz", "/readyz"],
        )
    return _instrumentator


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(config: StreamDropConfig) -> FastAPI:
    """Create and configure the StreamDrop FastAPI application.

    Middleware applies CORS and common headers to every response
    (including error responses), and StreamDropError exceptions are
    rendered as JSON error bodies.

    The lifespan context manager opens the session store and object store,
    runs one sweep, and starts the periodic sweeper on startup; it stops
    and closes everything on shutdown (crash-only: every startup is
    recovery).

    Args:
        config: The loaded StreamDrop configuration.

    Returns:
        A configured FastAPI application ready to run.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan hook: open stores, reclaim abandoned uploads, start sweeper."""
        store = create_session_store(config.metadata)
        await store.init_db()

        storage = create_storage_backend(config)
        await storage.init()

        attach_services(app, storage, store)
        await app.state.identity.init()

        # Reclaim uploads abandoned before the restart (crash-only)
        try:
            report = await app.state.sweeper.sweep()
            logger.info("Startup sweep: %s", report.to_dict())
        except Exception:
            logger.warning("Startup sweep failed", exc_info=True)
        app.state.sweeper.start()

        logger.info("Session store initialized: %s", config.metadata.engine)
        logger.info("Storage backend initialized: %s", config.storage.backend)

        yield

        await app.state.sweeper.stop()
        await app.state.identity.close()
        await storage.close()
        await store.close()
        logger.info("Session store and storage backend closed")

    app = FastAPI(
        title="StreamDrop",
        version="0.1.0",
        lifespan=lifespan,
        openapi_url=None,
        docs_url=None,
        redoc_url=None,
    )
    app.state.config = config
    app.state.identity = IdentityValidator(config.auth)

    _register_exception_handlers(app)
    _register_middleware(app, config)

    # Wire Prometheus metrics BEFORE the object routes so /metrics is
    # registered first and not shadowed by the /{key:path} catch-all.
    if config.observability.metrics:
        import streamdrop.metrics as _metrics

        _metrics.init_metrics()
        _get_instrumentator().instrument(app, metric_namespace="streamdrop").expose(
            app, endpoint="/metrics"
        )

    _setup_routes(app, config)

    return app


def attach_services(app: FastAPI, storage: ObjectStore, store: SessionStore) -> None:
    """Build the upload components on top of the two stores and put them on app.state.

    Args:
        app: The application to attach to.
        storage: An initialized object store.
        store: An initialized session store.
    """
    config: StreamDropConfig = app.state.config
    chunks = ChunkStore(storage, config.uploads.chunk_prefix)
    sessions = UploadSessionManager(store, config.uploads)

    app.state.storage = storage
    app.state.session_store = store
    app.state.chunks = chunks
    app.state.sessions = sessions
    app.state.assembly = ReassemblyEngine(storage, chunks, sessions, config.uploads)
    app.state.sweeper = UploadSweeper(store, chunks, config.uploads)


def create_storage_backend(config: StreamDropConfig) -> ObjectStore:
    """Create an object store instance based on configuration.

    Supports 'local', 'memory', and 'aws' backends.

    Args:
        config: The StreamDrop configuration.

    Returns:
        An object store instance.
    """
    backend = config.storage.backend
    if backend == "local":
        return LocalStorageBackend(config.storage.local_root)
    elif backend == "memory":
        from streamdrop.storage.memory import MemoryStorageBackend

        return MemoryStorageBackend()
    elif backend == "aws":
        if not config.storage.aws_bucket:
            raise ValueError("storage.aws.bucket is required when backend is 'aws'")
        try:
            from streamdrop.storage.aws import AWSGatewayBackend
        except ImportError as exc:
            raise ImportError(
                "aiobotocore is required for the AWS backend. "
                "Install with: pip install streamdrop[aws]"
            ) from exc
        return AWSGatewayBackend(
            bucket_name=config.storage.aws_bucket,
            region=config.storage.aws_region,
            prefix=config.storage.aws_prefix,
            endpoint_url=config.storage.aws_endpoint_url,
            use_path_style=config.storage.aws_use_path_style,
            access_key_id=config.storage.aws_access_key_id,
            secret_access_key=config.storage.aws_secret_access_key,
        )
    else:
        raise ValueError(f"Unknown storage backend: {backend}")


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


def error_response(request: Request, exc: StreamDropError) -> Response:
    """Render a StreamDropError as a JSON error response.

    HEAD requests must not have a body.
    """
    headers: dict[str, str] = {}
    if isinstance(exc, UnsatisfiableRange) and exc.size is not None:
        headers["Content-Range"] = f"bytes */{exc.size}"

    if request.method == "HEAD":
        return Response(status_code=exc.http_status, headers=headers)

    body = exc.to_dict()
    body["requestId"] = getattr(request.state, "request_id", "")
    return JSONResponse(content=body, status_code=exc.http_status, headers=headers)


def _register_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers on the FastAPI app."""

    @app.exception_handler(StreamDropError)
    async def streamdrop_error_handler(request: Request, exc: StreamDropError) -> Response:
        if exc.http_status >= 500:
            logger.warning("%s: %s", exc.code, exc.message)
        return error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
        """Map FastAPI validation errors to a ValidationError body."""
        messages = []
        for err in exc.errors():
            loc = " -> ".join(str(p) for p in err.get("loc", []))
            msg = err.get("msg", "Invalid value")
            messages.append(f"{loc}: {msg}" if loc else msg)
        combined = "; ".join(messages) or "Invalid request parameters"
        return error_response(request, ValidationError(combined))

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> Response:
        """Catch unexpected exceptions and return InternalError."""
        logger.exception("Unhandled exception in request handler")
        return error_response(request, InternalError())


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


def _apply_cors_headers(
    response: Response, request: Request, config: StreamDropConfig
) -> None:
    """Set the cross-origin headers configured under ``cors``."""
    cors = config.cors
    origin = request.headers.get("origin")

    if "*" in cors.allowed_origins:
        response.headers["Access-Control-Allow-Origin"] = "*"
    elif origin and origin in cors.allowed_origins:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Vary"] = "Origin"

    response.headers["Access-Control-Allow-Methods"] = cors.allow_methods
    response.headers["Access-Control-Allow-Headers"] = cors.allow_headers
    response.headers["Access-Control-Expose-Headers"] = cors.expose_headers
    response.headers["Access-Control-Max-Age"] = str(cors.max_age)
    if cors.allow_private_network:
        response.headers["Access-Control-Allow-Private-Network"] = "true"
    response.headers["Cross-Origin-Resource-Policy"] = "cross-origin"
    if cors.cross_origin_isolation:
        response.headers["Cross-Origin-Embedder-Policy"] = "require-corp"
        response.headers["Cross-Origin-Opener-Policy"] = "same-origin"


def _register_middleware(app: FastAPI, config: StreamDropConfig) -> None:
    """Register middleware on the FastAPI app.

    Starlette runs the most recently registered middleware first, so
    registering auth, then common headers, then CORS gives the execution
    order: cors -> common_headers -> auth -> handler.
    """

    # Paths that never require a token
    AUTH_SKIP_PATHS = {"/health", "/healthz", "/readyz", "/metrics"}

    # Paths to suppress from per-request logging
    _QUIET_PATHS = {"/metrics", "/health", "/healthz", "/readyz"}

    @app.middleware("http")
    async def auth_middleware(request: Request, call_next) -> Response:
        """Bearer-token check against the identity service.

        POST /getUploadUrl always needs a valid token when auth is enabled.
        With ``auth.protect_writes`` PUT, DELETE, and POST /combine need one
        too. Failures are rendered here because FastAPI exception handlers
        do not catch exceptions raised from middleware.
        """
        cfg: StreamDropConfig = app.state.config
        path = request.url.path

        if not cfg.auth.enabled or path in AUTH_SKIP_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        needs_token = path == "/getUploadUrl" or (
            cfg.auth.protect_writes
            and (request.method in ("PUT", "DELETE") or path == "/combine")
        )
        if needs_token:
            token = extract_bearer_token(request.headers.get("authorization"))
            if not await app.state.identity.validate(token):
                return error_response(request, Unauthorized())

        return await call_next(request)

    @app.middleware("http")
    async def common_headers_middleware(request: Request, call_next) -> Response:
        """Add request id, Date, and Server headers and write the access log.

        Stores request_id on request.state so exception handlers can use it.
        """
        request_id = secrets.token_hex(8).upper()
        request.state.request_id = request_id
        start = time.monotonic()

        response = await call_next(request)

        duration_ms = round((time.monotonic() - start) * 1000, 2)

        response.headers["X-Request-Id"] = request_id
        response.headers["Date"] = email.utils.formatdate(usegmt=True)
        response.headers["Server"] = "StreamDrop"

        # Per-request structured log (skip noisy endpoints)
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

    @app.middleware("http")
    async def cors_middleware(request: Request, call_next) -> Response:
        """Answer preflight requests and add CORS headers to every response."""
        if request.method == "OPTIONS":
            response = Response(status_code=204)
        else:
            response = await call_next(request)

        _apply_cors_headers(response, request, app.state.config)
        return response


# ---------------------------------------------------------------------------
# Health check helpers
# ---------------------------------------------------------------------------


async def _probe(name: str, check) -> dict:
    """Run one readiness probe, timing it and turning failures into a report."""
    start = time.monotonic()
    try:
        detail = await check()
    except Exception as exc:
        logger.warning("Health probe %s failed: %s", name, exc)
        return {"status": "error", "error": str(exc), "latency_ms": 0}
    report = {"status": "ok", "latency_ms": round((time.monotonic() - start) * 1000, 1)}
    if detail:
        report.update(detail)
    return report


async def _run_checks(app: FastAPI) -> dict[str, dict]:
    """Probe the session store (state counts) and the object store (root dir)."""

    async def sessions() -> dict:
        store = getattr(app.state, "session_store", None)
        if store is None:
            raise RuntimeError("session store not initialized")
        return {"sessions": await store.count_by_state()}

    async def storage() -> None:
        backend = getattr(app.state, "storage", None)
        if backend is None:
            raise RuntimeError("storage backend not initialized")
        root = getattr(backend, "root", None)
        if root is not None and not Path(root).is_dir():
            raise RuntimeError(f"data directory not found: {root}")

    return {
        "metadata": await _probe("metadata", sessions),
        "storage": await _probe("storage", storage),
    }


def _all_ok(checks: dict[str, dict]) -> bool:
    return all(check["status"] == "ok" for check in checks.values())


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _setup_routes(app: FastAPI, config: StreamDropConfig) -> None:
    """Register all routes on the application.

    Fixed routes (/health, /getUploadUrl, /combine) are registered before
    the /{key:path} catch-all so they are not shadowed by it.

    Args:
        app: The FastAPI application to attach routes to.
        config: The StreamDrop configuration.
    """
    object_handler = ObjectHandler(app)
    upload_handler = UploadHandler(app)

    health_check_enabled = config.observability.health_check

    @app.get("/health")
    async def health_check(request: Request) -> Response:
        """Component health as JSON, or a static ok when probes are disabled."""
        if not health_check_enabled:
            return JSONResponse(content={"status": "ok"})

        checks = await _run_checks(app)
        healthy = _all_ok(checks)
        return JSONResponse(
            content={"status": "ok" if healthy else "degraded", "checks": checks},
            status_code=200 if healthy else 503,
        )

    if health_check_enabled:

        @app.get("/healthz")
        async def healthz() -> Response:
            return Response(status_code=200)

        @app.get("/readyz")
        async def readyz() -> Response:
            healthy = _all_ok(await _run_checks(app))
            return Response(status_code=200 if healthy else 503)

    # Upload protocol
    @app.post("/getUploadUrl")
    async def handle_get_upload_url(request: Request) -> Response:
        return await upload_handler.get_upload_url(request)

    @app.post("/combine")
    async def handle_combine(request: Request) -> Response:
        return await upload_handler.combine(request)

    @app.api_route("/getUploadUrl", methods=["GET", "HEAD", "PUT", "DELETE", "PATCH"])
    @app.api_route("/combine", methods=["GET", "HEAD", "PUT", "DELETE", "PATCH"])
    async def handle_protocol_method_not_allowed(request: Request) -> Response:
        raise MethodNotAllowed()

    # Object routes (key can contain slashes via {key:path})
    @app.get("/{key:path}")
    async def handle_object_get(key: str, request: Request) -> Response:
        """Handle GET /{key} -- GetObject."""
        return await object_handler.get_object(request, key)

    @app.head("/{key:path}")
    async def handle_object_head(key: str, request: Request) -> Response:
        """Handle HEAD /{key} -- HeadObject."""
        return await object_handler.head_object(request, key)

    @app.put("/{key:path}")
    async def handle_object_put(key: str, request: Request) -> Response:
        """Handle PUT /{key} -- dispatches by headers.

        X-Upload-Id + X-Part-Number + X-Total-Parts -> PutChunk
        otherwise -> PutObject
        """
        if is_chunk_request(request):
            return await upload_handler.put_chunk(request, key)
        return await object_handler.put_object(request, key)

    @app.delete("/{key:path}")
    async def handle_object_delete(key: str, request: Request) -> Response:
        """Handle DELETE /{key} -- dispatches by query params.

        ?uploadId -> AbortUpload
        otherwise -> DeleteObject
        """
        if "uploadId" in request.query_params:
            return await upload_handler.abort_upload(request, key)
        return await object_handler.delete_object(request, key)

    @app.api_route("/{key:path}", methods=["POST", "PATCH"])
    async def handle_object_method_not_allowed(key: str, request: Request) -> Response:
        raise MethodNotAllowed()
