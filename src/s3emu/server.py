"""FastAPI application factory and route setup for s3emu."""

import base64
import email.utils
import hashlib
import json
import logging
import secrets
import time
import urllib.parse
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response

from s3emu import metrics
from s3emu.auth import RequestAuthenticator, Scheme, SignedRequest, detect_scheme
from s3emu.call_log import CallLog, CallResult
from s3emu.config import S3EmuConfig
from s3emu.errors import (
    AccessDenied,
    InternalError,
    InvalidBucketName,
    MethodNotAllowed,
    S3Error,
    SignatureDoesNotMatch,
)
from s3emu.handlers.bucket import BucketHandler
from s3emu.handlers.multipart import MultipartHandler
from s3emu.handlers.object import ObjectHandler
from s3emu.handlers.queries import QueryRegistry
from s3emu.multipart import MultipartManager
from s3emu.storage import ObjectStore
from s3emu.xml_utils import render_error, xml_response

logger = logging.getLogger(__name__)

SERVER_NAME = "s3emu"

# Module-level singleton so multiple create_app() calls (e.g. in tests)
# don't re-register the same Prometheus gauge in the global registry.
_instrumentator = None


def _get_instrumentator():
    global _instrumentator
    if _instrumentator is None:
        from prometheus_fastapi_instrumentator import Instrumentator

        _instrumentator = Instrumentator(
            should_instrument_requests_inprogress=True,
            excluded_handlers=["/metrics", "/health"],
        )
    return _instrumentator


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(config: S3EmuConfig) -> FastAPI:
    """Create and configure the s3emu FastAPI application.

    The store, multipart manager, authenticator and call log are created
    here and attached to ``app.state``; the lifespan hook prepares their
    directories (removing leftovers of a previous run) on startup.

    Args:
        config: The loaded s3emu configuration.

    Returns:
        A configured FastAPI application ready to run.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.store.init()
        app.state.multipart.init()
        logger.info(
            "Serving buckets from %s (multipart staging in %s)",
            config.storage.base_dir,
            config.storage.multipart_dir,
        )
        yield
        logger.info("s3emu stopped with %d multipart uploads active", len(app.state.multipart))

    app = FastAPI(
        title="s3emu",
        version="0.1.0",
        lifespan=lifespan,
        openapi_url=None,
        docs_url=None,
        redoc_url=None,
    )
    app.state.config = config
    app.state.store = ObjectStore(
        config.storage.base_dir, autocreate_buckets=config.storage.autocreate_buckets
    )
    app.state.multipart = MultipartManager(config.storage.multipart_dir)
    app.state.authenticator = RequestAuthenticator(
        config.auth.secret_key, legacy_prefix=config.server.legacy_prefix
    )
    app.state.call_log = CallLog(capacity=config.observability.call_log_size)

    _register_exception_handlers(app)
    _register_middleware(app, config)

    # /metrics and /health must be registered before the /{bucket} catch-all.
    if config.observability.metrics:
        metrics.init_metrics()
        _get_instrumentator().instrument(app, metric_namespace="s3emu").expose(
            app, endpoint="/metrics"
        )

    _setup_routes(app)
    return app


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


def _error_response(request: Request, exc: S3Error) -> Response:
    # HEAD responses must not have a body
    if request.method == "HEAD":
        return Response(status_code=exc.http_status)
    body = render_error(
        code=exc.code,
        message=exc.message,
        resource=exc.resource or request.url.path,
        request_id=getattr(request.state, "request_id", ""),
        extra_fields=exc.extra_fields,
    )
    return xml_response(body, status=exc.http_status)


def _register_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers on the FastAPI app."""

    @app.exception_handler(S3Error)
    async def s3_error_handler(request: Request, exc: S3Error) -> Response:
        return _error_response(request, exc)

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> Response:
        """Catch unexpected exceptions and return InternalError."""
        logger.exception("Unhandled exception in request handler")
        return _error_response(request, InternalError())


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


def strip_legacy_prefix(path: str, prefix: str) -> str:
    """Remove the legacy mount prefix (e.g. "/s3") from a request path."""
    prefix = prefix.rstrip("/")
    if prefix and (path == prefix or path.startswith(prefix + "/")):
        return path[len(prefix) :] or "/"
    return path


def _register_middleware(app: FastAPI, config: S3EmuConfig) -> None:
    """Register the request middleware on the FastAPI app."""

    _QUIET_PATHS = {"/metrics", "/health"}
    legacy_prefix = config.server.legacy_prefix
    metrics_enabled = config.observability.metrics

    @app.middleware("http")
    async def common_headers_middleware(request: Request, call_next) -> Response:
        """Strip the legacy prefix, then add the common S3 response headers.

        Routing sees the path without the prefix; the path as received
        stays available as ``request.state.original_path`` for signature
        checks and the call log.
        """
        original_path = request.scope["path"]
        request.scope["path"] = strip_legacy_prefix(original_path, legacy_prefix)
        request.state.original_path = original_path

        request_id = secrets.token_hex(8).upper()
        request.state.request_id = request_id
        start = time.monotonic()

        response = await call_next(request)

        duration_ms = round((time.monotonic() - start) * 1000, 2)

        response.headers["x-amz-request-id"] = request_id
        response.headers["x-amz-id-2"] = base64.b64encode(secrets.token_bytes(24)).decode()
        response.headers["Date"] = email.utils.formatdate(usegmt=True)
        response.headers["Server"] = SERVER_NAME

        if metrics_enabled:
            _count_bytes(request.headers.get("content-length"), metrics.bytes_received_total)
            _count_bytes(response.headers.get("content-length"), metrics.bytes_sent_total)

        if request.url.path not in _QUIET_PATHS:
            logger.info(
                "%s %s %d %.2fms",
                request.method,
                original_path,
                response.status_code,
                duration_ms,
                extra={
                    "method": request.method,
                    "path": original_path,
                    "status": response.status_code,
                    "duration_ms": duration_ms,
                    "request_id": request_id,
                },
            )

        return response


def _count_bytes(header_value: str | None, counter) -> None:
    if counter is None or not header_value:
        return
    try:
        size = int(header_value)
    except ValueError:
        return
    if size > 0:
        counter.inc(size)


# ---------------------------------------------------------------------------
# Authentication and call logging
# ---------------------------------------------------------------------------


def _received_path(request: Request) -> str:
    """The request path as the client sent it, still percent-encoded."""
    raw_path = request.scope.get("raw_path")
    if raw_path:
        return raw_path.split(b"?", 1)[0].decode("latin-1")
    original = getattr(request.state, "original_path", request.url.path)
    return urllib.parse.quote(original, safe="/~")


def signed_request_from(request: Request) -> SignedRequest:
    """Collect the parts of a request that its signature covers."""
    return SignedRequest(
        method=request.method,
        path=_received_path(request),
        query=urllib.parse.parse_qsl(request.url.query, keep_blank_values=True),
        headers=list(request.headers.items()),
    )


async def authorize_request(app: FastAPI, request: Request, bucket: str) -> None:
    """Check a bucket- or object-level request's signature and access.

    Does nothing when authentication is disabled in the configuration.

    Raises:
        SignatureDoesNotMatch: If a signature is present but wrong.
        AccessDenied: If the request is unsigned and the bucket is private.
    """
    if not app.state.config.auth.enabled:
        return
    signed = signed_request_from(request)
    if detect_scheme(signed) is Scheme.V4_HEADER and not signed.header("x-amz-content-sha256"):
        signed.body_sha256 = hashlib.sha256(await request.body()).hexdigest()
    app.state.authenticator.authorize(signed, app.state.store.is_public(bucket))


async def _run(
    app: FastAPI,
    request: Request,
    operation: str,
    bucket: str,
    handler,
    *args,
    authenticate: bool = True,
) -> Response:
    """Authorize, run a handler and record the outcome.

    Every call ends up in the call log and the operation counter as OK,
    REJECTED (authentication failures) or ERROR (anything else raised).
    """
    start = time.monotonic()
    result = CallResult.OK
    try:
        if authenticate:
            await authorize_request(app, request, bucket)
        return await handler(request, *args)
    except (AccessDenied, SignatureDoesNotMatch) as exc:
        result = CallResult.REJECTED
        logger.info(
            "Rejected %s %s: %s",
            request.method,
            request.url.path,
            exc.code,
            extra={"bucket": bucket, "result": result.value},
        )
        raise
    except Exception:
        result = CallResult.ERROR
        raise
    finally:
        duration_ms = (time.monotonic() - start) * 1000
        description = getattr(request.state, "original_path", request.url.path)
        app.state.call_log.log(request.method, description, result, duration_ms)
        metrics.record_operation(operation, result.value)


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _setup_routes(app: FastAPI) -> None:
    """Register the health check and all S3-compatible routes.

    Args:
        app: The FastAPI application to attach routes to.
    """
    bucket_handler = BucketHandler(app)
    object_handler = ObjectHandler(app)
    multipart_handler = MultipartHandler(app)
    queries = QueryRegistry(app)

    async def _method_not_allowed(request: Request, *args) -> Response:
        raise MethodNotAllowed()

    @app.get("/health")
    async def health_check() -> Response:
        """Return a static health status."""
        return Response(content=json.dumps({"status": "ok"}), media_type="application/json")

    # Service-level
    @app.get("/")
    async def handle_service_get(request: Request) -> Response:
        """Handle GET / -- ListBuckets (not authenticated)."""
        return await _run(
            app, request, "ListBuckets", "", bucket_handler.list_buckets, authenticate=False
        )

    @app.api_route("/", methods=["PUT", "POST", "DELETE", "HEAD"])
    async def handle_service_other(request: Request) -> Response:
        raise MethodNotAllowed()

    async def _dispatch_bucket(bucket: str, request: Request) -> Response:
        """Dispatch a bucket-level request by method and query params.

        Registered sub-resources (?acl, ?delete, ...) take precedence.
        """
        query_handler = queries.lookup(request)
        if query_handler is not None:
            return await _run(
                app, request, f"Bucket:{query_handler.name}", bucket, query_handler.handle, bucket
            )

        method = request.method
        if method == "GET":
            return await _run(app, request, "ListObjects", bucket, object_handler.list_objects, bucket)
        if method == "HEAD":
            return await _run(app, request, "HeadBucket", bucket, bucket_handler.head_bucket, bucket)
        if method == "PUT":
            return await _run(
                app, request, "CreateBucket", bucket, bucket_handler.create_bucket, bucket
            )
        if method == "DELETE":
            return await _run(
                app, request, "DeleteBucket", bucket, bucket_handler.delete_bucket, bucket
            )
        return await _run(app, request, "BucketPost", bucket, _method_not_allowed)

    def _is_probe(bucket: str, request: Request) -> bool:
        """True for GET/HEAD /{bucket}/ on a bucket that does not exist yet."""
        if request.method not in ("GET", "HEAD"):
            return False
        try:
            return not app.state.store.bucket_exists(bucket)
        except InvalidBucketName:
            return False

    # Bucket-level routes
    @app.api_route("/{bucket}", methods=["GET", "HEAD", "PUT", "DELETE", "POST"])
    async def handle_bucket(bucket: str, request: Request) -> Response:
        """Handle /{bucket}."""
        return await _dispatch_bucket(bucket, request)

    # Object-level routes (key can contain slashes via {key:path})
    @app.api_route("/{bucket}/{key:path}", methods=["GET", "HEAD", "PUT", "DELETE", "POST"])
    async def handle_object(bucket: str, key: str, request: Request) -> Response:
        """Handle /{bucket}/{key} -- dispatches by method, query params and headers.

        ?uploadId&partNumber (PUT) -> UploadPart
        ?uploads (POST) -> CreateMultipartUpload
        ?uploadId (POST/GET/DELETE) -> Complete/ListParts/Abort
        x-amz-copy-source (PUT) -> CopyObject
        otherwise -> Get/Head/Put/DeleteObject
        """
        params = request.query_params
        method = request.method

        if not key:
            # /{bucket}/ addresses the bucket itself.
            if _is_probe(bucket, request):
                return await _run(
                    app,
                    request,
                    "BucketProbe",
                    bucket,
                    bucket_handler.acknowledge,
                    bucket,
                    authenticate=False,
                )
            return await _dispatch_bucket(bucket, request)

        query_handler = queries.lookup(request)
        if query_handler is not None:
            return await _run(
                app,
                request,
                f"Object:{query_handler.name}",
                bucket,
                query_handler.handle,
                bucket,
                key,
            )

        if method == "PUT":
            if "uploadId" in params and "partNumber" in params:
                return await _run(
                    app, request, "UploadPart", bucket, multipart_handler.upload_part, bucket, key
                )
            if "x-amz-copy-source" in request.headers:
                return await _run(
                    app, request, "CopyObject", bucket, object_handler.copy_object, bucket, key
                )
            return await _run(
                app, request, "PutObject", bucket, object_handler.put_object, bucket, key
            )

        if method == "POST":
            if "uploads" in params:
                return await _run(
                    app,
                    request,
                    "CreateMultipartUpload",
                    bucket,
                    multipart_handler.create_multipart_upload,
                    bucket,
                    key,
                )
            if "uploadId" in params:
                return await _run(
                    app,
                    request,
                    "CompleteMultipartUpload",
                    bucket,
                    multipart_handler.complete_multipart_upload,
                    bucket,
                    key,
                )
            return await _run(app, request, "ObjectPost", bucket, _method_not_allowed)

        if method == "GET":
            if "uploadId" in params:
                return await _run(
                    app, request, "ListParts", bucket, multipart_handler.list_parts, bucket, key
                )
            return await _run(
                app, request, "GetObject", bucket, object_handler.get_object, bucket, key
            )

        if method == "HEAD":
            return await _run(
                app, request, "HeadObject", bucket, object_handler.head_object, bucket, key
            )

        if "uploadId" in params:
            return await _run(
                app,
                request,
                "AbortMultipartUpload",
                bucket,
                multipart_handler.abort_multipart_upload,
                bucket,
                key,
            )
        return await _run(
            app, request, "DeleteObject", bucket, object_handler.delete_object, bucket, key
        )
