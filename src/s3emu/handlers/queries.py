"""Query sub-resource handlers for s3emu.

Requests carrying one of the registered query keys (``?acl``, ``?cors``,
``?lifecycle``, ``?policy``, ``?requestPayment``, ``?delete``) are answered
here instead of by the regular bucket/object handlers. Most answers are
fixed documents; ``delete`` performs a multi-object delete.
"""

import logging
import xml.etree.ElementTree as ET

from fastapi import FastAPI, Request, Response

from s3emu.errors import (
    MalformedXML,
    MethodNotAllowed,
    NoSuchBucketPolicy,
    NoSuchLifecycleConfiguration,
    S3Error,
)
from s3emu.handlers.bucket import apply_canned_acl
from s3emu.handlers.common import owner_id
from s3emu.xml_utils import (
    render_access_control_policy,
    render_cors_configuration,
    render_delete_result,
    render_request_payment,
    xml_response,
)

logger = logging.getLogger(__name__)


class QueryHandler:
    """Base class for a sub-resource handler.

    Subclasses implement one coroutine per supported HTTP method, named
    after the method in lower case (``get``, ``put``, ...). Each receives
    the request, the bucket name and the object key (empty for
    bucket-level requests).

    Attributes:
        name: The query key this handler answers.
        app: The parent FastAPI application.
    """

    name = ""

    def __init__(self, app: FastAPI) -> None:
        self.app = app

    @property
    def store(self):
        return self.app.state.store

    @property
    def config(self):
        return self.app.state.config

    async def handle(self, request: Request, bucket: str, key: str = "") -> Response:
        """Dispatch to the method-specific coroutine.

        Raises:
            MethodNotAllowed: If the handler does not support the method.
        """
        method = getattr(self, request.method.lower(), None)
        if method is None:
            raise MethodNotAllowed()
        return await method(request, bucket, key)


class AclHandler(QueryHandler):
    """``?acl``: a fixed owner grant; PUT maps canned ACLs to visibility."""

    name = "acl"

    async def get(self, request: Request, bucket: str, key: str) -> Response:
        self.store.existing_bucket(bucket)
        access_key = self.config.auth.access_key
        xml = render_access_control_policy(owner_id(access_key), access_key)
        return xml_response(xml, status=200)

    async def put(self, request: Request, bucket: str, key: str) -> Response:
        self.store.existing_bucket(bucket)
        if not key:
            apply_canned_acl(self.store, bucket, request.headers.get("x-amz-acl"))
        return Response(status_code=200)


class CorsHandler(QueryHandler):
    name = "cors"

    async def get(self, request: Request, bucket: str, key: str) -> Response:
        self.store.existing_bucket(bucket)
        return xml_response(render_cors_configuration(), status=200)


class LifecycleHandler(QueryHandler):
    name = "lifecycle"

    async def get(self, request: Request, bucket: str, key: str) -> Response:
        self.store.existing_bucket(bucket)
        raise NoSuchLifecycleConfiguration(bucket)


class PolicyHandler(QueryHandler):
    name = "policy"

    async def get(self, request: Request, bucket: str, key: str) -> Response:
        self.store.existing_bucket(bucket)
        raise NoSuchBucketPolicy(bucket)


class RequestPaymentHandler(QueryHandler):
    name = "requestPayment"

    async def get(self, request: Request, bucket: str, key: str) -> Response:
        self.store.existing_bucket(bucket)
        return xml_response(render_request_payment("BucketOwner"), status=200)


def parse_delete_body(body: bytes) -> tuple[list[str], bool]:
    """Parse a ``<Delete>`` document into (keys, quiet).

    Raises:
        MalformedXML: If the body is not well-formed XML.
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        raise MalformedXML()

    ns = ""
    if root.tag.startswith("{"):
        ns = root.tag[: root.tag.index("}") + 1]

    quiet_elem = root.find(f"{ns}Quiet")
    # An empty <Quiet/> element also requests quiet mode.
    quiet = quiet_elem is not None and (quiet_elem.text or "true").strip().lower() == "true"

    keys = []
    for obj_elem in root.findall(f"{ns}Object"):
        key_elem = obj_elem.find(f"{ns}Key")
        if key_elem is not None and key_elem.text:
            keys.append(key_elem.text)
    return keys, quiet


class DeleteObjectsHandler(QueryHandler):
    """``POST /{bucket}?delete``: delete several objects at once."""

    name = "delete"

    async def post(self, request: Request, bucket: str, key: str) -> Response:
        target = self.store.existing_bucket(bucket)
        keys, quiet = parse_delete_body(await request.body())

        deleted: list[str] = []
        errors: list[tuple[str, str, str]] = []
        for obj_key in keys:
            try:
                obj = target.get_object(obj_key)
            except S3Error as exc:
                errors.append((obj_key, exc.code, exc.message))
                continue
            if not obj.exists():
                errors.append((obj_key, "NoSuchKey", "No Such Key"))
                continue
            obj.delete()
            if not quiet:
                deleted.append(obj_key)

        logger.debug(
            "Multi-object delete in %s: %d deleted, %d failed",
            bucket,
            len(keys) - len(errors),
            len(errors),
            extra={"bucket": bucket},
        )
        return xml_response(render_delete_result(deleted, errors), status=200)


class QueryRegistry:
    """Maps query keys to their sub-resource handlers."""

    def __init__(self, app: FastAPI, handlers: list[type[QueryHandler]] | None = None) -> None:
        handler_types = handlers or [
            AclHandler,
            CorsHandler,
            LifecycleHandler,
            PolicyHandler,
            RequestPaymentHandler,
            DeleteObjectsHandler,
        ]
        self._handlers = {h.name: h(app) for h in handler_types}

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    def lookup(self, request: Request) -> QueryHandler | None:
        """Return the handler for the first registered query key, if any."""
        for name in request.query_params.keys():
            handler = self._handlers.get(name)
            if handler is not None:
                return handler
        return None
