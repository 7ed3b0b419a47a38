"""Object-level S3 request handlers for s3emu.

Implements:
    - PutObject (PUT /{bucket}/{key}), streaming and aws-chunked aware
    - GetObject (GET /{bucket}/{key}) with range and response-* overrides
    - HeadObject (HEAD /{bucket}/{key})
    - DeleteObject (DELETE /{bucket}/{key})
    - CopyObject (PUT /{bucket}/{key} with x-amz-copy-source)
    - ListObjects (GET /{bucket}) and ListObjectsV2 (GET /{bucket}?list-type=2)
"""

import base64
import binascii
import logging
import mimetypes
import re
import urllib.parse

from fastapi import FastAPI, Request, Response
from fastapi.responses import StreamingResponse

from s3emu.errors import InvalidArgument, InvalidRange, InvalidRequest, NoSuchKey
from s3emu.handlers.common import capture_properties, expected_length, iter_payload
from s3emu.storage.store import (
    ETAG_PROPERTY,
    LAST_MODIFIED_PROPERTY,
    StoredObject,
    http_date,
    parse_content_md5,
)
from s3emu.validation import validate_max_keys
from s3emu.xml_utils import (
    render_copy_object_result,
    render_list_objects,
    render_list_objects_v2,
    xml_response,
)

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"

# Query parameters that override response headers on GET/HEAD.
RESPONSE_OVERRIDES = {
    "response-content-type": "Content-Type",
    "response-content-language": "Content-Language",
    "response-expires": "Expires",
    "response-cache-control": "Cache-Control",
    "response-content-disposition": "Content-Disposition",
    "response-content-encoding": "Content-Encoding",
}

# ---------------------------------------------------------------------------
# Range request parsing
# ---------------------------------------------------------------------------

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


def parse_range_header(header: str, total: int) -> tuple[int, int] | None:
    """Parse an HTTP Range header into inclusive (start, end) offsets.

    Supports ``bytes=a-b``, ``bytes=a-`` and ``bytes=-n``. Multiple ranges
    and unparseable values are ignored (the whole object is served).

    Args:
        header: The Range header value, e.g. "bytes=0-4".
        total: The size of the object in bytes.

    Returns:
        A (start, end) tuple, or None if the header should be ignored.

    Raises:
        InvalidRange: If the range cannot be satisfied.
    """
    if not header or "," in header:
        return None
    m = _RANGE_RE.match(header.strip())
    if not m:
        return None

    start_str, end_str = m.group(1), m.group(2)
    if not start_str and not end_str:
        raise InvalidRange()

    if not start_str:
        suffix = int(end_str)
        if suffix == 0 or total == 0:
            raise InvalidRange()
        return max(total - suffix, 0), total - 1

    start = int(start_str)
    if start >= total:
        raise InvalidRange()
    if not end_str:
        return start, total - 1
    end = int(end_str)
    if start > end:
        raise InvalidRange()
    return start, min(end, total - 1)


def parse_copy_source(value: str) -> tuple[str, str]:
    """Split an ``x-amz-copy-source`` header into (bucket, key).

    A ``?versionId=`` suffix is dropped, the value is URL-decoded and one
    leading slash removed; the bucket is everything up to the first slash.

    Raises:
        InvalidRequest: If there is no slash separating bucket and key.
    """
    source = value.split("?", 1)[0]
    source = urllib.parse.unquote(source)
    if source.startswith("/"):
        source = source[1:]
    if "/" not in source:
        raise InvalidRequest("Source must contain '/'")
    bucket, key = source.split("/", 1)
    return bucket, key


class ObjectHandler:
    """Handles S3 object operations.

    Attributes:
        app: The parent FastAPI application.
    """

    def __init__(self, app: FastAPI) -> None:
        self.app = app

    @property
    def store(self):
        """Shortcut to the object store on app.state."""
        return self.app.state.store

    def _existing_object(self, bucket: str, key: str) -> StoredObject:
        obj = self.store.existing_bucket(bucket).get_object(key)
        if not obj.exists():
            raise NoSuchKey(key, bucket=bucket)
        return obj

    # -- Write -----------------------------------------------------------------

    async def put_object(self, request: Request, bucket: str, key: str) -> Response:
        """Store an object from the streamed request body.

        Implements: PUT /{bucket}/{key}

        The body goes to a temp file in the bucket directory and is moved
        into place only after the length and Content-MD5 checks pass. A
        missing bucket is created when auto-create is enabled.

        Returns:
            200 OK with the quoted MD5 ETag.

        Raises:
            NoSuchBucket: If the bucket is missing and auto-create is off.
            InvalidDigest: If Content-MD5 is not a base64 16-byte digest.
            BadDigest: If the stored bytes do not match Content-MD5.
            IncompleteBody: If fewer bytes than announced arrived.
        """
        content_md5 = request.headers.get("content-md5")
        digest = parse_content_md5(content_md5) if content_md5 is not None else None
        length = expected_length(request)

        obj = self.store.existing_bucket(bucket, create=True).get_object(key)
        properties = capture_properties(request)

        with obj.open_writer() as writer:
            async for chunk in iter_payload(request):
                writer.write(chunk)
            etag = writer.finish(properties=properties, content_md5=digest, expected_length=length)

        logger.debug(
            "Stored %s/%s (%d bytes)", bucket, key, writer.size, extra={"bucket": bucket, "key": key}
        )
        return Response(status_code=200, headers={"ETag": etag})

    async def copy_object(self, request: Request, bucket: str, key: str) -> Response:
        """Copy an object within or across buckets.

        Implements: PUT /{bucket}/{key} with x-amz-copy-source

        ``x-amz-metadata-directive: REPLACE`` stores the properties of this
        request instead of the source's.

        Returns:
            XML CopyObjectResult with the new ETag and LastModified.

        Raises:
            InvalidRequest: If the source is malformed or does not exist.
        """
        src_bucket, src_key = parse_copy_source(request.headers["x-amz-copy-source"])
        if not src_bucket or not self.store.bucket_exists(src_bucket):
            raise InvalidRequest("Source bucket does not exist")
        source = self.store.get_bucket(src_bucket).get_object(src_key) if src_key else None
        if source is None or not source.exists():
            raise InvalidRequest("Source object does not exist")

        target = self.store.existing_bucket(bucket, create=True).get_object(key)
        properties = None
        if request.headers.get("x-amz-metadata-directive", "").upper() == "REPLACE":
            properties = capture_properties(request)

        etag = target.copy_from(source, properties=properties)
        xml = render_copy_object_result(etag, target.last_modified)
        return xml_response(xml, status=200)

    async def delete_object(self, request: Request, bucket: str, key: str) -> Response:
        """Delete an object.

        Implements: DELETE /{bucket}/{key}

        Deleting a key that does not exist still answers 204.

        Raises:
            NoSuchBucket: If the bucket does not exist.
        """
        self.store.existing_bucket(bucket).get_object(key).delete()
        return Response(status_code=204)

    # -- Read ------------------------------------------------------------------

    def _object_headers(self, request: Request, obj: StoredObject) -> dict[str, str]:
        """Replay stored properties and add the standard object headers."""
        headers: dict[str, str] = {}
        for name, value in obj.get_properties().items():
            if name in (ETAG_PROPERTY, LAST_MODIFIED_PROPERTY):
                continue
            headers[name] = value

        if "Content-Type" not in headers:
            guessed, _ = mimetypes.guess_type(obj.key)
            headers["Content-Type"] = guessed or DEFAULT_CONTENT_TYPE
        headers["ETag"] = obj.get_etag()
        headers["Last-Modified"] = http_date(obj.last_modified)
        headers["Content-Length"] = str(obj.size)
        headers["Accept-Ranges"] = "bytes"

        for param, header in RESPONSE_OVERRIDES.items():
            value = request.query_params.get(param)
            if value is not None:
                headers[header] = value
        return headers

    async def get_object(self, request: Request, bucket: str, key: str) -> Response:
        """Stream an object's content.

        Implements: GET /{bucket}/{key}

        A single ``Range`` header yields a 206 response with Content-Range.

        Raises:
            NoSuchBucket, NoSuchKey: If bucket or object is missing.
            InvalidRange: If the requested range is not satisfiable.
        """
        obj = self._existing_object(bucket, key)
        headers = self._object_headers(request, obj)
        total = obj.size

        range_header = request.headers.get("range")
        if range_header:
            parsed = parse_range_header(range_header, total)
            if parsed is not None:
                start, end = parsed
                length = end - start + 1
                headers["Content-Range"] = f"bytes {start}-{end}/{total}"
                headers["Content-Length"] = str(length)
                return StreamingResponse(
                    content=obj.iter_content(offset=start, length=length),
                    status_code=206,
                    headers=headers,
                )

        return StreamingResponse(content=obj.iter_content(), status_code=200, headers=headers)

    async def head_object(self, request: Request, bucket: str, key: str) -> Response:
        """Return an object's headers without its content.

        Implements: HEAD /{bucket}/{key}
        """
        obj = self._existing_object(bucket, key)
        return Response(status_code=200, headers=self._object_headers(request, obj))

    # -- Listing ---------------------------------------------------------------

    async def list_objects(self, request: Request, bucket: str) -> Response:
        """Dispatch to ListObjects v1 or v2 based on ``list-type``."""
        if request.query_params.get("list-type") == "2":
            return await self.list_objects_v2(request, bucket)
        return await self.list_objects_v1(request, bucket)

    async def list_objects_v1(self, request: Request, bucket: str) -> Response:
        """List objects in UTF-8 byte order.

        Implements: GET /{bucket}

        Raises:
            NoSuchBucket: If the bucket does not exist.
            InvalidArgument: If max-keys is not a non-negative integer.
        """
        params = request.query_params
        prefix = params.get("prefix", "")
        marker = params.get("marker", "")
        delimiter = params.get("delimiter", "")
        max_keys = validate_max_keys(params.get("max-keys"))

        listing = self.store.list_objects(
            bucket, prefix=prefix, marker=marker, limit=max_keys, delimiter=delimiter
        )
        xml = render_list_objects(
            bucket,
            listing,
            prefix=prefix,
            marker=marker,
            max_keys=max_keys,
            delimiter=delimiter,
        )
        return xml_response(xml, status=200)

    async def list_objects_v2(self, request: Request, bucket: str) -> Response:
        """List objects in the ListObjectsV2 shape.

        Implements: GET /{bucket}?list-type=2

        The continuation token is the URL-safe base64 of the last returned
        entry and takes precedence over ``start-after``.

        Raises:
            InvalidArgument: If the continuation token cannot be decoded.
        """
        params = request.query_params
        prefix = params.get("prefix", "")
        delimiter = params.get("delimiter", "")
        start_after = params.get("start-after", "")
        token = params.get("continuation-token", "")
        max_keys = validate_max_keys(params.get("max-keys"))

        marker = start_after
        if token:
            try:
                marker = base64.urlsafe_b64decode(token.encode("ascii")).decode("utf-8")
            except (binascii.Error, UnicodeError, ValueError):
                raise InvalidArgument("The continuation token provided is incorrect")

        listing = self.store.list_objects(
            bucket, prefix=prefix, marker=marker, limit=max_keys, delimiter=delimiter
        )
        next_token = ""
        if listing.is_truncated:
            next_token = base64.urlsafe_b64encode(listing.next_marker.encode("utf-8")).decode("ascii")

        xml = render_list_objects_v2(
            bucket,
            listing,
            prefix=prefix,
            max_keys=max_keys,
            delimiter=delimiter,
            continuation_token=token,
            next_continuation_token=next_token,
            start_after=start_after,
        )
        return xml_response(xml, status=200)
