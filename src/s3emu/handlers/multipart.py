"""Multipart upload S3 request handlers for s3emu.

Implements:
    - CreateMultipartUpload (POST /{bucket}/{key}?uploads)
    - UploadPart (PUT /{bucket}/{key}?uploadId=&partNumber=)
    - CompleteMultipartUpload (POST /{bucket}/{key}?uploadId=)
    - ListParts (GET /{bucket}/{key}?uploadId=)
    - AbortMultipartUpload (DELETE /{bucket}/{key}?uploadId=)
"""

import logging
import xml.etree.ElementTree as ET

from fastapi import FastAPI, Request, Response

from s3emu.errors import IncompleteBody, InvalidArgument, MalformedXML
from s3emu.handlers.common import capture_properties, expected_length, iter_payload
from s3emu.validation import validate_max_keys, validate_part_number
from s3emu.xml_utils import (
    render_complete_multipart_upload,
    render_initiate_multipart_upload,
    render_list_parts,
    xml_response,
)

logger = logging.getLogger(__name__)


def parse_complete_body(body: bytes) -> list[int]:
    """Extract the part numbers from a CompleteMultipartUpload body.

    The ``<ETag>`` elements are not needed: parts are identified by
    number and the assembled object gets a fresh ETag.

    Raises:
        MalformedXML: If the body is not well-formed or lists no parts.
        InvalidArgument: If a part number is out of range.
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        raise MalformedXML()

    ns = ""
    if root.tag.startswith("{"):
        ns = root.tag[: root.tag.index("}") + 1]

    numbers = []
    for part_elem in root.findall(f"{ns}Part"):
        pn_elem = part_elem.find(f"{ns}PartNumber")
        if pn_elem is None or pn_elem.text is None:
            raise MalformedXML("Missing PartNumber element")
        numbers.append(validate_part_number(pn_elem.text.strip()))

    if not numbers:
        raise MalformedXML("No parts specified in request body")
    return numbers


class MultipartHandler:
    """Handles S3 multipart upload operations.

    Attributes:
        app: The parent FastAPI application.
    """

    def __init__(self, app: FastAPI) -> None:
        self.app = app

    @property
    def store(self):
        """Shortcut to the object store on app.state."""
        return self.app.state.store

    @property
    def multipart(self):
        """Shortcut to the multipart manager on app.state."""
        return self.app.state.multipart

    async def create_multipart_upload(self, request: Request, bucket: str, key: str) -> Response:
        """Start a multipart upload.

        Implements: POST /{bucket}/{key}?uploads

        Properties sent now (content type, metadata, ACL) are applied to
        the object when the upload completes.

        Returns:
            XML InitiateMultipartUploadResult with the new upload id.
        """
        # Validates the key and creates the bucket if allowed.
        self.store.existing_bucket(bucket, create=True).get_object(key)
        upload = self.multipart.initiate(bucket, key, capture_properties(request))
        xml = render_initiate_multipart_upload(bucket, key, upload.upload_id)
        return xml_response(xml, status=200)

    async def upload_part(self, request: Request, bucket: str, key: str) -> Response:
        """Store one part of an active upload.

        Implements: PUT /{bucket}/{key}?uploadId=&partNumber=

        Returns:
            200 OK with the part's quoted MD5 ETag.

        Raises:
            NoSuchUpload: If the upload id is not active.
            InvalidArgument: If the part number is out of range.
            IncompleteBody: If fewer bytes than announced arrived.
        """
        upload_id = request.query_params.get("uploadId", "")
        part_number = validate_part_number(request.query_params.get("partNumber"))
        length = expected_length(request)

        with self.multipart.open_part_writer(upload_id, part_number) as writer:
            async for chunk in iter_payload(request):
                writer.write(chunk)
            if length is not None and writer.size < length:
                raise IncompleteBody()
            etag = writer.finish()

        return Response(status_code=200, headers={"ETag": etag})

    async def complete_multipart_upload(self, request: Request, bucket: str, key: str) -> Response:
        """Assemble the listed parts into the final object.

        Implements: POST /{bucket}/{key}?uploadId=

        Returns:
            XML CompleteMultipartUploadResult.

        Raises:
            NoSuchUpload: If the upload id is not (or no longer) active.
            MalformedXML: If the part list cannot be parsed.
            InvalidRequest: If a listed part was never uploaded.
        """
        upload_id = request.query_params.get("uploadId", "")
        self.multipart.get(upload_id)

        part_numbers = parse_complete_body(await request.body())
        target = self.store.existing_bucket(bucket, create=True).get_object(key)
        etag = self.multipart.complete(upload_id, part_numbers, target)

        location = str(request.url.replace(query=""))
        xml = render_complete_multipart_upload(location, bucket, key, etag)
        return xml_response(xml, status=200)

    async def list_parts(self, request: Request, bucket: str, key: str) -> Response:
        """List the staged parts of an upload.

        Implements: GET /{bucket}/{key}?uploadId=

        Raises:
            NoSuchUpload: If the upload id is not active.
            InvalidArgument: If a paging parameter is invalid.
        """
        params = request.query_params
        upload_id = params.get("uploadId", "")
        max_parts = validate_max_keys(params.get("max-parts"), name="max-parts")
        marker_value = params.get("part-number-marker") or "0"
        try:
            marker = int(marker_value)
        except ValueError:
            raise InvalidArgument("Argument part-number-marker must be an integer")

        listing = self.multipart.list_parts(upload_id, marker=marker, max_parts=max_parts)
        xml = render_list_parts(
            bucket,
            key,
            upload_id,
            listing,
            part_number_marker=marker,
            max_parts=max_parts,
        )
        return xml_response(xml, status=200)

    async def abort_multipart_upload(self, request: Request, bucket: str, key: str) -> Response:
        """Abort an upload and drop its parts.

        Implements: DELETE /{bucket}/{key}?uploadId=

        Aborting an unknown or finished upload still answers 204.
        """
        self.multipart.abort(request.query_params.get("uploadId", ""))
        return Response(status_code=204)
