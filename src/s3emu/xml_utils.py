"""S3 XML response rendering helpers for s3emu.

Documents are assembled as lists of lines joined with newlines. Every
success document carries the S3 2006-03-01 namespace; ``<Error>`` does not.
"""

from datetime import datetime, timezone
from xml.sax.saxutils import escape as _sax_escape

from fastapi.responses import Response

from s3emu.multipart import PartListing
from s3emu.storage.store import ObjectListing

S3_XMLNS = "http://s3.amazonaws.com/doc/2006-03-01/"
_XML_DECL = '<?xml version="1.0" encoding="UTF-8"?>'


def _escape_xml(value) -> str:
    return _sax_escape(str(value))


def _bool(value: bool) -> str:
    return "true" if value else "false"


def iso8601(timestamp: float) -> str:
    """Format a POSIX timestamp the way S3 listings do (millisecond precision)."""
    dt = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _owner(tag: str, owner_id: str, display_name: str) -> list[str]:
    return [
        f"<{tag}>",
        f"<ID>{_escape_xml(owner_id)}</ID>",
        f"<DisplayName>{_escape_xml(display_name)}</DisplayName>",
        f"</{tag}>",
    ]


def render_error(
    code: str,
    message: str,
    resource: str = "",
    request_id: str = "",
    extra_fields: dict[str, str] | None = None,
) -> str:
    """Render an S3 XML error response body.

    Args:
        code: The S3 error code (e.g. "NoSuchBucket").
        message: Human-readable error message.
        resource: The ``/bucket[/key]`` the error refers to.
        request_id: An opaque request identifier.
        extra_fields: Additional XML elements to include.

    Returns:
        An XML string conforming to the S3 error response format.
    """
    parts = [
        _XML_DECL,
        "<Error>",
        f"<Code>{_escape_xml(code)}</Code>",
        f"<Message>{_escape_xml(message)}</Message>",
    ]
    if resource:
        parts.append(f"<Resource>{_escape_xml(resource)}</Resource>")
    if request_id:
        parts.append(f"<RequestId>{_escape_xml(request_id)}</RequestId>")
    for key, value in (extra_fields or {}).items():
        parts.append(f"<{key}>{_escape_xml(value)}</{key}>")
    parts.append("</Error>")
    return "\n".join(parts)


def xml_response(body: str, status: int = 200, headers: dict[str, str] | None = None) -> Response:
    """Wrap an XML body string in a Response with the XML content type."""
    return Response(
        content=body,
        status_code=status,
        media_type="application/xml",
        headers=headers,
    )


def render_list_buckets(
    owner_id: str, owner_display_name: str, buckets: list[tuple[str, float]]
) -> str:
    """Render ListAllMyBucketsResult.

    Args:
        owner_id: ID reported in the Owner block.
        owner_display_name: Display name reported in the Owner block.
        buckets: ``(name, creation timestamp)`` pairs.
    """
    parts = [_XML_DECL, f'<ListAllMyBucketsResult xmlns="{S3_XMLNS}">']
    parts.extend(_owner("Owner", owner_id, owner_display_name))
    parts.append("<Buckets>")
    for name, created in buckets:
        parts.append("<Bucket>")
        parts.append(f"<Name>{_escape_xml(name)}</Name>")
        parts.append(f"<CreationDate>{iso8601(created)}</CreationDate>")
        parts.append("</Bucket>")
    parts.append("</Buckets>")
    parts.append("</ListAllMyBucketsResult>")
    return "\n".join(parts)


def _listing_entries(listing: ObjectListing) -> list[str]:
    parts = []
    for obj in listing.objects:
        parts.append("<Contents>")
        parts.append(f"<Key>{_escape_xml(obj.key)}</Key>")
        parts.append(f"<LastModified>{iso8601(obj.last_modified)}</LastModified>")
        parts.append(f"<ETag>{_escape_xml(obj.etag)}</ETag>")
        parts.append(f"<Size>{obj.size}</Size>")
        parts.append("<StorageClass>STANDARD</StorageClass>")
        parts.append("</Contents>")
    for prefix in listing.common_prefixes:
        parts.append("<CommonPrefixes>")
        parts.append(f"<Prefix>{_escape_xml(prefix)}</Prefix>")
        parts.append("</CommonPrefixes>")
    return parts


def render_list_objects(
    bucket: str,
    listing: ObjectListing,
    prefix: str = "",
    marker: str = "",
    max_keys: int = 1000,
    delimiter: str = "",
) -> str:
    """Render ListBucketResult (ListObjects v1)."""
    parts = [
        _XML_DECL,
        f'<ListBucketResult xmlns="{S3_XMLNS}">',
        f"<Name>{_escape_xml(bucket)}</Name>",
        f"<Prefix>{_escape_xml(prefix)}</Prefix>",
        f"<Marker>{_escape_xml(marker)}</Marker>",
        f"<MaxKeys>{max_keys}</MaxKeys>",
    ]
    if delimiter:
        parts.append(f"<Delimiter>{_escape_xml(delimiter)}</Delimiter>")
    parts.append(f"<IsTruncated>{_bool(listing.is_truncated)}</IsTruncated>")
    if listing.is_truncated and listing.next_marker:
        parts.append(f"<NextMarker>{_escape_xml(listing.next_marker)}</NextMarker>")
    parts.extend(_listing_entries(listing))
    parts.append("</ListBucketResult>")
    return "\n".join(parts)


def render_list_objects_v2(
    bucket: str,
    listing: ObjectListing,
    prefix: str = "",
    max_keys: int = 1000,
    delimiter: str = "",
    continuation_token: str = "",
    next_continuation_token: str = "",
    start_after: str = "",
) -> str:
    """Render ListBucketResult in the ListObjectsV2 shape."""
    parts = [
        _XML_DECL,
        f'<ListBucketResult xmlns="{S3_XMLNS}">',
        f"<Name>{_escape_xml(bucket)}</Name>",
        f"<Prefix>{_escape_xml(prefix)}</Prefix>",
        f"<MaxKeys>{max_keys}</MaxKeys>",
        f"<KeyCount>{len(listing)}</KeyCount>",
    ]
    if delimiter:
        parts.append(f"<Delimiter>{_escape_xml(delimiter)}</Delimiter>")
    if start_after:
        parts.append(f"<StartAfter>{_escape_xml(start_after)}</StartAfter>")
    if continuation_token:
        parts.append(f"<ContinuationToken>{_escape_xml(continuation_token)}</ContinuationToken>")
    parts.append(f"<IsTruncated>{_bool(listing.is_truncated)}</IsTruncated>")
    if listing.is_truncated and next_continuation_token:
        parts.append(
            f"<NextContinuationToken>{_escape_xml(next_continuation_token)}</NextContinuationToken>"
        )
    parts.extend(_listing_entries(listing))
    parts.append("</ListBucketResult>")
    return "\n".join(parts)


def render_copy_object_result(etag: str, last_modified: float) -> str:
    return "\n".join(
        [
            _XML_DECL,
            f'<CopyObjectResult xmlns="{S3_XMLNS}">',
            f"<LastModified>{iso8601(last_modified)}</LastModified>",
            f"<ETag>{_escape_xml(etag)}</ETag>",
            "</CopyObjectResult>",
        ]
    )


def render_delete_result(deleted: list[str], errors: list[tuple[str, str, str]]) -> str:
    """Render DeleteResult for a multi-object delete.

    Args:
        deleted: Keys that were deleted.
        errors: ``(key, code, message)`` triples for keys that failed.
    """
    parts = [_XML_DECL, f'<DeleteResult xmlns="{S3_XMLNS}">']
    for key in deleted:
        parts.append("<Deleted>")
        parts.append(f"<Key>{_escape_xml(key)}</Key>")
        parts.append("</Deleted>")
    for key, code, message in errors:
        parts.append("<Error>")
        if key:
            parts.append(f"<Key>{_escape_xml(key)}</Key>")
        parts.append(f"<Code>{_escape_xml(code)}</Code>")
        parts.append(f"<Message>{_escape_xml(message)}</Message>")
        parts.append("</Error>")
    parts.append("</DeleteResult>")
    return "\n".join(parts)


def render_initiate_multipart_upload(bucket: str, key: str, upload_id: str) -> str:
    return "\n".join(
        [
            _XML_DECL,
            f'<InitiateMultipartUploadResult xmlns="{S3_XMLNS}">',
            f"<Bucket>{_escape_xml(bucket)}</Bucket>",
            f"<Key>{_escape_xml(key)}</Key>",
            f"<UploadId>{_escape_xml(upload_id)}</UploadId>",
            "</InitiateMultipartUploadResult>",
        ]
    )


def render_complete_multipart_upload(location: str, bucket: str, key: str, etag: str) -> str:
    return "\n".join(
        [
            _XML_DECL,
            f'<CompleteMultipartUploadResult xmlns="{S3_XMLNS}">',
            f"<Location>{_escape_xml(location)}</Location>",
            f"<Bucket>{_escape_xml(bucket)}</Bucket>",
            f"<Key>{_escape_xml(key)}</Key>",
            f"<ETag>{_escape_xml(etag)}</ETag>",
            "</CompleteMultipartUploadResult>",
        ]
    )


def render_list_parts(
    bucket: str,
    key: str,
    upload_id: str,
    listing: PartListing,
    part_number_marker: int = 0,
    max_parts: int = 1000,
) -> str:
    """Render ListPartsResult.

    The Initiator and Owner blocks use fixed placeholder identities.
    """
    parts = [
        _XML_DECL,
        f'<ListPartsResult xmlns="{S3_XMLNS}">',
        f"<Bucket>{_escape_xml(bucket)}</Bucket>",
        f"<Key>{_escape_xml(key)}</Key>",
        f"<UploadId>{_escape_xml(upload_id)}</UploadId>",
    ]
    parts.extend(_owner("Initiator", "initiatorId", "initiatorName"))
    parts.extend(_owner("Owner", "initiatorId", "initiatorName"))
    parts.append("<StorageClass>STANDARD</StorageClass>")
    parts.append(f"<PartNumberMarker>{part_number_marker}</PartNumberMarker>")
    if listing.is_truncated:
        parts.append(f"<NextPartNumberMarker>{listing.next_marker}</NextPartNumberMarker>")
    parts.append(f"<MaxParts>{max_parts}</MaxParts>")
    parts.append(f"<IsTruncated>{_bool(listing.is_truncated)}</IsTruncated>")
    for part in listing.parts:
        parts.append("<Part>")
        parts.append(f"<PartNumber>{part.part_number}</PartNumber>")
        parts.append(f"<LastModified>{iso8601(part.last_modified)}</LastModified>")
        parts.append(f"<ETag>{_escape_xml(part.etag)}</ETag>")
        parts.append(f"<Size>{part.size}</Size>")
        parts.append("</Part>")
    parts.append("</ListPartsResult>")
    return "\n".join(parts)


def render_access_control_policy(owner_id: str, owner_display_name: str) -> str:
    """Render an AccessControlPolicy granting FULL_CONTROL to the owner."""
    parts = [_XML_DECL, f'<AccessControlPolicy xmlns="{S3_XMLNS}">']
    parts.extend(_owner("Owner", owner_id, owner_display_name))
    parts.extend(
        [
            "<AccessControlList>",
            "<Grant>",
            '<Grantee xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" xsi:type="CanonicalUser">',
            f"<ID>{_escape_xml(owner_id)}</ID>",
            f"<DisplayName>{_escape_xml(owner_display_name)}</DisplayName>",
            "</Grantee>",
            "<Permission>FULL_CONTROL</Permission>",
            "</Grant>",
            "</AccessControlList>",
            "</AccessControlPolicy>",
        ]
    )
    return "\n".join(parts)


def render_cors_configuration() -> str:
    return "\n".join([_XML_DECL, f'<CORSConfiguration xmlns="{S3_XMLNS}">', "</CORSConfiguration>"])


def render_request_payment(payer: str = "BucketOwner") -> str:
    return "\n".join(
        [
            _XML_DECL,
            f'<RequestPaymentConfiguration xmlns="{S3_XMLNS}">',
            f"<Payer>{_escape_xml(payer)}</Payer>",
            "</RequestPaymentConfiguration>",
        ]
    )
