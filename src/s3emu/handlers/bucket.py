"""Bucket-level S3 request handlers for s3emu.

Implements:
    - ListBuckets (GET /)
    - CreateBucket (PUT /{bucket})
    - DeleteBucket (DELETE /{bucket})
    - HeadBucket (HEAD /{bucket})
    - the empty-key acknowledgement for GET/HEAD /{bucket}/
"""

import logging

from fastapi import FastAPI, Request, Response

from s3emu.errors import InvalidArgument, NoSuchBucket
from s3emu.handlers.common import owner_id
from s3emu.xml_utils import render_list_buckets, xml_response

logger = logging.getLogger(__name__)

PUBLIC_ACLS = ("public-read", "public-read-write")
PRIVATE_ACL = "private"


def apply_canned_acl(store, bucket: str, canned_acl: str | None) -> None:
    """Map an ``x-amz-acl`` value onto bucket visibility.

    Only the public/private distinction is kept; other canned ACLs
    (e.g. ``authenticated-read``) leave visibility unchanged.

    Raises:
        InvalidArgument: If the value is empty.
    """
    if canned_acl is None:
        return
    value = canned_acl.strip().lower()
    if not value:
        raise InvalidArgument("Invalid canned ACL: empty value")
    if value in PUBLIC_ACLS:
        store.make_public(bucket)
    elif value == PRIVATE_ACL:
        store.make_private(bucket)
    else:
        logger.debug("Ignoring canned ACL %s on bucket %s", value, bucket)


class BucketHandler:
    """Handles S3 bucket operations.

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
    def config(self):
        """Shortcut to the S3EmuConfig on app.state."""
        return self.app.state.config

    async def list_buckets(self, request: Request) -> Response:
        """List all buckets.

        Implements: GET /

        Returns:
            XML ListAllMyBucketsResult with an owner derived from the
            configured access key.
        """
        access_key = self.config.auth.access_key
        buckets = [(b.name, b.creation_date) for b in self.store.list_buckets()]
        xml = render_list_buckets(
            owner_id=owner_id(access_key),
            owner_display_name=access_key,
            buckets=buckets,
        )
        return xml_response(xml, status=200)

    async def create_bucket(self, request: Request, bucket: str) -> Response:
        """Create a bucket.

        Implements: PUT /{bucket}

        Creating an existing bucket succeeds. An ``x-amz-acl`` header of
        ``public-read``/``public-read-write`` makes the bucket public.

        Returns:
            Empty 200 response with a Location header.
        """
        self.store.create_bucket(bucket)
        apply_canned_acl(self.store, bucket, request.headers.get("x-amz-acl"))
        return Response(status_code=200, headers={"Location": f"/{bucket}"})

    async def delete_bucket(self, request: Request, bucket: str) -> Response:
        """Delete a bucket together with all of its objects.

        Implements: DELETE /{bucket}

        Raises:
            NoSuchBucket: If the bucket does not exist.
        """
        self.store.delete_bucket(bucket)
        return Response(status_code=204)

    async def head_bucket(self, request: Request, bucket: str) -> Response:
        """Check whether a bucket exists.

        Implements: HEAD /{bucket}

        Raises:
            NoSuchBucket: If the bucket does not exist.
        """
        if not self.store.bucket_exists(bucket):
            raise NoSuchBucket(bucket)
        return Response(status_code=200)

    async def acknowledge(self, request: Request, bucket: str) -> Response:
        """Answer GET/HEAD /{bucket}/ for a missing bucket with an empty 200.

        Some clients probe for a bucket with a trailing slash before
        creating it; storage is not touched.
        """
        return Response(status_code=200)
