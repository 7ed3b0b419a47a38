"""S3-compatible error definitions for s3emu.

Every error kind the emulator reports is a subclass of :class:`S3Error`
with a fixed error code and HTTP status. The server turns any raised
``S3Error`` into an XML ``<Error>`` document (see ``xml_utils.render_error``).
"""


class S3Error(Exception):
    """An S3-compatible error with code, message, and HTTP status.

    Attributes:
        code: The S3 error code string (e.g. "NoSuchBucket", "AccessDenied").
        message: Human-readable error description.
        http_status: The HTTP status code to return.
        extra_fields: Additional key-value pairs to include in the XML error response.
        resource: The "/bucket[/key]" path the error refers to, if known.
    """

    def __init__(
        self,
        code: str,
        message: str,
        http_status: int = 400,
        extra_fields: dict[str, str] | None = None,
        resource: str = "",
    ) -> None:
        """Initialize the S3 error.

        Args:
            code: S3 error code.
            message: Error description.
            http_status: HTTP status code (default 400).
            extra_fields: Optional extra XML fields.
            resource: Optional resource path.
        """
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra_fields = extra_fields or {}
        self.resource = resource


def resource_path(bucket: str, key: str = "") -> str:
    """Build the ``/bucket[/key]`` resource string used in error bodies."""
    if not bucket:
        return "/"
    if key:
        return f"/{bucket}/{key}"
    return f"/{bucket}"


# -- Authentication ------------------------------------------------------------


class AccessDenied(S3Error):
    """Access denied error."""

    def __init__(self, message: str = "Access Denied") -> None:
        super().__init__(code="AccessDenied", message=message, http_status=403)


class SignatureDoesNotMatch(S3Error):
    """The request signature does not match."""

    def __init__(
        self,
        message: str = "The request signature we calculated does not match the signature you provided.",
    ) -> None:
        super().__init__(code="SignatureDoesNotMatch", message=message, http_status=403)


# -- Request body / digest -------------------------------------------------------


class BadDigest(S3Error):
    """The Content-MD5 you specified did not match what we received."""

    def __init__(
        self, message: str = "The Content-MD5 you specified did not match what we received."
    ) -> None:
        super().__init__(code="BadDigest", message=message, http_status=400)


class InvalidDigest(S3Error):
    """The Content-MD5 you specified is not valid."""

    def __init__(self, message: str = "The Content-MD5 you specified is not valid.") -> None:
        super().__init__(code="InvalidDigest", message=message, http_status=400)


class IncompleteBody(S3Error):
    """Fewer bytes were received than announced by Content-Length."""

    def __init__(
        self,
        message: str = "You did not provide the number of bytes specified by the Content-Length HTTP header.",
    ) -> None:
        super().__init__(code="IncompleteBody", message=message, http_status=400)


class MalformedXML(S3Error):
    """The XML provided was not well-formed or did not validate."""

    def __init__(
        self,
        message: str = "The XML you provided was not well-formed or did not validate against our published schema.",
    ) -> None:
        super().__init__(code="MalformedXML", message=message, http_status=400)


class InvalidRequest(S3Error):
    """The request is not valid."""

    def __init__(self, message: str = "Invalid Request") -> None:
        super().__init__(code="InvalidRequest", message=message, http_status=400)


class InvalidArgument(S3Error):
    """An invalid argument was provided."""

    def __init__(self, message: str = "Invalid Argument") -> None:
        super().__init__(code="InvalidArgument", message=message, http_status=400)


class KeyTooLongError(S3Error):
    """The object key is longer than the store can hold."""

    def __init__(self, key: str = "", message: str = "Your key is too long.") -> None:
        super().__init__(
            code="KeyTooLongError",
            message=message,
            http_status=400,
            extra_fields={"Key": key} if key else {},
        )


class InvalidRange(S3Error):
    """The requested range is not satisfiable."""

    def __init__(self, message: str = "The requested range is not satisfiable.") -> None:
        super().__init__(code="InvalidRange", message=message, http_status=416)


class MethodNotAllowed(S3Error):
    """The specified method is not allowed against this resource."""

    def __init__(
        self, message: str = "The specified method is not allowed against this resource."
    ) -> None:
        super().__init__(code="MethodNotAllowed", message=message, http_status=405)


# -- Missing resources -----------------------------------------------------------


class NoSuchBucket(S3Error):
    """The specified bucket does not exist."""

    def __init__(self, bucket: str = "") -> None:
        super().__init__(
            code="NoSuchBucket",
            message="The specified bucket does not exist.",
            http_status=404,
            extra_fields={"BucketName": bucket} if bucket else {},
            resource=resource_path(bucket) if bucket else "",
        )


class NoSuchKey(S3Error):
    """The specified key does not exist."""

    def __init__(
        self, key: str = "", bucket: str = "", message: str = "The specified key does not exist."
    ) -> None:
        super().__init__(
            code="NoSuchKey",
            message=message,
            http_status=404,
            extra_fields={"Key": key} if key else {},
            resource=resource_path(bucket, key) if bucket else "",
        )


class NoSuchUpload(S3Error):
    """The specified multipart upload does not exist."""

    def __init__(self, upload_id: str = "") -> None:
        super().__init__(
            code="NoSuchUpload",
            message="The specified multipart upload does not exist.",
            http_status=404,
            extra_fields={"UploadId": upload_id} if upload_id else {},
        )


class NoSuchBucketPolicy(S3Error):
    """The bucket has no policy attached."""

    def __init__(self, bucket: str = "") -> None:
        super().__init__(
            code="NoSuchBucketPolicy",
            message="The bucket policy does not exist.",
            http_status=404,
            extra_fields={"BucketName": bucket} if bucket else {},
            resource=resource_path(bucket) if bucket else "",
        )


class NoSuchLifecycleConfiguration(S3Error):
    """The bucket has no lifecycle configuration."""

    def __init__(self, bucket: str = "") -> None:
        super().__init__(
            code="NoSuchLifecycleConfiguration",
            message="The lifecycle configuration does not exist.",
            http_status=404,
            extra_fields={"BucketName": bucket} if bucket else {},
            resource=resource_path(bucket) if bucket else "",
        )


# -- Bucket state ----------------------------------------------------------------


class InvalidBucketName(S3Error):
    """The specified bucket name is not valid."""

    def __init__(self, bucket: str = "") -> None:
        super().__init__(
            code="InvalidBucketName",
            message="The specified bucket is not valid.",
            http_status=400,
            extra_fields={"BucketName": bucket} if bucket else {},
        )


class InternalError(S3Error):
    """An internal server error occurred."""

    def __init__(self, message: str = "We encountered an internal error. Please try again.") -> None:
        super().__init__(code="InternalError", message=message, http_status=500)
