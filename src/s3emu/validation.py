"""S3 input validation helpers for s3emu.

Each function raises an appropriate ``S3Error`` subclass on invalid input
so handlers can call them at the request boundary.
"""

from s3emu.errors import InvalidArgument, InvalidBucketName, KeyTooLongError

# Bucket names map 1:1 to directory names, so only path-escaping
# characters are forbidden. Any other name, even a single character, is
# accepted.
_FORBIDDEN_BUCKET_PARTS = ("..", "/", "\\")

_MAX_KEY_BYTES = 1024
_MAX_MAX_KEYS = 1000
_MAX_PART_NUMBER = 10000


def validate_bucket_name(name: str) -> None:
    """Validate a bucket name.

    Args:
        name: The candidate bucket name.

    Raises:
        InvalidBucketName: If the name is empty or could escape the
            storage directory.
    """
    if not name or name in (".", ".."):
        raise InvalidBucketName(name)
    for part in _FORBIDDEN_BUCKET_PARTS:
        if part in name:
            raise InvalidBucketName(name)


def validate_object_key(key: str) -> None:
    """Validate an object key.

    Raises:
        KeyTooLongError: If the key exceeds 1024 bytes when UTF-8 encoded.
    """
    if len(key.encode("utf-8")) > _MAX_KEY_BYTES:
        raise KeyTooLongError()


def validate_max_keys(value: str | None, name: str = "max-keys") -> int:
    """Parse a ``max-keys``/``max-parts`` style limit.

    Missing values default to 1000 and larger values are capped at 1000,
    matching what S3 returns per page.

    Args:
        value: The raw string value from the query string, or None.
        name: Parameter name used in the error message.

    Returns:
        An integer in the range [0, 1000].

    Raises:
        InvalidArgument: If the value is not a non-negative integer.
    """
    if value is None or value == "":
        return _MAX_MAX_KEYS
    try:
        n = int(value)
    except (ValueError, TypeError):
        raise InvalidArgument(f"Argument {name} must be a non-negative integer")
    if n < 0:
        raise InvalidArgument(f"Argument {name} must be a non-negative integer")
    return min(n, _MAX_MAX_KEYS)


def validate_part_number(value: str | None) -> int:
    """Parse and validate the ``partNumber`` query parameter.

    Raises:
        InvalidArgument: If the value is not an integer in [1, 10000].
    """
    try:
        n = int(value)  # type: ignore[arg-type]
    except (ValueError, TypeError):
        raise InvalidArgument(
            f"Part number must be an integer between 1 and {_MAX_PART_NUMBER}, inclusive"
        )
    if n < 1 or n > _MAX_PART_NUMBER:
        raise InvalidArgument(
            f"Part number must be an integer between 1 and {_MAX_PART_NUMBER}, inclusive"
        )
    return n
