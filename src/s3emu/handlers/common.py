"""Request helpers shared by the object and multipart handlers."""

import hashlib
from collections.abc import AsyncIterator

from fastapi import Request

from s3emu.auth import STREAMING_PAYLOAD
from s3emu.errors import InvalidArgument, InvalidRequest

# Request headers persisted into the properties sidecar as-is.
_CAPTURED_HEADERS = {
    "content-type": "Content-Type",
    "content-md5": "Content-MD5",
    "x-amz-acl": "x-amz-acl",
}


def owner_id(access_key: str) -> str:
    """Derive a canonical owner ID (32 hex chars) from an access key."""
    return hashlib.sha256(access_key.encode()).hexdigest()[:32]


def capture_properties(request: Request) -> dict[str, str]:
    """Collect the request headers that become object properties.

    Captures Content-Type, Content-MD5, x-amz-acl and every
    ``x-amz-meta-*`` header (names lower-cased).
    """
    properties: dict[str, str] = {}
    for name, value in request.headers.items():
        lower_name = name.lower()
        if lower_name in _CAPTURED_HEADERS:
            properties[_CAPTURED_HEADERS[lower_name]] = value
        elif lower_name.startswith("x-amz-meta-"):
            properties[lower_name] = value
    return properties


def is_aws_chunked(request: Request) -> bool:
    if request.headers.get("x-amz-content-sha256") == STREAMING_PAYLOAD:
        return True
    return "aws-chunked" in request.headers.get("content-encoding", "")


def expected_length(request: Request) -> int | None:
    """The payload length the client announced, if any.

    For aws-chunked bodies this is ``x-amz-decoded-content-length``,
    otherwise ``Content-Length``.

    Raises:
        InvalidArgument: If the header is not a non-negative integer.
    """
    name = "x-amz-decoded-content-length" if is_aws_chunked(request) else "content-length"
    value = request.headers.get(name)
    if value is None:
        return None
    try:
        length = int(value)
    except ValueError:
        raise InvalidArgument(f"Invalid {name} header: {value}")
    if length < 0:
        raise InvalidArgument(f"Invalid {name} header: {value}")
    return length


class AwsChunkedDecoder:
    """Strips aws-chunked framing from a streamed body.

    The framing is ``<hex-size>[;chunk-signature=...]\\r\\n<data>\\r\\n``
    repeated, ending with a zero-size chunk. Chunk signatures are ignored.
    Input may be split at arbitrary points.
    """

    _HEADER, _DATA, _CRLF, _DONE = range(4)

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._remaining = 0
        self._state = self._HEADER

    @property
    def done(self) -> bool:
        return self._state == self._DONE

    def feed(self, data: bytes) -> bytes:
        """Consume raw bytes and return the payload bytes they complete."""
        self._buffer.extend(data)
        out = bytearray()
        while True:
            if self._state == self._HEADER:
                idx = self._buffer.find(b"\r\n")
                if idx < 0:
                    break
                line = bytes(self._buffer[:idx])
                del self._buffer[: idx + 2]
                size_text = line.split(b";", 1)[0].strip()
                if not size_text:
                    continue
                try:
                    size = int(size_text, 16)
                except ValueError:
                    raise InvalidRequest("Malformed aws-chunked encoding.")
                if size == 0:
                    self._state = self._DONE
                else:
                    self._remaining = size
                    self._state = self._DATA
            elif self._state == self._DATA:
                if not self._buffer:
                    break
                take = min(self._remaining, len(self._buffer))
                out += self._buffer[:take]
                del self._buffer[:take]
                self._remaining -= take
                if self._remaining == 0:
                    self._state = self._CRLF
            elif self._state == self._CRLF:
                if len(self._buffer) < 2:
                    break
                del self._buffer[:2]
                self._state = self._HEADER
            else:
                # Trailing headers after the final chunk are not used.
                self._buffer.clear()
                break
        return bytes(out)


async def iter_payload(request: Request) -> AsyncIterator[bytes]:
    """Yield the request payload, removing aws-chunked framing if present."""
    decoder = AwsChunkedDecoder() if is_aws_chunked(request) else None
    async for chunk in request.stream():
        if decoder is not None:
            chunk = decoder.feed(chunk)
        if chunk:
            yield chunk
