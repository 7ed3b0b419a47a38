"""Filesystem object store for s3emu.

Buckets are directories under ``base_dir``; each object is a data file
plus a ``.properties`` sidecar in its bucket directory (the layout is
described in ``storage.migration``). Object keys are mapped to file names
with ``storage.keys.encode_key``.

All operations are synchronous and may block on filesystem I/O. Shared
in-memory state (the visibility cache and the set of buckets already
checked for migration) is owned by one ``ObjectStore`` instance and
guarded by locks, so several stores can coexist in one process.
"""

import base64
import binascii
import email.utils
import hashlib
import logging
import os
import shutil
import threading
import uuid
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

from s3emu.errors import (
    BadDigest,
    IncompleteBody,
    InvalidArgument,
    InvalidDigest,
    KeyTooLongError,
    NoSuchBucket,
    NoSuchKey,
)
from s3emu.storage import properties as props_io
from s3emu.storage.keys import (
    PUBLIC_MARKER,
    TEMP_PREFIX,
    decode_key,
    encode_key,
    fits_filesystem,
    is_reserved,
    properties_name,
)
from s3emu.storage.migration import migrate_bucket, write_version
from s3emu.validation import validate_bucket_name, validate_object_key

logger = logging.getLogger(__name__)

# Streaming chunk size: 64 KB
_CHUNK_SIZE = 64 * 1024

ETAG_PROPERTY = "ETag"
LAST_MODIFIED_PROPERTY = "Last-Modified"


def quote_etag(hex_digest: str) -> str:
    """Wrap a hex digest in double quotes, as S3 returns ETags."""
    return f'"{hex_digest}"'


def http_date(timestamp: float) -> str:
    """Format a POSIX timestamp as an RFC 1123 date."""
    return email.utils.formatdate(timestamp, usegmt=True)


def parse_content_md5(value: str) -> bytes:
    """Decode a ``Content-MD5`` header value into the 16-byte digest.

    Raises:
        InvalidDigest: If the value is not base64 of exactly 16 bytes.
    """
    try:
        digest = base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError):
        raise InvalidDigest()
    if len(digest) != 16:
        raise InvalidDigest()
    return digest


@dataclass
class ListedObject:
    """One ``Contents`` entry of a bucket listing."""

    key: str
    size: int
    last_modified: float
    etag: str


@dataclass
class ObjectListing:
    """Result of ``Bucket.list_objects``."""

    objects: list[ListedObject] = field(default_factory=list)
    common_prefixes: list[str] = field(default_factory=list)
    is_truncated: bool = False
    next_marker: str = ""

    def __len__(self) -> int:
        return len(self.objects) + len(self.common_prefixes)


class ObjectWriter:
    """Streams an object's data into a temp file and installs it on success.

    The temp file lives in the bucket directory under a reserved name,
    so it never shows up in listings and the final ``os.replace`` stays
    on one filesystem.
    """

    def __init__(self, target: "StoredObject") -> None:
        self.target = target
        self.tmp_path = target.bucket.path / f"{TEMP_PREFIX}{uuid.uuid4().hex[:12]}"
        self.size = 0
        self._md5 = hashlib.md5()
        self._fh = open(self.tmp_path, "wb")
        self._done = False

    def write(self, chunk: bytes) -> None:
        if chunk:
            self._fh.write(chunk)
            self._md5.update(chunk)
            self.size += len(chunk)

    def finish(
        self,
        properties: dict[str, str] | None = None,
        content_md5: bytes | None = None,
        expected_length: int | None = None,
    ) -> str:
        """Validate the received bytes, install the data file and sidecar.

        A rejected write leaves no object behind: the temp file is removed
        and any object previously stored under the key is deleted too.

        Args:
            properties: Metadata to persist; ETag and Last-Modified are added.
            content_md5: Digest the client announced via ``Content-MD5``.
            expected_length: Byte count the client announced.

        Returns:
            The quoted hex MD5 ETag of the stored object.

        Raises:
            IncompleteBody: If fewer bytes than announced arrived.
            BadDigest: If the MD5 does not match ``content_md5``.
        """
        self._fh.flush()
        os.fsync(self._fh.fileno())
        self._fh.close()

        if expected_length is not None and self.size < expected_length:
            self._reject()
            raise IncompleteBody()
        if content_md5 is not None and self._md5.digest() != content_md5:
            self._reject()
            raise BadDigest()

        # Sidecar first: a failed metadata write must not install the data.
        etag = quote_etag(self._md5.hexdigest())
        stored = dict(properties or {})
        stored[ETAG_PROPERTY] = etag
        stored[LAST_MODIFIED_PROPERTY] = http_date(os.stat(self.tmp_path).st_mtime)
        self.target.store_properties(stored)

        os.replace(self.tmp_path, self.target.path)
        self._done = True
        return etag

    def discard(self) -> None:
        """Drop the temp file without touching the stored object."""
        if self._done:
            return
        self._done = True
        if not self._fh.closed:
            self._fh.close()
        self.tmp_path.unlink(missing_ok=True)

    def _reject(self) -> None:
        self.discard()
        logger.info(
            "Rejected upload, removing %s/%s",
            self.target.bucket.name,
            self.target.key,
            extra={"bucket": self.target.bucket.name, "key": self.target.key},
        )
        self.target.delete()

    def __enter__(self) -> "ObjectWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.discard()


class StoredObject:
    """Handle to an object inside a bucket. The object may not exist.

    Attributes:
        bucket: The owning bucket.
        key: The logical object key.
        encoded_key: The data file name.
        path: Path of the data file.
        properties_path: Path of the metadata sidecar.
    """

    def __init__(self, bucket: "Bucket", key: str) -> None:
        self.bucket = bucket
        self.key = key
        self.encoded_key = encode_key(key)
        self.path = bucket.path / self.encoded_key
        self.properties_path = bucket.path / properties_name(self.encoded_key)

    def exists(self) -> bool:
        return self.path.is_file()

    @property
    def size(self) -> int:
        return self.path.stat().st_size

    @property
    def last_modified(self) -> float:
        return self.path.stat().st_mtime

    def get_properties(self) -> dict[str, str]:
        """Return the stored metadata mapping (empty if there is none)."""
        return props_io.load(self.properties_path)

    def store_properties(self, properties: dict[str, str]) -> None:
        """Replace the metadata sidecar atomically."""
        props_io.dump(properties, self.properties_path)

    def get_etag(self) -> str:
        """Return the quoted ETag, computing and persisting it if missing."""
        properties = self.get_properties()
        etag = properties.get(ETAG_PROPERTY)
        if etag:
            return etag
        md5 = hashlib.md5()
        with open(self.path, "rb") as fh:
            for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
                md5.update(chunk)
        etag = quote_etag(md5.hexdigest())
        properties[ETAG_PROPERTY] = etag
        self.store_properties(properties)
        logger.debug("Backfilled ETag for %s/%s", self.bucket.name, self.key)
        return etag

    def open_writer(self) -> ObjectWriter:
        return ObjectWriter(self)

    def iter_content(self, offset: int = 0, length: int | None = None) -> Iterator[bytes]:
        """Yield the data file in 64 KB chunks.

        Args:
            offset: Byte offset to start reading from.
            length: Number of bytes to read, or None for all remaining.
        """
        remaining = length
        with open(self.path, "rb") as f:
            if offset > 0:
                f.seek(offset)
            while True:
                if remaining is not None:
                    to_read = min(_CHUNK_SIZE, remaining)
                    if to_read <= 0:
                        break
                else:
                    to_read = _CHUNK_SIZE
                chunk = f.read(to_read)
                if not chunk:
                    break
                yield chunk
                if remaining is not None:
                    remaining -= len(chunk)

    def copy_from(self, source: "StoredObject", properties: dict[str, str] | None = None) -> str:
        """Copy another object's data (and sidecar) onto this key.

        Args:
            source: The object to copy.
            properties: Replacement metadata; None keeps the source's.

        Returns:
            The recomputed quoted ETag.
        """
        with self.open_writer() as writer:
            for chunk in source.iter_content():
                writer.write(chunk)
            if properties is None:
                properties = source.get_properties()
            return writer.finish(properties=properties)

    def delete(self) -> None:
        """Remove data file and sidecar.

        Cleanup is best effort: a file that cannot be removed is logged
        and the other one is still attempted.
        """
        for path in (self.path, self.properties_path):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Could not delete %s: %s", path, exc)


class Bucket:
    """Handle to a bucket directory. The bucket may not exist.

    Attributes:
        store: The owning store.
        name: The bucket name.
        path: The bucket directory.
    """

    def __init__(self, store: "ObjectStore", name: str) -> None:
        self.store = store
        self.name = name
        self.path = store.base_dir / name

    def exists(self) -> bool:
        return self.path.is_dir()

    def create(self) -> None:
        """Create the directory in the current on-disk format (idempotent)."""
        if self.exists():
            return
        self.path.mkdir(parents=True, exist_ok=True)
        write_version(self.path)
        logger.info("Created bucket %s", self.name, extra={"bucket": self.name})

    def delete(self) -> None:
        """Delete the bucket and every object in it."""
        shutil.rmtree(self.path)
        self.store._forget(self.name)
        logger.info("Deleted bucket %s", self.name, extra={"bucket": self.name})

    @property
    def creation_date(self) -> float:
        return self.path.stat().st_mtime

    def is_private(self) -> bool:
        return not self.store.is_public(self.name)

    def make_public(self) -> None:
        self.store.set_visibility(self.name, public=True)

    def make_private(self) -> None:
        self.store.set_visibility(self.name, public=False)

    def get_object(self, key: str) -> StoredObject:
        """Return a handle for ``key``; the object need not exist.

        Raises:
            InvalidArgument: If the key is empty.
            KeyTooLongError: If the key exceeds 1024 bytes or its file
                names would exceed the filesystem's name limit.
        """
        if not key:
            raise InvalidArgument("Object keys must not be empty.")
        validate_object_key(key)
        if not fits_filesystem(encode_key(key)):
            raise KeyTooLongError(message="Your key is too long for this store.")
        self.store.ensure_current(self)
        return StoredObject(self, key)

    def _object_keys(self) -> list[str]:
        """All object keys in binary UTF-8 order."""
        keys = []
        for entry in os.scandir(self.path):
            name = entry.name
            if is_reserved(name) or not entry.is_file():
                continue
            key = decode_key(name)
            if encode_key(key) != name:
                logger.debug("Skipping improperly encoded file %s in %s", name, self.name)
                continue
            keys.append(key)
        keys.sort(key=lambda k: k.encode("utf-8"))
        return keys

    def list_objects(
        self,
        prefix: str = "",
        marker: str = "",
        limit: int = 1000,
        delimiter: str = "",
    ) -> ObjectListing:
        """List objects in binary UTF-8 key order.

        Keys less than or equal to ``marker`` (compared as UTF-8 bytes) are
        skipped. With a delimiter, keys sharing the part of the key up to
        the first delimiter after ``prefix`` collapse into one common
        prefix, which counts toward ``limit``. The listing is truncated
        when more than ``limit`` entries match.

        Args:
            prefix: Only keys starting with this string are listed.
            marker: Resume after this key.
            limit: Maximum number of entries to return.
            delimiter: Optional grouping delimiter.

        Returns:
            An ObjectListing.
        """
        self.store.ensure_current(self)
        marker_bytes = marker.encode("utf-8") if marker else None
        listing = ObjectListing()
        last_prefix = None
        last_emitted = ""

        for key in self._object_keys():
            if prefix and not key.startswith(prefix):
                continue
            if marker_bytes is not None and key.encode("utf-8") <= marker_bytes:
                continue

            common = None
            if delimiter:
                idx = key.find(delimiter, len(prefix))
                if idx >= 0:
                    common = key[: idx + len(delimiter)]
                    if common == last_prefix or (marker and marker.startswith(common)):
                        continue

            if len(listing) >= limit:
                listing.is_truncated = True
                break

            if common is not None:
                listing.common_prefixes.append(common)
                last_prefix = common
                last_emitted = common
                continue

            obj = StoredObject(self, key)
            try:
                listing.objects.append(
                    ListedObject(
                        key=key,
                        size=obj.size,
                        last_modified=obj.last_modified,
                        etag=obj.get_etag(),
                    )
                )
            except FileNotFoundError:
                # Deleted while listing.
                continue
            last_emitted = key

        if listing.is_truncated:
            listing.next_marker = last_emitted
        return listing


class ObjectStore:
    """Root of the filesystem store.

    Attributes:
        base_dir: Directory holding one sub-directory per bucket.
        autocreate_buckets: Whether writes may create missing buckets.
    """

    def __init__(self, base_dir: str | Path, autocreate_buckets: bool = True) -> None:
        self.base_dir = Path(base_dir)
        self.autocreate_buckets = autocreate_buckets
        self._visibility_lock = threading.Lock()
        self._public_cache: dict[str, bool] = {}
        self._migration_lock = threading.Lock()
        self._current: set[str] = set()

    def init(self) -> None:
        """Create the base directory and remove temp files left by crashes."""
        self.base_dir.mkdir(parents=True, exist_ok=True)
        count = 0
        for bucket_dir in self.base_dir.iterdir():
            if not bucket_dir.is_dir():
                continue
            for entry in os.scandir(bucket_dir):
                if entry.name.startswith(TEMP_PREFIX):
                    try:
                        os.unlink(entry.path)
                        count += 1
                    except OSError as exc:
                        logger.warning("Could not remove temp file %s: %s", entry.path, exc)
        if count:
            logger.info("Cleaned %d orphan temp files on startup", count)
        logger.info("Object store initialized at %s", self.base_dir)

    # -- Buckets ---------------------------------------------------------------

    def list_buckets(self) -> list[Bucket]:
        """Return all buckets, sorted by name."""
        if not self.base_dir.is_dir():
            return []
        names = sorted(
            entry.name
            for entry in os.scandir(self.base_dir)
            if entry.is_dir() and not is_reserved(entry.name) and not entry.name.startswith(".")
        )
        return [Bucket(self, name) for name in names]

    def get_bucket(self, name: str) -> Bucket:
        """Return a bucket handle; existence is not checked.

        Raises:
            InvalidBucketName: If the name contains ``..``, ``/`` or ``\\``.
        """
        validate_bucket_name(name)
        return Bucket(self, name)

    def bucket_exists(self, name: str) -> bool:
        return self.get_bucket(name).exists()

    def create_bucket(self, name: str) -> Bucket:
        bucket = self.get_bucket(name)
        bucket.create()
        return bucket

    def delete_bucket(self, name: str) -> None:
        """Delete a bucket and all of its objects.

        Raises:
            NoSuchBucket: If the bucket does not exist.
        """
        bucket = self.get_bucket(name)
        if not bucket.exists():
            raise NoSuchBucket(name)
        bucket.delete()

    def ensure_current(self, bucket: Bucket) -> None:
        """Migrate a bucket to the current on-disk format once per store."""
        if bucket.name in self._current:
            return
        with self._migration_lock:
            if bucket.name in self._current or not bucket.exists():
                return
            migrate_bucket(bucket.path)
            self._current.add(bucket.name)

    def _forget(self, name: str) -> None:
        with self._visibility_lock:
            self._public_cache.pop(name, None)
        with self._migration_lock:
            self._current.discard(name)

    # -- Visibility ------------------------------------------------------------

    def is_public(self, name: str) -> bool:
        """Return True if the bucket carries the public marker.

        Served from the in-memory cache after the first lookup.
        """
        with self._visibility_lock:
            cached = self._public_cache.get(name)
        if cached is not None:
            return cached
        bucket = self.get_bucket(name)
        self.ensure_current(bucket)
        with self._visibility_lock:
            cached = self._public_cache.get(name)
            if cached is None:
                cached = (bucket.path / PUBLIC_MARKER).exists()
                self._public_cache[name] = cached
            return cached

    def set_visibility(self, name: str, public: bool) -> None:
        """Make a bucket public or private.

        The marker file and the cache are updated under the same lock, so
        once this returns no caller can observe the previous state.

        Raises:
            NoSuchBucket: If the bucket does not exist.
        """
        bucket = self.get_bucket(name)
        if not bucket.exists():
            raise NoSuchBucket(name)
        self.ensure_current(bucket)
        marker = bucket.path / PUBLIC_MARKER
        with self._visibility_lock:
            if public:
                marker.touch(exist_ok=True)
            else:
                marker.unlink(missing_ok=True)
            self._public_cache[name] = public
        logger.info(
            "Bucket %s is now %s", name, "public" if public else "private", extra={"bucket": name}
        )

    def make_public(self, name: str) -> None:
        self.set_visibility(name, public=True)

    def make_private(self, name: str) -> None:
        self.set_visibility(name, public=False)

    # -- Objects ---------------------------------------------------------------

    def existing_bucket(self, name: str, create: bool = False) -> Bucket:
        """Return a bucket that exists, creating it first if allowed.

        Raises:
            NoSuchBucket: If the bucket is missing and cannot be created.
        """
        bucket = self.get_bucket(name)
        if not bucket.exists():
            if create and self.autocreate_buckets:
                bucket.create()
            else:
                raise NoSuchBucket(name)
        return bucket

    def list_objects(
        self,
        bucket: str,
        prefix: str = "",
        marker: str = "",
        limit: int = 1000,
        delimiter: str = "",
    ) -> ObjectListing:
        return self.existing_bucket(bucket).list_objects(prefix, marker, limit, delimiter)

    def get_object(self, bucket: str, key: str) -> StoredObject:
        return self.get_bucket(bucket).get_object(key)

    def put_object(
        self,
        bucket: str,
        key: str,
        data: bytes | Iterable[bytes],
        properties: dict[str, str] | None = None,
        content_md5: str | None = None,
    ) -> str:
        """Store an object from bytes or an iterable of chunks.

        Returns:
            The quoted ETag.

        Raises:
            NoSuchBucket: If the bucket is missing and auto-create is off.
            InvalidDigest, BadDigest: On a bad ``content_md5``.
        """
        digest = parse_content_md5(content_md5) if content_md5 is not None else None
        obj = self.existing_bucket(bucket, create=True).get_object(key)
        chunks = [data] if isinstance(data, bytes) else data
        with obj.open_writer() as writer:
            for chunk in chunks:
                writer.write(chunk)
            return writer.finish(properties=properties, content_md5=digest)

    def delete_object(self, bucket: str, key: str) -> None:
        """Delete an object. Deleting a missing object is not an error.

        Raises:
            NoSuchBucket: If the bucket does not exist.
        """
        self.existing_bucket(bucket).get_object(key).delete()

    def read_object(self, bucket: str, key: str) -> bytes:
        """Return an object's whole content.

        Raises:
            NoSuchBucket, NoSuchKey: If bucket or object is missing.
        """
        obj = self.existing_bucket(bucket).get_object(key)
        if not obj.exists():
            raise NoSuchKey(key, bucket=bucket)
        return b"".join(obj.iter_content())
