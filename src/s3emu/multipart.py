"""Multipart upload state machine for s3emu.

Each upload moves through ``initiated -> (part uploaded)* -> completed |
aborted``. Parts are staged as numbered files in a per-upload directory
under ``multipart_dir``::

    {multipart_dir}/{upload_id}/1
    {multipart_dir}/{upload_id}/2
    ...

Upload ids come from a counter owned by the manager. The registry of
active ids lives in memory only; staging directories left over from a
previous process are removed by ``init()``.

Completion and abort remove the id from the registry under a lock before
touching any file, so for concurrent requests on the same id exactly one
proceeds and the others get ``NoSuchUpload``.
"""

import hashlib
import logging
import os
import shutil
import threading
import time
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from s3emu import metrics
from s3emu.errors import InvalidRequest, NoSuchUpload
from s3emu.storage.store import (
    ETAG_PROPERTY,
    LAST_MODIFIED_PROPERTY,
    StoredObject,
    http_date,
    quote_etag,
)

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024
_ASSEMBLED_NAME = "assembled"


@dataclass
class MultipartUpload:
    """An active upload session."""

    upload_id: str
    bucket: str
    key: str
    staging_dir: Path
    initiated: float = field(default_factory=time.time)
    properties: dict[str, str] = field(default_factory=dict)


@dataclass
class PartInfo:
    """One staged part."""

    part_number: int
    size: int
    etag: str
    last_modified: float


@dataclass
class PartListing:
    """Result of ``MultipartManager.list_parts``."""

    parts: list[PartInfo]
    is_truncated: bool
    next_marker: int


class PartWriter:
    """Streams one part into its staging directory."""

    def __init__(self, upload: MultipartUpload, part_number: int) -> None:
        self.upload = upload
        self.part_number = part_number
        self.size = 0
        self._md5 = hashlib.md5()
        self._tmp = upload.staging_dir / f"$tmp.{uuid.uuid4().hex[:12]}"
        try:
            self._fh = open(self._tmp, "wb")
        except FileNotFoundError:
            # Staging directory removed by a concurrent abort/complete.
            raise NoSuchUpload(upload.upload_id)
        self._done = False

    def write(self, chunk: bytes) -> None:
        if chunk:
            self._fh.write(chunk)
            self._md5.update(chunk)
            self.size += len(chunk)

    def finish(self) -> str:
        """Install the part file and return its quoted MD5 ETag."""
        self._fh.flush()
        os.fsync(self._fh.fileno())
        self._fh.close()
        try:
            os.replace(self._tmp, self.upload.staging_dir / str(self.part_number))
        except FileNotFoundError:
            raise NoSuchUpload(self.upload.upload_id)
        self._done = True
        return quote_etag(self._md5.hexdigest())

    def __enter__(self) -> "PartWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._done:
            if not self._fh.closed:
                self._fh.close()
            self._tmp.unlink(missing_ok=True)


class MultipartManager:
    """Tracks in-flight multipart uploads and their staged parts.

    Attributes:
        root: Directory holding one staging directory per upload.
    """

    def __init__(self, multipart_dir: str | Path) -> None:
        self.root = Path(multipart_dir)
        self._lock = threading.Lock()
        self._counter = 0
        self._active: dict[str, MultipartUpload] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)

    def init(self) -> None:
        """Create the staging root and drop staging dirs of a previous run."""
        self.root.mkdir(parents=True, exist_ok=True)
        stale = [p for p in self.root.iterdir() if p.is_dir()]
        for path in stale:
            shutil.rmtree(path, ignore_errors=True)
        if stale:
            logger.info("Removed %d stale multipart staging directories", len(stale))

    # -- Registry --------------------------------------------------------------

    def initiate(
        self, bucket: str, key: str, properties: dict[str, str] | None = None
    ) -> MultipartUpload:
        """Start a new upload and return it."""
        with self._lock:
            self._counter += 1
            upload_id = str(self._counter)
            staging_dir = self.root / upload_id
            # A directory with this id can only be a leftover.
            shutil.rmtree(staging_dir, ignore_errors=True)
            staging_dir.mkdir(parents=True)
            upload = MultipartUpload(
                upload_id=upload_id,
                bucket=bucket,
                key=key,
                staging_dir=staging_dir,
                properties=dict(properties or {}),
            )
            self._active[upload_id] = upload
            count = len(self._active)
        metrics.set_active_uploads(count)
        logger.info("Initiated multipart upload %s for %s/%s", upload_id, bucket, key)
        return upload

    def get(self, upload_id: str) -> MultipartUpload:
        """Return an active upload.

        Raises:
            NoSuchUpload: If the id is not active.
        """
        with self._lock:
            upload = self._active.get(upload_id)
        if upload is None:
            raise NoSuchUpload(upload_id)
        return upload

    def is_active(self, upload_id: str) -> bool:
        with self._lock:
            return upload_id in self._active

    def _take(self, upload_id: str) -> MultipartUpload | None:
        """Atomically remove an id from the registry; None if it was not there."""
        with self._lock:
            upload = self._active.pop(upload_id, None)
            count = len(self._active)
        metrics.set_active_uploads(count)
        return upload

    # -- Parts -----------------------------------------------------------------

    def open_part_writer(self, upload_id: str, part_number: int) -> PartWriter:
        """Return a writer for one part of an active upload.

        Raises:
            NoSuchUpload: If the id is not active.
        """
        return PartWriter(self.get(upload_id), part_number)

    def upload_part(
        self, upload_id: str, part_number: int, data: bytes | Iterable[bytes]
    ) -> str:
        """Store one part from bytes or chunks and return its quoted ETag."""
        chunks = [data] if isinstance(data, bytes) else data
        with self.open_part_writer(upload_id, part_number) as writer:
            for chunk in chunks:
                writer.write(chunk)
            return writer.finish()

    def _staged_parts(self, upload: MultipartUpload) -> list[int]:
        try:
            names = os.listdir(upload.staging_dir)
        except FileNotFoundError:
            raise NoSuchUpload(upload.upload_id)
        return sorted(int(name) for name in names if name.isdigit())

    def _part_info(self, upload: MultipartUpload, part_number: int) -> PartInfo:
        path = upload.staging_dir / str(part_number)
        md5 = hashlib.md5()
        with open(path, "rb") as fh:
            for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
                md5.update(chunk)
        stat = path.stat()
        return PartInfo(
            part_number=part_number,
            size=stat.st_size,
            etag=quote_etag(md5.hexdigest()),
            last_modified=stat.st_mtime,
        )

    def list_parts(self, upload_id: str, marker: int = 0, max_parts: int = 1000) -> PartListing:
        """List staged parts with numbers greater than ``marker``.

        Raises:
            NoSuchUpload: If the id is not active.
        """
        upload = self.get(upload_id)
        numbers = [n for n in self._staged_parts(upload) if n > marker]
        selected = numbers[:max_parts]
        parts = [self._part_info(upload, n) for n in selected]
        is_truncated = len(numbers) > max_parts
        next_marker = selected[-1] if (is_truncated and selected) else 0
        return PartListing(parts=parts, is_truncated=is_truncated, next_marker=next_marker)

    # -- Completion ------------------------------------------------------------

    def complete(self, upload_id: str, part_numbers: list[int], target: StoredObject) -> str:
        """Assemble the listed parts into ``target``.

        Parts are concatenated in ascending part-number order regardless
        of the order they were listed in.

        Args:
            upload_id: The upload to complete.
            part_numbers: Part numbers the client listed.
            target: Destination object; an existing object is replaced.

        Returns:
            The quoted MD5 ETag of the assembled object.

        Raises:
            NoSuchUpload: If the id is not (or no longer) active.
            InvalidRequest: If a listed part was never uploaded.
        """
        ordered = sorted(set(part_numbers))
        with self._lock:
            upload = self._active.get(upload_id)
            if upload is None:
                raise NoSuchUpload(upload_id)
            staged = set(self._staged_parts(upload))
            missing = [n for n in ordered if n not in staged]
            if missing:
                raise InvalidRequest(f"Part {missing[0]} has not been uploaded.")
            del self._active[upload_id]
            count = len(self._active)
        metrics.set_active_uploads(count)

        try:
            assembled = upload.staging_dir / _ASSEMBLED_NAME
            md5 = hashlib.md5()
            with open(assembled, "wb") as out:
                for number in ordered:
                    with open(upload.staging_dir / str(number), "rb") as part:
                        for chunk in iter(lambda: part.read(_CHUNK_SIZE), b""):
                            out.write(chunk)
                            md5.update(chunk)
                out.flush()
                os.fsync(out.fileno())

            etag = quote_etag(md5.hexdigest())
            properties = dict(upload.properties)
            properties[ETAG_PROPERTY] = etag
            properties[LAST_MODIFIED_PROPERTY] = http_date(os.stat(assembled).st_mtime)
            target.store_properties(properties)
            shutil.move(str(assembled), str(target.path))
        finally:
            shutil.rmtree(upload.staging_dir, ignore_errors=True)

        logger.info(
            "Completed multipart upload %s into %s/%s (%d parts)",
            upload_id,
            target.bucket.name,
            target.key,
            len(ordered),
        )
        return etag

    def abort(self, upload_id: str) -> None:
        """Drop an upload and its staged parts. Unknown ids are ignored."""
        upload = self._take(upload_id)
        if upload is None:
            return
        shutil.rmtree(upload.staging_dir, ignore_errors=True)
        logger.info("Aborted multipart upload %s", upload_id)
