"""Tests for the filesystem object store."""

import base64
import hashlib

import pytest

from s3emu.errors import (
    BadDigest,
    IncompleteBody,
    InvalidArgument,
    InvalidBucketName,
    InvalidDigest,
    KeyTooLongError,
    NoSuchBucket,
    NoSuchKey,
)
from s3emu.storage import ObjectStore
from s3emu.storage.keys import MAX_NAME_LENGTH, PUBLIC_MARKER, VERSION_MARKER
from s3emu.storage.store import parse_content_md5


def _md5_b64(data: bytes) -> str:
    return base64.b64encode(hashlib.md5(data).digest()).decode()


def _keys(listing):
    return [o.key for o in listing.objects]


class TestBuckets:
    """Bucket lifecycle tests."""

    def test_create_writes_version_marker(self, store):
        """A new bucket is created in the current on-disk format."""
        bucket = store.create_bucket("alpha")
        assert bucket.exists()
        assert (bucket.path / VERSION_MARKER).read_text() == "2"

    def test_create_is_idempotent(self, store):
        """Creating an existing bucket keeps its objects."""
        store.create_bucket("alpha")
        store.put_object("alpha", "k", b"data")
        store.create_bucket("alpha")
        assert store.read_object("alpha", "k") == b"data"

    def test_list_buckets_sorted(self, store):
        """Buckets are listed by name."""
        for name in ("charlie", "alpha", "bravo"):
            store.create_bucket(name)
        assert [b.name for b in store.list_buckets()] == ["alpha", "bravo", "charlie"]

    def test_get_bucket_does_not_imply_existence(self, store):
        """get_bucket returns a handle for a missing bucket."""
        assert not store.get_bucket("ghost").exists()
        assert not store.bucket_exists("ghost")

    @pytest.mark.parametrize("name", ["a..b", "a/b", "a\\b", "", ".."])
    def test_invalid_names(self, store, name):
        """Names that could escape the base directory are rejected."""
        with pytest.raises(InvalidBucketName):
            store.get_bucket(name)

    def test_delete_cascades(self, store):
        """Deleting a bucket removes its objects."""
        store.put_object("alpha", "a", b"1")
        store.put_object("alpha", "b/c", b"2")
        store.delete_bucket("alpha")
        assert not store.bucket_exists("alpha")

    def test_delete_missing(self, store):
        """Deleting a missing bucket raises NoSuchBucket."""
        with pytest.raises(NoSuchBucket):
            store.delete_bucket("ghost")


class TestObjects:
    """Object read/write tests."""

    def test_put_returns_quoted_md5(self, store):
        """The ETag is the quoted hex MD5 of the content."""
        etag = store.put_object("b", "obj.txt", b"hello")
        assert etag == f'"{hashlib.md5(b"hello").hexdigest()}"'

    def test_put_autocreates_bucket(self, store):
        """Writes create a missing bucket by default."""
        store.put_object("fresh", "k", b"x")
        assert store.bucket_exists("fresh")

    def test_put_without_autocreate(self, tmp_path):
        """With auto-create off a missing bucket is an error."""
        s = ObjectStore(tmp_path / "strict", autocreate_buckets=False)
        s.init()
        with pytest.raises(NoSuchBucket):
            s.put_object("missing", "k", b"x")

    def test_put_from_chunks(self, store):
        """Data can be supplied as an iterable of chunks."""
        store.put_object("b", "k", [b"ab", b"", b"cd"])
        assert store.read_object("b", "k") == b"abcd"

    def test_properties_persisted(self, store):
        """Supplied properties plus ETag and Last-Modified are stored."""
        store.put_object("b", "k", b"x", properties={"Content-Type": "text/plain"})
        props = store.get_object("b", "k").get_properties()
        assert props["Content-Type"] == "text/plain"
        assert props["ETag"] == f'"{hashlib.md5(b"x").hexdigest()}"'
        assert props["Last-Modified"].endswith("GMT")

    def test_matching_content_md5(self, store):
        """A correct Content-MD5 is accepted."""
        store.put_object("b", "k", b"hello", content_md5=_md5_b64(b"hello"))
        assert store.read_object("b", "k") == b"hello"

    def test_mismatched_content_md5_leaves_nothing(self, store):
        """A wrong Content-MD5 is rejected and removes the object."""
        store.put_object("b", "k", b"original")
        with pytest.raises(BadDigest):
            store.put_object("b", "k", b"hello", content_md5=_md5_b64(b"other"))
        obj = store.get_object("b", "k")
        assert not obj.exists()
        assert not obj.properties_path.exists()
        assert [p.name for p in store.get_bucket("b").path.iterdir()] == [VERSION_MARKER]

    def test_invalid_content_md5(self, store):
        """A Content-MD5 that is not a base64 MD5 is InvalidDigest."""
        with pytest.raises(InvalidDigest):
            store.put_object("b", "k", b"x", content_md5="not-base64!")
        with pytest.raises(InvalidDigest):
            parse_content_md5(base64.b64encode(b"short").decode())

    def test_incomplete_body(self, store):
        """Fewer bytes than announced rejects the write."""
        obj = store.create_bucket("b").get_object("k")
        with obj.open_writer() as writer:
            writer.write(b"abc")
            with pytest.raises(IncompleteBody):
                writer.finish(expected_length=10)
        assert not obj.exists()

    def test_empty_key_rejected(self, store):
        """Objects need a non-empty key."""
        with pytest.raises(InvalidArgument):
            store.create_bucket("b").get_object("")

    def test_read_missing(self, store):
        """Reading a missing object raises NoSuchKey."""
        store.create_bucket("b")
        with pytest.raises(NoSuchKey):
            store.read_object("b", "nope")

    def test_delete_is_idempotent(self, store):
        """Deleting a missing object is not an error."""
        store.put_object("b", "k", b"x")
        store.delete_object("b", "k")
        store.delete_object("b", "k")
        assert not store.get_object("b", "k").exists()

    def test_iter_content_range(self, store):
        """iter_content honours offset and length."""
        store.put_object("b", "k", b"0123456789")
        obj = store.get_object("b", "k")
        assert b"".join(obj.iter_content(offset=2, length=3)) == b"234"

    def test_etag_backfill(self, store):
        """A missing ETag property is computed and persisted on demand."""
        store.put_object("b", "k", b"hello")
        obj = store.get_object("b", "k")
        obj.properties_path.unlink()
        assert obj.get_etag() == f'"{hashlib.md5(b"hello").hexdigest()}"'
        assert "ETag" in obj.get_properties()

    def test_copy_keeps_properties(self, store):
        """copy_from duplicates data and sidecar."""
        store.put_object("b", "src", b"payload", properties={"x-amz-meta-a": "1"})
        target = store.create_bucket("c").get_object("dst")
        etag = target.copy_from(store.get_object("b", "src"))
        assert etag == f'"{hashlib.md5(b"payload").hexdigest()}"'
        assert target.get_properties()["x-amz-meta-a"] == "1"
        assert store.read_object("c", "dst") == b"payload"

    def test_init_removes_temp_files(self, tmp_path):
        """Startup removes temp files left by an interrupted write."""
        s = ObjectStore(tmp_path / "s3")
        bucket = s.create_bucket("b")
        (bucket.path / "$tmp.deadbeef").write_bytes(b"partial")
        s.init()
        assert not (bucket.path / "$tmp.deadbeef").exists()

    @pytest.mark.parametrize("key", ["k" * 250, "日" * 30])
    def test_key_too_long_for_file_names(self, store, key):
        """Keys whose file names would not fit are rejected up front."""
        bucket = store.create_bucket("b")
        with pytest.raises(KeyTooLongError):
            bucket.get_object(key)
        assert [p.name for p in bucket.path.iterdir()] == [VERSION_MARKER]

    def test_longest_fitting_key(self, store):
        """A key whose sidecar name is exactly at the limit is stored."""
        key = "k" * (MAX_NAME_LENGTH - 12)
        store.put_object("b", key, b"x")
        assert store.read_object("b", key) == b"x"

    def test_failed_sidecar_write_installs_nothing(self, store, monkeypatch):
        """If the metadata cannot be written, no data file is installed."""
        obj = store.create_bucket("b").get_object("k")

        def fail(properties):
            raise OSError("disk full")

        monkeypatch.setattr(obj, "store_properties", fail)
        with obj.open_writer() as writer:
            writer.write(b"abc")
            with pytest.raises(OSError):
                writer.finish()
        assert not obj.exists()
        assert [p.name for p in obj.bucket.path.iterdir()] == [VERSION_MARKER]


class TestListing:
    """Listing order, marker and truncation tests."""

    def test_utf8_byte_order(self, store):
        """Keys are sorted by UTF-8 bytes, not by locale or code point."""
        keys = ["b", "B", "a", "ａ", "\U0001F600", "ab", "a/b"]
        for key in keys:
            store.put_object("b", key, b"x")
        listing = store.list_objects("b")
        assert _keys(listing) == sorted(keys, key=lambda k: k.encode("utf-8"))

    def test_marker_excludes_keys_up_to_marker(self, store):
        """Only keys strictly greater than the marker are listed."""
        for key in ("a0", "a1", "a2", "a3", "b1"):
            store.put_object("b", key, b"x")
        listing = store.list_objects("b", prefix="a", marker="a1")
        assert _keys(listing) == ["a2", "a3"]

    def test_truncation_boundary(self, store):
        """Truncation is reported only when more than limit keys match."""
        for key in ("k1", "k2", "k3"):
            store.put_object("b", key, b"x")
        exact = store.list_objects("b", limit=3)
        assert _keys(exact) == ["k1", "k2", "k3"]
        assert not exact.is_truncated

        short = store.list_objects("b", limit=2)
        assert _keys(short) == ["k1", "k2"]
        assert short.is_truncated
        assert short.next_marker == "k2"

    def test_paging_with_next_marker(self, store):
        """Following next_marker visits every key exactly once."""
        keys = [f"key{i:02d}" for i in range(7)]
        for key in keys:
            store.put_object("b", key, b"x")
        seen, marker = [], ""
        while True:
            page = store.list_objects("b", marker=marker, limit=3)
            seen.extend(_keys(page))
            if not page.is_truncated:
                break
            marker = page.next_marker
        assert seen == keys

    def test_listing_is_repeatable(self, store):
        """The same query returns the same sequence."""
        for key in ("z", "y", "x"):
            store.put_object("b", key, b"x")
        first = _keys(store.list_objects("b", limit=2))
        assert first == _keys(store.list_objects("b", limit=2))

    def test_delimiter_common_prefixes(self, store):
        """Keys below a delimiter collapse into one common prefix."""
        for key in ("photos/1.jpg", "photos/2.jpg", "docs/a.txt", "readme"):
            store.put_object("b", key, b"x")
        listing = store.list_objects("b", delimiter="/")
        assert listing.common_prefixes == ["docs/", "photos/"]
        assert _keys(listing) == ["readme"]
        assert len(listing) == 3

    def test_common_prefixes_count_toward_limit(self, store):
        """A collapsed prefix uses one slot of the limit."""
        for key in ("a/1", "a/2", "b", "c"):
            store.put_object("b", key, b"x")
        listing = store.list_objects("b", delimiter="/", limit=2)
        assert listing.common_prefixes == ["a/"]
        assert _keys(listing) == ["b"]
        assert listing.is_truncated
        assert listing.next_marker == "b"

    def test_control_files_not_listed(self, store):
        """Markers, sidecars and temp files never appear as objects."""
        store.put_object("b", "real", b"x")
        store.make_public("b")
        bucket = store.get_bucket("b")
        (bucket.path / "$tmp.0001").write_bytes(b"")
        assert _keys(store.list_objects("b")) == ["real"]

    def test_reads_names_written_by_earlier_releases(self, store):
        """Form-encoded names with a raw '*' and an encoded '~' are objects."""
        bucket = store.create_bucket("b")
        (bucket.path / "a*b").write_bytes(b"star")
        (bucket.path / "a%7Eb").write_bytes(b"tilde")
        (bucket.path / "a%20c").write_bytes(b"space")
        assert _keys(store.list_objects("b")) == ["a c", "a*b", "a~b"]
        assert store.read_object("b", "a*b") == b"star"
        assert store.read_object("b", "a~b") == b"tilde"

    def test_new_objects_use_form_encoding(self, store):
        """Stored names keep '*' and percent-encode '~'."""
        store.put_object("b", "x*y~z", b"1")
        names = {p.name for p in store.get_bucket("b").path.iterdir()}
        assert "x*y%7Ez" in names
        assert "$x*y%7Ez.properties" in names

    def test_listing_missing_bucket(self, store):
        """Listing a missing bucket raises NoSuchBucket."""
        with pytest.raises(NoSuchBucket):
            store.list_objects("ghost")

    def test_listing_reports_size_and_etag(self, store):
        """Entries carry size and ETag."""
        store.put_object("b", "k", b"hello")
        (entry,) = store.list_objects("b").objects
        assert entry.size == 5
        assert entry.etag == f'"{hashlib.md5(b"hello").hexdigest()}"'


class TestVisibility:
    """Public/private marker and cache tests."""

    def test_new_bucket_is_private(self, store):
        """Buckets start private."""
        store.create_bucket("b")
        assert not store.is_public("b")
        assert store.get_bucket("b").is_private()

    def test_make_public_and_private(self, store):
        """Visibility changes are visible immediately and on disk."""
        bucket = store.create_bucket("b")
        store.is_public("b")  # populate the cache
        store.make_public("b")
        assert store.is_public("b")
        assert (bucket.path / PUBLIC_MARKER).exists()

        store.make_private("b")
        assert not store.is_public("b")
        assert not (bucket.path / PUBLIC_MARKER).exists()

    def test_cache_is_per_store(self, tmp_path):
        """A second store reads the marker from disk, not a shared cache."""
        first = ObjectStore(tmp_path / "s3")
        first.create_bucket("b")
        first.make_public("b")
        second = ObjectStore(tmp_path / "s3")
        assert second.is_public("b")
        second.make_private("b")
        assert not ObjectStore(tmp_path / "s3").is_public("b")

    def test_visibility_of_missing_bucket(self, store):
        """Changing visibility of a missing bucket raises NoSuchBucket."""
        with pytest.raises(NoSuchBucket):
            store.make_public("ghost")

    def test_recreated_bucket_is_private(self, store):
        """Deleting a bucket forgets its cached visibility."""
        store.create_bucket("b")
        store.make_public("b")
        store.delete_bucket("b")
        store.create_bucket("b")
        assert not store.is_public("b")
