"""Tests for object-level S3 handlers."""

import base64
import hashlib
import xml.etree.ElementTree as ET

from s3emu.xml_utils import S3_XMLNS

NS = {"s3": S3_XMLNS}


def _md5_b64(data: bytes) -> str:
    return base64.b64encode(hashlib.md5(data).digest()).decode()


def _etag(data: bytes) -> str:
    return f'"{hashlib.md5(data).hexdigest()}"'


def _chunked(payload: bytes, size: int = 4) -> bytes:
    body = b""
    for i in range(0, len(payload), size):
        piece = payload[i : i + size]
        body += f"{len(piece):x};chunk-signature=abc\r\n".encode() + piece + b"\r\n"
    return body + b"0;chunk-signature=abc\r\n\r\n"


def _keys_on_disk(store, bucket: str) -> list[str]:
    return sorted(p.name for p in store.get_bucket(bucket).path.iterdir())


class TestPutObject:
    """Tests for PUT /{bucket}/{key}."""

    async def test_put_and_get(self, client):
        """An uploaded object reads back with the same bytes and ETag."""
        resp = await client.put("/s3/b/hello.txt", content=b"hello world")
        assert resp.status_code == 200
        assert resp.headers["etag"] == _etag(b"hello world")

        resp = await client.get("/s3/b/hello.txt")
        assert resp.status_code == 200
        assert resp.content == b"hello world"
        assert resp.headers["etag"] == _etag(b"hello world")
        assert resp.headers["content-length"] == "11"

    async def test_nested_key(self, client, store):
        """Keys with slashes are stored as one object."""
        await client.put("/s3/b/a/b/c.bin", content=b"x")
        assert store.read_object("b", "a/b/c.bin") == b"x"

    async def test_overwrite(self, client, store):
        """A second PUT replaces the object."""
        await client.put("/s3/b/k", content=b"one")
        await client.put("/s3/b/k", content=b"two")
        assert store.read_object("b", "k") == b"two"

    async def test_metadata_round_trip(self, client):
        """Content-Type and x-amz-meta-* headers are replayed on GET."""
        await client.put(
            "/s3/b/doc",
            content=b"{}",
            headers={"Content-Type": "application/json", "X-Amz-Meta-Owner": "alice"},
        )
        resp = await client.get("/s3/b/doc")
        assert resp.headers["content-type"] == "application/json"
        assert resp.headers["x-amz-meta-owner"] == "alice"

    async def test_content_type_guessed(self, client):
        """Without a stored type, the type is guessed from the key."""
        await client.put("/s3/b/page.html", content=b"<p>")
        resp = await client.head("/s3/b/page.html")
        assert resp.headers["content-type"].startswith("text/html")

    async def test_good_content_md5(self, client):
        """A matching Content-MD5 is accepted."""
        resp = await client.put(
            "/s3/b/k", content=b"data", headers={"Content-MD5": _md5_b64(b"data")}
        )
        assert resp.status_code == 200

    async def test_bad_digest_removes_object(self, client, store):
        """A mismatched Content-MD5 is BadDigest and leaves no object."""
        store.put_object("b", "k", b"old")
        resp = await client.put(
            "/s3/b/k", content=b"data", headers={"Content-MD5": _md5_b64(b"other")}
        )
        assert resp.status_code == 400
        assert "<Code>BadDigest</Code>" in resp.text
        assert (await client.get("/s3/b/k")).status_code == 404

    async def test_invalid_digest(self, client):
        """A Content-MD5 that is not a 16-byte base64 digest is InvalidDigest."""
        resp = await client.put("/s3/b/k", content=b"data", headers={"Content-MD5": "abc"})
        assert resp.status_code == 400
        assert "<Code>InvalidDigest</Code>" in resp.text

    async def test_aws_chunked(self, client, store):
        """aws-chunked framing is removed before storing."""
        payload = b"streamed payload bytes"
        resp = await client.put(
            "/s3/b/stream",
            content=_chunked(payload),
            headers={
                "x-amz-content-sha256": "STREAMING-AWS4-HMAC-SHA256-PAYLOAD",
                "x-amz-decoded-content-length": str(len(payload)),
            },
        )
        assert resp.status_code == 200
        assert resp.headers["etag"] == _etag(payload)
        assert store.read_object("b", "stream") == payload

    async def test_aws_chunked_short_body(self, client, store):
        """Fewer decoded bytes than announced is IncompleteBody."""
        resp = await client.put(
            "/s3/b/short",
            content=_chunked(b"abc"),
            headers={
                "Content-Encoding": "aws-chunked",
                "x-amz-decoded-content-length": "100",
            },
        )
        assert resp.status_code == 400
        assert "<Code>IncompleteBody</Code>" in resp.text
        assert not store.get_object("b", "short").exists()

    async def test_autocreate_bucket(self, client, store):
        """Writing into a missing bucket creates it."""
        await client.put("/s3/fresh/k", content=b"x")
        assert store.bucket_exists("fresh")

    async def test_key_too_long_for_file_names(self, client, store):
        """A key whose file names would not fit is a 400 and stores nothing."""
        store.create_bucket("b")
        for key in ("k" * 250, "日" * 30):
            resp = await client.put(f"/s3/b/{key}", content=b"hello")
            assert resp.status_code == 400
            assert "<Code>KeyTooLongError</Code>" in resp.text
        assert _keys_on_disk(store, "b") == ["$version"]


class TestGetObject:
    """Tests for GET and HEAD /{bucket}/{key}."""

    async def test_missing_key(self, client, store):
        """A missing key is 404 NoSuchKey with the key in the body."""
        store.create_bucket("b")
        resp = await client.get("/s3/b/nope")
        assert resp.status_code == 404
        root = ET.fromstring(resp.content)
        assert root.find("Code").text == "NoSuchKey"
        assert root.find("Key").text == "nope"
        assert root.find("Resource").text == "/b/nope"

    async def test_missing_bucket(self, client):
        """A missing bucket is 404 NoSuchBucket."""
        resp = await client.get("/s3/ghost/k")
        assert resp.status_code == 404
        assert "<Code>NoSuchBucket</Code>" in resp.text

    async def test_range(self, client):
        """A single byte range is served as 206 with Content-Range."""
        await client.put("/s3/b/digits", content=b"0123456789")
        resp = await client.get("/s3/b/digits", headers={"Range": "bytes=2-5"})
        assert resp.status_code == 206
        assert resp.content == b"2345"
        assert resp.headers["content-range"] == "bytes 2-5/10"
        assert resp.headers["content-length"] == "4"

    async def test_suffix_range(self, client):
        """bytes=-n returns the last n bytes."""
        await client.put("/s3/b/digits", content=b"0123456789")
        resp = await client.get("/s3/b/digits", headers={"Range": "bytes=-3"})
        assert resp.content == b"789"

    async def test_open_ended_range_clamped(self, client):
        """An end past the object is clamped to its size."""
        await client.put("/s3/b/digits", content=b"0123456789")
        resp = await client.get("/s3/b/digits", headers={"Range": "bytes=7-100"})
        assert resp.content == b"789"
        assert resp.headers["content-range"] == "bytes 7-9/10"

    async def test_unsatisfiable_range(self, client):
        """A start past the end is 416 InvalidRange."""
        await client.put("/s3/b/digits", content=b"0123456789")
        resp = await client.get("/s3/b/digits", headers={"Range": "bytes=20-30"})
        assert resp.status_code == 416

    async def test_multi_range_ignored(self, client):
        """Multiple ranges fall back to the whole object."""
        await client.put("/s3/b/digits", content=b"0123456789")
        resp = await client.get("/s3/b/digits", headers={"Range": "bytes=0-1,4-5"})
        assert resp.status_code == 200
        assert resp.content == b"0123456789"

    async def test_response_overrides(self, client):
        """response-* parameters override the returned headers."""
        await client.put("/s3/b/file.bin", content=b"x")
        resp = await client.get(
            "/s3/b/file.bin",
            params={
                "response-content-type": "text/csv",
                "response-content-disposition": 'attachment; filename="x.csv"',
                "response-cache-control": "no-cache",
            },
        )
        assert resp.headers["content-type"] == "text/csv"
        assert resp.headers["content-disposition"] == 'attachment; filename="x.csv"'
        assert resp.headers["cache-control"] == "no-cache"

    async def test_head(self, client):
        """HEAD returns the object headers without a body."""
        await client.put("/s3/b/k", content=b"abcdef")
        resp = await client.head("/s3/b/k")
        assert resp.status_code == 200
        assert resp.headers["content-length"] == "6"
        assert resp.headers["accept-ranges"] == "bytes"
        assert resp.headers["etag"] == _etag(b"abcdef")
        assert "last-modified" in resp.headers
        assert resp.content == b""

    async def test_head_missing(self, client, store):
        """HEAD on a missing key is a bodiless 404."""
        store.create_bucket("b")
        resp = await client.head("/s3/b/nope")
        assert resp.status_code == 404
        assert resp.content == b""


class TestDeleteObject:
    """Tests for DELETE /{bucket}/{key}."""

    async def test_delete(self, client, store):
        """An object is removed with 204."""
        store.put_object("b", "k", b"x")
        resp = await client.delete("/s3/b/k")
        assert resp.status_code == 204
        assert not store.get_object("b", "k").exists()

    async def test_delete_missing_key(self, client, store):
        """Deleting a missing key still answers 204."""
        store.create_bucket("b")
        assert (await client.delete("/s3/b/nope")).status_code == 204


class TestCopyObject:
    """Tests for PUT with x-amz-copy-source."""

    async def test_copy_keeps_metadata(self, client, store):
        """The copy has the source's bytes and properties."""
        store.put_object("src", "a.txt", b"payload", properties={"x-amz-meta-tag": "v1"})
        resp = await client.put("/s3/dst/b.txt", headers={"x-amz-copy-source": "/src/a.txt"})
        assert resp.status_code == 200
        root = ET.fromstring(resp.content)
        assert root.find("s3:ETag", NS).text == _etag(b"payload")
        assert root.find("s3:LastModified", NS).text.endswith("Z")
        assert store.read_object("dst", "b.txt") == b"payload"
        assert store.get_object("dst", "b.txt").get_properties()["x-amz-meta-tag"] == "v1"

    async def test_copy_replace_metadata(self, client, store):
        """REPLACE stores the request's properties instead."""
        store.put_object("src", "a", b"x", properties={"x-amz-meta-tag": "v1"})
        await client.put(
            "/s3/src/b",
            headers={
                "x-amz-copy-source": "src/a",
                "x-amz-metadata-directive": "REPLACE",
                "x-amz-meta-tag": "v2",
            },
        )
        assert store.get_object("src", "b").get_properties()["x-amz-meta-tag"] == "v2"

    async def test_copy_encoded_source(self, client, store):
        """The copy source is URL-decoded."""
        store.put_object("src", "with space", b"x")
        resp = await client.put(
            "/s3/src/copy", headers={"x-amz-copy-source": "/src/with%20space"}
        )
        assert resp.status_code == 200

    async def test_copy_missing_source_bucket(self, client):
        """A missing source bucket is InvalidRequest."""
        resp = await client.put("/s3/dst/k", headers={"x-amz-copy-source": "/ghost/k"})
        assert resp.status_code == 400
        assert "Source bucket does not exist" in resp.text

    async def test_copy_missing_source_object(self, client, store):
        """A missing source object is InvalidRequest."""
        store.create_bucket("src")
        resp = await client.put("/s3/dst/k", headers={"x-amz-copy-source": "/src/nope"})
        assert resp.status_code == 400
        assert "Source object does not exist" in resp.text


class TestListObjects:
    """Tests for GET /{bucket} (v1 and v2)."""

    def _fill(self, store, keys):
        for key in keys:
            store.put_object("b", key, b"x")

    async def test_v1_listing(self, client, store):
        """Keys are listed in order with size and ETag."""
        self._fill(store, ["b.txt", "a.txt"])
        root = ET.fromstring((await client.get("/s3/b")).content)
        assert [e.text for e in root.findall("s3:Contents/s3:Key", NS)] == ["a.txt", "b.txt"]
        assert root.find("s3:IsTruncated", NS).text == "false"
        assert root.find("s3:Contents/s3:Size", NS).text == "1"
        assert root.find("s3:NextMarker", NS) is None

    async def test_v1_truncation(self, client, store):
        """max-keys truncates and NextMarker points at the last key."""
        self._fill(store, ["k1", "k2", "k3"])
        root = ET.fromstring((await client.get("/s3/b", params={"max-keys": "2"})).content)
        assert root.find("s3:IsTruncated", NS).text == "true"
        assert root.find("s3:NextMarker", NS).text == "k2"

        root = ET.fromstring((await client.get("/s3/b", params={"marker": "k2"})).content)
        assert [e.text for e in root.findall("s3:Contents/s3:Key", NS)] == ["k3"]

    async def test_v1_delimiter(self, client, store):
        """A delimiter groups keys into CommonPrefixes."""
        self._fill(store, ["dir/a", "dir/b", "top"])
        root = ET.fromstring(
            (await client.get("/s3/b", params={"delimiter": "/"})).content
        )
        assert [e.text for e in root.findall("s3:CommonPrefixes/s3:Prefix", NS)] == ["dir/"]
        assert [e.text for e in root.findall("s3:Contents/s3:Key", NS)] == ["top"]

    async def test_invalid_max_keys(self, client, store):
        """A non-numeric max-keys is InvalidArgument."""
        store.create_bucket("b")
        resp = await client.get("/s3/b", params={"max-keys": "lots"})
        assert resp.status_code == 400

    async def test_missing_bucket(self, client):
        """Listing a missing bucket is NoSuchBucket."""
        assert (await client.get("/s3/ghost")).status_code == 404

    async def test_v2_paging(self, client, store):
        """ContinuationToken pages through every key once."""
        keys = ["a", "b", "c", "d", "e"]
        self._fill(store, keys)
        seen, token = [], None
        while True:
            params = {"list-type": "2", "max-keys": "2"}
            if token:
                params["continuation-token"] = token
            root = ET.fromstring((await client.get("/s3/b", params=params)).content)
            seen.extend(e.text for e in root.findall("s3:Contents/s3:Key", NS))
            assert root.find("s3:KeyCount", NS).text in ("1", "2")
            if root.find("s3:IsTruncated", NS).text == "false":
                break
            token = root.find("s3:NextContinuationToken", NS).text
        assert seen == keys

    async def test_v2_start_after(self, client, store):
        """start-after skips keys up to and including it."""
        self._fill(store, ["a", "b", "c"])
        root = ET.fromstring(
            (await client.get("/s3/b", params={"list-type": "2", "start-after": "a"})).content
        )
        assert [e.text for e in root.findall("s3:Contents/s3:Key", NS)] == ["b", "c"]
        assert root.find("s3:StartAfter", NS).text == "a"

    async def test_v2_bad_token(self, client, store):
        """An undecodable continuation token is InvalidArgument."""
        store.create_bucket("b")
        resp = await client.get(
            "/s3/b", params={"list-type": "2", "continuation-token": "a"}
        )
        assert resp.status_code == 400
        assert "continuation token" in resp.text
