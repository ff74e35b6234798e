"""
Unit tests for the S3 object store against a stub client.

Tests cover:
- Listing pages
- Streaming reads and not-found mapping
- Multipart uploads, including abort on failure
"""

import pytest
from botocore.exceptions import ClientError

from workers.zip_archiver.config import S3Config
from workers.zip_archiver.errors import ObjectNotFoundError, ObjectStoreError, TransferError
from workers.zip_archiver.storage import S3ObjectStore


class ListSource:
    """ByteSource over a list of chunks, optionally failing at the end."""

    def __init__(self, chunks, error=None):
        self.chunks = list(chunks)
        self.error = error

    async def read(self):
        if self.chunks:
            return self.chunks.pop(0)
        if self.error is not None:
            raise self.error
        return b""


class StubBody:
    def __init__(self, data):
        self.data = data
        self.closed = False

    async def read(self, n):
        chunk, self.data = self.data[:n], self.data[n:]
        return chunk

    def close(self):
        self.closed = True


class StubPaginator:
    def __init__(self, pages):
        self.pages = pages
        self.kwargs = None

    async def _iterate(self):
        for page in self.pages:
            yield page

    def paginate(self, **kwargs):
        self.kwargs = kwargs
        return self._iterate()


class StubS3Client:
    def __init__(self):
        self.objects = {}
        self.parts = []
        self.completed = None
        self.aborted = []
        self.deleted = []
        self.paginator = StubPaginator([])
        self.fail_part = None

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return self.paginator

    async def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        data = self.objects[Key]
        return {"Body": StubBody(data), "ContentLength": len(data)}

    async def create_multipart_upload(self, Bucket, Key, ContentType):
        self.content_type = ContentType
        return {"UploadId": "upload-1"}

    async def upload_part(self, Bucket, Key, UploadId, PartNumber, Body):
        if self.fail_part == PartNumber:
            raise ClientError({"Error": {"Code": "SlowDown", "Message": "slow"}}, "UploadPart")
        self.parts.append((PartNumber, Body))
        return {"ETag": f'"etag-{PartNumber}"'}

    async def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        self.completed = (Key, MultipartUpload)
        self.objects[Key] = b"".join(body for _, body in self.parts)

    async def abort_multipart_upload(self, Bucket, Key, UploadId):
        self.aborted.append((Key, UploadId))

    async def delete_object(self, Bucket, Key):
        self.deleted.append(Key)
        self.objects.pop(Key, None)


class TestS3ObjectStore:
    """Tests for S3ObjectStore."""

    @pytest.fixture
    def client(self):
        return StubS3Client()

    @pytest.fixture
    def store(self, client):
        store = S3ObjectStore(S3Config(bucket="media"), read_chunk_bytes=4, upload_part_size_bytes=10)
        store._client = client
        return store

    @pytest.mark.asyncio
    async def test_list_pages(self, store, client):
        client.paginator = StubPaginator(
            [{"Contents": [{"Key": "images/a.jpg"}, {"Key": "images/b.png"}]}, {"KeyCount": 0}]
        )

        pages = [page async for page in store.list_pages("images/", page_size=2)]

        assert pages == [["images/a.jpg", "images/b.png"], []]
        assert client.paginator.kwargs == {
            "Bucket": "media",
            "Prefix": "images/",
            "PaginationConfig": {"PageSize": 2},
        }

    @pytest.mark.asyncio
    async def test_get_streams_chunks(self, store, client):
        client.objects["images/a.jpg"] = b"0123456789"

        reader = await store.get("images/a.jpg")
        chunks = [chunk async for chunk in reader.chunks()]
        await reader.close()

        assert chunks == [b"0123", b"4567", b"89"]
        assert reader.content_length == 10

    @pytest.mark.asyncio
    async def test_get_missing_object(self, store):
        with pytest.raises(ObjectNotFoundError):
            await store.get("images/missing.jpg")

    @pytest.mark.asyncio
    async def test_put_sends_parts_of_configured_size(self, store, client):
        source = ListSource([b"abcdef", b"ghijkl", b"mnopqrstuv", b"wx"])

        size = await store.put("archives/e/archive_1.zip", source, "application/zip")

        assert size == 24
        assert [len(body) for _, body in client.parts] == [12, 10, 2]
        key, upload = client.completed
        assert key == "archives/e/archive_1.zip"
        assert [p["PartNumber"] for p in upload["Parts"]] == [1, 2, 3]
        assert client.objects[key] == b"abcdefghijklmnopqrstuvwx"
        assert client.content_type == "application/zip"
        assert client.aborted == []

    @pytest.mark.asyncio
    async def test_put_empty_source_uploads_one_empty_part(self, store, client):
        await store.put("empty.zip", ListSource([]), "application/zip")

        assert client.parts == [(1, b"")]
        assert client.objects["empty.zip"] == b""

    @pytest.mark.asyncio
    async def test_source_failure_aborts_upload(self, store, client):
        error = TransferError("producer failed")
        source = ListSource([b"0123456789ab"], error=error)

        with pytest.raises(TransferError) as exc_info:
            await store.put("archives/e/final_archive.zip", source, "application/zip")

        assert exc_info.value is error
        assert client.aborted == [("archives/e/final_archive.zip", "upload-1")]
        assert client.completed is None
        assert "archives/e/final_archive.zip" not in client.objects

    @pytest.mark.asyncio
    async def test_part_failure_aborts_upload(self, store, client):
        client.fail_part = 2
        source = ListSource([b"a" * 10, b"b" * 10, b"c" * 3])

        with pytest.raises(ObjectStoreError):
            await store.put("archives/e/archive_2.zip", source, "application/zip")

        assert client.aborted == [("archives/e/archive_2.zip", "upload-1")]
        assert client.completed is None

    @pytest.mark.asyncio
    async def test_delete(self, store, client):
        client.objects["archives/e/archive_1.zip"] = b"x"

        await store.delete("archives/e/archive_1.zip")

        assert client.deleted == ["archives/e/archive_1.zip"]
