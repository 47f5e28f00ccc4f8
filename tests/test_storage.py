"""Tests for media path routing and the storage backends."""

import asyncio
import io
import threading
import time
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from memories.config import StorageSettings
from memories.errors import MediaTimeoutError, NotFoundError, ObjectExistsError, StorageError, UploadError, ValidationError
from memories.storage import (
    InMemoryMediaStore,
    MediaKind,
    S3MediaStore,
    audio_object_path,
    bucket_for_path,
    media_kind_for_path,
    video_extension,
    video_object_path,
)


def client_error(code, operation="HeadObject"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class TestPaths:
    """Bucket routing and object naming."""

    def test_bucket_routing_by_prefix(self):
        storage = StorageSettings()
        assert bucket_for_path("audio/sub-1.webm", storage) == storage.audio_bucket
        assert bucket_for_path("videos/sub-1.mp4", storage) == storage.video_bucket
        assert bucket_for_path("images/sub-1.png", storage) == storage.image_bucket

    def test_default_bucket_names(self):
        storage = StorageSettings()
        assert (storage.audio_bucket, storage.video_bucket, storage.image_bucket) == (
            "alumni-audio", "alumni-videos", "alumni-images",
        )

    @pytest.mark.parametrize("path", ["docs/a.pdf", "audio", "audio/", "../audio/x.webm", ""])
    def test_invalid_prefix_rejected(self, path):
        with pytest.raises(ValidationError):
            media_kind_for_path(path)

    def test_media_kind(self):
        assert media_kind_for_path("videos/a.mov") is MediaKind.VIDEO

    def test_object_paths(self):
        assert audio_object_path("sub-1") == "audio/sub-1.webm"
        assert video_object_path("sub-1", "video/quicktime") == "videos/sub-1.quicktime"

    @pytest.mark.parametrize("content_type,ext", [
        ("video/mp4", "mp4"),
        ("video/webm;codecs=vp9", "webm"),
        ("video/webm; codecs=\"vp8, opus\"", "webm"),
        (None, "mp4"),
        ("", "mp4"),
        ("video/", "mp4"),
    ])
    def test_video_extension(self, content_type, ext):
        assert video_extension(content_type) == ext


@pytest.mark.anyio
class TestInMemoryMediaStore:
    """Process-local backend."""

    async def test_upload_and_download(self, media_store):
        bucket = media_store.bucket_for("audio/a.webm")
        await media_store.upload(bucket, "audio/a.webm", b"voice", "audio/webm")

        assert await media_store.download(bucket, "audio/a.webm") == b"voice"
        assert media_store.exists(bucket, "audio/a.webm")

    async def test_upload_never_overwrites(self, media_store):
        await media_store.upload("alumni-audio", "audio/a.webm", b"first", "audio/webm")

        with pytest.raises(UploadError):
            await media_store.upload("alumni-audio", "audio/a.webm", b"second", "audio/webm")
        assert await media_store.download("alumni-audio", "audio/a.webm") == b"first"

    async def test_download_missing(self, media_store):
        with pytest.raises(NotFoundError):
            await media_store.download("alumni-audio", "audio/missing.webm")

    async def test_delete_ignores_absent_paths(self, media_store):
        await media_store.upload("alumni-audio", "audio/a.webm", b"x", "audio/webm")
        await media_store.delete("alumni-audio", ["audio/a.webm", "audio/missing.webm"])
        await media_store.delete("alumni-audio", [])

        assert media_store.list_paths() == []

    async def test_signed_url(self, media_store):
        await media_store.upload("alumni-videos", "videos/v.mp4", b"x", "video/mp4")
        url = await media_store.signed_url("alumni-videos", "videos/v.mp4", 600)

        assert url.startswith("memory://alumni-videos/videos/v.mp4?expires=")

    async def test_signed_url_missing(self, media_store):
        with pytest.raises(NotFoundError):
            await media_store.signed_url("alumni-videos", "videos/none.mp4")

    @pytest.mark.parametrize("ttl", [0, 59, 3601])
    async def test_signed_url_ttl_bounds(self, media_store, ttl):
        await media_store.upload("alumni-audio", "audio/a.webm", b"x", "audio/webm")
        with pytest.raises(ValidationError, match="expiresIn"):
            await media_store.signed_url("alumni-audio", "audio/a.webm", ttl)

    async def test_concurrent_uploads_to_one_path(self, media_store):
        results = await asyncio.gather(
            *(media_store.upload("alumni-audio", "audio/race.webm", bytes([i]), "audio/webm") for i in range(5)),
            return_exceptions=True,
        )
        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert all(isinstance(r, UploadError) for r in results if isinstance(r, Exception))

    async def test_slow_backend_times_out(self):
        class SlowStore(InMemoryMediaStore):
            async def _upload(self, bucket, path, data, content_type):
                await asyncio.sleep(1)

        store = SlowStore(StorageSettings(timeout_seconds=0.05))
        with pytest.raises(MediaTimeoutError) as exc_info:
            await store.upload("alumni-audio", "audio/slow.webm", b"x", "audio/webm")

        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 504


@pytest.mark.anyio
class TestS3MediaStore:
    """boto3 backend against a mocked client."""

    @pytest.fixture
    def client(self):
        return MagicMock()

    @pytest.fixture
    def store(self, client):
        return S3MediaStore(StorageSettings(backend="s3"), client=client)

    async def test_upload_checks_existence_then_writes(self, store, client):
        client.head_object.side_effect = client_error("404")

        path = await store.upload("alumni-audio", "audio/a.webm", b"voice", "audio/webm")

        assert path == "audio/a.webm"
        client.put_object.assert_called_once_with(
            Bucket="alumni-audio",
            Key="audio/a.webm",
            Body=b"voice",
            ContentType="audio/webm",
            IfNoneMatch="*",
        )

    async def test_upload_existing_object_rejected(self, store, client):
        client.head_object.return_value = {"ContentLength": 3}

        with pytest.raises(ObjectExistsError):
            await store.upload("alumni-audio", "audio/a.webm", b"voice", "audio/webm")
        client.put_object.assert_not_called()

    async def test_upload_precondition_failure(self, store, client):
        client.head_object.side_effect = client_error("404")
        client.put_object.side_effect = client_error("PreconditionFailed", "PutObject")

        with pytest.raises(ObjectExistsError, match="already exists"):
            await store.upload("alumni-audio", "audio/a.webm", b"voice", "audio/webm")

    async def test_download(self, store, client):
        client.get_object.return_value = {"Body": io.BytesIO(b"clip")}
        assert await store.download("alumni-videos", "videos/v.mp4") == b"clip"

    async def test_download_missing(self, store, client):
        client.get_object.side_effect = client_error("NoSuchKey", "GetObject")
        with pytest.raises(NotFoundError):
            await store.download("alumni-videos", "videos/v.mp4")

    async def test_backend_error_is_storage_error(self, store, client):
        client.get_object.side_effect = client_error("AccessDenied", "GetObject")
        with pytest.raises(StorageError):
            await store.download("alumni-videos", "videos/v.mp4")

    async def test_delete_batches_keys(self, store, client):
        client.delete_objects.return_value = {}
        await store.delete("alumni-audio", ["audio/a.webm", "audio/b.webm"])

        client.delete_objects.assert_called_once_with(
            Bucket="alumni-audio",
            Delete={"Objects": [{"Key": "audio/a.webm"}, {"Key": "audio/b.webm"}], "Quiet": True},
        )

    async def test_signed_url(self, store, client):
        client.generate_presigned_url.return_value = "https://s3.example/audio/a.webm?sig=1"

        url = await store.signed_url("alumni-audio", "audio/a.webm", 600)

        assert url == "https://s3.example/audio/a.webm?sig=1"
        client.generate_presigned_url.assert_called_once_with(
            "get_object",
            Params={"Bucket": "alumni-audio", "Key": "audio/a.webm"},
            ExpiresIn=600,
        )

    async def test_signed_url_missing_object(self, store, client):
        client.head_object.side_effect = client_error("404")
        with pytest.raises(NotFoundError):
            await store.signed_url("alumni-audio", "audio/a.webm")

    async def test_late_upload_after_timeout_is_removed(self, client):
        finished = threading.Event()

        def slow_put(**kwargs):
            time.sleep(0.3)
            finished.set()

        client.head_object.side_effect = client_error("404")
        client.put_object.side_effect = slow_put
        client.delete_objects.return_value = {}
        store = S3MediaStore(StorageSettings(backend="s3", timeout_seconds=0.05), client=client)

        with pytest.raises(MediaTimeoutError):
            await store.upload("alumni-audio", "audio/a.webm", b"voice", "audio/webm")

        assert await asyncio.to_thread(finished.wait, 2)
        for _ in range(100):
            if client.delete_objects.called:
                break
            await asyncio.sleep(0.02)
        client.delete_objects.assert_called_with(
            Bucket="alumni-audio",
            Delete={"Objects": [{"Key": "audio/a.webm"}], "Quiet": True},
        )
