"""Media object storage for submission audio, video and images.

Objects are addressed by ``(bucket, path)``. The bucket follows from the
path prefix (``audio/``, ``videos/``, ``images/``). Every backend call is
bounded by ``STORAGE_TIMEOUT_SECONDS`` and surfaces a retryable
``MediaTimeoutError`` when it expires.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Awaitable, TypeVar
from urllib.parse import quote, urlencode

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import StorageBackend, StorageSettings, settings
from .errors import MediaTimeoutError, NotFoundError, ObjectExistsError, StorageError, UploadError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

AUDIO_CONTENT_TYPE = "audio/webm"
DEFAULT_VIDEO_EXT = "mp4"

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_EXISTS_CODES = {"412", "PreconditionFailed", "ConditionalRequestConflict"}
_TRANSIENT_ERRORS = (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)


class MediaKind(str, Enum):
    """Media kinds and their path prefixes."""
    AUDIO = "audio/"
    VIDEO = "videos/"
    IMAGE = "images/"


def media_kind_for_path(path: str) -> MediaKind:
    """Resolve the media kind from a path prefix.

    Raises:
        ValidationError: If the path has no known prefix
    """
    for kind in MediaKind:
        if path.startswith(kind.value) and len(path) > len(kind.value):
            return kind
    raise ValidationError(
        f"Invalid path: must start with 'audio/', 'videos/', or 'images/': {path}",
    )


def bucket_for_kind(kind: MediaKind, storage: StorageSettings | None = None) -> str:
    storage = storage or settings.storage
    return {
        MediaKind.AUDIO: storage.audio_bucket,
        MediaKind.VIDEO: storage.video_bucket,
        MediaKind.IMAGE: storage.image_bucket,
    }[kind]


def bucket_for_path(path: str, storage: StorageSettings | None = None) -> str:
    """Route a media path to its bucket by prefix."""
    return bucket_for_kind(media_kind_for_path(path), storage)


def audio_object_path(submission_id: str) -> str:
    return f"{MediaKind.AUDIO.value}{submission_id}.webm"


def video_extension(content_type: str | None) -> str:
    """File extension from a MIME type: ``video/quicktime`` -> ``quicktime``.

    MIME parameters (``;codecs=...``) are dropped; missing subtype gives mp4.
    """
    if not content_type or "/" not in content_type:
        return DEFAULT_VIDEO_EXT
    subtype = content_type.split("/", 1)[1].split(";", 1)[0].strip().lower()
    return subtype or DEFAULT_VIDEO_EXT


def video_object_path(submission_id: str, content_type: str | None) -> str:
    return f"{MediaKind.VIDEO.value}{submission_id}.{video_extension(content_type)}"


@dataclass
class StoredObject:
    """An object held by the in-memory backend."""
    data: bytes
    content_type: str
    stored_at: float


class MediaStore(ABC):
    """Path-addressed binary object store.

    Subclasses implement the ``_upload``/``_download``/``_delete``/``_sign``
    primitives; this class validates arguments and bounds their duration.
    """

    def __init__(self, storage: StorageSettings | None = None) -> None:
        self.storage = storage or settings.storage
        self.timeout = self.storage.timeout_seconds

    def bucket_for(self, path: str) -> str:
        return bucket_for_path(path, self.storage)

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        """Store ``data`` at ``path``.

        Raises:
            UploadError: If the path already exists or the backend rejects the write
            MediaTimeoutError: If the call exceeds the storage timeout
        """
        await self._bounded(self._upload(bucket, path, data, content_type), "upload", path)
        logger.info(f"Uploaded {len(data)} bytes to {bucket}/{path}")
        return path

    async def download(self, bucket: str, path: str) -> bytes:
        """Fetch the bytes stored at ``path``.

        Raises:
            NotFoundError: If the object is missing
        """
        return await self._bounded(self._download(bucket, path), "download", path)

    async def delete(self, bucket: str, paths: list[str]) -> None:
        """Remove ``paths`` from ``bucket``. Absent paths are ignored."""
        if not paths:
            return
        await self._bounded(self._delete(bucket, list(paths)), "delete", ", ".join(paths))
        logger.info(f"Deleted {len(paths)} object(s) from {bucket}")

    async def signed_url(self, bucket: str, path: str, ttl_seconds: int | None = None) -> str:
        """Create a time-limited read URL for one object.

        Raises:
            ValidationError: If the ttl is outside the configured bounds
            NotFoundError: If the object is missing
        """
        ttl = self.storage.signed_url_ttl if ttl_seconds is None else int(ttl_seconds)
        self.check_ttl(ttl)
        return await self._bounded(self._sign(bucket, path, ttl), "sign", path)

    def check_ttl(self, ttl: int) -> None:
        low, high = self.storage.signed_url_min_ttl, self.storage.signed_url_max_ttl
        if not low <= ttl <= high:
            raise ValidationError(f"expiresIn must be between {low} and {high} seconds")

    async def _bounded(self, call: Awaitable[T], operation: str, path: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Storage {operation} timed out after {self.timeout}s: {path}")
            raise MediaTimeoutError(f"Storage {operation} timed out for {path}") from e

    @abstractmethod
    async def _upload(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        ...

    @abstractmethod
    async def _download(self, bucket: str, path: str) -> bytes:
        ...

    @abstractmethod
    async def _delete(self, bucket: str, paths: list[str]) -> None:
        ...

    @abstractmethod
    async def _sign(self, bucket: str, path: str, ttl: int) -> str:
        ...


class InMemoryMediaStore(MediaStore):
    """Process-local backend for development and tests.

    Writes are serialized by a lock so concurrent uploads to one path
    cannot both succeed.
    """

    def __init__(self, storage: StorageSettings | None = None) -> None:
        super().__init__(storage)
        self._objects: dict[tuple[str, str], StoredObject] = {}
        self._lock = threading.Lock()

    def list_paths(self, bucket: str | None = None) -> list[str]:
        with self._lock:
            return sorted(p for (b, p) in self._objects if bucket is None or b == bucket)

    def exists(self, bucket: str, path: str) -> bool:
        with self._lock:
            return (bucket, path) in self._objects

    async def _upload(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        with self._lock:
            if (bucket, path) in self._objects:
                raise ObjectExistsError(f"Object already exists: {bucket}/{path}")
            self._objects[(bucket, path)] = StoredObject(bytes(data), content_type, time.time())

    async def _download(self, bucket: str, path: str) -> bytes:
        with self._lock:
            obj = self._objects.get((bucket, path))
        if obj is None:
            raise NotFoundError(f"Object not found: {bucket}/{path}")
        return obj.data

    async def _delete(self, bucket: str, paths: list[str]) -> None:
        with self._lock:
            for path in paths:
                self._objects.pop((bucket, path), None)

    async def _sign(self, bucket: str, path: str, ttl: int) -> str:
        if not self.exists(bucket, path):
            raise NotFoundError(f"Object not found: {bucket}/{path}")
        query = urlencode({"expires": int(time.time()) + ttl})
        return f"memory://{bucket}/{quote(path)}?{query}"


class S3MediaStore(MediaStore):
    """S3-compatible backend (AWS S3, Supabase storage, MinIO) via boto3.

    boto3 is blocking, so each call runs in a worker thread. Reads, deletes
    and signing retry transient connection faults; uploads do not.
    """

    def __init__(self, storage: StorageSettings | None = None, client=None) -> None:
        super().__init__(storage)
        self.client = client or self._build_client()

    def _build_client(self):
        client_kwargs: dict = {
            "service_name": "s3",
            "config": Config(
                connect_timeout=self.timeout,
                read_timeout=self.timeout,
                retries={"max_attempts": 1},
            ),
        }
        if self.storage.endpoint_url:
            client_kwargs["endpoint_url"] = self.storage.endpoint_url
        if self.storage.region:
            client_kwargs["region_name"] = self.storage.region
        if self.storage.access_key_id:
            client_kwargs["aws_access_key_id"] = self.storage.access_key_id
        if self.storage.secret_access_key:
            client_kwargs["aws_secret_access_key"] = self.storage.secret_access_key
        return boto3.client(**client_kwargs)

    async def _upload(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        # The worker thread outlives a timed-out await; once abandoned, a
        # late successful put deletes its own object
        abandoned = threading.Event()
        try:
            await self._in_thread(self._put_object, bucket, path, data, content_type, abandoned)
        except asyncio.CancelledError:
            abandoned.set()
            raise

    async def _download(self, bucket: str, path: str) -> bytes:
        return await self._in_thread(self._get_object, bucket, path)

    async def _delete(self, bucket: str, paths: list[str]) -> None:
        await self._in_thread(self._delete_objects, bucket, paths)

    async def _sign(self, bucket: str, path: str, ttl: int) -> str:
        await self._in_thread(self._head_object, bucket, path)
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": path},
            ExpiresIn=ttl,
        )

    async def _in_thread(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Storage backend error: {e}") from e

    def _put_object(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str,
        abandoned: threading.Event | None = None,
    ) -> None:
        try:
            self._head_object(bucket, path)
        except NotFoundError:
            pass
        else:
            raise ObjectExistsError(f"Object already exists: {bucket}/{path}")

        try:
            self.client.put_object(
                Bucket=bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
                IfNoneMatch="*",
            )
        except ClientError as e:
            code = _error_code(e)
            if code in _EXISTS_CODES:
                raise ObjectExistsError(f"Object already exists: {bucket}/{path}") from e
            raise UploadError(f"Upload to {bucket}/{path} rejected: {code}") from e
        except BotoCoreError as e:
            raise UploadError(f"Upload to {bucket}/{path} failed: {e}") from e

        if abandoned is not None and abandoned.is_set():
            logger.warning(f"Upload of {bucket}/{path} finished after its timeout, removing it")
            try:
                self._delete_objects(bucket, [path])
            except (StorageError, BotoCoreError, ClientError) as e:
                logger.error(f"Could not remove late upload {bucket}/{path}: {e}")

    @retry(
        stop=stop_after_attempt(settings.storage.max_attempts),
        wait=wait_exponential(multiplier=0.5, min=1, max=5),
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        reraise=True,
    )
    def _get_object(self, bucket: str, path: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=bucket, Key=path)
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                raise NotFoundError(f"Object not found: {bucket}/{path}") from e
            raise
        body = response["Body"]
        try:
            return body.read()
        finally:
            body.close()

    @retry(
        stop=stop_after_attempt(settings.storage.max_attempts),
        wait=wait_exponential(multiplier=0.5, min=1, max=5),
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        reraise=True,
    )
    def _head_object(self, bucket: str, path: str) -> None:
        try:
            self.client.head_object(Bucket=bucket, Key=path)
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                raise NotFoundError(f"Object not found: {bucket}/{path}") from e
            raise

    @retry(
        stop=stop_after_attempt(settings.storage.max_attempts),
        wait=wait_exponential(multiplier=0.5, min=1, max=5),
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        reraise=True,
    )
    def _delete_objects(self, bucket: str, paths: list[str]) -> None:
        try:
            response = self.client.delete_objects(
                Bucket=bucket,
                Delete={"Objects": [{"Key": p} for p in paths], "Quiet": True},
            )
        except ClientError as e:
            raise StorageError(f"Delete from {bucket} failed: {_error_code(e)}") from e
        for err in response.get("Errors", []):
            if err.get("Code") not in _MISSING_CODES:
                logger.warning(f"Could not delete {bucket}/{err.get('Key')}: {err.get('Message')}")


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def build_media_store(storage: StorageSettings | None = None) -> MediaStore:
    """Create the configured storage backend."""
    storage = storage or settings.storage
    if storage.backend == StorageBackend.MEMORY:
        logger.warning("Using in-memory media store; objects are lost on restart")
        return InMemoryMediaStore(storage)
    return S3MediaStore(storage)


@lru_cache(maxsize=1)
def get_media_store() -> MediaStore:
    """Process-wide media store (FastAPI dependency)."""
    return build_media_store()
