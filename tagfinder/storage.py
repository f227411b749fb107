"""Storage adapter interface, implementations, and image URL resolution."""
import asyncio
import enum
import io
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from pathlib import Path
from typing import Optional

from minio import Minio
from minio.error import S3Error

from tagfinder.errors import StorageError
from tagfinder.settings import settings

logger = logging.getLogger(__name__)


class StorageAdapter(ABC):
    """Abstract storage adapter interface (S3-style)."""

    def __init__(self, public_base_url: Optional[str] = None):
        self.public_base_url = public_base_url

    @abstractmethod
    async def save(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """
        Save data to storage.

        Args:
            key: Object key (e.g., "images/<sha256>.png")
            data: Binary data to save
            content_type: MIME type recorded with the object

        Returns:
            The key that was written
        """

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Retrieve data from storage. Raises FileNotFoundError if absent."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete data from storage. Returns False if the key did not exist."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if key exists in storage."""

    @abstractmethod
    async def presigned_get_url(self, key: str, expires_in: int) -> str:
        """Short-lived GET URL for a private object."""

    def public_url(self, key: str) -> Optional[str]:
        """Public URL for a key, or None when no public base URL is configured."""
        if not self.public_base_url:
            return None
        return f"{self.public_base_url.rstrip('/')}/{key.lstrip('/')}"


class LocalStorageAdapter(StorageAdapter):
    """Local filesystem storage adapter (for development)."""

    def __init__(self, base_path: str = None, public_base_url: Optional[str] = None):
        super().__init__(public_base_url)
        self.base_path = Path(base_path or settings.STORAGE_BASE_PATH)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, key: str) -> Path:
        """Get full filesystem path for a key."""
        # Sanitize key to prevent directory traversal
        key = key.lstrip("/")
        full_path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in full_path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return full_path

    async def save(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        full_path = self._get_full_path(key)
        full_path.parent.mkdir(parents=True, exist_ok=True)

        with open(full_path, "wb") as f:
            f.write(data)
        return key

    async def get(self, key: str) -> bytes:
        full_path = self._get_full_path(key)
        if not full_path.exists():
            raise FileNotFoundError(f"Key not found: {key}")

        with open(full_path, "rb") as f:
            return f.read()

    async def delete(self, key: str) -> bool:
        full_path = self._get_full_path(key)
        if not full_path.exists():
            return False

        full_path.unlink()
        return True

    async def exists(self, key: str) -> bool:
        return self._get_full_path(key).exists()

    async def presigned_get_url(self, key: str, expires_in: int) -> str:
        raise StorageError(
            f"Local storage cannot sign URLs for key {key!r}; "
            "configure STORAGE_PUBLIC_BASE_URL or use s3 storage"
        )


class S3StorageAdapter(StorageAdapter):
    """S3-compatible object storage adapter backed by the minio client.

    The minio client is blocking, so every call is pushed to a worker thread.
    """

    def __init__(
        self,
        client: Optional[Minio] = None,
        bucket: Optional[str] = None,
        public_base_url: Optional[str] = None,
    ):
        super().__init__(public_base_url)
        self.bucket = bucket or settings.S3_BUCKET
        self.client = client or Minio(
            settings.S3_ENDPOINT,
            access_key=settings.S3_ACCESS_KEY,
            secret_key=settings.S3_SECRET_KEY,
            secure=settings.S3_SECURE,
            region=settings.S3_REGION,
        )

    async def save(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        try:
            await asyncio.to_thread(
                self.client.put_object,
                self.bucket,
                key,
                io.BytesIO(data),
                length=len(data),
                content_type=content_type,
            )
        except S3Error as e:
            raise StorageError(f"Failed to put object {key}: {e}") from e
        return key

    def _read_object(self, key: str) -> bytes:
        response = self.client.get_object(self.bucket, key)
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    async def get(self, key: str) -> bytes:
        try:
            return await asyncio.to_thread(self._read_object, key)
        except S3Error as e:
            if e.code in ("NoSuchKey", "NotFound"):
                raise FileNotFoundError(f"Key not found: {key}") from e
            raise StorageError(f"Failed to get object {key}: {e}") from e

    async def delete(self, key: str) -> bool:
        if not await self.exists(key):
            return False
        try:
            await asyncio.to_thread(self.client.remove_object, self.bucket, key)
        except S3Error as e:
            raise StorageError(f"Failed to delete object {key}: {e}") from e
        return True

    async def exists(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self.client.stat_object, self.bucket, key)
        except S3Error as e:
            if e.code in ("NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"Failed to stat object {key}: {e}") from e
        return True

    async def presigned_get_url(self, key: str, expires_in: int) -> str:
        try:
            return await asyncio.to_thread(
                self.client.presigned_get_object,
                self.bucket,
                key,
                expires=timedelta(seconds=expires_in),
            )
        except S3Error as e:
            raise StorageError(f"Failed to sign URL for {key}: {e}") from e


def get_storage_adapter() -> StorageAdapter:
    """Factory function to get storage adapter based on settings."""
    if settings.STORAGE_TYPE == "local":
        return LocalStorageAdapter(public_base_url=settings.STORAGE_PUBLIC_BASE_URL)
    elif settings.STORAGE_TYPE == "s3":
        return S3StorageAdapter(public_base_url=settings.STORAGE_PUBLIC_BASE_URL)
    else:
        raise ValueError(f"Unknown storage type: {settings.STORAGE_TYPE}")


class UrlConsumer(str, enum.Enum):
    """Who is going to fetch the image URL."""
    BROWSER = "browser"
    SERVER = "server"
    MODEL = "model"


def is_absolute_url(storage_key: str) -> bool:
    return storage_key.startswith("http://") or storage_key.startswith("https://")


async def resolve_image_url(
    storage_key: str,
    consumer: UrlConsumer,
    storage: StorageAdapter,
    browser_ttl: Optional[int] = None,
    model_ttl: Optional[int] = None,
) -> str:
    """
    Resolve an image's storage_key into a URL the consumer can fetch.

    storage_key comes in three shapes:
        - absolute http(s) URL: returned unchanged for every consumer
        - local path ("/seed/foo.png"): only a browser can use it; server and
          model consumers get a StorageError
        - object key: browsers get the public URL when one is configured,
          otherwise a signed URL; server/model consumers always get a
          short-lived signed URL
    """
    if is_absolute_url(storage_key):
        return storage_key

    if storage_key.startswith("/"):
        if consumer == UrlConsumer.BROWSER:
            return storage_key
        raise StorageError(
            f"storage_key {storage_key!r} is a local path and cannot be fetched by consumer={consumer.value}"
        )

    if consumer == UrlConsumer.BROWSER:
        public = storage.public_url(storage_key)
        if public:
            return public
        ttl = browser_ttl if browser_ttl is not None else settings.BROWSER_URL_TTL_SECONDS
        return await storage.presigned_get_url(storage_key, ttl)

    ttl = model_ttl if model_ttl is not None else settings.MODEL_URL_TTL_SECONDS
    return await storage.presigned_get_url(storage_key, ttl)


def object_key_from_storage_key(storage_key: str, storage: StorageAdapter) -> Optional[str]:
    """Derive the object key behind a storage_key, if there is one.

    Object keys are returned as-is, public URLs under the adapter's public
    base are stripped back to the key, and anything else (foreign URLs,
    local paths) returns None.
    """
    if storage_key.startswith("/"):
        return None
    if not is_absolute_url(storage_key):
        return storage_key
    if not storage.public_base_url:
        return None
    base = storage.public_base_url.rstrip("/") + "/"
    if not storage_key.startswith(base):
        return None
    return storage_key[len(base):]
