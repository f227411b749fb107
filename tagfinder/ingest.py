"""Image ingestion: store bytes content-addressed, create the image row, queue tagging."""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from tagfinder.errors import InvalidUploadError
from tagfinder.image_utils import compute_content_hash, sniff_image_format
from tagfinder.job_queue import enqueue_job
from tagfinder.models import ImageStatus
from tagfinder.schemas import IngestResult
from tagfinder.settings import settings
from tagfinder.storage import StorageAdapter
from tagfinder.tag_store import get_image, get_or_create_image

logger = logging.getLogger(__name__)


def object_key_for(sha256: str, extension: str) -> str:
    return f"images/{sha256}.{extension}"


async def _discard_object(storage: StorageAdapter, key: str) -> None:
    try:
        await storage.delete(key)
    except Exception as e:
        logger.warning("Failed to remove orphaned object key=%r: %s", key, e)


async def ingest_image_bytes(
    session_factory: async_sessionmaker,
    storage: StorageAdapter,
    data: bytes,
    source: Optional[str] = None,
    source_ref: Optional[str] = None,
    source_url: Optional[str] = None,
) -> IngestResult:
    """
    Ingest one image.

    Implements idempotency via sha256: identical bytes always map to the same
    object key and the same image row, so re-uploading is a no-op that
    returns the existing image.

    Raises:
        InvalidUploadError: empty, too large, or not a png/jpeg/webp/gif image,
            or its source/source_ref already belongs to different bytes
    """
    if not data:
        raise InvalidUploadError("Upload is empty")
    if len(data) > settings.MAX_UPLOAD_BYTES:
        raise InvalidUploadError(
            f"File size exceeds maximum of {settings.MAX_UPLOAD_BYTES} bytes"
        )

    try:
        extension, content_type = sniff_image_format(data)
    except ValueError as e:
        raise InvalidUploadError(str(e)) from e

    sha256 = compute_content_hash(data)
    key = object_key_for(sha256, extension)

    # Content-addressed, so an existing object already holds these exact bytes
    wrote_object = not await storage.exists(key)
    if wrote_object:
        await storage.save(key, data, content_type=content_type)

    storage_key = storage.public_url(key) or key

    try:
        async with session_factory() as session:
            async with session.begin():
                image_id, created = await get_or_create_image(
                    session,
                    sha256=sha256,
                    storage_key=storage_key,
                    status=ImageStatus.PENDING,
                    source=source,
                    source_ref=source_ref,
                    source_url=source_url,
                )
                enqueued = await enqueue_job(session, image_id) if created else False
                if not created:
                    storage_key = (await get_image(session, image_id)).storage_key
    except InvalidUploadError:
        if wrote_object:
            await _discard_object(storage, key)
        raise

    if created:
        logger.info("Ingested image id=%d sha256=%s enqueued=%s", image_id, sha256[:12], enqueued)
    else:
        logger.info("Duplicate upload of sha256=%s resolved to image id=%d", sha256[:12], image_id)

    return IngestResult(
        image_id=image_id,
        sha256=sha256,
        storage_key=storage_key,
        created=created,
        enqueued=enqueued,
    )
