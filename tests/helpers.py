"""Test doubles and data builders shared by the test modules."""
import asyncio
from datetime import datetime, timedelta, timezone
from io import BytesIO

from PIL import Image as PILImage
from sqlalchemy import update

from tagfinder.models import Image, ImageStatus
from tagfinder.storage import StorageAdapter
from tagfinder.tag_store import get_or_create_image, write_tags_for_image
from tagfinder.tagging import Tagger, TaggingResult

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeStorage(StorageAdapter):
    """In-memory storage that can sign URLs."""

    def __init__(self, public_base_url=None, fail_signing=False):
        super().__init__(public_base_url)
        self.objects = {}
        self.fail_signing = fail_signing
        self.deleted = []

    async def save(self, key, data, content_type="application/octet-stream"):
        self.objects[key] = data
        return key

    async def get(self, key):
        if key not in self.objects:
            raise FileNotFoundError(key)
        return self.objects[key]

    async def delete(self, key):
        self.deleted.append(key)
        return self.objects.pop(key, None) is not None

    async def exists(self, key):
        return key in self.objects

    async def presigned_get_url(self, key, expires_in):
        if self.fail_signing:
            raise RuntimeError("signing unavailable")
        return f"https://signed.example/{key}?ttl={expires_in}"


class FakeTagger(Tagger):
    """Returns a canned result, or raises/hangs on demand."""

    def __init__(self, result=None, error=None, delay=0.0, configured=True):
        self.result = result or TaggingResult(caption="", tags=[])
        self.error = error
        self.delay = delay
        self._configured = configured
        self.calls = []

    @property
    def configured(self):
        return self._configured

    async def tag_image(self, image_url):
        self.calls.append(image_url)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


def sha_for(n: int) -> str:
    return f"{n:064x}"


def png_bytes(color=(255, 0, 0), size=(8, 8)) -> bytes:
    output = BytesIO()
    PILImage.new("RGB", size, color=color).save(output, format="PNG")
    return output.getvalue()


async def make_image(
    session,
    n: int,
    tags=(),
    status=ImageStatus.INDEXED,
    created_at=None,
    storage_key=None,
    **kwargs,
):
    """Insert an image with the given tags; created_at defaults to BASE_TIME + n seconds."""
    image_id, _ = await get_or_create_image(
        session,
        sha256=sha_for(n),
        storage_key=storage_key or f"images/{sha_for(n)}.png",
        status=status,
        **kwargs,
    )
    await session.execute(
        update(Image)
        .where(Image.id == image_id)
        .values(created_at=created_at or BASE_TIME + timedelta(seconds=n))
    )
    await write_tags_for_image(session, image_id, [(name, 1.0) for name in tags])
    return image_id
