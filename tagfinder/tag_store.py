"""Image, tag and image-tag persistence.

Every function takes an ``AsyncSession`` and leaves commit/rollback to the
caller, so several writes can share one transaction. Uniqueness is enforced
by the schema; get-or-create functions insert first and read the winner back
on conflict, which keeps them safe under concurrent writers.
"""
import logging
import re
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import case, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tagfinder.db import dialect_insert
from tagfinder.errors import InvalidUploadError
from tagfinder.models import Image, ImageStatus, ImageTag, Tag
from tagfinder.normalize import DEFAULT_STOPWORDS, normalize_tag_name
from tagfinder.schemas import ImageDetailOut, ImageOut, TagOut

logger = logging.getLogger(__name__)

SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


def clamp_confidence(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


async def get_or_create_tag(session: AsyncSession, name: str) -> Optional[int]:
    """Return the id of the tag called ``name``, creating it if needed.

    ``name`` must already be normalized; anything else returns None so an
    unnormalized tag can never be stored.
    """
    if normalize_tag_name(name) != name:
        logger.debug("Refusing to store unnormalized tag name %r", name)
        return None

    stmt = (
        dialect_insert(session, Tag)
        .values(name=name)
        .on_conflict_do_nothing(index_elements=["name"])
        .returning(Tag.id)
    )
    tag_id = (await session.execute(stmt)).scalar_one_or_none()
    if tag_id is not None:
        return tag_id

    # Lost the race (or tag already existed): read back the winner's row
    result = await session.execute(select(Tag.id).where(Tag.name == name))
    return result.scalar_one()


async def upsert_image_tag(
    session: AsyncSession, image_id: int, tag_id: int, confidence: float
) -> bool:
    """Insert the join row; returns False if the image already had the tag."""
    stmt = (
        dialect_insert(session, ImageTag)
        .values(image_id=image_id, tag_id=tag_id, confidence=clamp_confidence(confidence))
        .on_conflict_do_nothing(index_elements=["image_id", "tag_id"])
        .returning(ImageTag.image_id)
    )
    return (await session.execute(stmt)).scalar_one_or_none() is not None


async def get_or_create_image(
    session: AsyncSession,
    sha256: str,
    storage_key: str,
    status: ImageStatus = ImageStatus.PENDING,
    source: Optional[str] = None,
    source_ref: Optional[str] = None,
    source_url: Optional[str] = None,
) -> Tuple[int, bool]:
    """Insert an image row or return the existing one with the same sha256.

    Returns ``(image_id, created)``. Raises InvalidUploadError when the
    provenance pair (or storage key) is already taken by different bytes.
    """
    sha256 = sha256.lower()
    if not SHA256_RE.match(sha256):
        raise ValueError(f"sha256 must be a 64-char hex string, got {sha256!r}")

    stmt = (
        dialect_insert(session, Image)
        .values(
            sha256=sha256,
            storage_key=storage_key,
            status=status,
            source=source,
            source_ref=source_ref,
            source_url=source_url,
        )
        .on_conflict_do_nothing()
        .returning(Image.id)
    )
    image_id = (await session.execute(stmt)).scalar_one_or_none()
    if image_id is not None:
        return image_id, True

    result = await session.execute(select(Image.id).where(Image.sha256 == sha256))
    existing_id = result.scalar_one_or_none()
    if existing_id is not None:
        return existing_id, False

    # Conflict on something other than the bytes: provenance or storage key
    if source is not None and source_ref is not None:
        owner = await find_image_by_source(session, source, source_ref)
        if owner is not None:
            raise InvalidUploadError(
                f"source={source!r} source_ref={source_ref!r} already belongs to image {owner.id}"
            )
    raise InvalidUploadError(f"storage_key {storage_key!r} already belongs to another image")


async def write_tags_for_image(
    session: AsyncSession, image_id: int, pairs: Iterable[Tuple[str, float]]
) -> int:
    """Get-or-create each tag and attach it to the image.

    Callers run this inside a single transaction so an image is never left
    partially tagged. Returns the number of join rows added.
    """
    added = 0
    for name, confidence in pairs:
        tag_id = await get_or_create_tag(session, name)
        if tag_id is None:
            continue
        if await upsert_image_tag(session, image_id, tag_id, confidence):
            added += 1
    return added


async def get_image(session: AsyncSession, image_id: int) -> Optional[Image]:
    result = await session.execute(select(Image).where(Image.id == image_id))
    return result.scalar_one_or_none()


async def get_image_detail(session: AsyncSession, image_id: int) -> Optional[ImageDetailOut]:
    """Image plus its tags, highest confidence first.

    Works for every status: pending and failed images are reachable by id
    even though search never returns them.
    """
    image = await get_image(session, image_id)
    if image is None:
        return None

    result = await session.execute(
        select(Tag.id, Tag.name, ImageTag.confidence)
        .join(ImageTag, ImageTag.tag_id == Tag.id)
        .where(ImageTag.image_id == image_id)
        .order_by(ImageTag.confidence.desc(), Tag.name.asc())
    )
    tags = [TagOut(id=row.id, name=row.name, confidence=row.confidence) for row in result.all()]
    return ImageDetailOut(image=ImageOut.model_validate(image), tags=tags)


async def find_image_by_source(
    session: AsyncSession, source: str, source_ref: str
) -> Optional[Image]:
    result = await session.execute(
        select(Image).where(Image.source == source, Image.source_ref == source_ref).limit(1)
    )
    return result.scalar_one_or_none()


async def adjust_flag_count(session: AsyncSession, image_id: int, delta: int) -> Optional[int]:
    """Add ``delta`` to the image's flag count, never going below zero."""
    new_count = Image.flag_count + delta
    result = await session.execute(
        update(Image)
        .where(Image.id == image_id)
        .values(flag_count=case((new_count < 0, 0), else_=new_count))
        .returning(Image.flag_count)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none()


async def delete_image(session: AsyncSession, image_id: int) -> bool:
    """Delete an image row; its tag joins and job go with it (ON DELETE CASCADE)."""
    result = await session.execute(
        delete(Image)
        .where(Image.id == image_id)
        .returning(Image.id)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none() is not None


async def remove_tags_by_name(session: AsyncSession, names: Sequence[str]) -> List[str]:
    """Delete the named tags and every join row pointing at them."""
    if not names:
        return []
    result = await session.execute(select(Tag.id, Tag.name).where(Tag.name.in_(list(names))))
    rows = result.all()
    if not rows:
        return []

    tag_ids = [row.id for row in rows]
    await session.execute(
        delete(ImageTag).where(ImageTag.tag_id.in_(tag_ids)).execution_options(synchronize_session=False)
    )
    await session.execute(
        delete(Tag).where(Tag.id.in_(tag_ids)).execution_options(synchronize_session=False)
    )
    return sorted(row.name for row in rows)


async def find_stopword_tags(session: AsyncSession, stopwords=DEFAULT_STOPWORDS) -> List[str]:
    result = await session.execute(select(Tag.name).where(Tag.name.in_(sorted(stopwords))))
    return sorted(result.scalars().all())
