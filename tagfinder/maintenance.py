"""Operator maintenance: backfills, reconciliation, seeding, moderation and takedowns.

These are operational workflows run from the CLI, not product features.
Functions take a session and leave the commit to the caller; object
deletions are best-effort and never stop a database row from being removed,
since the database is what search reads.
"""
import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import AbstractSet, List, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tagfinder.image_utils import compute_content_hash, sniff_image_format
from tagfinder.ingest import object_key_for
from tagfinder.job_queue import enqueue_job
from tagfinder.models import Image, ImageStatus, ImageTag, JobStatus, Tag, TagJob
from tagfinder.normalize import DEFAULT_STOPWORDS, expand_hyphenated_token, normalize_tag_name
from tagfinder.schemas import SeedManifest
from tagfinder.storage import StorageAdapter, object_key_from_storage_key
from tagfinder.tag_store import (
    delete_image,
    find_image_by_source,
    find_stopword_tags,
    get_or_create_image,
    get_or_create_tag,
    remove_tags_by_name,
    upsert_image_tag,
)

logger = logging.getLogger(__name__)


class ModerationMode(str, enum.Enum):
    UNLIST = "unlist"  # status -> failed: hidden from search, still viewable by id
    DELETE = "delete"


@dataclass
class ModerationCandidate:
    id: int
    flag_count: int
    status: ImageStatus
    storage_key: str
    caption: Optional[str] = None


@dataclass
class ModerationReport:
    mode: ModerationMode
    min_flags: int
    dry_run: bool
    candidates: List[ModerationCandidate] = field(default_factory=list)
    unlisted: int = 0
    deleted_rows: int = 0
    deleted_objects: int = 0
    object_delete_failures: int = 0


@dataclass
class TakedownResult:
    image_id: int
    object_key: Optional[str]
    object_deleted: bool


@dataclass
class ReconcileReport:
    apply: bool
    scanned: int = 0
    kept: int = 0
    skipped_unmappable: int = 0
    missing_ids: List[int] = field(default_factory=list)
    deleted_rows: int = 0


@dataclass
class SeedReport:
    images: int = 0
    images_created: int = 0
    tag_links_created: int = 0
    invalid_tags_skipped: int = 0


async def backfill_hyphen_splits(session: AsyncSession) -> int:
    """Attach the parts of every hyphenated tag to the images carrying it.

    Each part inherits the compound's confidence; existing joins are left
    alone. Returns the number of joins added.
    """
    result = await session.execute(
        select(ImageTag.image_id, ImageTag.confidence, Tag.name)
        .join(Tag, Tag.id == ImageTag.tag_id)
        .where(Tag.name.like("%-%"))
        .order_by(ImageTag.image_id, Tag.name)
    )
    rows = result.all()

    added = 0
    for row in rows:
        for part in expand_hyphenated_token(row.name)[1:]:
            # Each sibling is stored under its own name
            tag_id = await get_or_create_tag(session, part)
            if tag_id is None:
                continue
            if await upsert_image_tag(session, row.image_id, tag_id, row.confidence):
                added += 1

    logger.info("Hyphen backfill scanned %d joins, added %d", len(rows), added)
    return added


async def remove_stopword_tags(
    session: AsyncSession, stopwords: AbstractSet[str] = DEFAULT_STOPWORDS
) -> List[str]:
    """Delete stored tags whose names are stopwords, with their joins."""
    names = await find_stopword_tags(session, stopwords)
    removed = await remove_tags_by_name(session, names)
    if removed:
        logger.info("Removed stopword tags: %s", ", ".join(removed))
    return removed


async def _delete_object_best_effort(storage: Optional[StorageAdapter], storage_key: str):
    """Returns (object_key, deleted, failed)."""
    if storage is None:
        return None, False, False
    key = object_key_from_storage_key(storage_key, storage)
    if key is None:
        return None, False, False
    try:
        deleted = await storage.delete(key)
    except Exception as e:
        logger.warning("Failed to delete object key=%r: %s", key, e)
        return key, False, True
    return key, deleted, False


async def moderate_flagged(
    session: AsyncSession,
    min_flags: int,
    mode: ModerationMode = ModerationMode.UNLIST,
    dry_run: bool = False,
    storage: Optional[StorageAdapter] = None,
) -> ModerationReport:
    """
    Unlist or delete images with ``flag_count >= min_flags``.

    Args:
        session: Database session
        min_flags: Flag threshold, at least 1
        mode: UNLIST sets indexed candidates to failed; DELETE removes the
            object (best-effort) and the row
        dry_run: Only report the candidates
        storage: Adapter used to delete objects in DELETE mode

    Raises:
        ValueError: If min_flags < 1
    """
    if min_flags < 1:
        raise ValueError(f"min_flags must be >= 1, got {min_flags}")
    mode = ModerationMode(mode)

    result = await session.execute(
        select(Image)
        .where(Image.flag_count >= min_flags)
        .order_by(Image.flag_count.desc(), Image.id.desc())
    )
    report = ModerationReport(mode=mode, min_flags=min_flags, dry_run=dry_run)
    report.candidates = [
        ModerationCandidate(
            id=image.id,
            flag_count=image.flag_count,
            status=image.status,
            storage_key=image.storage_key,
            caption=image.caption,
        )
        for image in result.scalars().all()
    ]

    if dry_run or not report.candidates:
        return report

    ids = [c.id for c in report.candidates]
    if mode == ModerationMode.UNLIST:
        updated = await session.execute(
            update(Image)
            .where(Image.id.in_(ids), Image.status == ImageStatus.INDEXED)
            .values(status=ImageStatus.FAILED)
            .returning(Image.id)
            .execution_options(synchronize_session=False)
        )
        report.unlisted = len(updated.all())
        logger.info("Unlisted %d of %d flagged images", report.unlisted, len(ids))
        return report

    for candidate in report.candidates:
        _, deleted, failed = await _delete_object_best_effort(storage, candidate.storage_key)
        report.deleted_objects += int(deleted)
        report.object_delete_failures += int(failed)
        if await delete_image(session, candidate.id):
            report.deleted_rows += 1

    logger.info(
        "Deleted %d flagged images (%d objects, %d object failures)",
        report.deleted_rows,
        report.deleted_objects,
        report.object_delete_failures,
    )
    return report


async def takedown(
    session: AsyncSession,
    source: str,
    source_ref: str,
    storage: Optional[StorageAdapter] = None,
) -> Optional[TakedownResult]:
    """Remove the image ingested from ``(source, source_ref)``.

    Returns None when nothing matches.
    """
    image = await find_image_by_source(session, source, source_ref)
    if image is None:
        logger.info("No image for source=%s ref=%s", source, source_ref)
        return None

    image_id = image.id
    object_key, deleted, _ = await _delete_object_best_effort(storage, image.storage_key)
    await delete_image(session, image_id)
    logger.info("Took down image %d (source=%s ref=%s)", image_id, source, source_ref)
    return TakedownResult(image_id=image_id, object_key=object_key, object_deleted=deleted)


async def reconcile_missing_objects(
    session: AsyncSession,
    storage: StorageAdapter,
    apply: bool = False,
    batch_size: int = 250,
) -> ReconcileReport:
    """
    Find image rows whose object is gone from storage and, with ``apply``,
    delete them (tag joins and jobs cascade).

    Rows are walked oldest first in ``(created_at, id)`` batches. Rows whose
    storage_key does not map to an object key in this storage (local paths,
    foreign URLs) are skipped and never deleted.

    Raises:
        ValueError: If batch_size is not in 1..2000
    """
    if not 1 <= batch_size <= 2000:
        raise ValueError(f"batch_size must be in 1..2000, got {batch_size}")

    report = ReconcileReport(apply=apply)
    last = None
    while True:
        stmt = select(Image.id, Image.storage_key, Image.created_at)
        if last is not None:
            last_created_at, last_id = last
            stmt = stmt.where(
                or_(
                    Image.created_at > last_created_at,
                    and_(Image.created_at == last_created_at, Image.id > last_id),
                )
            )
        rows = (
            await session.execute(stmt.order_by(Image.created_at, Image.id).limit(batch_size))
        ).all()
        if not rows:
            break
        last = (rows[-1].created_at, rows[-1].id)

        for row in rows:
            report.scanned += 1
            key = object_key_from_storage_key(row.storage_key, storage)
            if key is None:
                report.skipped_unmappable += 1
                continue
            if await storage.exists(key):
                report.kept += 1
                continue
            report.missing_ids.append(row.id)
            if apply and await delete_image(session, row.id):
                report.deleted_rows += 1

    logger.info(
        "Reconcile scanned=%d kept=%d missing=%d deleted=%d skipped=%d",
        report.scanned,
        report.kept,
        len(report.missing_ids),
        report.deleted_rows,
        report.skipped_unmappable,
    )
    return report


async def requeue_uncaptioned_images(session: AsyncSession) -> int:
    """Send indexed images without a caption back through the worker.

    Existing jobs are reset to queued, missing ones are inserted, and the
    images return to pending so the worker does not skip them as already
    indexed. Their tags are left in place. Returns the number of images
    requeued.
    """
    result = await session.execute(
        select(Image.id).where(
            Image.status == ImageStatus.INDEXED,
            or_(Image.caption.is_(None), func.trim(Image.caption) == ""),
        )
    )
    image_ids = list(result.scalars().all())
    if not image_ids:
        return 0

    reset = await session.execute(
        update(TagJob)
        .where(TagJob.image_id.in_(image_ids))
        .values(status=JobStatus.QUEUED, last_error=None)
        .returning(TagJob.image_id)
        .execution_options(synchronize_session=False)
    )
    with_job = set(reset.scalars().all())
    for image_id in image_ids:
        if image_id not in with_job:
            await enqueue_job(session, image_id)

    await session.execute(
        update(Image)
        .where(Image.id.in_(image_ids))
        .values(status=ImageStatus.PENDING)
        .execution_options(synchronize_session=False)
    )
    logger.info(
        "Requeued %d uncaptioned images (%d new jobs)", len(image_ids), len(image_ids) - len(with_job)
    )
    return len(image_ids)


def load_seed_manifest(seed_dir: Path) -> SeedManifest:
    """Read ``seed.json`` from ``seed_dir``.

    Raises:
        FileNotFoundError: If seed.json is missing
        ValueError: If it is not ``{"images": [{"file": ..., "tags": [...]}]}``
    """
    manifest_path = Path(seed_dir) / "seed.json"
    if not manifest_path.is_file():
        raise FileNotFoundError(f"seed.json not found at {manifest_path}")
    return SeedManifest.model_validate_json(manifest_path.read_bytes())


async def seed_images(
    session: AsyncSession, storage: StorageAdapter, seed_dir: Path
) -> SeedReport:
    """
    Load a curated dataset straight into the index.

    Every manifest entry is stored content-addressed like an upload, but the
    row is created already ``indexed`` with provenance ``("seed", file)`` and
    its manifest tags at confidence 1.0; no tagging job is queued. Re-running
    is a no-op. Tags that do not normalize to a single token are skipped.
    """
    seed_dir = Path(seed_dir)
    manifest = load_seed_manifest(seed_dir)
    report = SeedReport()

    for entry in manifest.images:
        data = (seed_dir / entry.file).read_bytes()
        extension, content_type = sniff_image_format(data)
        sha256 = compute_content_hash(data)
        key = object_key_for(sha256, extension)
        if not await storage.exists(key):
            await storage.save(key, data, content_type=content_type)

        image_id, created = await get_or_create_image(
            session,
            sha256=sha256,
            storage_key=storage.public_url(key) or key,
            status=ImageStatus.INDEXED,
            source="seed",
            source_ref=entry.file,
        )
        report.images += 1
        report.images_created += int(created)

        for raw in entry.tags:
            name = normalize_tag_name(raw)
            if name is None:
                report.invalid_tags_skipped += 1
                continue
            tag_id = await get_or_create_tag(session, name)
            if await upsert_image_tag(session, image_id, tag_id, 1.0):
                report.tag_links_created += 1

    logger.info(
        "Seeded %d images (%d new), %d tag links, %d invalid tags skipped",
        report.images,
        report.images_created,
        report.tag_links_created,
        report.invalid_tags_skipped,
    )
    return report
