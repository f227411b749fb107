"""Operator command line.

Usage:
    tagfinder-cli create-tables
    tagfinder-cli worker
    tagfinder-cli ingest images/*.png --source upload
    tagfinder-cli seed ./seed-data
    tagfinder-cli reconcile-storage --apply
    tagfinder-cli search "film noir" --limit 10
    tagfinder-cli moderate --min 5 --mode unlist --dry-run
"""
import asyncio
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

import typer

from tagfinder.db import AsyncSessionLocal, Base, engine
from tagfinder.errors import InvalidUploadError
from tagfinder.ingest import ingest_image_bytes
from tagfinder.job_queue import remaining_daily_budget, requeue_failed_jobs, requeue_stale_jobs
from tagfinder.logging_config import configure_logging
from tagfinder.maintenance import (
    ModerationMode,
    backfill_hyphen_splits,
    moderate_flagged,
    reconcile_missing_objects,
    remove_stopword_tags,
    requeue_uncaptioned_images,
    seed_images,
    takedown,
)
from tagfinder.search import browser_resolver, search_images
from tagfinder.settings import settings
from tagfinder.storage import get_storage_adapter
from tagfinder.worker import run_worker

app = typer.Typer(help="tagfinder operator commands")


@app.callback()
def main(log_level: Optional[str] = typer.Option(None, "--log-level", help="Defaults to LOG_LEVEL")) -> None:
    configure_logging(log_level or settings.LOG_LEVEL)


def _run(coro):
    async def runner():
        try:
            return await coro
        finally:
            await engine.dispose()
    return asyncio.run(runner())


async def create_tables():
    """Create all database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@app.command("create-tables")
def create_tables_command() -> None:
    """Create all database tables."""
    _run(create_tables())
    typer.echo("Tables created successfully!")


@app.command()
def worker() -> None:
    """Run the tagging worker until SIGINT/SIGTERM."""
    asyncio.run(run_worker())


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    limit: Optional[int] = typer.Option(None, "--limit", help="Page size"),
    all_pages: bool = typer.Option(False, "--all", help="Follow cursors to the last page"),
) -> None:
    """Search indexed images by tag overlap."""
    async def run():
        storage = get_storage_adapter()
        cursor = None
        first = True
        while True:
            async with AsyncSessionLocal() as session:
                page = await search_images(
                    session, query, limit=limit, cursor=cursor, resolver=browser_resolver(storage)
                )
            if first:
                typer.echo(f"total={page.total_count}")
                first = False
            for item in page.items:
                typer.echo(f"{item.id}\tmatches={item.match_count}\t{item.render_url}\t{item.caption or ''}")
            if not all_pages or page.next_cursor is None:
                if page.next_cursor is not None:
                    typer.echo(f"next_cursor={page.next_cursor.encode()}")
                return
            cursor = page.next_cursor

    try:
        _run(run())
    except ValueError as e:
        typer.echo(f"Invalid search: {e}", err=True)
        raise typer.Exit(code=2)


@app.command()
def ingest(
    paths: List[Path] = typer.Argument(..., exists=True, dir_okay=False, help="Image files"),
    source: str = typer.Option("upload", "--source", help="Provenance label stored on the image"),
) -> None:
    """Ingest image files and queue them for tagging."""
    async def run():
        storage = get_storage_adapter()
        failures = 0
        for path in paths:
            try:
                # File names are not stable ids, so no source_ref
                result = await ingest_image_bytes(AsyncSessionLocal, storage, path.read_bytes(), source=source)
            except InvalidUploadError as e:
                failures += 1
                typer.echo(f"skip {path}: {e}", err=True)
                continue
            state = "new" if result.created else "duplicate"
            typer.echo(f"{path}\timage_id={result.image_id}\t{state}\tenqueued={result.enqueued}")
        return failures

    if _run(run()):
        raise typer.Exit(code=1)


@app.command("requeue-failed")
def requeue_failed() -> None:
    """Move every failed job back to queued."""
    async def run():
        async with AsyncSessionLocal() as session:
            async with session.begin():
                return await requeue_failed_jobs(session)

    typer.echo(f"requeued={_run(run())}")


@app.command("requeue-stale")
def requeue_stale(
    older_than: int = typer.Option(..., "--older-than", min=1, help="Seconds since the job was claimed"),
) -> None:
    """Move running jobs untouched for --older-than seconds back to queued."""
    async def run():
        async with AsyncSessionLocal() as session:
            async with session.begin():
                return await requeue_stale_jobs(session, timedelta(seconds=older_than))

    typer.echo(f"requeued={_run(run())}")


@app.command("backfill-hyphens")
def backfill_hyphens() -> None:
    """Attach the parts of hyphenated tags to the images that carry them."""
    async def run():
        async with AsyncSessionLocal() as session:
            async with session.begin():
                return await backfill_hyphen_splits(session)

    typer.echo(f"joins_added={_run(run())}")


@app.command("remove-stopword-tags")
def remove_stopword_tags_command() -> None:
    """Delete stored tags that are stopwords."""
    async def run():
        async with AsyncSessionLocal() as session:
            async with session.begin():
                return await remove_stopword_tags(session)

    removed = _run(run())
    typer.echo(f"removed={','.join(removed) if removed else '-'}")


@app.command("reconcile-storage")
def reconcile_storage(
    apply: bool = typer.Option(False, "--apply", help="Delete rows whose object is missing (default: dry run)"),
    batch_size: int = typer.Option(250, "--batch", min=1, max=2000, help="Rows per scan batch"),
) -> None:
    """Find (and with --apply delete) image rows whose stored object is gone."""
    async def run():
        storage = get_storage_adapter()
        async with AsyncSessionLocal() as session:
            async with session.begin():
                return await reconcile_missing_objects(session, storage, apply, batch_size)

    report = _run(run())
    typer.echo(
        f"scanned={report.scanned} kept={report.kept} missing_objects={len(report.missing_ids)} "
        f"deleted_rows={report.deleted_rows} skipped_unmappable={report.skipped_unmappable}"
    )
    if not report.apply and report.missing_ids:
        typer.echo(f"Dry run: re-run with --apply to delete {len(report.missing_ids)} rows.")


@app.command("backfill-captions")
def backfill_captions() -> None:
    """Queue indexed images that have no caption for another tagging pass."""
    async def run():
        async with AsyncSessionLocal() as session:
            async with session.begin():
                return await requeue_uncaptioned_images(session)

    typer.echo(f"requeued={_run(run())}")


@app.command()
def seed(
    seed_dir: Path = typer.Argument(
        ..., envvar="SEED_DIR", exists=True, file_okay=False, help="Folder with seed.json and its images"
    ),
) -> None:
    """Load a curated, pre-tagged dataset straight into the index."""
    async def run():
        storage = get_storage_adapter()
        async with AsyncSessionLocal() as session:
            async with session.begin():
                return await seed_images(session, storage, seed_dir)

    try:
        report = _run(run())
    except (FileNotFoundError, ValueError, InvalidUploadError) as e:
        typer.echo(f"Seed failed: {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo(
        f"images={report.images} new={report.images_created} tag_links={report.tag_links_created} "
        f"invalid_tags_skipped={report.invalid_tags_skipped}"
    )


@app.command()
def moderate(
    min_flags: int = typer.Option(..., "--min", help="Flag threshold (>= 1)"),
    mode: ModerationMode = typer.Option(ModerationMode.UNLIST, "--mode"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview only"),
) -> None:
    """Unlist or delete images at or above a flag threshold."""
    if min_flags < 1:
        typer.echo(f"--min must be >= 1 (got {min_flags})", err=True)
        raise typer.Exit(code=2)

    async def run():
        storage = get_storage_adapter() if mode == ModerationMode.DELETE else None
        async with AsyncSessionLocal() as session:
            async with session.begin():
                return await moderate_flagged(session, min_flags, mode, dry_run, storage)

    report = _run(run())
    typer.echo(f"mode={report.mode.value} min_flag_count={report.min_flags} dry_run={report.dry_run}")
    typer.echo(f"candidates={len(report.candidates)}")
    for c in report.candidates[:25]:
        name = (c.caption or "").strip() or f"#{c.id}"
        typer.echo(f"- id={c.id} flags={c.flag_count} status={c.status.value} name={name!r} key={c.storage_key!r}")
    if len(report.candidates) > 25:
        typer.echo(f"...and {len(report.candidates) - 25} more")
    if report.dry_run:
        typer.echo("Dry run: no changes applied.")
    elif report.mode == ModerationMode.UNLIST:
        typer.echo(f"unlisted={report.unlisted}")
    else:
        typer.echo(
            f"deleted_rows={report.deleted_rows} deleted_objects={report.deleted_objects} "
            f"object_delete_failures={report.object_delete_failures}"
        )


@app.command("takedown")
def takedown_command(
    source: str = typer.Option(..., "--source"),
    ref: str = typer.Option(..., "--ref", help="Source-specific id (source_ref)"),
) -> None:
    """Remove an image by its provenance."""
    async def run():
        storage = get_storage_adapter()
        async with AsyncSessionLocal() as session:
            async with session.begin():
                return await takedown(session, source, ref, storage)

    result = _run(run())
    if result is None:
        typer.echo("not found", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"deleted image_id={result.image_id} object_deleted={result.object_deleted}")


@app.command()
def budget() -> None:
    """Show how many jobs may still complete today."""
    async def run():
        async with AsyncSessionLocal() as session:
            return await remaining_daily_budget(session, settings.TAGGING_DAILY_CAP)

    typer.echo(f"remaining={_run(run())} cap={settings.TAGGING_DAILY_CAP}")


if __name__ == "__main__":
    app()
