"""Tag-overlap image search with keyset pagination.

Ranking is pure tag overlap: an image's ``match_count`` is the number of
distinct query tags it carries. Results are ordered by
``(match_count DESC, created_at DESC, id DESC)``; the trailing ``id`` makes
the order total, which keyset pagination relies on. Tag confidence never
participates.
"""
import logging
from typing import Awaitable, Callable, List, Optional, Union

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tagfinder.db import from_epoch_ms, to_epoch_ms
from tagfinder.models import Image, ImageStatus, ImageTag, Tag
from tagfinder.normalize import tokenize_query
from tagfinder.schemas import SearchCursor, SearchItem, SearchPage, SearchRequest
from tagfinder.settings import settings
from tagfinder.storage import StorageAdapter, UrlConsumer, resolve_image_url

logger = logging.getLogger(__name__)

# storage_key -> URL a browser can render
RenderUrlResolver = Callable[[str], Awaitable[str]]


def browser_resolver(storage: StorageAdapter) -> RenderUrlResolver:
    """Resolver producing browser render URLs through ``storage``."""
    async def resolve(storage_key: str) -> str:
        return await resolve_image_url(storage_key, UrlConsumer.BROWSER, storage)
    return resolve


async def resolve_tag_ids(session: AsyncSession, tokens: List[str]) -> List[int]:
    """Exact-name lookup of query tokens; unknown tokens are ignored."""
    if not tokens:
        return []
    result = await session.execute(select(Tag.id).where(Tag.name.in_(tokens)))
    return list(result.scalars().all())


def _after_cursor(match_count, cursor: SearchCursor):
    """Rows ranked strictly after ``cursor`` in the search ordering."""
    created_at = from_epoch_ms(cursor.created_at_ms)
    return or_(
        match_count < cursor.match_count,
        and_(
            match_count == cursor.match_count,
            or_(
                Image.created_at < created_at,
                and_(Image.created_at == created_at, Image.id < cursor.id),
            ),
        ),
    )


async def _render_url(storage_key: str, resolver: Optional[RenderUrlResolver]) -> str:
    if resolver is None:
        return storage_key
    try:
        return await resolver(storage_key)
    except Exception as e:
        logger.warning("Falling back to raw storage_key %r: %s", storage_key, e)
        return storage_key


async def search_images(
    session: AsyncSession,
    query: str,
    limit: Optional[int] = None,
    cursor: Optional[Union[SearchCursor, str]] = None,
    resolver: Optional[RenderUrlResolver] = None,
) -> SearchPage:
    """
    Search indexed images by tag overlap with ``query``.

    Args:
        session: Database session
        query: Raw user query; normalized and tokenized here
        limit: Page size (defaults to SEARCH_DEFAULT_LIMIT, at most SEARCH_MAX_LIMIT)
        cursor: Cursor (or its encoded token) from the previous page
        resolver: Turns a storage_key into a render URL; failures fall back
            to the raw storage_key

    Returns:
        SearchPage with items, total_count and next_cursor (None on the last page)

    Raises:
        ValueError: limit out of range or undecodable cursor token
    """
    if isinstance(cursor, str):
        cursor = SearchCursor.decode(cursor)
    request = SearchRequest(
        query=query,
        limit=limit if limit is not None else settings.SEARCH_DEFAULT_LIMIT,
        cursor=cursor,
    )

    tokens = tokenize_query(request.query)
    if not tokens:
        return SearchPage()

    tag_ids = await resolve_tag_ids(session, tokens)
    if not tag_ids:
        return SearchPage()

    eligible = (
        select(
            ImageTag.image_id.label("image_id"),
            func.count(func.distinct(ImageTag.tag_id)).label("match_count"),
        )
        .where(ImageTag.tag_id.in_(tag_ids))
        .group_by(ImageTag.image_id)
        .subquery("eligible")
    )
    match_count = eligible.c.match_count

    base = (
        select(Image.id, Image.storage_key, Image.caption, Image.created_at, match_count)
        .join(eligible, eligible.c.image_id == Image.id)
        .where(Image.status == ImageStatus.INDEXED)
    )

    total_result = await session.execute(select(func.count()).select_from(base.subquery()))
    total_count = int(total_result.scalar_one())

    page_query = base
    if request.cursor is not None:
        page_query = page_query.where(_after_cursor(match_count, request.cursor))
    page_query = page_query.order_by(
        match_count.desc(), Image.created_at.desc(), Image.id.desc()
    ).limit(request.limit + 1)

    rows = (await session.execute(page_query)).all()
    has_more = len(rows) > request.limit
    rows = rows[: request.limit]

    items = []
    for row in rows:
        items.append(
            SearchItem(
                id=row.id,
                storage_key=row.storage_key,
                caption=row.caption,
                created_at=row.created_at,
                match_count=row.match_count,
                render_url=await _render_url(row.storage_key, resolver),
            )
        )

    next_cursor = None
    if has_more and rows:
        last = rows[-1]
        next_cursor = SearchCursor(
            match_count=last.match_count,
            created_at_ms=to_epoch_ms(last.created_at),
            id=last.id,
        )

    logger.debug(
        "search tokens=%s total=%d returned=%d has_more=%s", tokens, total_count, len(items), has_more
    )
    return SearchPage(items=items, next_cursor=next_cursor, total_count=total_count)
