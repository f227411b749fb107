"""Tests for the tagging worker: gates, suggestion merging and job processing."""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from tagfinder.db import utcnow
from tagfinder.errors import TaggingError
from tagfinder.job_queue import ClaimedJob, claim_one_job, enqueue_job
from tagfinder.models import Image, ImageStatus, ImageTag, JobStatus, Tag, TagJob
from tagfinder.search import search_images
from tagfinder.settings import Settings
from tagfinder.tagging import ModelTag, TaggingResult
from tagfinder.worker import (
    CAPTION_CONFIDENCE,
    TaggingWorker,
    TagSuggestion,
    WorkerPolicy,
    caption_to_suggestions,
    expand_suggestions,
    merge_suggestions,
    model_tags_to_suggestions,
)
from tests.helpers import FakeTagger, make_image

NOIR_RESULT = TaggingResult(
    caption="A man waits in a dark alley.",
    tags=[
        ModelTag(name="Film-Noir", confidence=0.9, kind="style"),
        ModelTag(name="dark alley", confidence=0.6, kind="setting"),
    ],
)


def fast_policy(**overrides):
    values = dict(
        paused_sleep=0.01, unconfigured_sleep=0.01, capped_sleep=0.01, idle_sleep=0.01, tag_timeout=1.0
    )
    values.update(overrides)
    return WorkerPolicy(**values)


async def queued_image(session, n=1, **kwargs):
    image_id = await make_image(session, n, status=ImageStatus.PENDING, **kwargs)
    await enqueue_job(session, image_id)
    await session.commit()
    return image_id


async def load(session, model, **criteria):
    stmt = select(model).filter_by(**criteria).execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one()


async def tags_of(session, image_id):
    result = await session.execute(
        select(Tag.name, ImageTag.confidence)
        .join(ImageTag, ImageTag.tag_id == Tag.id)
        .where(ImageTag.image_id == image_id)
    )
    return {row.name: row.confidence for row in result.all()}


def test_model_phrases_are_tokenized_independently():
    suggestions = model_tags_to_suggestions(
        [ModelTag(name="dark alley", confidence=0.6), ModelTag(name="The Rain!", confidence=0.4)]
    )

    assert suggestions == [
        TagSuggestion("dark", 0.6),
        TagSuggestion("alley", 0.6),
        TagSuggestion("rain", 0.4),
    ]


def test_caption_suggestions_use_fixed_confidence():
    assert caption_to_suggestions("A sad frog.") == [
        TagSuggestion("sad", CAPTION_CONFIDENCE),
        TagSuggestion("frog", CAPTION_CONFIDENCE),
    ]
    assert caption_to_suggestions("") == []
    assert caption_to_suggestions(None) == []


def test_merge_keeps_max_confidence_in_first_seen_order():
    merged = merge_suggestions(
        [TagSuggestion("sad", 0.4), TagSuggestion("frog", 0.9)],
        [TagSuggestion("sad", 0.7), TagSuggestion("rain", 0.1), TagSuggestion("frog", 0.2)],
    )

    assert merged == [TagSuggestion("sad", 0.7), TagSuggestion("frog", 0.9), TagSuggestion("rain", 0.1)]


def test_expand_adds_hyphen_parts_with_compound_confidence():
    expanded = expand_suggestions([TagSuggestion("film-noir", 0.9), TagSuggestion("noir", 0.95)])

    assert expanded == [
        TagSuggestion("film-noir", 0.9),
        TagSuggestion("film", 0.9),
        TagSuggestion("noir", 0.95),
    ]


def test_policy_from_settings():
    config = Settings(
        TAGGING_PAUSED=True,
        TAGGING_DAILY_CAP=7,
        WORKER_IDLE_SLEEP_SECONDS=1.5,
        STALE_JOB_TIMEOUT_SECONDS=0,
        OPENAI_VISION_TIMEOUT_SECONDS=12,
    )

    policy = WorkerPolicy.from_settings(config)

    assert policy.paused is True
    assert policy.daily_cap == 7
    assert policy.idle_sleep == 1.5
    assert policy.tag_timeout == 12
    assert policy.stale_after is None
    assert policy.sleep_for("idle") == 1.5
    assert policy.sleep_for("processed") == 0.0


async def test_gates_in_order(session_factory, db_session, storage):
    await queued_image(db_session)
    tagger = FakeTagger(result=NOIR_RESULT)
    policy = fast_policy(paused=True)
    worker = TaggingWorker(session_factory, tagger, storage, policy)

    assert await worker.run_once() == "paused"

    policy.paused = False
    tagger._configured = False
    assert await worker.run_once() == "unconfigured"

    tagger._configured = True
    policy.daily_cap = 0
    assert await worker.run_once() == "capped"

    policy.daily_cap = 10
    assert await worker.run_once() == "processed"
    assert await worker.run_once() == "idle"
    assert len(tagger.calls) == 1


async def test_daily_cap_counts_done_jobs(session_factory, db_session, storage):
    await queued_image(db_session, 1)
    await queued_image(db_session, 2)
    worker = TaggingWorker(session_factory, FakeTagger(result=NOIR_RESULT), storage, fast_policy(daily_cap=1))

    assert await worker.run_once() == "processed"
    assert await worker.run_once() == "capped"


async def test_end_to_end_film_noir(session_factory, db_session, storage):
    noir_only = await make_image(db_session, 1, tags=["noir"])
    await db_session.commit()
    assert (await search_images(db_session, "film")).items == []

    image_id = await queued_image(db_session, 2)
    tagger = FakeTagger(result=NOIR_RESULT)
    worker = TaggingWorker(session_factory, tagger, storage, fast_policy())

    assert await worker.run_once() == "processed"

    assert tagger.calls == [f"https://signed.example/images/{'0' * 63}2.png?ttl=60"]
    image = await load(db_session, Image, id=image_id)
    assert image.status == ImageStatus.INDEXED
    assert image.caption == "A man waits in a dark alley."
    job = await load(db_session, TagJob, image_id=image_id)
    assert job.status == JobStatus.DONE
    assert job.attempts == 1

    tags = await tags_of(db_session, image_id)
    assert set(tags) == {"film-noir", "film", "noir", "dark", "alley", "man", "waits", "in"}
    assert tags["film"] == pytest.approx(0.9)
    # Caption evidence outranks the weaker model tag
    assert tags["dark"] == pytest.approx(CAPTION_CONFIDENCE)

    page = await search_images(db_session, "film noir")
    assert [(item.id, item.match_count) for item in page.items] == [(image_id, 2), (noir_only, 1)]
    film = await search_images(db_session, "film")
    assert [item.id for item in (await search_images(db_session, "the film")).items] == [
        item.id for item in film.items
    ]


async def test_timeout_fails_closed_without_tags(session_factory, db_session, storage):
    image_id = await queued_image(db_session)
    tagger = FakeTagger(result=NOIR_RESULT, delay=5.0)
    worker = TaggingWorker(session_factory, tagger, storage, fast_policy(tag_timeout=0.05))

    assert await worker.run_once() == "processed"

    image = await load(db_session, Image, id=image_id)
    job = await load(db_session, TagJob, image_id=image_id)
    assert image.status == ImageStatus.FAILED
    assert job.status == JobStatus.FAILED
    assert "timed out" in job.last_error
    assert await tags_of(db_session, image_id) == {}


async def test_tagger_error_is_recorded(session_factory, db_session, storage):
    image_id = await queued_image(db_session)
    tagger = FakeTagger(error=TaggingError("Vision API error: 500"))
    worker = TaggingWorker(session_factory, tagger, storage, fast_policy())

    await worker.run_once()

    job = await load(db_session, TagJob, image_id=image_id)
    assert job.status == JobStatus.FAILED
    assert job.last_error == "Vision API error: 500"


async def test_unfetchable_storage_key_fails_job(session_factory, db_session, storage):
    image_id = await queued_image(db_session, storage_key="/seed/local.png")
    tagger = FakeTagger(result=NOIR_RESULT)
    worker = TaggingWorker(session_factory, tagger, storage, fast_policy())

    await worker.run_once()

    assert tagger.calls == []
    assert (await load(db_session, Image, id=image_id)).status == ImageStatus.FAILED
    assert (await load(db_session, TagJob, image_id=image_id)).status == JobStatus.FAILED


async def test_already_indexed_image_short_circuits(session_factory, db_session, storage):
    image_id = await make_image(db_session, 1, tags=["sad"])
    await enqueue_job(db_session, image_id)
    await db_session.commit()
    tagger = FakeTagger(result=NOIR_RESULT)
    worker = TaggingWorker(session_factory, tagger, storage, fast_policy())

    assert await worker.run_once() == "processed"

    assert tagger.calls == []
    assert (await load(db_session, TagJob, image_id=image_id)).status == JobStatus.DONE
    assert await tags_of(db_session, image_id) == {"sad": 1.0}


async def test_missing_image_does_not_escape(session_factory, storage):
    worker = TaggingWorker(session_factory, FakeTagger(result=NOIR_RESULT), storage, fast_policy())

    assert await worker.process_job(ClaimedJob(job_id=999, image_id=999)) is False


async def test_stale_running_jobs_are_requeued_when_enabled(session_factory, db_session, storage):
    image_id = await queued_image(db_session)
    await claim_one_job(db_session)
    await db_session.execute(
        update(TagJob)
        .where(TagJob.image_id == image_id)
        .values(updated_at=utcnow() - timedelta(hours=2))
    )
    await db_session.commit()
    worker = TaggingWorker(
        session_factory, FakeTagger(result=NOIR_RESULT), storage, fast_policy(stale_after=3600)
    )

    assert await worker.run_once() == "processed"

    job = await load(db_session, TagJob, image_id=image_id)
    assert job.status == JobStatus.DONE
    assert job.attempts == 2


async def test_stop_interrupts_sleep(session_factory, storage):
    worker = TaggingWorker(
        session_factory, FakeTagger(), storage, fast_policy(paused=True, paused_sleep=60)
    )
    task = asyncio.create_task(worker.run())
    await asyncio.sleep(0.05)

    worker.stop()

    await asyncio.wait_for(task, timeout=2)


async def test_stop_lets_in_flight_job_finish(session_factory, db_session, storage):
    image_id = await queued_image(db_session)
    tagger = FakeTagger(result=NOIR_RESULT, delay=0.2)
    worker = TaggingWorker(session_factory, tagger, storage, fast_policy())
    task = asyncio.create_task(worker.run())

    while not tagger.calls:
        await asyncio.sleep(0.01)
    worker.stop()
    await asyncio.wait_for(task, timeout=5)

    assert (await load(db_session, TagJob, image_id=image_id)).status == JobStatus.DONE
    result = await db_session.execute(select(func.count()).select_from(ImageTag))
    assert result.scalar_one() > 0
