"""Tagging worker: turns queued jobs into indexed, tagged images.

Loop, once per iteration::

    paused          -> sleep(paused_sleep)
    unconfigured    -> sleep(unconfigured_sleep)
    done today>=cap -> sleep(capped_sleep)
    no queued job   -> sleep(idle_sleep)
    otherwise       -> process_job(claimed job)

Gate states are backpressure, not errors. Any failure while processing a
job is fail-closed: the image and its job both become ``failed`` with the
error recorded, in one transaction. Run as many worker processes as needed;
they coordinate only through the queue's atomic claim.
"""
import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from tagfinder.db import AsyncSessionLocal, engine
from tagfinder.errors import ImageNotFoundError, TaggingError
from tagfinder.job_queue import (
    ClaimedJob,
    claim_one_job,
    count_done_today,
    mark_job_done,
    mark_job_failed,
    requeue_stale_jobs,
)
from tagfinder.models import Image, ImageStatus
from tagfinder.normalize import expand_hyphenated_token, tokenize_query
from tagfinder.settings import settings
from tagfinder.storage import StorageAdapter, UrlConsumer, get_storage_adapter, resolve_image_url
from tagfinder.tag_store import clamp_confidence, get_image, write_tags_for_image
from tagfinder.tagging import ModelTag, OpenAIVisionTagger, Tagger

logger = logging.getLogger(__name__)

# Caption words are weaker evidence than explicit model tags
CAPTION_CONFIDENCE = 0.7

# tags.name is varchar(64)
MAX_TAG_LENGTH = 64

PAUSED = "paused"
UNCONFIGURED = "unconfigured"
CAPPED = "capped"
IDLE = "idle"
PROCESSED = "processed"


@dataclass
class WorkerPolicy:
    """Gates and timings, consulted on every loop iteration."""
    paused: bool = False
    daily_cap: int = 500
    paused_sleep: float = 60.0
    unconfigured_sleep: float = 5.0
    capped_sleep: float = 900.0
    idle_sleep: float = 2.0
    tag_timeout: float = 30.0
    stale_after: Optional[float] = None  # seconds; None disables stale requeue

    @classmethod
    def from_settings(cls, config=settings) -> "WorkerPolicy":
        return cls(
            paused=config.TAGGING_PAUSED,
            daily_cap=config.TAGGING_DAILY_CAP,
            paused_sleep=config.WORKER_PAUSED_SLEEP_SECONDS,
            unconfigured_sleep=config.WORKER_UNCONFIGURED_SLEEP_SECONDS,
            capped_sleep=config.WORKER_CAPPED_SLEEP_SECONDS,
            idle_sleep=config.WORKER_IDLE_SLEEP_SECONDS,
            tag_timeout=config.OPENAI_VISION_TIMEOUT_SECONDS,
            stale_after=config.STALE_JOB_TIMEOUT_SECONDS or None,
        )

    def sleep_for(self, action: str) -> float:
        return {
            PAUSED: self.paused_sleep,
            UNCONFIGURED: self.unconfigured_sleep,
            CAPPED: self.capped_sleep,
            IDLE: self.idle_sleep,
        }.get(action, 0.0)


@dataclass(frozen=True)
class TagSuggestion:
    name: str
    confidence: float


def _token_suggestions(text: str, confidence: float) -> List[TagSuggestion]:
    confidence = clamp_confidence(confidence)
    return [
        TagSuggestion(token, confidence)
        for token in tokenize_query(text)
        if len(token) <= MAX_TAG_LENGTH
    ]


def model_tags_to_suggestions(tags: Iterable[ModelTag]) -> List[TagSuggestion]:
    """Tokenize each model phrase on its own; "dark alley" yields two tags."""
    suggestions = []
    for tag in tags:
        suggestions.extend(_token_suggestions(tag.name, tag.confidence))
    return suggestions


def caption_to_suggestions(caption: Optional[str]) -> List[TagSuggestion]:
    if not caption:
        return []
    return _token_suggestions(caption, CAPTION_CONFIDENCE)


def merge_suggestions(*suggestion_lists: Iterable[TagSuggestion]) -> List[TagSuggestion]:
    """Merge by name keeping the highest confidence, in first-seen order."""
    merged: Dict[str, float] = {}
    for suggestions in suggestion_lists:
        for suggestion in suggestions:
            current = merged.get(suggestion.name)
            if current is None or suggestion.confidence > current:
                merged[suggestion.name] = suggestion.confidence
    return [TagSuggestion(name, confidence) for name, confidence in merged.items()]


def expand_suggestions(suggestions: Iterable[TagSuggestion]) -> List[TagSuggestion]:
    """Add the parts of hyphenated tags, each with its compound's confidence."""
    expanded = []
    for suggestion in suggestions:
        for name in expand_hyphenated_token(suggestion.name):
            expanded.append(TagSuggestion(name, suggestion.confidence))
    return merge_suggestions(expanded)


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class TaggingWorker:
    """Polls the job queue and tags images."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        tagger: Tagger,
        storage: StorageAdapter,
        policy: Optional[WorkerPolicy] = None,
    ):
        self.session_factory = session_factory
        self.tagger = tagger
        self.storage = storage
        self.policy = policy or WorkerPolicy()
        self._stop_event = asyncio.Event()
        self._last_gate: Optional[str] = None

    @asynccontextmanager
    async def _transaction(self):
        async with self.session_factory() as session:
            async with session.begin():
                yield session

    def stop(self) -> None:
        """Ask the loop to exit after the current iteration."""
        if not self._stop_event.is_set():
            logger.info("Stop requested; finishing current work")
        self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def _log_gate(self, gate: str, message: str, *args) -> None:
        # Only log transitions so a long pause does not flood the log
        if gate != self._last_gate:
            logger.info(message, *args)
        self._last_gate = gate

    async def run_once(self) -> str:
        """Run one loop iteration without sleeping; returns the action taken."""
        policy = self.policy

        if policy.paused:
            self._log_gate(PAUSED, "Tagging paused")
            return PAUSED

        if not self.tagger.configured:
            self._log_gate(UNCONFIGURED, "Tagging collaborator not configured; idling")
            return UNCONFIGURED

        if policy.stale_after:
            async with self._transaction() as session:
                await requeue_stale_jobs(session, timedelta(seconds=policy.stale_after))

        async with self._transaction() as session:
            done_today = await count_done_today(session)
        if done_today >= policy.daily_cap:
            self._log_gate(CAPPED, "Daily cap reached (%d/%d done today)", done_today, policy.daily_cap)
            return CAPPED

        async with self._transaction() as session:
            job = await claim_one_job(session)
        if job is None:
            self._log_gate(IDLE, "No queued jobs")
            return IDLE

        self._last_gate = None
        logger.info("Claimed job %d for image %d", job.job_id, job.image_id)
        await self.process_job(job)
        return PROCESSED

    async def run(self) -> None:
        """Loop until :meth:`stop` is called."""
        logger.info("Worker started")
        while not self.stopping:
            try:
                action = await self.run_once()
            except Exception:
                # Database unavailable or similar; back off and try again
                logger.exception("Worker iteration failed")
                action = IDLE
            delay = self.policy.sleep_for(action)
            if delay > 0:
                await self._sleep(delay)
        logger.info("Worker stopped")

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def process_job(self, job: ClaimedJob) -> bool:
        """Tag one claimed image. Returns False if the job failed."""
        try:
            await self._process(job)
        except Exception as e:
            await self._fail(job, e)
            return False
        return True

    async def _process(self, job: ClaimedJob) -> None:
        async with self._transaction() as session:
            image = await get_image(session, job.image_id)
            if image is None:
                raise ImageNotFoundError(job.image_id)
            if image.status == ImageStatus.INDEXED:
                logger.info("Image %d already indexed; closing job %d", job.image_id, job.job_id)
                await mark_job_done(session, job.job_id)
                return
            storage_key = image.storage_key

        image_url = await resolve_image_url(storage_key, UrlConsumer.MODEL, self.storage)

        try:
            result = await asyncio.wait_for(
                self.tagger.tag_image(image_url), timeout=self.policy.tag_timeout
            )
        except asyncio.TimeoutError as e:
            raise TaggingError(f"Tagging call timed out after {self.policy.tag_timeout}s") from e

        # Kept even if a later step fails
        async with self._transaction() as session:
            await session.execute(
                update(Image)
                .where(Image.id == job.image_id)
                .values(caption=result.caption)
                .execution_options(synchronize_session=False)
            )
        logger.info("Image %d caption: %s", job.image_id, result.caption)

        suggestions = expand_suggestions(
            merge_suggestions(
                model_tags_to_suggestions(result.tags),
                caption_to_suggestions(result.caption),
            )
        )

        async with self._transaction() as session:
            added = await write_tags_for_image(
                session, job.image_id, [(s.name, s.confidence) for s in suggestions]
            )

        async with self._transaction() as session:
            await session.execute(
                update(Image)
                .where(Image.id == job.image_id)
                .values(status=ImageStatus.INDEXED)
                .execution_options(synchronize_session=False)
            )
            await mark_job_done(session, job.job_id)

        logger.info(
            "Indexed image %d with %d tags (%d new joins)", job.image_id, len(suggestions), added
        )

    async def _fail(self, job: ClaimedJob, exc: Exception) -> None:
        message = _error_message(exc)
        logger.error("Job %d for image %d failed: %s", job.job_id, job.image_id, message)
        async with self._transaction() as session:
            await session.execute(
                update(Image)
                .where(Image.id == job.image_id)
                .values(status=ImageStatus.FAILED)
                .execution_options(synchronize_session=False)
            )
            await mark_job_failed(session, job.job_id, message)


async def run_worker(policy: Optional[WorkerPolicy] = None) -> None:
    """Run a worker against the configured database, storage and tagger until signalled."""
    worker = TaggingWorker(
        AsyncSessionLocal,
        OpenAIVisionTagger(),
        get_storage_adapter(),
        policy or WorkerPolicy.from_settings(settings),
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:
            # Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(worker.stop))

    try:
        await worker.run()
    finally:
        await engine.dispose()
