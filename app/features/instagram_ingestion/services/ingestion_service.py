"""
Instagram ingestion orchestrator.

Drives every configured organizer through fetch -> store -> OCR ->
inference -> sanitize -> persist. Organizers run concurrently, as do the
posts of one organizer; the steps for a single post always run in order.
A failure is contained to the post or organizer it happened in, so the
worst outcome of a bad source is a smaller event count for the run.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime
from typing import Any, TypeVar

from app.config import settings
from app.features.instagram_ingestion.clients import (
    InstagramClient,
    OpenAIInferenceClient,
    VisionTextExtractor,
    media_urls_for_post,
)
from app.features.instagram_ingestion.domain import (
    ApiPost,
    ExtractedEvent,
    InstagramSource,
    Organizer,
    Post,
    PostOutcome,
)
from app.features.instagram_ingestion.errors import TextExtractionError, UnknownSource
from app.features.instagram_ingestion.pipeline.sanitizer import sanitize, to_extracted_event
from app.features.instagram_ingestion.repository import IngestionRepository
from app.features.instagram_ingestion.services.source_config import (
    find_source,
    load_instagram_sources,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__).bind(provider="instagram")

T = TypeVar("T")


class IngestionMetrics:
    """Counters for one ingestion or fixup run."""

    def __init__(self, run: str):
        self.run = run
        self.start_time = datetime.now()
        self.posts_seen = 0
        self.duplicate_posts = 0
        self.accepted_posts = 0
        self.rejected_posts = 0
        self.failed_posts = 0
        self.ocr_failures = 0
        self.failed_organizers = 0

    def record_post(self, outcome: PostOutcome | None) -> None:
        self.posts_seen += 1
        if outcome == PostOutcome.ACCEPTED:
            self.accepted_posts += 1
        elif outcome == PostOutcome.REJECTED:
            self.rejected_posts += 1

    def record_post_failure(self) -> None:
        self.posts_seen += 1
        self.failed_posts += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "run": self.run,
            "duration_seconds": round((datetime.now() - self.start_time).total_seconds(), 2),
            "posts_seen": self.posts_seen,
            "duplicate_posts": self.duplicate_posts,
            "accepted_posts": self.accepted_posts,
            "rejected_posts": self.rejected_posts,
            "failed_posts": self.failed_posts,
            "ocr_failures": self.ocr_failures,
            "failed_organizers": self.failed_organizers,
        }


class InstagramIngestionService:
    """
    Orchestrates Instagram event ingestion.

    Collaborators are injectable so runs can be driven with fakes; the
    defaults talk to the real Graph API, Vision, OpenAI and Postgres.
    """

    def __init__(
        self,
        repository=IngestionRepository,
        post_source: InstagramClient | None = None,
        text_extractor: VisionTextExtractor | None = None,
        inference_client: OpenAIInferenceClient | None = None,
        sources_loader: Callable[[], list[InstagramSource]] = load_instagram_sources,
        max_concurrency: int | None = None,
        unit_timeout_seconds: float | None = None,
    ):
        self.repository = repository
        self._owns_post_source = post_source is None
        self.post_source = post_source or InstagramClient()
        self.text_extractor = text_extractor or VisionTextExtractor()
        self.inference_client = inference_client or OpenAIInferenceClient()
        self.sources_loader = sources_loader
        self.max_concurrency = max_concurrency or settings.INGESTION_MAX_CONCURRENCY
        self.unit_timeout_seconds = (
            unit_timeout_seconds
            if unit_timeout_seconds is not None
            else settings.INGESTION_UNIT_TIMEOUT_SECONDS
        )

    async def close(self) -> None:
        if self._owns_post_source:
            await self.post_source.close()

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def _run_bounded(
        self, units: Sequence[Callable[[], Awaitable[T]]]
    ) -> list[T | BaseException]:
        """
        Run units concurrently under the concurrency cap and optional
        per-unit timeout. Results keep input order; failures are returned
        in place rather than raised.
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(unit: Callable[[], Awaitable[T]]) -> T:
            async with semaphore:
                if self.unit_timeout_seconds:
                    return await asyncio.wait_for(unit(), timeout=self.unit_timeout_seconds)
                return await unit()

        return await asyncio.gather(*(run(unit) for unit in units), return_exceptions=True)

    # ------------------------------------------------------------------
    # Per post
    # ------------------------------------------------------------------

    async def _extract_text(self, post: Post, metrics: IngestionMetrics) -> str | None:
        """OCR a post; a failed OCR means "no usable text", not a failed post."""
        try:
            ocr_text = await self.text_extractor.extract_text(post.media_urls)
        except TextExtractionError as e:
            metrics.ocr_failures += 1
            logger.warning(
                "OCR failed, continuing without image text",
                post_id=post.id,
                image_url=e.image_url,
                error=str(e),
            )
            return None

        if ocr_text is not None:
            await self.repository.record_ocr_text(post.id, ocr_text)
        return ocr_text

    async def extract_event_from_post(
        self, organizer: Organizer, post: Post, ocr_text: str | None
    ) -> tuple[PostOutcome, ExtractedEvent | None]:
        """
        Run inference on a stored post and persist the decision.

        Returns:
            (outcome, event). PENDING means inference produced nothing and
            the post stays open for the next fixup pass.

        Raises:
            MalformedInferenceOutput: If the generated JSON is unusable
        """
        generated = await self.inference_client.run_inference(organizer, post, ocr_text)
        if generated is None:
            return PostOutcome.PENDING, None

        result = sanitize(generated)
        event = to_extracted_event(result, post, organizer, settings.EVENT_SOURCE_TIMEZONE)

        if event is None:
            await self.repository.mark_post_complete(post.id, PostOutcome.REJECTED)
            logger.debug("Post is not an upcoming event", post_id=post.id, username=organizer.username)
            return PostOutcome.REJECTED, None

        created = await self.repository.create_event(event)
        await self.repository.mark_post_complete(post.id, PostOutcome.ACCEPTED)
        return PostOutcome.ACCEPTED, created or event

    async def handle_post(
        self, organizer: Organizer, api_post: ApiPost, metrics: IngestionMetrics
    ) -> ExtractedEvent | None:
        """
        Store a fetched post and, if it is new, extract its event.
        Never raises: failures are logged and counted.
        """
        try:
            post = await self.repository.create_post_if_absent(
                organizer, api_post, media_urls_for_post(api_post)
            )
            if post is None:
                metrics.duplicate_posts += 1
                return None

            ocr_text = await self._extract_text(post, metrics)
            outcome, event = await self.extract_event_from_post(organizer, post, ocr_text)

        except Exception as e:
            metrics.record_post_failure()
            logger.error(
                "Error processing post",
                post_id=api_post.id,
                organizer=organizer.username,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        metrics.record_post(outcome)
        logger.info(
            "Post processed",
            post_id=api_post.id,
            organizer=organizer.username,
            outcome=outcome.value,
        )
        return event

    # ------------------------------------------------------------------
    # Per organizer
    # ------------------------------------------------------------------

    async def ingest_events_for_organizer(
        self, organizer: Organizer, metrics: IngestionMetrics
    ) -> list[ExtractedEvent]:
        """
        Fetch and process recent posts of one organizer.
        Any organizer-level failure (rate limit, fetch error) yields no events.
        """
        try:
            fetched = await self.post_source.fetch_posts(organizer.username)

            results = await self._run_bounded(
                [
                    lambda api_post=api_post: self.handle_post(organizer, api_post, metrics)
                    for api_post in fetched.posts
                ]
            )

            events: list[ExtractedEvent] = []
            for api_post, result in zip(fetched.posts, results):
                if isinstance(result, BaseException):
                    metrics.record_post_failure()
                    logger.error(
                        "Post processing did not finish",
                        post_id=api_post.id,
                        organizer=organizer.username,
                        error=str(result) or type(result).__name__,
                    )
                elif result is not None:
                    events.append(result)

            await self.repository.touch_organizer(organizer.id)
            return events

        except Exception as e:
            metrics.failed_organizers += 1
            logger.error(
                "Error ingesting for organizer",
                organizer=organizer.username,
                error=str(e),
                error_type=type(e).__name__,
            )
            return []

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def ingest_all_sources(self) -> list[dict[str, Any]]:
        """
        Ingest every configured source.

        Returns:
            One {"username", "event_count"} entry per configured source
        """
        logger.info("Starting Instagram data ingestion")
        metrics = IngestionMetrics("ingest_all")
        sources = self.sources_loader()

        upserts = await self._run_bounded(
            [
                lambda source=source: self.repository.upsert_organizer(source)
                for source in sources
            ]
        )

        counts: dict[str, int] = {source.username: 0 for source in sources}
        organizers: list[Organizer] = []
        for source, result in zip(sources, upserts):
            if isinstance(result, BaseException):
                metrics.failed_organizers += 1
                logger.error(
                    "Error loading organizer",
                    organizer=source.username,
                    error=str(result),
                    error_type=type(result).__name__,
                )
            else:
                organizers.append(result)

        # Least recently updated first, so new organizers (epoch) lead.
        organizers.sort(key=lambda organizer: organizer.last_updated)

        results = await self._run_bounded(
            [
                lambda organizer=organizer: self.ingest_events_for_organizer(organizer, metrics)
                for organizer in organizers
            ]
        )
        for organizer, result in zip(organizers, results):
            if isinstance(result, BaseException):
                metrics.failed_organizers += 1
                logger.error(
                    "Organizer ingestion did not finish",
                    organizer=organizer.username,
                    error=str(result) or type(result).__name__,
                )
            else:
                counts[organizer.username] = len(result)

        counts_by_source = [
            {"username": username, "event_count": count} for username, count in counts.items()
        ]
        logger.info(
            "Completed Instagram data ingestion",
            counts_by_source=counts_by_source,
            **metrics.to_dict(),
        )
        return counts_by_source

    async def ingest_source(self, username: str) -> int:
        """
        Ingest a single configured source.

        Returns:
            Number of events created

        Raises:
            UnknownSource: If ``username`` is not configured
        """
        logger.info("Starting Instagram data ingestion for user", username=username)
        metrics = IngestionMetrics("ingest_source")

        source = find_source(self.sources_loader(), username)
        if source is None:
            raise UnknownSource(username)

        organizer = await self.repository.upsert_organizer(source)
        events = await self.ingest_events_for_organizer(organizer, metrics)

        logger.info(
            "Completed Instagram data ingestion",
            username=username,
            event_count=len(events),
            **metrics.to_dict(),
        )
        return len(events)

    async def _reprocess_post(
        self, organizer: Organizer, post: Post, metrics: IngestionMetrics
    ) -> ExtractedEvent | None:
        try:
            outcome, event = await self.extract_event_from_post(organizer, post, post.ocr_text)
        except Exception as e:
            metrics.record_post_failure()
            logger.error(
                "Error reprocessing post",
                post_id=post.id,
                organizer=organizer.username,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        metrics.record_post(outcome)
        return event

    async def fixup_ingestion(self) -> dict[str, Any]:
        """
        Re-run inference for every post that never reached a decision.

        OCR is not repeated: the text recorded during ingestion is reused.
        Each pending post gets one attempt per invocation.
        """
        logger.info("Starting Instagram ingestion fixup")
        metrics = IngestionMetrics("fixup")

        pending = [
            (organizer, post)
            for organizer, posts in await self.repository.find_incomplete_posts()
            for post in posts
        ]

        results = await self._run_bounded(
            [
                lambda organizer=organizer, post=post: self._reprocess_post(
                    organizer, post, metrics
                )
                for organizer, post in pending
            ]
        )
        event_count = 0
        for (organizer, post), result in zip(pending, results):
            if isinstance(result, BaseException):
                metrics.record_post_failure()
                logger.error(
                    "Post reprocessing did not finish",
                    post_id=post.id,
                    organizer=organizer.username,
                    error=str(result) or type(result).__name__,
                )
            elif result is not None:
                event_count += 1

        summary = {"pending_posts": len(pending), "event_count": event_count, **metrics.to_dict()}
        logger.info("Completed Instagram ingestion fixup", **summary)
        return summary
