"""
Persistence layer for Instagram ingestion.

Every write is a single statement; unique constraints on the organizer
username, the post id and the event post_id make replays and concurrent
runs idempotent without application-level locking.
"""

import json
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TypeVar

import psycopg

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from app.features.instagram_ingestion.domain import (
    ApiPost,
    ExtractedEvent,
    InstagramSource,
    Organizer,
    Post,
    PostOutcome,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__).bind(provider="instagram")

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

T = TypeVar("T", Post, ExtractedEvent)


class IngestionRepositoryError(DatabaseError):
    """More specific exception for repository failures."""


class IngestionRepository:
    """Persistence helpers backing the ingestion orchestrator."""

    ORGANIZER_COLUMNS = "id, username, city, context_clues, last_updated"
    POST_COLUMNS = """
        id, organizer_id, url, caption, post_date, media_urls_json,
        ocr_text, outcome, completed_at
    """
    EVENT_COLUMNS = "id, post_id, organizer_id, title, start_at, end_at, url"

    @classmethod
    def _row_to_organizer(cls, row: dict) -> Organizer:
        return Organizer(
            id=row["id"],
            username=row["username"],
            city=row["city"],
            context_clues=row["context_clues"],
            last_updated=row["last_updated"],
        )

    @classmethod
    def _row_to_post(cls, row: dict) -> Post:
        return Post(
            id=row["id"],
            organizer_id=row["organizer_id"],
            url=row["url"],
            caption=row.get("caption"),
            post_date=row["post_date"],
            media_urls_json=row["media_urls_json"],
            ocr_text=row.get("ocr_text"),
            outcome=PostOutcome(row.get("outcome") or PostOutcome.PENDING),
            completed_at=row.get("completed_at"),
        )

    @classmethod
    def _row_to_event(cls, row: dict) -> ExtractedEvent:
        return ExtractedEvent(
            id=row["id"],
            post_id=row["post_id"],
            organizer_id=row["organizer_id"],
            title=row["title"],
            start_at=row["start_at"],
            end_at=row["end_at"],
            url=row["url"],
        )

    @classmethod
    async def upsert_organizer(cls, source: InstagramSource) -> Organizer:
        """
        Return the organizer for ``source.username``, creating it if new.

        The no-op DO UPDATE makes RETURNING yield the existing row, so two
        concurrent runs both get the same record in one round trip.
        """

        query = f"""
            INSERT INTO instagram_organizers (username, city, context_clues, last_updated)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (username)
            DO UPDATE SET username = EXCLUDED.username
            RETURNING {cls.ORGANIZER_COLUMNS}
        """

        row = await fetch_one(
            query,
            (source.username, source.city, " ".join(source.context_clues), EPOCH),
        )
        if not row:
            raise IngestionRepositoryError(
                "Failed to upsert Instagram organizer", operation="upsert_organizer"
            )
        return cls._row_to_organizer(row)

    @classmethod
    async def create_post_if_absent(
        cls, organizer: Organizer, api_post: ApiPost, media_urls: list[str] | None
    ) -> Post | None:
        """
        Store a post from the Graph API.

        Returns:
            The created post, or None if a post with this id already exists
        """

        query = f"""
            INSERT INTO instagram_posts (
                id, organizer_id, url, caption, post_date, media_urls_json
            )
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO NOTHING
            RETURNING {cls.POST_COLUMNS}
        """

        try:
            row = await fetch_one(
                query,
                (
                    api_post.id,
                    organizer.id,
                    api_post.permalink,
                    api_post.caption,
                    api_post.timestamp,
                    json.dumps(media_urls),
                ),
            )
        except psycopg.errors.UniqueViolation:
            row = None

        if not row:
            logger.debug("Post already known", post_id=api_post.id, username=organizer.username)
            return None

        return cls._row_to_post(row)

    @classmethod
    async def record_ocr_text(cls, post_id: str, ocr_text: str | None) -> None:
        await execute_query(
            "UPDATE instagram_posts SET ocr_text = %s WHERE id = %s",
            (ocr_text, post_id),
        )

    @classmethod
    async def create_event(cls, event: ExtractedEvent) -> ExtractedEvent | None:
        """
        Insert an extracted event. A post yields at most one event, so a
        second insert for the same post returns None.
        """

        query = f"""
            INSERT INTO instagram_events (post_id, organizer_id, title, start_at, end_at, url)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (post_id) DO NOTHING
            RETURNING {cls.EVENT_COLUMNS}
        """

        row = await fetch_one(
            query,
            (
                event.post_id,
                event.organizer_id,
                event.title,
                event.start_at,
                event.end_at,
                event.url,
            ),
        )
        if not row:
            logger.warning("Event already exists for post", post_id=event.post_id)
            return None

        logger.info(
            "Instagram event created",
            post_id=event.post_id,
            title=event.title,
            start_at=event.start_at.isoformat(),
        )
        return cls._row_to_event(row)

    @classmethod
    async def mark_post_complete(cls, post_id: str, outcome: PostOutcome) -> bool:
        """
        Record the inference decision. A completed post is never reopened,
        so the update only applies while completed_at is still null.
        """

        query = """
            UPDATE instagram_posts
            SET completed_at = NOW(),
                outcome = %s
            WHERE id = %s
              AND completed_at IS NULL
        """

        updated = await execute_query(query, (outcome.value, post_id))
        return updated > 0

    @classmethod
    async def touch_organizer(cls, organizer_id: int) -> None:
        await execute_query(
            "UPDATE instagram_organizers SET last_updated = NOW() WHERE id = %s",
            (organizer_id,),
        )

    @classmethod
    async def find_incomplete_posts(cls) -> list[tuple[Organizer, list[Post]]]:
        """
        Posts without a completion timestamp, grouped by organizer.
        Organizers with no pending posts are left out.
        """

        post_rows = await fetch_all(
            f"""
            SELECT {cls.POST_COLUMNS}
            FROM instagram_posts
            WHERE completed_at IS NULL
            ORDER BY post_date ASC
            """
        )
        if not post_rows:
            return []

        organizers = await cls._find_organizers({row["organizer_id"] for row in post_rows})
        return cls._group_by_organizer(organizers, (cls._row_to_post(row) for row in post_rows))

    @classmethod
    async def find_events(
        cls,
        ends_after: datetime | None = None,
        organizer_id: int | None = None,
    ) -> list[tuple[Organizer, list[ExtractedEvent]]]:
        """
        Stored events grouped by organizer, soonest first.

        Args:
            ends_after: Only events whose end is at or after this instant
                (pass ``datetime.now(UTC)`` for events still to come)
            organizer_id: Restrict to one organizer
        """

        conditions = []
        params: list = []
        if ends_after is not None:
            conditions.append("end_at >= %s")
            params.append(ends_after)
        if organizer_id is not None:
            conditions.append("organizer_id = %s")
            params.append(organizer_id)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        event_rows = await fetch_all(
            f"""
            SELECT {cls.EVENT_COLUMNS}
            FROM instagram_events
            {where}
            ORDER BY start_at ASC, id ASC
            """,
            tuple(params),
        )
        if not event_rows:
            return []

        organizers = await cls._find_organizers({row["organizer_id"] for row in event_rows})
        return cls._group_by_organizer(organizers, (cls._row_to_event(row) for row in event_rows))

    @classmethod
    async def _find_organizers(cls, organizer_ids: Iterable[int]) -> list[Organizer]:
        rows = await fetch_all(
            f"""
            SELECT {cls.ORGANIZER_COLUMNS}
            FROM instagram_organizers
            WHERE id = ANY(%s)
            ORDER BY username ASC
            """,
            (sorted(organizer_ids),),
        )
        return [cls._row_to_organizer(row) for row in rows]

    @staticmethod
    def _group_by_organizer(
        organizers: Iterable[Organizer], records: Iterable[T]
    ) -> list[tuple[Organizer, list[T]]]:
        """Attach posts or events to their organizer, keeping record order."""
        grouped: dict[int, tuple[Organizer, list[T]]] = {
            organizer.id: (organizer, []) for organizer in organizers
        }
        for record in records:
            if record.organizer_id in grouped:
                grouped[record.organizer_id][1].append(record)
        return [entry for entry in grouped.values() if entry[1]]

