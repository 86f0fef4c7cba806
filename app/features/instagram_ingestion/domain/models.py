"""
Domain models for Instagram event ingestion.

The dataclasses mirror the three persisted tables; repositories map rows
into them and the orchestrator passes them between pipeline stages.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class PostOutcome(StrEnum):
    """Terminal state recorded on a post once an inference decision exists."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(slots=True)
class Organizer:
    """Represents an instagram_organizers row."""

    id: int
    username: str
    city: str
    context_clues: str
    last_updated: datetime


@dataclass(slots=True)
class Post:
    """Represents an instagram_posts row."""

    id: str  # external Instagram media id
    organizer_id: int
    url: str
    caption: str | None
    post_date: datetime
    media_urls_json: str
    ocr_text: str | None = None
    outcome: PostOutcome = PostOutcome.PENDING
    completed_at: datetime | None = None

    @property
    def media_urls(self) -> list[str] | None:
        return json.loads(self.media_urls_json)


@dataclass(slots=True)
class ExtractedEvent:
    """A confirmed event derived from a post. ``id`` is None until persisted."""

    post_id: str
    organizer_id: int
    title: str
    start_at: datetime
    end_at: datetime
    url: str
    id: int | None = None
