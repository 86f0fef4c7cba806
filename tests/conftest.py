import json
from datetime import UTC, datetime

import pytest

from app.features.instagram_ingestion.domain import (
    ApiPost,
    AppUsage,
    ExtractedEvent,
    InstagramSource,
    Organizer,
    Post,
    PostFetchResult,
    PostOutcome,
)
from app.features.instagram_ingestion.errors import RateLimited
from app.features.instagram_ingestion.pipeline.rate_limit import ensure_within_rate_limit
from app.features.instagram_ingestion.repository.ingestion_repository import EPOCH


class FakeRepository:
    """In-memory store enforcing the same uniqueness rules as the tables."""

    def __init__(self):
        self.organizers: dict[str, Organizer] = {}
        self.posts: dict[str, Post] = {}
        self.events: dict[str, ExtractedEvent] = {}
        self.touched: list[int] = []

    async def upsert_organizer(self, source: InstagramSource) -> Organizer:
        if source.username not in self.organizers:
            self.organizers[source.username] = Organizer(
                id=len(self.organizers) + 1,
                username=source.username,
                city=source.city,
                context_clues=" ".join(source.context_clues),
                last_updated=EPOCH,
            )
        return self.organizers[source.username]

    async def create_post_if_absent(self, organizer, api_post, media_urls):
        if api_post.id in self.posts:
            return None
        post = Post(
            id=api_post.id,
            organizer_id=organizer.id,
            url=api_post.permalink,
            caption=api_post.caption,
            post_date=api_post.timestamp,
            media_urls_json=json.dumps(media_urls),
        )
        self.posts[post.id] = post
        return post

    async def record_ocr_text(self, post_id, ocr_text):
        self.posts[post_id].ocr_text = ocr_text

    async def create_event(self, event):
        if event.post_id in self.events:
            return None
        event.id = len(self.events) + 1
        self.events[event.post_id] = event
        return event

    async def mark_post_complete(self, post_id, outcome):
        post = self.posts[post_id]
        if post.completed_at is not None:
            return False
        post.completed_at = datetime.now(UTC)
        post.outcome = outcome
        return True

    async def touch_organizer(self, organizer_id):
        self.touched.append(organizer_id)

    async def find_incomplete_posts(self):
        grouped = []
        for organizer in self.organizers.values():
            pending = [
                post
                for post in self.posts.values()
                if post.organizer_id == organizer.id and post.completed_at is None
            ]
            if pending:
                grouped.append((organizer, pending))
        return grouped


class FakePostSource:
    """Returns canned posts per username, honoring the usage signal."""

    def __init__(self):
        self.posts: dict[str, list[ApiPost]] = {}
        self.usage: dict[str, AppUsage] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []

    async def fetch_posts(self, username: str) -> PostFetchResult:
        self.calls.append(username)
        if username in self.errors:
            raise self.errors[username]
        usage = self.usage.get(username)
        ensure_within_rate_limit(usage, username)
        return PostFetchResult(posts=self.posts.get(username, []), usage=usage)

    async def close(self):
        return None


class FakeTextExtractor:
    def __init__(self, text: str | None = None, error: Exception | None = None):
        self.text = text
        self.error = error
        self.calls: list[list[str] | None] = []

    async def extract_text(self, media_urls):
        self.calls.append(media_urls)
        if self.error:
            raise self.error
        if media_urls is None:
            return None
        return self.text


class FakeInferenceClient:
    """Returns generated text per post id, or a default for every post."""

    def __init__(self, default: str | None = None):
        self.default = default
        self.by_post: dict[str, str | None | Exception] = {}
        self.calls: list[tuple[str, str | None]] = []

    async def run_inference(self, organizer, post, ocr_text):
        self.calls.append((post.id, ocr_text))
        response = self.by_post.get(post.id, self.default)
        if isinstance(response, Exception):
            raise response
        return response


def make_api_post(post_id: str = "post-1", caption: str = "Join us Friday!", **overrides) -> ApiPost:
    payload = {
        "id": post_id,
        "permalink": f"https://www.instagram.com/p/{post_id}/",
        "caption": caption,
        "timestamp": "2023-12-26T18:00:00+0000",
        "media_type": "IMAGE",
        "media_url": f"https://cdn.example.com/{post_id}.jpg",
    }
    payload.update(overrides)
    return ApiPost.model_validate(payload)


def inference_json(**overrides) -> str:
    payload = {
        "isEvent": True,
        "title": "Live Music",
        "startHourMilitaryTime": 20,
        "endHourMilitaryTime": 22,
        "startMinute": 0,
        "endMinute": 0,
        "startDay": 29,
        "endDay": 29,
        "startMonth": 12,
        "endMonth": 12,
        "startYear": 2023,
        "endYear": None,
        "hasStartHourInPost": True,
        "isPastEvent": False,
    }
    payload.update(overrides)
    return json.dumps(payload)


@pytest.fixture
def fake_repository():
    return FakeRepository()


@pytest.fixture
def fake_post_source():
    return FakePostSource()


@pytest.fixture
def rate_limited_error():
    return RateLimited(100, 10, 10)


@pytest.fixture
def organizer():
    return Organizer(
        id=1,
        username="demo_user",
        city="Santa Cruz",
        context_clues="Live music venue",
        last_updated=EPOCH,
    )


@pytest.fixture
def stored_post():
    return Post(
        id="post-1",
        organizer_id=1,
        url="https://www.instagram.com/p/post-1/",
        caption="Join us Friday!",
        post_date=datetime(2023, 12, 26, 18, 0, tzinfo=UTC),
        media_urls_json='["https://cdn.example.com/post-1.jpg"]',
        outcome=PostOutcome.PENDING,
    )


@pytest.fixture
def api_post_factory():
    return make_api_post


@pytest.fixture
def inference_json_factory():
    return inference_json


@pytest.fixture
def make_service(fake_repository, fake_post_source):
    """Build an orchestrator wired to in-memory fakes."""
    from app.features.instagram_ingestion.services import InstagramIngestionService

    def _make(sources=None, text_extractor=None, inference_client=None, **kwargs):
        return InstagramIngestionService(
            repository=fake_repository,
            post_source=fake_post_source,
            text_extractor=text_extractor or FakeTextExtractor(),
            inference_client=inference_client or FakeInferenceClient(),
            sources_loader=lambda: list(sources or []),
            **kwargs,
        )

    return _make


@pytest.fixture
def fake_text_extractor_cls():
    return FakeTextExtractor


@pytest.fixture
def fake_inference_client_cls():
    return FakeInferenceClient
