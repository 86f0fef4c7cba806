import asyncio
from datetime import UTC, datetime

import pytest

from app.features.instagram_ingestion.domain import AppUsage, InstagramSource, Organizer, PostOutcome
from app.features.instagram_ingestion.errors import (
    MalformedInferenceOutput,
    SourceFetchFailed,
    TextExtractionError,
    UnknownSource,
)
from app.features.instagram_ingestion.services import IngestionMetrics

DEMO_SOURCE = InstagramSource(username="demo_user", city="Santa Cruz", context_clues=["Live music venue"])
OTHER_SOURCE = InstagramSource(username="other_venue", city="Santa Cruz")


@pytest.mark.asyncio
async def test_demo_post_becomes_one_event(
    make_service, fake_repository, fake_post_source, api_post_factory, inference_json_factory,
    fake_inference_client_cls, fake_text_extractor_cls,
):
    fake_post_source.posts["demo_user"] = [api_post_factory("post-1")]
    service = make_service(
        sources=[DEMO_SOURCE],
        text_extractor=fake_text_extractor_cls(text="Live Music 8pm-10pm Friday Dec 29"),
        inference_client=fake_inference_client_cls(default=inference_json_factory()),
    )

    counts = await service.ingest_all_sources()

    assert counts == [{"username": "demo_user", "event_count": 1}]
    event = fake_repository.events["post-1"]
    assert event.title == "Live Music @ demo_user"
    assert event.start_at == datetime(2023, 12, 30, 4, 0, tzinfo=UTC)
    assert event.end_at == datetime(2023, 12, 30, 6, 0, tzinfo=UTC)
    assert event.url == "https://www.instagram.com/p/post-1/"

    post = fake_repository.posts["post-1"]
    assert post.outcome == PostOutcome.ACCEPTED
    assert post.completed_at is not None
    assert post.ocr_text == "Live Music 8pm-10pm Friday Dec 29"
    assert fake_repository.touched == [fake_repository.organizers["demo_user"].id]


@pytest.mark.asyncio
async def test_replayed_posts_are_not_processed_twice(
    make_service, fake_repository, fake_post_source, api_post_factory, inference_json_factory,
    fake_inference_client_cls,
):
    fake_post_source.posts["demo_user"] = [api_post_factory("post-1")]
    inference = fake_inference_client_cls(default=inference_json_factory())
    service = make_service(sources=[DEMO_SOURCE], inference_client=inference)

    await service.ingest_all_sources()
    counts = await service.ingest_all_sources()

    assert counts == [{"username": "demo_user", "event_count": 0}]
    assert len(fake_repository.events) == 1
    assert len(inference.calls) == 1


@pytest.mark.asyncio
async def test_rate_limited_organizer_does_not_stop_others(
    make_service, fake_repository, fake_post_source, api_post_factory, inference_json_factory,
    fake_inference_client_cls,
):
    fake_post_source.usage["demo_user"] = AppUsage(call_count=100, total_cputime=10, total_time=10)
    fake_post_source.posts["demo_user"] = [api_post_factory("post-1")]
    fake_post_source.posts["other_venue"] = [api_post_factory("post-2")]
    service = make_service(
        sources=[DEMO_SOURCE, OTHER_SOURCE],
        inference_client=fake_inference_client_cls(default=inference_json_factory()),
    )

    counts = await service.ingest_all_sources()

    assert counts == [
        {"username": "demo_user", "event_count": 0},
        {"username": "other_venue", "event_count": 1},
    ]
    assert sorted(fake_post_source.calls) == ["demo_user", "other_venue"]
    assert "post-1" not in fake_repository.posts
    assert fake_repository.touched == [fake_repository.organizers["other_venue"].id]


@pytest.mark.asyncio
async def test_fetch_failure_yields_zero_events(make_service, fake_post_source):
    fake_post_source.errors["demo_user"] = SourceFetchFailed("Unsupported get request", 400)
    service = make_service(sources=[DEMO_SOURCE])

    assert await service.ingest_all_sources() == [{"username": "demo_user", "event_count": 0}]


@pytest.mark.asyncio
async def test_ocr_failure_still_runs_inference(
    make_service, fake_repository, fake_post_source, api_post_factory, inference_json_factory,
    fake_inference_client_cls, fake_text_extractor_cls,
):
    fake_post_source.posts["demo_user"] = [api_post_factory("post-1")]
    inference = fake_inference_client_cls(default=inference_json_factory())
    service = make_service(
        sources=[DEMO_SOURCE],
        text_extractor=fake_text_extractor_cls(
            error=TextExtractionError("Vision API error", image_url="https://cdn.example.com/post-1.jpg")
        ),
        inference_client=inference,
    )

    counts = await service.ingest_all_sources()

    assert counts == [{"username": "demo_user", "event_count": 1}]
    assert inference.calls == [("post-1", None)]
    assert fake_repository.posts["post-1"].ocr_text is None


@pytest.mark.asyncio
async def test_video_post_skips_ocr(
    make_service, fake_post_source, api_post_factory, inference_json_factory,
    fake_inference_client_cls, fake_text_extractor_cls,
):
    fake_post_source.posts["demo_user"] = [api_post_factory("post-1", media_type="VIDEO")]
    extractor = fake_text_extractor_cls(text="should not be used")
    inference = fake_inference_client_cls(default=inference_json_factory())
    service = make_service(sources=[DEMO_SOURCE], text_extractor=extractor, inference_client=inference)

    await service.ingest_all_sources()

    assert extractor.calls == [None]
    assert inference.calls == [("post-1", None)]


@pytest.mark.asyncio
async def test_rejected_post_is_completed_without_event(
    make_service, fake_repository, fake_post_source, api_post_factory, inference_json_factory,
    fake_inference_client_cls,
):
    fake_post_source.posts["demo_user"] = [api_post_factory("post-1")]
    service = make_service(
        sources=[DEMO_SOURCE],
        inference_client=fake_inference_client_cls(default=inference_json_factory(isEvent=False)),
    )

    counts = await service.ingest_all_sources()

    assert counts == [{"username": "demo_user", "event_count": 0}]
    assert fake_repository.events == {}
    post = fake_repository.posts["post-1"]
    assert post.outcome == PostOutcome.REJECTED
    assert post.completed_at is not None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        None,
        "I could not find an event in this post.",
        RuntimeError("upstream timeout"),
    ],
)
async def test_failed_inference_leaves_post_pending(
    response, make_service, fake_repository, fake_post_source, api_post_factory,
    fake_inference_client_cls,
):
    fake_post_source.posts["demo_user"] = [api_post_factory("post-1")]
    inference = fake_inference_client_cls()
    inference.by_post["post-1"] = response
    service = make_service(sources=[DEMO_SOURCE], inference_client=inference)

    counts = await service.ingest_all_sources()

    assert counts == [{"username": "demo_user", "event_count": 0}]
    post = fake_repository.posts["post-1"]
    assert post.completed_at is None
    assert post.outcome == PostOutcome.PENDING


@pytest.mark.asyncio
async def test_one_bad_post_does_not_affect_siblings(
    make_service, fake_repository, fake_post_source, api_post_factory, inference_json_factory,
    fake_inference_client_cls,
):
    fake_post_source.posts["demo_user"] = [api_post_factory("post-1"), api_post_factory("post-2")]
    inference = fake_inference_client_cls(default=inference_json_factory())
    inference.by_post["post-1"] = "{broken"
    service = make_service(sources=[DEMO_SOURCE], inference_client=inference)

    counts = await service.ingest_all_sources()

    assert counts == [{"username": "demo_user", "event_count": 1}]
    assert list(fake_repository.events) == ["post-2"]


@pytest.mark.asyncio
async def test_extract_event_from_post_raises_on_malformed_output(
    make_service, organizer, stored_post, fake_repository, fake_inference_client_cls,
):
    fake_repository.posts[stored_post.id] = stored_post
    service = make_service(inference_client=fake_inference_client_cls(default='{"isEvent": true}'))

    with pytest.raises(MalformedInferenceOutput):
        await service.extract_event_from_post(organizer, stored_post, None)

    assert stored_post.completed_at is None


@pytest.mark.asyncio
async def test_organizers_are_processed_least_recently_updated_first(
    make_service, fake_repository, fake_post_source,
):
    fake_repository.organizers["other_venue"] = Organizer(
        id=7,
        username="other_venue",
        city="Santa Cruz",
        context_clues="",
        last_updated=datetime(2024, 1, 1, tzinfo=UTC),
    )
    service = make_service(sources=[OTHER_SOURCE, DEMO_SOURCE])

    await service.ingest_all_sources()

    assert fake_post_source.calls == ["demo_user", "other_venue"]


@pytest.mark.asyncio
async def test_ingest_source_returns_event_count(
    make_service, fake_post_source, api_post_factory, inference_json_factory, fake_inference_client_cls,
):
    fake_post_source.posts["demo_user"] = [api_post_factory("post-1")]
    service = make_service(
        sources=[DEMO_SOURCE, OTHER_SOURCE],
        inference_client=fake_inference_client_cls(default=inference_json_factory()),
    )

    assert await service.ingest_source("demo_user") == 1
    assert fake_post_source.calls == ["demo_user"]


@pytest.mark.asyncio
async def test_ingest_source_unknown_username(make_service, fake_post_source):
    service = make_service(sources=[DEMO_SOURCE])

    with pytest.raises(UnknownSource) as exc_info:
        await service.ingest_source("nobody")

    assert str(exc_info.value) == 'No Instagram account "nobody"'
    assert fake_post_source.calls == []


@pytest.mark.asyncio
async def test_fixup_reuses_stored_text_and_skips_completed_posts(
    make_service, fake_repository, fake_post_source, api_post_factory, inference_json_factory,
    fake_inference_client_cls, fake_text_extractor_cls,
):
    fake_post_source.posts["demo_user"] = [api_post_factory("post-1"), api_post_factory("post-2")]
    extractor = fake_text_extractor_cls(text="Live Music 8pm-10pm Friday Dec 29")
    inference = fake_inference_client_cls(default=inference_json_factory(isEvent=False))
    inference.by_post["post-1"] = None
    service = make_service(sources=[DEMO_SOURCE], text_extractor=extractor, inference_client=inference)

    await service.ingest_all_sources()
    assert fake_repository.posts["post-1"].completed_at is None
    assert fake_repository.posts["post-2"].outcome == PostOutcome.REJECTED

    inference.calls.clear()
    extractor.calls.clear()
    inference.by_post["post-1"] = inference_json_factory()

    summary = await service.fixup_ingestion()

    assert summary["pending_posts"] == 1
    assert summary["event_count"] == 1
    assert inference.calls == [("post-1", "Live Music 8pm-10pm Friday Dec 29")]
    assert extractor.calls == []
    assert fake_repository.posts["post-1"].outcome == PostOutcome.ACCEPTED
    assert fake_post_source.calls == ["demo_user"]


@pytest.mark.asyncio
async def test_fixup_attempts_each_pending_post_once(
    make_service, fake_repository, fake_post_source, api_post_factory, fake_inference_client_cls,
):
    fake_post_source.posts["demo_user"] = [api_post_factory("post-1")]
    inference = fake_inference_client_cls(default=None)
    service = make_service(sources=[DEMO_SOURCE], inference_client=inference)
    await service.ingest_all_sources()
    inference.calls.clear()

    summary = await service.fixup_ingestion()

    assert summary["pending_posts"] == 1
    assert summary["event_count"] == 0
    assert inference.calls == [("post-1", None)]
    assert fake_repository.posts["post-1"].completed_at is None


@pytest.mark.asyncio
async def test_fixup_with_nothing_pending(make_service):
    summary = await make_service().fixup_ingestion()

    assert summary["pending_posts"] == 0
    assert summary["event_count"] == 0


@pytest.mark.asyncio
async def test_slow_organizer_times_out_without_blocking_others(
    make_service, fake_repository, fake_post_source, api_post_factory, inference_json_factory,
    fake_inference_client_cls,
):
    class SlowForDemo(fake_inference_client_cls):
        async def run_inference(self, organizer, post, ocr_text):
            if organizer.username == "demo_user":
                await asyncio.sleep(5)
            return await super().run_inference(organizer, post, ocr_text)

    fake_post_source.posts["demo_user"] = [api_post_factory("post-1")]
    fake_post_source.posts["other_venue"] = [api_post_factory("post-2")]
    service = make_service(
        sources=[DEMO_SOURCE, OTHER_SOURCE],
        inference_client=SlowForDemo(default=inference_json_factory()),
        unit_timeout_seconds=0.2,
    )

    counts = await service.ingest_all_sources()

    assert counts == [
        {"username": "demo_user", "event_count": 0},
        {"username": "other_venue", "event_count": 1},
    ]
    assert fake_repository.posts["post-1"].completed_at is None


@pytest.mark.asyncio
async def test_run_bounded_respects_concurrency_cap(make_service):
    service = make_service(max_concurrency=2)
    active = 0
    peak = 0

    async def unit(value):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return value

    results = await service._run_bounded([lambda value=value: unit(value) for value in range(6)])

    assert results == list(range(6))
    assert peak == 2


@pytest.mark.asyncio
async def test_run_bounded_returns_failures_in_place(make_service):
    service = make_service()

    async def ok():
        return "ok"

    async def boom():
        raise ValueError("boom")

    results = await service._run_bounded([ok, boom, ok])

    assert results[0] == "ok"
    assert isinstance(results[1], ValueError)
    assert results[2] == "ok"


def test_metrics_count_outcomes():
    metrics = IngestionMetrics("ingest_all")
    metrics.record_post(PostOutcome.ACCEPTED)
    metrics.record_post(PostOutcome.REJECTED)
    metrics.record_post(PostOutcome.PENDING)
    metrics.record_post_failure()

    summary = metrics.to_dict()
    assert summary["posts_seen"] == 4
    assert summary["accepted_posts"] == 1
    assert summary["rejected_posts"] == 1
    assert summary["failed_posts"] == 1
