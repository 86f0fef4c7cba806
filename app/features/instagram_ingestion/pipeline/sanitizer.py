"""
Sanitizer and temporal normalizer for generated event candidates.

Turns the raw text returned by the language model into a typed
InferenceResult, completes omitted date/time fields, decides whether the
candidate is a real upcoming event, and builds absolute UTC instants from
wall-clock values in the organizer's timezone.
"""

import json
import re
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from app.config import settings
from app.features.instagram_ingestion.domain import (
    REQUIRED_KEYS,
    ExtractedEvent,
    InferenceResult,
    Organizer,
    Post,
)
from app.features.instagram_ingestion.errors import MalformedInferenceOutput
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__).bind(provider="instagram")

DEFAULT_EVENT_LENGTH_HOURS = 2

_LEADING_NOISE = re.compile(r"^[^{]*")
_TRAILING_NOISE = re.compile(r"[^}]*$")


def strip_to_json_object(generated: str) -> str:
    """Drop any prose the model wrapped around the JSON object."""
    return _TRAILING_NOISE.sub("", _LEADING_NOISE.sub("", generated, count=1), count=1)


def parse_inference(generated: str) -> InferenceResult:
    """
    Parse generated text into a fully typed InferenceResult.

    Raises:
        MalformedInferenceOutput: If the text is not a JSON object carrying
            all required keys with values of the expected types
    """
    try:
        payload = json.loads(strip_to_json_object(generated))
    except json.JSONDecodeError as e:
        raise MalformedInferenceOutput(f"Generated text is not valid JSON: {e}", generated) from e

    if not isinstance(payload, dict):
        raise MalformedInferenceOutput("Generated JSON is not an object", generated)

    missing = [key for key in REQUIRED_KEYS if key not in payload]
    if missing:
        raise MalformedInferenceOutput(
            f"JSON does not contain expected fields: {', '.join(missing)}", generated
        )

    try:
        return InferenceResult.model_validate(payload)
    except ValidationError as e:
        raise MalformedInferenceOutput(f"JSON fields have unexpected types: {e}", generated) from e


def complete_fields(result: InferenceResult, today: datetime | None = None) -> InferenceResult:
    """
    Fill omitted fields. Rules run in a fixed order and each may read the
    output of the ones before it.

    Args:
        result: Parsed candidate
        today: Reference time for the default year (defaults to now in the
            source timezone)
    """
    r = result.model_copy()

    if r.start_year is None:
        today = today or datetime.now(ZoneInfo(settings.EVENT_SOURCE_TIMEZONE))
        r.start_year = today.year
    if r.end_year is None:
        r.end_year = r.start_year
    if r.start_minute is None:
        r.start_minute = 0
    if r.end_minute is None:
        r.end_minute = 0
    # December to January crosses into the next year.
    if r.start_month == 12 and r.end_month == 1:
        r.end_year = r.start_year + 1
    if r.end_month is None:
        r.end_month = r.start_month
    if r.end_day is None:
        r.end_day = r.start_day
    if r.end_hour_military_time is None and r.start_hour_military_time is not None:
        r.end_hour_military_time = r.start_hour_military_time + DEFAULT_EVENT_LENGTH_HOURS
        if r.end_hour_military_time > 23:
            r.end_hour_military_time -= 24
            if r.end_day is not None:
                r.end_day += 1

    return r


def is_accepted(result: InferenceResult) -> bool:
    """True only for a confirmed, upcoming event with a known start hour."""
    return (
        result.is_event is True
        and result.has_start_hour_in_post is True
        and result.is_past_event is False
        and result.start_day is not None
        and result.end_day is not None
        and result.start_hour_military_time is not None
        and result.end_hour_military_time is not None
        and result.start_minute is not None
        and result.end_minute is not None
    )


def _wall_clock(
    zone: ZoneInfo, year: int | None, month: int | None, day: int | None, hour: int, minute: int
) -> datetime:
    try:
        return datetime(year, month, day, hour, minute, tzinfo=zone)
    except (TypeError, ValueError) as e:
        raise MalformedInferenceOutput(
            f"Cannot build a date from year={year} month={month} day={day} "
            f"hour={hour} minute={minute}: {e}"
        ) from e


def build_instants(
    result: InferenceResult, timezone: str | None = None
) -> tuple[datetime, datetime] | None:
    """
    Build UTC start and end instants from a completed, accepted candidate.

    The end is built on the first of the end month and then shifted forward
    to the inferred end day, so an end day past the end of the month rolls
    into the next one and an end month shorter than the start day (Jan 31 to
    Feb 1) still resolves.

    Returns None when the end still precedes the start after allowing one
    midnight crossing.

    Raises:
        MalformedInferenceOutput: If a component cannot form a valid date
    """
    zone = ZoneInfo(timezone or settings.EVENT_SOURCE_TIMEZONE)

    start = _wall_clock(
        zone,
        result.start_year,
        result.start_month,
        result.start_day,
        result.start_hour_military_time,
        result.start_minute,
    )
    end = _wall_clock(
        zone,
        result.end_year,
        result.end_month,
        1,
        result.end_hour_military_time,
        result.end_minute,
    )
    end = end + timedelta(days=result.end_day - 1)

    # Same-day end before start reads as an overnight event (e.g. 10pm-2am).
    if end < start and result.end_day == result.start_day:
        end = end + timedelta(days=1)
    if end < start:
        logger.warning(
            "Inferred end precedes start",
            start=start.isoformat(),
            end=end.isoformat(),
        )
        return None

    return start.astimezone(UTC), end.astimezone(UTC)


def sanitize(generated: str, today: datetime | None = None) -> InferenceResult:
    """Parse and complete generated text in one step."""
    return complete_fields(parse_inference(generated), today=today)


def _event_title(result: InferenceResult, organizer: Organizer) -> str:
    title = (result.title or "").strip()
    if not title:
        return organizer.username
    return f"{title} @ {organizer.username}"


def to_extracted_event(
    result: InferenceResult, post: Post, organizer: Organizer, timezone: str | None = None
) -> ExtractedEvent | None:
    """
    Apply the acceptance gate and build the event to persist.

    Returns:
        ExtractedEvent, or None when the candidate is not an upcoming event
    """
    if not is_accepted(result):
        return None

    instants = build_instants(result, timezone)
    if instants is None:
        return None

    start_at, end_at = instants
    return ExtractedEvent(
        post_id=post.id,
        organizer_id=organizer.id,
        title=_event_title(result, organizer),
        start_at=start_at,
        end_at=end_at,
        url=post.url,
    )
