"""
Rate-limit guard for the Instagram Graph API.

The Graph API reports app-level utilization (percent of quota) in the
X-App-Usage header. Any metric reaching 100 means further calls will be
throttled, so fetching for the current organizer stops.
"""

import json

from app.features.instagram_ingestion.domain import AppUsage
from app.features.instagram_ingestion.errors import RateLimited
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__).bind(provider="instagram")

USAGE_HEADER = "X-App-Usage"
USAGE_LIMIT_PERCENT = 100


def parse_usage_header(raw: str | None) -> AppUsage | None:
    """Parse the header value; an absent or empty header means no signal."""
    if not raw:
        return None
    return AppUsage.model_validate(json.loads(raw))


def should_halt(usage: AppUsage | None) -> bool:
    if usage is None:
        return False
    return (
        usage.call_count >= USAGE_LIMIT_PERCENT
        or usage.total_cputime >= USAGE_LIMIT_PERCENT
        or usage.total_time >= USAGE_LIMIT_PERCENT
    )


def ensure_within_rate_limit(usage: AppUsage | None, username: str) -> None:
    """
    Raise RateLimited when the usage signal says to stop fetching.

    Args:
        usage: Signal returned alongside the fetched posts, if any
        username: Organizer whose fetch reported the signal (for logging)

    Raises:
        RateLimited: If any utilization metric is at or above 100
    """
    if usage is None:
        return

    if should_halt(usage):
        raise RateLimited(usage.call_count, usage.total_cputime, usage.total_time)

    logger.debug("Current rate limit", app_usage=usage.model_dump(), username=username)
