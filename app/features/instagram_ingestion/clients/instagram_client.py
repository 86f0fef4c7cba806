"""
Instagram Graph API client for recent posts of a business account.

Uses business discovery on the configured business user to read the most
recent media of any public business/creator account by username.
"""

import httpx

from app.config import settings
from app.features.instagram_ingestion.domain import ApiPost, PostFetchResult
from app.features.instagram_ingestion.errors import SourceFetchFailed
from app.features.instagram_ingestion.pipeline.rate_limit import (
    USAGE_HEADER,
    ensure_within_rate_limit,
    parse_usage_header,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__).bind(provider="instagram")

MEDIA_FIELDS = "caption,permalink,timestamp,media_type,media_url,children{media_url,media_type}"


def business_discovery_fields(username: str, limit: int) -> str:
    return f"business_discovery.username({username}){{media.limit({limit}){{{MEDIA_FIELDS}}}}}"


def media_urls_for_post(post: ApiPost) -> list[str] | None:
    """
    Image URLs worth running OCR on, or None when the post has none.
    """
    if post.media_type == "IMAGE":
        # May be omitted for legal reasons.
        return [post.media_url] if post.media_url else None

    if post.media_type == "CAROUSEL_ALBUM":
        children = post.children.data if post.children else []
        return [child.media_url for child in children if child.media_url]

    if post.media_type == "VIDEO":
        # thumbnail_url is not readable through business discovery.
        return None

    logger.error("Unknown media type", media_type=post.media_type, post_id=post.id)
    return None


class InstagramClient:
    """
    Fetches recent posts and the app usage signal for an organizer.

    One request per organizer; the usage header is checked before the body
    so a throttled app stops before doing any further work.
    """

    def __init__(self, http_client: httpx.AsyncClient | None = None):
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.INSTAGRAM_REQUEST_TIMEOUT_SECONDS)
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _request_params(self, username: str) -> dict[str, str]:
        if not settings.INSTAGRAM_BUSINESS_USER_ID:
            raise SourceFetchFailed("INSTAGRAM_BUSINESS_USER_ID not configured")
        if not settings.INSTAGRAM_USER_ACCESS_TOKEN:
            raise SourceFetchFailed("INSTAGRAM_USER_ACCESS_TOKEN not configured")

        return {
            "fields": business_discovery_fields(username, settings.INSTAGRAM_MEDIA_LIMIT),
            "access_token": settings.INSTAGRAM_USER_ACCESS_TOKEN,
        }

    async def fetch_posts(self, username: str) -> PostFetchResult:
        """
        Fetch the most recent posts for ``username``.

        Raises:
            RateLimited: If the usage signal says to stop
            SourceFetchFailed: On transport errors, error bodies, non-2xx
                responses or bodies that do not match the expected shape
        """
        params = self._request_params(username)

        try:
            response = await self._client.get(settings.instagram_graph_url(), params=params)
        except httpx.RequestError as e:
            raise SourceFetchFailed(f"Instagram request failed: {e}") from e

        try:
            usage = parse_usage_header(response.headers.get(USAGE_HEADER))
        except ValueError as e:
            raise SourceFetchFailed(f"Unreadable {USAGE_HEADER} header: {e}") from e

        ensure_within_rate_limit(usage, username)

        try:
            body = response.json()
        except ValueError as e:
            raise SourceFetchFailed(
                f"Instagram returned a non-JSON body (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from e

        if isinstance(body, dict) and body.get("error"):
            error = body["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise SourceFetchFailed(message or "Unknown Instagram API error", response.status_code)

        if not response.is_success:
            raise SourceFetchFailed(
                f"Instagram API error (HTTP {response.status_code})",
                status_code=response.status_code,
            )

        try:
            raw_posts = body["business_discovery"]["media"]["data"]
            posts = [ApiPost.model_validate(raw) for raw in raw_posts]
        except (KeyError, TypeError, ValueError) as e:
            raise SourceFetchFailed(f"Unexpected Instagram response shape: {e}") from e

        logger.debug("Fetched Instagram posts", username=username, post_count=len(posts))
        return PostFetchResult(posts=posts, usage=usage)
