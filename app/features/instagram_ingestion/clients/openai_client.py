"""
OpenAI inference for Instagram posts.
Builds one prompt from the organizer, the post and its OCR text and asks
the model for a JSON event candidate.
"""

from openai import AsyncOpenAI

from app.config import settings
from app.features.instagram_ingestion.domain import Organizer, Post
from app.features.instagram_ingestion.errors import InferenceServiceError
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__).bind(provider="instagram")

RESPONSE_SHAPE = """{
  "isEvent": boolean,
  "title": string | null,
  "startHourMilitaryTime": number | null,
  "endHourMilitaryTime": number | null,
  "startMinute": number | null,
  "endMinute": number | null,
  "startDay": number | null,
  "endDay": number | null,
  "startMonth": number | null,
  "endMonth": number | null,
  "startYear": number | null,
  "endYear": number | null,
  "hasStartHourInPost": boolean,
  "isPastEvent": boolean
}"""


def build_prompt(organizer: Organizer, post: Post, ocr_text: str | None) -> str:
    """
    Prompt for the first (and only) round of inference on a post.
    """
    image_text = ocr_text.strip() if ocr_text and ocr_text.strip() else "(no text found in images)"
    caption = post.caption.strip() if post.caption else "(no caption)"
    posted_on = post.post_date.strftime("%A, %B %d, %Y")

    return f"""### Role
You read Instagram posts from venues and organizers in {organizer.city} and decide whether a post announces a specific upcoming event.

### Organizer
Instagram account: @{organizer.username}
City: {organizer.city}
Context: {organizer.context_clues or "(none)"}

### Post
Posted on: {posted_on}
Caption:
{caption}

Text found in the post images:
{image_text}

### Output Requirements
- Return ONLY a JSON object (no backticks, no prose) with exactly these keys:
{RESPONSE_SHAPE}
- Hours use a 24-hour clock in the organizer's local time.
- Use null for any value the post does not state; do not guess dates or times.
- "hasStartHourInPost" is true only if the post states when the event starts.
- "isPastEvent" is true if the event happened before the post date.
- If the post describes several events, describe only the first upcoming one.
- "title" is a short name for the event without the account name."""


class OpenAIInferenceClient:
    """Single-call chat completion client returning the raw generated text."""

    def __init__(self, client: AsyncOpenAI | None = None):
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not settings.OPENAI_API_KEY:
                raise InferenceServiceError("OPENAI_API_KEY not configured in settings")
            self._client = AsyncOpenAI(
                api_key=settings.OPENAI_API_KEY,
                timeout=settings.OPENAI_TIMEOUT_SECONDS,
            )
        return self._client

    async def run_inference(
        self, organizer: Organizer, post: Post, ocr_text: str | None
    ) -> str | None:
        """
        Ask the model for an event candidate.

        Returns:
            Generated message content, or None if the model returned nothing
        """
        prompt = build_prompt(organizer, post, ocr_text)
        logger.debug("Generated prompt for first round of inference", post_id=post.id, prompt=prompt)

        response = await self._get_client().chat.completions.create(
            model=settings.OPENAI_MODEL,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=settings.OPENAI_MAX_TOKENS,
            temperature=settings.OPENAI_TEMPERATURE,
        )

        if not response.choices or not response.choices[0].message.content:
            logger.info("Inference returned no content", post_id=post.id)
            return None

        content = response.choices[0].message.content
        logger.debug(
            "Inference completed",
            post_id=post.id,
            response_length=len(content),
            usage_tokens=response.usage.total_tokens if response.usage else 0,
        )
        return content
