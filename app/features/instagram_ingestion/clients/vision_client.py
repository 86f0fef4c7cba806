"""
Google Cloud Vision text extraction for post images.
"""

import asyncio

from google.cloud import vision
from google.oauth2 import service_account

from app.config import settings
from app.features.instagram_ingestion.errors import TextExtractionError
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__).bind(provider="instagram")

VISION_SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"


def _build_annotator() -> vision.ImageAnnotatorClient:
    """Build a Vision client from explicit key settings, else default credentials."""
    private_key = settings.vision_private_key()
    client_email = settings.GOOGLE_CLOUD_VISION_CLIENT_EMAIL

    if private_key and client_email:
        credentials = service_account.Credentials.from_service_account_info(
            {
                "private_key": private_key,
                "client_email": client_email,
                "token_uri": GOOGLE_TOKEN_URI,
            },
            scopes=VISION_SCOPES,
        )
        return vision.ImageAnnotatorClient(credentials=credentials)

    logger.info("Vision key settings missing, using application default credentials")
    return vision.ImageAnnotatorClient()


class VisionTextExtractor:
    """
    Runs OCR on every image of a post and joins the text.

    The Vision client is blocking, so each image is annotated in a worker
    thread; images of one post are annotated concurrently.
    """

    def __init__(self, annotator=None):
        self._annotator = annotator

    def _get_annotator(self):
        if self._annotator is None:
            self._annotator = _build_annotator()
        return self._annotator

    def _detect_text(self, image_url: str) -> str:
        response = self._get_annotator().text_detection(
            image=vision.Image(source=vision.ImageSource(image_uri=image_url))
        )
        if response.error and response.error.message:
            raise TextExtractionError(
                f"Vision API error: {response.error.message}", image_url=image_url
            )
        if not response.text_annotations:
            return ""
        return response.full_text_annotation.text

    async def _extract_one(self, image_url: str) -> str:
        try:
            return await asyncio.to_thread(self._detect_text, image_url)
        except TextExtractionError:
            raise
        except Exception as e:
            raise TextExtractionError(f"OCR failed: {e}", image_url=image_url) from e

    async def extract_text(self, media_urls: list[str] | None) -> str | None:
        """
        OCR all images and join per-image text with newlines, in input order.

        Args:
            media_urls: Image URLs of the post; None when the post has no images

        Returns:
            Joined text, or None when there were no media URLs at all

        Raises:
            TextExtractionError: If any single image fails
        """
        if media_urls is None:
            return None

        texts = await asyncio.gather(*(self._extract_one(url) for url in media_urls))

        logger.debug("Extracted text from post images", image_count=len(media_urls))
        return "\n".join(texts)
