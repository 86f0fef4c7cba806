"""
Clients for the external services the pipeline talks to.
"""

from .instagram_client import InstagramClient, media_urls_for_post
from .openai_client import OpenAIInferenceClient, build_prompt
from .vision_client import VisionTextExtractor

__all__ = [
    "InstagramClient",
    "OpenAIInferenceClient",
    "VisionTextExtractor",
    "build_prompt",
    "media_urls_for_post",
]
