"""
Domain subpackage for Instagram ingestion.
"""

from .inference import REQUIRED_KEYS, InferenceResult
from .models import ExtractedEvent, Organizer, Post, PostOutcome
from .payloads import (
    ApiPost,
    ApiPostChild,
    ApiPostChildren,
    AppUsage,
    EventSources,
    InstagramSource,
    PostFetchResult,
)

__all__ = [
    "REQUIRED_KEYS",
    "ApiPost",
    "ApiPostChild",
    "ApiPostChildren",
    "AppUsage",
    "EventSources",
    "ExtractedEvent",
    "InferenceResult",
    "InstagramSource",
    "Organizer",
    "Post",
    "PostFetchResult",
    "PostOutcome",
]
