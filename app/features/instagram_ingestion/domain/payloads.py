"""
External payload shapes: configured sources and Graph API responses.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class InstagramSource(BaseModel):
    """One configured account from the event sources file."""

    username: str
    city: str
    context_clues: list[str] = Field(default_factory=list)


class EventSources(BaseModel):
    """Top level of the event sources file; other providers are ignored."""

    model_config = ConfigDict(extra="ignore")

    instagram: list[InstagramSource] = Field(default_factory=list)


class ApiPostChild(BaseModel):
    """Carousel child media. ``media_url`` may be omitted for legal reasons."""

    model_config = ConfigDict(extra="ignore")

    media_url: str | None = None
    media_type: str | None = None


class ApiPostChildren(BaseModel):
    data: list[ApiPostChild] = Field(default_factory=list)


class ApiPost(BaseModel):
    """A media item as returned by business discovery."""

    model_config = ConfigDict(extra="ignore")

    id: str
    permalink: str
    caption: str | None = None
    timestamp: datetime
    media_type: str
    media_url: str | None = None
    children: ApiPostChildren | None = None


class AppUsage(BaseModel):
    """Utilization percentages reported in the X-App-Usage header."""

    model_config = ConfigDict(extra="ignore")

    call_count: float = 0
    total_cputime: float = 0
    total_time: float = 0


class PostFetchResult(BaseModel):
    """Recent posts for one organizer plus the usage signal, when reported."""

    posts: list[ApiPost] = Field(default_factory=list)
    usage: AppUsage | None = None
