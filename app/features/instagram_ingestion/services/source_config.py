"""
Loads the configured Instagram accounts from the event sources file.
"""

from pathlib import Path

from app.config import settings
from app.features.instagram_ingestion.domain import EventSources, InstagramSource


def load_instagram_sources(path: str | Path | None = None) -> list[InstagramSource]:
    """Read the ``instagram`` list of the event sources JSON file."""
    sources_path = Path(path or settings.EVENT_SOURCES_PATH)
    return EventSources.model_validate_json(sources_path.read_text(encoding="utf-8")).instagram


def find_source(sources: list[InstagramSource], username: str) -> InstagramSource | None:
    for source in sources:
        if source.username == username:
            return source
    return None
