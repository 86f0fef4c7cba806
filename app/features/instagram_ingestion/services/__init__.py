"""
Service layer for Instagram ingestion.
"""

from .ingestion_service import IngestionMetrics, InstagramIngestionService
from .source_config import find_source, load_instagram_sources

__all__ = [
    "IngestionMetrics",
    "InstagramIngestionService",
    "find_source",
    "load_instagram_sources",
]
