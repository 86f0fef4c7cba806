"""
Worker entry points for Instagram ingestion.
"""

from .ingestion_job import (
    run_instagram_fixup,
    run_instagram_ingest_all,
    run_instagram_ingest_source,
)

__all__ = [
    "run_instagram_fixup",
    "run_instagram_ingest_all",
    "run_instagram_ingest_source",
]
