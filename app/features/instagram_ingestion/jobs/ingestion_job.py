"""
Instagram ingestion job runners.

Each runner opens the database pool, runs one pass of the orchestrator and
releases every resource it opened, whatever the outcome.
"""

import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from app.db.pool import db_pool
from app.features.instagram_ingestion.services import InstagramIngestionService
from app.infrastructure.observability.logging import bind_job_context, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def _ingestion_service(job: str) -> AsyncGenerator[InstagramIngestionService, None]:
    bind_job_context(job)
    await db_pool.initialize()
    try:
        service = InstagramIngestionService()
        try:
            yield service
        finally:
            await service.close()
    finally:
        await db_pool.close()


def _resolve_source_username() -> str:
    """Pick the account from the second CLI arg or INSTAGRAM_SOURCE."""
    if len(sys.argv) > 2:
        return sys.argv[2].strip()
    username = os.getenv("INSTAGRAM_SOURCE", "").strip()
    if not username:
        raise ValueError("No Instagram source given; pass it as an argument or set INSTAGRAM_SOURCE")
    return username


async def run_instagram_ingest_all() -> None:
    async with _ingestion_service("instagram_ingest_all") as service:
        await service.ingest_all_sources()


async def run_instagram_ingest_source(username: str | None = None) -> None:
    username = username or _resolve_source_username()
    async with _ingestion_service("instagram_ingest_source") as service:
        await service.ingest_source(username)


async def run_instagram_fixup() -> None:
    async with _ingestion_service("instagram_fixup") as service:
        await service.fixup_ingestion()
