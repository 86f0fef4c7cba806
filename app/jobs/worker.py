"""
Ingestion worker entrypoint.

Usage:
    event-ingestion-worker [job] [username]

The job comes from the first CLI arg or WORKER_JOB and defaults to a full
ingestion pass. ``instagram_ingest_source`` also takes the account name
(second CLI arg or INSTAGRAM_SOURCE). Meant to be run by cron or a
scheduler; the process exits non-zero when the job fails.
"""

import asyncio
import os
import sys
import time
from collections.abc import Awaitable, Callable

from app.config import settings
from app.features.instagram_ingestion.jobs import (
    run_instagram_fixup,
    run_instagram_ingest_all,
    run_instagram_ingest_source,
)
from app.infrastructure.observability.logging import get_logger, setup_logging

logger = get_logger(__name__)

DEFAULT_JOB = "instagram_ingest_all"

JobCoroutine = Callable[[], Awaitable[None]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "instagram_ingest_all": run_instagram_ingest_all,
    "instagram_ingest_source": run_instagram_ingest_source,
    "instagram_fixup": run_instagram_fixup,
}


def _resolve_job_name() -> str:
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", DEFAULT_JOB).strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """
    Run one registered job to completion.

    Raises:
        ValueError: If the job name is not registered
    """
    name = (job_name or _resolve_job_name()).strip().lower()
    job = JOB_REGISTRY.get(name)
    if job is None:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY))}"
        )

    started = time.monotonic()
    logger.info("Worker job started", job=name, environment=settings.environment)
    try:
        await job()
    except Exception as e:
        logger.error(
            "Worker job failed",
            job=name,
            error=str(e),
            error_type=type(e).__name__,
            duration_seconds=round(time.monotonic() - started, 2),
            exc_info=True,
        )
        raise

    logger.info(
        "Worker job finished",
        job=name,
        duration_seconds=round(time.monotonic() - started, 2),
    )


def main() -> None:
    setup_logging(log_level=settings.LOG_LEVEL)
    try:
        asyncio.run(run_worker(_resolve_job_name()))
    except Exception:
        sys.exit(1)


if __name__ == "__main__":
    main()
