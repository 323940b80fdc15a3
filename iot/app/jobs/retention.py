from __future__ import annotations

import logging
import os

from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..db import db_session, engine
from ..migrations import maybe_run_startup_migrations
from ..observability import configure_logging
from ..services.telemetry import count_old_telemetry, delete_old_telemetry, retention_cutoff


logger = logging.getLogger("iot.job.retention")


def _dry_run() -> bool:
    return os.getenv("RETENTION_DRY_RUN", "").strip().lower() in {"1", "true", "yes", "y", "on"}


def run_retention() -> int | None:
    """Drop telemetry older than TELEMETRY_RETENTION_DAYS.

    Deletes in batches, each in its own transaction, so locks stay short on a
    large backlog. Returns the number of rows deleted, or None when disabled or
    in dry-run mode.
    """

    if not settings.retention_enabled:
        logger.info("Retention disabled (RETENTION_ENABLED=false)")
        return None

    cutoff = retention_cutoff(settings.telemetry_retention_days)
    batch_size = settings.retention_batch_size
    max_batches = settings.retention_max_batches
    dry_run = _dry_run()

    logger.info(
        "retention_start",
        extra={
            "fields": {
                "dry_run": dry_run,
                "telemetry_retention_days": settings.telemetry_retention_days,
                "cutoff": cutoff.isoformat(),
                "batch_size": batch_size,
                "max_batches": max_batches,
            }
        },
    )

    if dry_run:
        with db_session() as session:
            doomed = count_old_telemetry(session, cutoff=cutoff)
        logger.info("retention_dry_run_counts", extra={"fields": {"telemetry_records": doomed}})
        return None

    deleted = 0
    try:
        for _ in range(max_batches):
            with db_session() as session:
                n = delete_old_telemetry(session, cutoff=cutoff, batch_size=batch_size)
            deleted += n
            if n < batch_size:
                break
    except SQLAlchemyError:
        logger.exception("retention_failed")
        raise

    logger.info("retention_complete", extra={"fields": {"telemetry_records": deleted}})
    return deleted


def main() -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    configure_logging(level=level, log_format=settings.log_format)

    maybe_run_startup_migrations(engine=engine, _settings=settings)

    run_retention()


if __name__ == "__main__":
    main()
