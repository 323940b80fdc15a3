from __future__ import annotations

import logging

from ..config import settings
from ..db import engine, db_session
from ..migrations import maybe_run_startup_migrations
from ..observability import configure_logging
from ..services.monitor import ensure_offline_alerts


logger = logging.getLogger("iot.job.offline_check")


def run_offline_check() -> int:
    with db_session() as session:
        marked = ensure_offline_alerts(session)
    if marked:
        logger.info("offline_check marked devices offline", extra={"fields": {"devices": marked}})
    return marked


def main() -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    configure_logging(level=level, log_format=settings.log_format)

    # For job runners, it's convenient to ensure schema exists.
    maybe_run_startup_migrations(engine=engine)

    marked = run_offline_check()
    logger.info("offline_check complete", extra={"fields": {"devices_marked_offline": marked}})


if __name__ == "__main__":
    main()
