from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import Engine, text

from .config import Settings, settings


logger = logging.getLogger("iot.migrations")


# Fixed advisory lock ID so concurrent replicas don't migrate at the same time.
_MIGRATION_LOCK_ID = 4271180533902114161


def alembic_config(database_url: str) -> Config:
    # alembic.ini lives at repo root.
    repo_root = Path(__file__).resolve().parents[2]
    cfg = Config(str(repo_root / "alembic.ini"))

    # Make sure the script location resolves even when CWD is not repo root.
    cfg.set_main_option("script_location", str(repo_root / "migrations"))
    cfg.set_main_option("sqlalchemy.url", database_url)
    return cfg


def upgrade_head(*, engine: Engine, database_url: str | None = None) -> None:
    """Run `alembic upgrade head`.

    On PostgreSQL the upgrade runs under a session-level advisory lock held on a
    dedicated connection, so the API and the MQTT worker can both start with
    AUTO_MIGRATE on. Other dialects migrate without a lock.
    """

    url = database_url or settings.database_url
    if not url:
        raise RuntimeError("DATABASE_URL is empty; cannot run migrations")

    cfg = alembic_config(url)
    if engine.dialect.name != "postgresql":
        command.upgrade(cfg, "head")
        logger.info("DB migrations applied (head)")
        return

    with engine.connect() as lock_conn:
        lock_conn.execute(text("SELECT pg_advisory_lock(:id)"), {"id": _MIGRATION_LOCK_ID})
        lock_conn.commit()
        logger.info("acquired migration advisory lock")
        try:
            command.upgrade(cfg, "head")
            logger.info("DB migrations applied (head)")
        finally:
            lock_conn.execute(text("SELECT pg_advisory_unlock(:id)"), {"id": _MIGRATION_LOCK_ID})
            lock_conn.commit()


def maybe_run_startup_migrations(*, engine: Engine, _settings: Settings | None = None) -> None:
    s = _settings or settings
    if not s.auto_migrate:
        logger.info("AUTO_MIGRATE disabled")
        return
    logger.info("AUTO_MIGRATE enabled; applying migrations")
    upgrade_head(engine=engine, database_url=s.database_url)
