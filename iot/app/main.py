from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .alert_rules import load_alert_rules
from .config import Settings, settings as global_settings
from .db import engine
from .jobs.offline_check import run_offline_check
from .migrations import maybe_run_startup_migrations
from .observability import RequestContextMiddleware, configure_logging, get_request_id
from .routes.alerts import router as alerts_router
from .routes.devices import router as devices_router
from .routes.telemetry import router as telemetry_router
from .services.broker import BrokerConnection, build_broker
from .services.commands import CommandDispatcher
from .services.errors import BrokerConnectionError
from .services.router import MessageRouter
from .version import __version__


logger = logging.getLogger("iot")


def create_app(_settings: Settings | None = None, *, broker: BrokerConnection | None = None) -> FastAPI:
    # Allow tests to inject Settings (and a broker built on a fake client)
    # without reloading modules.
    settings = _settings or global_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _setup_logging(settings)
        _init_db(settings)
        _start_broker(app, settings, broker)
        if settings.enable_scheduler:
            _start_scheduler(settings)
        else:
            logger.info("Scheduler disabled (ENABLE_SCHEDULER=false)")
        yield
        _stop_scheduler()
        _stop_broker(app)

    docs_url = "/docs" if settings.enable_docs else None
    redoc_url = "/redoc" if settings.enable_docs else None
    openapi_url = "/openapi.json" if settings.enable_docs else None

    app = FastAPI(
        title="Agrimaan IoT Service",
        version=__version__,
        lifespan=lifespan,
        docs_url=docs_url,
        redoc_url=redoc_url,
        openapi_url=openapi_url,
    )
    app.state.broker = None
    app.state.dispatcher = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request IDs / structured HTTP logs
    app.add_middleware(RequestContextMiddleware)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        rid = get_request_id() or "unknown"
        payload: dict[str, Any] = {"error": {"code": "HTTP_ERROR", "message": str(exc.detail), "request_id": rid}}
        headers = dict(exc.headers or {})
        headers.setdefault("X-Request-ID", rid)
        return JSONResponse(status_code=exc.status_code, content=payload, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        rid = get_request_id() or "unknown"
        return JSONResponse(
            status_code=422,
            content={
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "details": exc.errors(),
                    "request_id": rid,
                }
            },
            headers={"X-Request-ID": rid},
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        rid = get_request_id() or "unknown"
        logger.exception(
            "unhandled_exception",
            extra={"fields": {"path": str(request.url.path), "method": request.method}},
        )
        return JSONResponse(
            status_code=500,
            content={"error": {"code": "INTERNAL", "message": "Internal server error", "request_id": rid}},
            headers={"X-Request-ID": rid},
        )

    @app.get("/health")
    def health():
        db_ok = True
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception:
            logger.warning("health: database unreachable", exc_info=True)
            db_ok = False

        current = app.state.broker
        return {
            "ok": db_ok,
            "env": settings.app_env,
            "version": app.version,
            "db": db_ok,
            "broker": {
                "enabled": bool(settings.mqtt_enabled),
                "connected": bool(current is not None and current.is_connected),
            },
        }

    app.include_router(alerts_router)
    app.include_router(devices_router)
    app.include_router(telemetry_router)

    return app


def _setup_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    configure_logging(level=level, log_format=settings.log_format)
    logger.info("Logging initialized (level=%s)", settings.log_level)


def _init_db(settings: Settings) -> None:
    # Apply schema migrations when enabled (AUTO_MIGRATE).
    maybe_run_startup_migrations(engine=engine, _settings=settings)
    logger.info("DB init complete")


def _start_broker(app: FastAPI, settings: Settings, broker: BrokerConnection | None) -> None:
    if not settings.mqtt_enabled:
        logger.info("Broker connection disabled (MQTT_ENABLED=false)")
        return

    conn = broker or build_broker(settings)
    router = MessageRouter(
        topic_prefix=settings.mqtt_topic_prefix,
        rules=load_alert_rules(settings.alert_rules_version),
    )
    conn.add_message_handler(router.handle_message)
    app.state.broker = conn
    app.state.dispatcher = CommandDispatcher(conn, connectivity_timeout_s=settings.connectivity_timeout_s)

    try:
        conn.connect()
    except BrokerConnectionError:
        # Keep serving the query API; publishes retry the connection lazily.
        logger.exception("Broker connection failed at startup")


def _stop_broker(app: FastAPI) -> None:
    conn = app.state.broker
    if conn is not None:
        conn.disconnect()
    app.state.broker = None
    app.state.dispatcher = None


_scheduler: BackgroundScheduler | None = None


def _start_scheduler(settings: Settings) -> None:
    global _scheduler
    scheduler = BackgroundScheduler(timezone="UTC")

    scheduler.add_job(
        func=_offline_job,
        trigger="interval",
        seconds=settings.offline_check_interval_s,
        id="offline_check",
        max_instances=1,
        replace_existing=True,
        coalesce=True,
    )

    scheduler.start()
    _scheduler = scheduler
    logger.info("Scheduler started (offline_check_interval_s=%s)", settings.offline_check_interval_s)


def _stop_scheduler() -> None:
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Scheduler stopped")


def _offline_job() -> None:
    try:
        run_offline_check()
    except Exception:
        logger.exception("offline_check failed")


# ASGI entrypoint
app = create_app()
