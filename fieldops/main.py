"""
fieldops - orchestration core for multi-tenant field-service businesses.

FastAPI entry point. Background workers (task runner, timeout monitor) run as
asyncio tasks inside the app's lifespan unless disabled in settings, in which
case an external scheduler drives the same cycles through /api/v1/cron.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from fieldops.config import get_settings
from fieldops.api.router import api_router
from fieldops.database import dispose_engine
from fieldops.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("fieldops")

VERSION = "1.0.0"
SHUTDOWN_GRACE_SECONDS = 10.0
CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reuses the caller's X-Correlation-ID or mints one, and echoes it back."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_HEADER) or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = cid
        return response


def _init_sentry(settings) -> None:
    import sentry_sdk
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        release=f"fieldops@{VERSION}",
        traces_sample_rate=0.1,
    )


def _enabled_workers(settings) -> list:
    """(name, coroutine function) for each in-process worker switched on."""
    workers = []
    if settings.task_runner_enabled:
        from fieldops.workers.task_runner import run_task_runner
        workers.append(("task_runner", run_task_runner))
    if settings.timeout_monitor_enabled:
        from fieldops.workers.timeout_monitor import run_timeout_monitor
        workers.append(("timeout_monitor", run_timeout_monitor))
    return workers


async def _stop_workers(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    if not tasks:
        return
    _, still_running = await asyncio.wait(tasks, timeout=SHUTDOWN_GRACE_SECONDS)
    if still_running:
        logger.warning("%d workers did not stop within %.0fs", len(still_running), SHUTDOWN_GRACE_SECONDS)
        await asyncio.gather(*still_running, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("fieldops %s starting (env=%s)", VERSION, settings.app_env)

    if not settings.cron_secret:
        logger.warning("CRON_SECRET not set - cron endpoints will reject every request.")
    if not settings.owner_phone:
        logger.warning("OWNER_PHONE not set - escalations rely on per-tenant owner phones.")

    if settings.sentry_dsn:
        try:
            _init_sentry(settings)
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    tasks = []
    for name, run in _enabled_workers(settings):
        tasks.append(asyncio.create_task(run(), name=name))
        logger.info("Worker started: %s", name)

    yield

    logger.info("fieldops shutting down - stopping %d workers", len(tasks))
    await _stop_workers(tasks)
    await dispose_engine()
    logger.info("fieldops shutdown complete")


def create_app() -> FastAPI:
    settings = get_settings()
    configure_structured_logging(settings.log_level, json_output=settings.app_env != "development")

    application = FastAPI(
        title="fieldops",
        description="Lead follow-up, crew assignment and schedule orchestration",
        version=VERSION,
        lifespan=lifespan,
    )

    origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins or [settings.app_base_url],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", CORRELATION_HEADER],
        expose_headers=[CORRELATION_HEADER],
    )
    # Added last so it wraps CORS and sees every request
    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)
    return application


app = create_app()
