from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse, Response

from groundwave.api.middleware import PIPELINE
from groundwave.api.router import router
from groundwave.config import settings
from groundwave.core.auth.webauthn import PasskeyVerifier
from groundwave.core.ipasn import load_table
from groundwave.core.pow import DifficultyPolicy
from groundwave.core.risk import RiskClassifier, RiskPolicy
from groundwave.core.sessions.store import SessionStore
from groundwave.db.session import AsyncSessionLocal, engine
from groundwave.utils.error_codes import ERROR_MESSAGES, ErrorCode
from groundwave.utils.exceptions import GroundwaveException, RedirectRequired
from groundwave.utils.observability import log_duration


logger = logging.getLogger(__name__)


def configure_logging() -> None:
    level = getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    logging.getLogger().setLevel(level)


async def session_gc_loop(store: SessionStore, stop_event: asyncio.Event, interval: int) -> None:
    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass

        try:
            with log_duration(logger, "session.gc"):
                purged = await store.purge_expired()
            if purged:
                logger.info("session.gc purged=%d", purged)
        except Exception:
            logger.exception("session.gc_failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state._bg_stop_event = asyncio.Event()
    app.state._bg_tasks = []

    # Both are fatal: a gate without its dataset or a relying party without
    # origins must not serve traffic.
    table = load_table(settings.IPASN_DATA_PATH or None)
    logger.info("ipasn.loaded v4=%d v6=%d", table.v4_count, table.v6_count)
    app.state.risk_classifier = RiskClassifier(table, RiskPolicy.from_settings(settings))
    app.state.difficulty_policy = DifficultyPolicy.from_settings(settings)
    app.state.passkey_verifier = PasskeyVerifier.from_settings(settings)

    interval = int(settings.SESSION_GC_INTERVAL_SECONDS or 0)
    if interval > 0:
        task = asyncio.create_task(
            session_gc_loop(app.state.session_store, app.state._bg_stop_event, interval)
        )
        app.state._bg_tasks.append(task)

    try:
        yield
    finally:
        app.state._bg_stop_event.set()
        tasks = list(getattr(app.state, "_bg_tasks", []) or [])
        if tasks:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        app.state._bg_tasks = []

        # Ensure DB connections/threads are cleaned up when the app shuts down.
        try:
            await engine.dispose()
        except Exception:
            logger.exception("db.dispose_failed")


configure_logging()

app = FastAPI(title=settings.site_title, debug=settings.DEBUG, lifespan=lifespan)
app.state.session_store = SessionStore(AsyncSessionLocal, lifetime_seconds=settings.SESSION_LIFETIME_SECONDS)

# Starlette runs the most recently added middleware first.
for _middleware in reversed(PIPELINE):
    app.middleware("http")(_middleware)


@app.exception_handler(RedirectRequired)
async def redirect_required_handler(request: Request, exc: RedirectRequired):
    return RedirectResponse(exc.location, status_code=303)


@app.exception_handler(GroundwaveException)
async def groundwave_exception_handler(request: Request, exc: GroundwaveException):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": ERROR_MESSAGES[ErrorCode.E009], "code": ErrorCode.E009.value},
    )


app.include_router(router)


@app.get("/connectivity", status_code=204)
async def connectivity():
    return Response(status_code=204)


if settings.METRICS_ENABLED:

    @app.get("/metrics")
    async def metrics():
        from groundwave.utils.metrics import render_metrics

        payload, content_type = render_metrics()
        return Response(content=payload, media_type=content_type)
