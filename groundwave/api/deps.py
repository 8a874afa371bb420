import asyncio
import hmac
import logging
import time
from typing import AsyncGenerator, Optional
from urllib.parse import quote

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from groundwave.config import settings
from groundwave.core.auth.state import SessionUser, has_sensitive_access, session_user
from groundwave.core.auth.webauthn import PasskeyVerifier
from groundwave.core.sessions import keys
from groundwave.core.sessions.session import Session
from groundwave.core.sessions.store import SessionStore
from groundwave.db.session import get_db_session
from groundwave.utils.client import client_ip
from groundwave.utils.exceptions import (
    ForbiddenException,
    RedirectRequired,
    TooManyRequestsException,
    UnauthorizedException,
)
from groundwave.utils.metrics import ACCESS_DENIED_TOTAL
from groundwave.utils.observability import format_fields, with_request_id
from groundwave.utils.paths import sanitize_next_path

logger = logging.getLogger("groundwave.access")

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
SENSITIVE_PREFIX = "/health"


def now_ts() -> int:
    return int(time.time())


def request_uri(request: Request) -> str:
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path


def wants_json(request: Request) -> bool:
    """API callers (fetch from the ceremony pages) get JSON errors; navigations get redirects."""
    if request.url.path.startswith("/webauthn/"):
        return True
    accept = request.headers.get("accept", "")
    content_type = request.headers.get("content-type", "")
    return "application/json" in accept or content_type.startswith("application/json")


def log_access_denied(
    request: Request,
    reason: str,
    status: int,
    redirect: str = "",
    **extras: object,
) -> None:
    session: Optional[Session] = getattr(request.state, "session", None)
    user_id = session.get(keys.USER_ID) if session is not None else None
    fields = {
        "reason": reason,
        "status": status,
        "method": request.method,
        "path": request.url.path,
        "ip": client_ip(request),
        "user_id": user_id or "",
    }
    if redirect:
        fields["redirect"] = redirect
    fields.update(extras)
    logger.warning("event=access_denied %s", format_fields(**with_request_id(fields)))
    try:
        ACCESS_DENIED_TOTAL.labels(reason=reason).inc()
    except Exception:
        pass


_rate_limit_lock = asyncio.Lock()
_rate_limit_counters: dict[tuple[int, str], int] = {}


async def rate_limit(request: Request) -> None:
    if not settings.RATE_LIMIT_ENABLED:
        return

    # Peer address, not X-Forwarded-For: a forwarded header is client-controlled.
    client_host = (request.client.host if request.client else None) or "unknown"
    window_seconds = max(1, int(settings.RATE_LIMIT_WINDOW_SECONDS))
    limit = max(1, int(settings.RATE_LIMIT_REQUESTS_PER_WINDOW))
    bucket = int(time.monotonic() // window_seconds)
    key = (bucket, client_host)

    async with _rate_limit_lock:
        current = _rate_limit_counters.get(key, 0) + 1
        _rate_limit_counters[key] = current

        # Drop every host's counters from earlier windows.
        stale = [k for k in _rate_limit_counters if k[0] < bucket]
        for stale_key in stale:
            del _rate_limit_counters[stale_key]

    if current > limit:
        log_access_denied(request, "rate_limited", 429)
        raise TooManyRequestsException(
            details={
                "window_seconds": window_seconds,
                "limit": limit,
            }
        )


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_db_session():
        yield session


def get_session(request: Request) -> Session:
    return request.state.session


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def get_passkey_verifier(request: Request) -> PasskeyVerifier:
    return request.app.state.passkey_verifier


def login_redirect(request: Request) -> str:
    next_path = sanitize_next_path(request_uri(request) if request.method in ("GET", "HEAD") else "", "/")
    return "/login?next=" + quote(next_path, safe="")


async def require_auth(
    request: Request,
    session: Session = Depends(get_session),
) -> SessionUser:
    user = session_user(session, now_ts())
    if user is not None:
        return user

    if wants_json(request):
        log_access_denied(request, "not_authenticated", 401)
        raise UnauthorizedException()

    location = login_redirect(request)
    log_access_denied(request, "not_authenticated", 303, redirect=location)
    raise RedirectRequired(location, reason="not_authenticated")


async def require_admin(
    request: Request,
    user: SessionUser = Depends(require_auth),
    session: Session = Depends(get_session),
) -> SessionUser:
    if user.is_admin:
        return user
    session.add_flash("error", "Access restricted")
    log_access_denied(request, "admin_required", 303, redirect="/security")
    raise RedirectRequired("/security", reason="admin_required")


def is_sensitive_path(path: str) -> bool:
    return path == SENSITIVE_PREFIX or path.startswith(SENSITIVE_PREFIX + "/")


async def require_sensitive_access_for_health(
    request: Request,
    user: SessionUser = Depends(require_auth),
    session: Session = Depends(get_session),
) -> SessionUser:
    """Gate the /health tree behind a recent break-glass verification."""
    if not is_sensitive_path(request.url.path) or has_sensitive_access(session, now_ts()):
        return user

    if request.method in ("GET", "HEAD"):
        raw_next = request_uri(request)
    else:
        raw_next = request.headers.get("referer", "")
    location = "/break-glass?next=" + quote(sanitize_next_path(raw_next), safe="")
    log_access_denied(request, "sensitive_access_locked", 303, redirect=location)
    raise RedirectRequired(location, reason="sensitive_access_locked")


async def verify_csrf(
    request: Request,
    session: Session = Depends(get_session),
) -> None:
    if request.method in SAFE_METHODS:
        return

    expected = session.get(keys.CSRF_TOKEN)
    supplied = request.headers.get("X-CSRF-Token")
    if not supplied and request.headers.get("content-type", "").startswith(
        ("application/x-www-form-urlencoded", "multipart/form-data")
    ):
        form = await request.form()
        value = form.get("_csrf")
        supplied = value if isinstance(value, str) else None

    if not expected or not supplied or not hmac.compare_digest(expected, supplied):
        log_access_denied(request, "csrf_invalid", 403)
        raise ForbiddenException("invalid csrf token")
