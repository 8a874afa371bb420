"""HTTP middlewares, registered by ``groundwave.main`` in pipeline order.

Each one reads what the outer layers left on ``request.state``: the session
middleware provides ``state.session``, the risk middleware ``state.client_risk``.
"""

import logging
import time
from urllib.parse import quote

from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse

from groundwave.api import deps
from groundwave.api.routes.pow import render_challenge
from groundwave.api.templating import ensure_csrf_token
from groundwave.config import settings
from groundwave.core import pow as pow_core
from groundwave.core.auth.state import is_session_authenticated
from groundwave.core.risk import ClientRisk, RiskLevel
from groundwave.core.sessions import keys
from groundwave.core.sessions.cookie import sign_session_id, unsign_session_id
from groundwave.core.sessions.session import Session
from groundwave.utils.client import client_ip, device_label
from groundwave.utils.error_codes import ERROR_MESSAGES, ErrorCode
from groundwave.utils.observability import format_fields, with_request_id
from groundwave.utils.paths import sanitize_next_path
from groundwave.utils.request_id import new_request_id, request_id_var, validate_request_id

request_logger = logging.getLogger("groundwave.request")


async def request_id_middleware(request: Request, call_next):
    incoming_rid = request.headers.get("X-Request-ID")
    rid = validate_request_id(incoming_rid) or new_request_id()
    token = request_id_var.set(rid)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)

    response.headers["X-Request-ID"] = rid
    return response


async def metrics_middleware(request: Request, call_next):
    if not settings.METRICS_ENABLED:
        return await call_next(request)

    start = time.perf_counter()
    response = await call_next(request)
    elapsed_s = time.perf_counter() - start

    try:
        from groundwave.utils.metrics import HTTP_REQUESTS_TOTAL, HTTP_REQUEST_DURATION_SECONDS

        route = request.scope.get("route")
        # Route templates only; raw paths would explode label cardinality.
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            path_label = route_path
        else:
            path_label = "__unmatched__"
        method = request.method
        status = str(getattr(response, "status_code", 0))

        HTTP_REQUESTS_TOTAL.labels(method=method, path=path_label, status=status).inc()
        HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=path_label).observe(elapsed_s)
    except Exception:
        pass

    return response


async def session_middleware(request: Request, call_next):
    store = request.app.state.session_store
    cookie_name = settings.SESSION_COOKIE_NAME
    cookie_value = request.cookies.get(cookie_name)

    session = None
    session_id = unsign_session_id(cookie_value, settings.SESSION_SECRET)
    if session_id:
        session = await store.load(session_id)
    if session is None:
        session = Session()
    loaded_id = None if session.is_new else session.id
    request.state.session = session

    response = await call_next(request)

    if session.destroyed:
        response.delete_cookie(cookie_name, path="/")
        return response

    saved = False
    if session.should_persist:
        saved = await store.save(session)
        if not saved:
            # Logged out or invalidated by another request meanwhile.
            response.delete_cookie(cookie_name, path="/")
            return response
    if saved or (not session.is_new and session.id != loaded_id):
        response.set_cookie(
            cookie_name,
            sign_session_id(session.id, settings.SESSION_SECRET),
            max_age=max(1, int(settings.SESSION_LIFETIME_SECONDS)),
            path="/",
            httponly=True,
            samesite="lax",
            secure=settings.SESSION_COOKIE_SECURE,
        )
    elif cookie_value and session.is_new:
        # Unknown, expired or forged cookie with nothing worth keeping.
        response.delete_cookie(cookie_name, path="/")
    return response


async def request_log_middleware(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000.0

    session: Session = request.state.session
    authenticated = is_session_authenticated(session, deps.now_ts())
    status = response.status_code or 200
    request_logger.info(
        "event=request %s",
        format_fields(
            **with_request_id(
                {
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "duration_ms": f"{duration_ms:.2f}",
                    "ip": client_ip(request),
                    "user_agent": request.headers.get("user-agent", ""),
                    "authenticated": str(authenticated).lower(),
                    "user_id": session.get(keys.USER_ID) if authenticated else "",
                }
            )
        ),
    )
    return response


async def session_metadata_middleware(request: Request, call_next):
    response = await call_next(request)

    # Only sessions that exist (or are about to) get metadata; anonymous
    # one-off requests must not create rows.
    session: Session = request.state.session
    if not session.destroyed and (not session.is_new or session.modified):
        session.set(keys.DEVICE_LABEL, device_label(request.headers.get("user-agent")))
        session.set(keys.DEVICE_IP, client_ip(request))
    return response


async def client_risk_middleware(request: Request, call_next):
    classifier = request.app.state.risk_classifier
    request.state.client_risk = classifier.resolve(client_ip(request))
    return await call_next(request)


async def pow_gate_middleware(request: Request, call_next):
    session: Session = request.state.session
    risk: ClientRisk = request.state.client_risk
    path = request.url.path

    if pow_core.is_extension_path(path) and risk.level is not RiskLevel.LOW:
        deps.log_access_denied(
            request,
            "extension_asn_not_allowed",
            404,
            asn=risk.asn if risk.asn is not None else "",
            country=risk.country or "",
            risk=risk.level.value,
        )
        return JSONResponse(
            status_code=404,
            content={"error": ERROR_MESSAGES[ErrorCode.E001], "code": ErrorCode.E001.value},
        )

    if pow_core.is_exempt_path(path) or pow_core.has_pow_access(session, risk.level, deps.now_ts()):
        return await call_next(request)

    if request.method in ("GET", "HEAD"):
        next_path = sanitize_next_path(deps.request_uri(request), "/")
        deps.log_access_denied(request, "pow_required", 403, risk=risk.level.value)
        return render_challenge(request, session, risk, next_path)

    next_path = sanitize_next_path(request.headers.get("referer"), "/")
    location = "/pow?next=" + quote(next_path, safe="")
    deps.log_access_denied(request, "pow_required", 303, redirect=location, risk=risk.level.value)
    return RedirectResponse(location, status_code=303)


async def csrf_injector_middleware(request: Request, call_next):
    # Browser navigations get a token up front so forms rendered by any page can post.
    if request.method in ("GET", "HEAD") and "text/html" in request.headers.get("accept", ""):
        ensure_csrf_token(request.state.session)
    return await call_next(request)


# Outermost first.
PIPELINE = (
    request_id_middleware,
    metrics_middleware,
    session_middleware,
    request_log_middleware,
    session_metadata_middleware,
    client_risk_middleware,
    pow_gate_middleware,
    csrf_injector_middleware,
)
