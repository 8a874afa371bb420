import time

import pytest
from starlette.requests import Request

from groundwave.api import deps
from groundwave.config import settings
from groundwave.core.auth.state import SessionUser, grant_sensitive_access
from groundwave.core.sessions import keys
from groundwave.core.sessions.session import Session
from groundwave.utils.exceptions import (
    ForbiddenException,
    RedirectRequired,
    TooManyRequestsException,
    UnauthorizedException,
)

USER = SessionUser(user_id="u-1", display_name="Ada", is_admin=False)


def _request(
    path: str,
    *,
    method: str = "GET",
    query: bytes = b"",
    headers: dict[str, str] | None = None,
    peer: str = "127.0.0.1",
) -> Request:
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "query_string": query,
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": (peer, 4321),
        "server": ("testserver", 80),
        "scheme": "http",
    }

    async def receive():
        return {"type": "http.request", "body": b"", "more_body": False}

    return Request(scope, receive)


@pytest.mark.parametrize(
    "path,sensitive",
    [("/health", True), ("/health/records", True), ("/healthz", False), ("/break-glass", False)],
)
def test_is_sensitive_path(path, sensitive):
    assert deps.is_sensitive_path(path) is sensitive


@pytest.mark.asyncio
async def test_sensitive_get_redirects_to_break_glass_with_next():
    request = _request("/health/records", query=b"id=1")

    with pytest.raises(RedirectRequired) as exc_info:
        await deps.require_sensitive_access_for_health(request, user=USER, session=Session())

    assert exc_info.value.location == "/break-glass?next=%2Fhealth%2Frecords%3Fid%3D1"


@pytest.mark.asyncio
async def test_sensitive_post_uses_referer_for_next():
    request = _request("/health/records", method="POST", headers={"Referer": "https://other.example//evil"})

    with pytest.raises(RedirectRequired) as exc_info:
        await deps.require_sensitive_access_for_health(request, user=USER, session=Session())

    assert exc_info.value.location == "/break-glass?next=%2Fcontacts"


@pytest.mark.asyncio
async def test_sensitive_access_granted_passes():
    session = Session()
    grant_sensitive_access(session, int(time.time()))

    user = await deps.require_sensitive_access_for_health(_request("/health/records"), user=USER, session=session)
    assert user == USER


@pytest.mark.asyncio
async def test_require_auth_json_caller_gets_401():
    request = _request("/webauthn/register/start", method="POST")
    with pytest.raises(UnauthorizedException):
        await deps.require_auth(request, session=Session())


@pytest.mark.asyncio
async def test_require_auth_navigation_redirects_to_login():
    request = _request("/security", headers={"Accept": "text/html"})
    with pytest.raises(RedirectRequired) as exc_info:
        await deps.require_auth(request, session=Session())
    assert exc_info.value.location == "/login?next=%2Fsecurity"


@pytest.mark.asyncio
async def test_require_admin_flashes_and_redirects():
    session = Session()
    with pytest.raises(RedirectRequired) as exc_info:
        await deps.require_admin(_request("/security/invites", method="POST"), user=USER, session=session)

    assert exc_info.value.location == "/security"
    assert [f.message for f in session.pop_flashes()] == ["Access restricted"]


@pytest.mark.asyncio
async def test_verify_csrf_header():
    session = Session()
    session.set(keys.CSRF_TOKEN, "tok")

    await deps.verify_csrf(_request("/logout", method="POST", headers={"X-CSRF-Token": "tok"}), session=session)
    await deps.verify_csrf(_request("/logout", method="GET"), session=session)

    with pytest.raises(ForbiddenException):
        await deps.verify_csrf(_request("/logout", method="POST", headers={"X-CSRF-Token": "nope"}), session=session)
    with pytest.raises(ForbiddenException):
        await deps.verify_csrf(_request("/logout", method="POST"), session=Session())


@pytest.mark.asyncio
async def test_rate_limit_rejects_after_limit(monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", True)
    monkeypatch.setattr(settings, "RATE_LIMIT_WINDOW_SECONDS", 3600)
    monkeypatch.setattr(settings, "RATE_LIMIT_REQUESTS_PER_WINDOW", 2)
    monkeypatch.setattr(deps, "_rate_limit_counters", {})

    request = _request("/webauthn/login/start", method="POST", peer="192.0.2.77")
    await deps.rate_limit(request)
    await deps.rate_limit(request)
    with pytest.raises(TooManyRequestsException) as exc_info:
        await deps.rate_limit(request)
    assert exc_info.value.status_code == 429

    # Other clients have their own budget.
    await deps.rate_limit(_request("/webauthn/login/start", method="POST", peer="192.0.2.78"))


@pytest.mark.asyncio
async def test_rate_limit_keys_on_peer_not_forwarded_header(monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", True)
    monkeypatch.setattr(settings, "RATE_LIMIT_WINDOW_SECONDS", 3600)
    monkeypatch.setattr(settings, "RATE_LIMIT_REQUESTS_PER_WINDOW", 3)
    counters = {(-1, "198.51.100.50"): 7}
    monkeypatch.setattr(deps, "_rate_limit_counters", counters)

    def spoofed(n: int) -> Request:
        return _request(
            "/webauthn/login/start",
            method="POST",
            headers={"X-Forwarded-For": f"10.0.0.{n}"},
            peer="192.0.2.77",
        )

    for n in range(3):
        await deps.rate_limit(spoofed(n))
    with pytest.raises(TooManyRequestsException):
        await deps.rate_limit(spoofed(99))

    # One counter for the peer; the earlier window is gone.
    assert [host for _, host in counters] == ["192.0.2.77"]


@pytest.mark.asyncio
async def test_rate_limit_disabled_is_noop(monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", False)
    request = _request("/pow/verify", method="POST")
    for _ in range(500):
        await deps.rate_limit(request)
