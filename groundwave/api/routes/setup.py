"""First-user bootstrap and invite enrolment.

``GET /setup`` decides which setup path (if any) the session may take and
records it as a session mark; the ceremony endpoints only trust that mark.
"""

import hmac
import logging
import uuid

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from groundwave.api import deps
from groundwave.api.body import parse_body, read_json_object
from groundwave.api.session_flow import rotate_and_authenticate
from groundwave.api.templating import render
from groundwave.config import settings
from groundwave.core.auth.service import AuthService
from groundwave.core.auth.state import SessionUser, is_session_authenticated, load_ceremony
from groundwave.core.auth.webauthn import PasskeyVerifier
from groundwave.core.sessions import keys
from groundwave.core.sessions.session import Session
from groundwave.core.sessions.store import SessionStore
from groundwave.schemas.auth import RedirectPayload, SetupStartRequest
from groundwave.utils.error_codes import ErrorCode
from groundwave.utils.exceptions import (
    BadRequestException,
    ForbiddenException,
    GroundwaveException,
    InviteInvalidOrUsed,
    PasskeyVerificationError,
    SetupAlreadyCompleted,
)
from groundwave.utils.metrics import WEBAUTHN_CEREMONIES_TOTAL

router = APIRouter()

logger = logging.getLogger(__name__)


def _bootstrap_token() -> str:
    return (settings.BOOTSTRAP_TOKEN or "").strip()


def _setup_error(request: Request, message: str, status_code: int = 403):
    return render(request, "setup.html", {"error": message, "setup_ready": False}, status_code=status_code)


@router.get("/setup")
async def setup_page(
    request: Request,
    token: str = "",
    session: Session = Depends(deps.get_session),
    db: AsyncSession = Depends(deps.get_db),
):
    if is_session_authenticated(session, deps.now_ts()):
        return RedirectResponse("/", status_code=303)

    session.delete(keys.INVITE_ALLOWED, keys.INVITE_ID)
    service = AuthService(db)
    token = token.strip()

    if await service.count_users() == 0:
        expected = _bootstrap_token()
        if not expected:
            session.delete(keys.BOOTSTRAP_ALLOWED)
            return _setup_error(request, "Setup is unavailable")
        if not token or not hmac.compare_digest(token.encode(), expected.encode()):
            session.delete(keys.BOOTSTRAP_ALLOWED)
            deps.log_access_denied(request, "setup_token_invalid", 403)
            return _setup_error(request, "Invalid setup link")

        session.set(keys.BOOTSTRAP_ALLOWED, True)
        return render(
            request,
            "setup.html",
            {"setup_ready": True, "is_invite": False, "display_name": "Admin"},
        )

    # Users exist: invite links only.
    session.delete(keys.BOOTSTRAP_ALLOWED)
    invite = await service.get_unused_invite_by_token(token)
    if invite is None:
        deps.log_access_denied(request, "invite_invalid", 403)
        return _setup_error(request, "Invalid setup link")

    session.set(keys.INVITE_ALLOWED, True)
    session.set(keys.INVITE_ID, str(invite.id))
    return render(
        request,
        "setup.html",
        {"setup_ready": True, "is_invite": True, "display_name": invite.display_name or ""},
    )


def _require_setup_mark(session: Session) -> tuple[bool, bool]:
    if is_session_authenticated(session, deps.now_ts()):
        raise ForbiddenException("setup not permitted")
    is_bootstrap = session.get(keys.BOOTSTRAP_ALLOWED) is True
    is_invite = session.get(keys.INVITE_ALLOWED) is True
    if not is_bootstrap and not is_invite:
        raise ForbiddenException("setup not permitted")
    return is_bootstrap, is_invite


def _invite_uuid(raw: str | None) -> uuid.UUID:
    if not raw or not raw.strip():
        raise BadRequestException("invite token missing")
    try:
        return uuid.UUID(raw)
    except ValueError as exc:
        raise InviteInvalidOrUsed() from exc


@router.post("/webauthn/setup/start")
async def setup_start(
    request: Request,
    session: Session = Depends(deps.get_session),
    db: AsyncSession = Depends(deps.get_db),
    verifier: PasskeyVerifier = Depends(deps.get_passkey_verifier),
):
    is_bootstrap, is_invite = _require_setup_mark(session)
    service = AuthService(db)

    if is_bootstrap:
        if await service.count_users() > 0:
            raise SetupAlreadyCompleted()
        if not _bootstrap_token():
            raise ForbiddenException("setup is unavailable")

    invite_id = None
    if is_invite:
        invite_id = _invite_uuid(session.get(keys.INVITE_ID))
        invite = await service.get_invite(invite_id)
        if invite is None or invite.used_at is not None:
            raise InviteInvalidOrUsed()

    body = await parse_body(request, SetupStartRequest)
    display_name = body.display_name.strip()
    if not display_name:
        raise BadRequestException("display name is required")

    user_id = uuid.uuid4()
    options, ceremony = verifier.begin_registration(
        user_handle=user_id.bytes,
        name=display_name,
        display_name=display_name,
    )

    session.set(keys.WEBAUTHN_SETUP, ceremony)
    session.set(keys.SETUP_USER_ID, str(user_id))
    session.set(keys.SETUP_DISPLAY_NAME, display_name)
    session.set(keys.SETUP_LABEL, (body.label or "").strip())
    session.set(keys.SETUP_IS_ADMIN, is_bootstrap)
    if invite_id is not None:
        session.set(keys.INVITE_ID, str(invite_id))

    WEBAUTHN_CEREMONIES_TOTAL.labels(ceremony="setup", result="started").inc()
    return options


@router.post("/webauthn/setup/finish", response_model=RedirectPayload)
async def setup_finish(
    request: Request,
    session: Session = Depends(deps.get_session),
    store: SessionStore = Depends(deps.get_session_store),
    db: AsyncSession = Depends(deps.get_db),
    verifier: PasskeyVerifier = Depends(deps.get_passkey_verifier),
):
    _require_setup_mark(session)
    now = deps.now_ts()

    ceremony = load_ceremony(session, keys.WEBAUTHN_SETUP, now)
    if ceremony is None:
        raise BadRequestException("setup session missing")

    is_admin = session.get(keys.SETUP_IS_ADMIN)
    if is_admin is None:
        raise BadRequestException("setup state missing")

    raw_user_id = session.get(keys.SETUP_USER_ID)
    if not raw_user_id:
        raise BadRequestException("setup user missing")
    try:
        user_id = uuid.UUID(raw_user_id)
    except ValueError as exc:
        raise BadRequestException("invalid setup user") from exc
    display_name = session.get(keys.SETUP_DISPLAY_NAME)
    if not display_name:
        raise BadRequestException("display name missing")
    label = (session.get(keys.SETUP_LABEL) or "").strip()

    response = await read_json_object(request)
    try:
        credential = verifier.finish_registration(ceremony, response)
    except PasskeyVerificationError:
        WEBAUTHN_CEREMONIES_TOTAL.labels(ceremony="setup", result="rejected").inc()
        raise BadRequestException("failed to finish registration", code=ErrorCode.E005)

    invite_id = None if is_admin else _invite_uuid(session.get(keys.INVITE_ID))

    try:
        user = await AuthService(db).finalize_setup_registration(
            user_id=user_id,
            display_name=display_name,
            is_admin=is_admin,
            credential=credential,
            label=label,
            invite_id=invite_id,
        )
    except (SetupAlreadyCompleted, InviteInvalidOrUsed):
        WEBAUTHN_CEREMONIES_TOTAL.labels(ceremony="setup", result="conflict").inc()
        raise
    except Exception as exc:
        logger.exception("setup.finalize_failed user_id=%s", user_id)
        raise GroundwaveException("failed to finalize setup", status_code=500) from exc

    await rotate_and_authenticate(
        store,
        session,
        SessionUser(user_id=str(user.id), display_name=user.display_name, is_admin=user.is_admin),
        remember=True,
        now=now,
    )
    session.delete(*keys.SETUP_KEYS)
    WEBAUTHN_CEREMONIES_TOTAL.labels(ceremony="setup", result="ok").inc()
    logger.info("setup.completed user_id=%s admin=%s", user.id, user.is_admin)
    return {"redirect": "/"}
