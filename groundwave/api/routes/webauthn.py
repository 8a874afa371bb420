import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from groundwave.api import deps
from groundwave.api.body import parse_body, read_json_object
from groundwave.api.session_flow import rotate_and_authenticate
from groundwave.core.auth.service import AuthService, stored_credential
from groundwave.core.auth.state import SessionUser, load_ceremony, should_remember_login
from groundwave.core.auth.webauthn import PasskeyVerifier
from groundwave.core.sessions import keys
from groundwave.core.sessions.session import Session
from groundwave.core.sessions.store import SessionStore
from groundwave.db.models.user import User
from groundwave.schemas.auth import OkPayload, RedirectPayload, RegisterStartRequest
from groundwave.utils.client import client_ip
from groundwave.utils.error_codes import ErrorCode
from groundwave.utils.exceptions import (
    BadRequestException,
    GroundwaveException,
    PasskeyVerificationError,
    UnauthorizedException,
)
from groundwave.utils.metrics import WEBAUTHN_CEREMONIES_TOTAL
from groundwave.utils.paths import sanitize_next_path

router = APIRouter()

logger = logging.getLogger(__name__)


def _user_from_handle(handle: Optional[bytes]) -> Optional[uuid.UUID]:
    if not handle or len(handle) != 16:
        return None
    return uuid.UUID(bytes=handle)


@router.post("/webauthn/login/start")
async def login_start(
    session: Session = Depends(deps.get_session),
    verifier: PasskeyVerifier = Depends(deps.get_passkey_verifier),
):
    options, ceremony = verifier.begin_discoverable_login()
    session.set(keys.WEBAUTHN_LOGIN, ceremony)
    WEBAUTHN_CEREMONIES_TOTAL.labels(ceremony="login", result="started").inc()
    return options


@router.post("/webauthn/login/finish", response_model=RedirectPayload)
async def login_finish(
    request: Request,
    next: str = "",
    remember: Optional[str] = None,
    session: Session = Depends(deps.get_session),
    store: SessionStore = Depends(deps.get_session_store),
    db: AsyncSession = Depends(deps.get_db),
    verifier: PasskeyVerifier = Depends(deps.get_passkey_verifier),
):
    now = deps.now_ts()
    ceremony = load_ceremony(session, keys.WEBAUTHN_LOGIN, now)
    if ceremony is None:
        raise BadRequestException("login session missing")

    response = await read_json_object(request)
    service = AuthService(db)
    ip = client_ip(request)

    user: Optional[User] = None
    user_id = _user_from_handle(verifier.user_handle(response))
    if user_id is not None:
        user = await service.get_user(user_id)
    try:
        if user is None:
            raise PasskeyVerificationError(details={"reason": "unknown_user_handle"})
        passkeys = await service.list_passkeys(user.id)
        assertion = verifier.finish_assertion(ceremony, [stored_credential(p) for p in passkeys], response)
    except PasskeyVerificationError:
        WEBAUTHN_CEREMONIES_TOTAL.labels(ceremony="login", result="rejected").inc()
        logger.warning("auth.login failed user_id=%s ip=%s", user_id, ip)
        raise

    try:
        await service.record_assertion(assertion.credential_id, assertion.sign_count)
    except PasskeyVerificationError:
        WEBAUTHN_CEREMONIES_TOTAL.labels(ceremony="login", result="rejected").inc()
        logger.warning("auth.login counter_lost_race user_id=%s ip=%s", user.id, ip)
        raise
    except Exception as exc:
        logger.exception("auth.login passkey_update_failed user_id=%s", user.id)
        raise GroundwaveException("failed to update passkey", status_code=500) from exc

    await rotate_and_authenticate(
        store,
        session,
        SessionUser(user_id=str(user.id), display_name=user.display_name, is_admin=user.is_admin),
        remember=should_remember_login(remember),
        now=now,
    )
    session.delete(keys.WEBAUTHN_LOGIN)
    WEBAUTHN_CEREMONIES_TOTAL.labels(ceremony="login", result="ok").inc()
    logger.info("auth.login success user_id=%s ip=%s", user.id, ip)
    return {"redirect": sanitize_next_path(next, "/")}


@router.post("/webauthn/register/start")
async def register_start(
    request: Request,
    user: SessionUser = Depends(deps.require_auth),
    session: Session = Depends(deps.get_session),
    db: AsyncSession = Depends(deps.get_db),
    verifier: PasskeyVerifier = Depends(deps.get_passkey_verifier),
):
    service = AuthService(db)
    db_user = await service.get_user(uuid.UUID(user.user_id))
    if db_user is None:
        raise UnauthorizedException()

    body = await parse_body(request, RegisterStartRequest, allow_empty=True)
    existing = await service.list_passkeys(db_user.id)
    options, ceremony = verifier.begin_registration(
        user_handle=db_user.id.bytes,
        name=db_user.display_name,
        display_name=db_user.display_name,
        exclude=[stored_credential(p) for p in existing],
    )

    session.set(keys.WEBAUTHN_REGISTER, ceremony)
    session.set(keys.REGISTER_USER_ID, str(db_user.id))
    session.set(keys.REGISTER_LABEL, (body.label or "").strip())
    WEBAUTHN_CEREMONIES_TOTAL.labels(ceremony="register", result="started").inc()
    return options


@router.post("/webauthn/register/finish", response_model=OkPayload)
async def register_finish(
    request: Request,
    user: SessionUser = Depends(deps.require_auth),
    session: Session = Depends(deps.get_session),
    db: AsyncSession = Depends(deps.get_db),
    verifier: PasskeyVerifier = Depends(deps.get_passkey_verifier),
):
    ceremony = load_ceremony(session, keys.WEBAUTHN_REGISTER, deps.now_ts())
    if ceremony is None:
        raise BadRequestException("registration session missing")

    register_user_id = session.get(keys.REGISTER_USER_ID)
    if not register_user_id or register_user_id != user.user_id:
        raise BadRequestException("registration user missing")
    label = session.get(keys.REGISTER_LABEL)

    response = await read_json_object(request)
    try:
        credential = verifier.finish_registration(ceremony, response)
    except PasskeyVerificationError:
        WEBAUTHN_CEREMONIES_TOTAL.labels(ceremony="register", result="rejected").inc()
        raise BadRequestException("failed to finish registration", code=ErrorCode.E005)

    await AuthService(db).add_passkey(uuid.UUID(register_user_id), credential, label)
    session.delete(keys.WEBAUTHN_REGISTER, keys.REGISTER_USER_ID, keys.REGISTER_LABEL)
    WEBAUTHN_CEREMONIES_TOTAL.labels(ceremony="register", result="ok").inc()
    logger.info("passkey.registered user_id=%s", register_user_id)
    return {"ok": True}
