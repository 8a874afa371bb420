import logging
import uuid

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from groundwave.api import deps
from groundwave.api.body import read_json_object
from groundwave.api.templating import render
from groundwave.core.auth.service import AuthService, stored_credential
from groundwave.core.auth.state import (
    SessionUser,
    grant_sensitive_access,
    load_ceremony,
    revoke_sensitive_access,
)
from groundwave.core.auth.webauthn import PasskeyVerifier
from groundwave.core.sessions import keys
from groundwave.core.sessions.session import Session
from groundwave.schemas.auth import RedirectPayload
from groundwave.utils.exceptions import (
    BadRequestException,
    GroundwaveException,
    PasskeyVerificationError,
)
from groundwave.utils.metrics import WEBAUTHN_CEREMONIES_TOTAL
from groundwave.utils.paths import sanitize_next_path

router = APIRouter()

logger = logging.getLogger(__name__)


@router.get("/break-glass")
async def break_glass_page(
    request: Request,
    next: str = "",
    user: SessionUser = Depends(deps.require_auth),
):
    next_path = sanitize_next_path(next)
    logger.info("break_glass.view user_id=%s next=%s", user.user_id, next_path)
    return render(request, "break_glass.html", {"next_path": next_path, "display_name": user.display_name})


@router.post("/break-glass/start")
async def break_glass_start(
    user: SessionUser = Depends(deps.require_auth),
    session: Session = Depends(deps.get_session),
    db: AsyncSession = Depends(deps.get_db),
    verifier: PasskeyVerifier = Depends(deps.get_passkey_verifier),
):
    passkeys = await AuthService(db).list_passkeys(uuid.UUID(user.user_id))
    if not passkeys:
        raise GroundwaveException("failed to start verification", status_code=500)

    options, ceremony = verifier.begin_assertion([stored_credential(p) for p in passkeys])
    session.set(keys.WEBAUTHN_BREAK_GLASS, ceremony)
    WEBAUTHN_CEREMONIES_TOTAL.labels(ceremony="break_glass", result="started").inc()
    return options


@router.post("/break-glass/finish", response_model=RedirectPayload)
async def break_glass_finish(
    request: Request,
    next: str = "",
    user: SessionUser = Depends(deps.require_auth),
    session: Session = Depends(deps.get_session),
    db: AsyncSession = Depends(deps.get_db),
    verifier: PasskeyVerifier = Depends(deps.get_passkey_verifier),
):
    now = deps.now_ts()
    ceremony = load_ceremony(session, keys.WEBAUTHN_BREAK_GLASS, now)
    if ceremony is None:
        raise BadRequestException("verification session missing")

    response = await read_json_object(request)
    service = AuthService(db)
    passkeys = await service.list_passkeys(uuid.UUID(user.user_id))
    try:
        assertion = verifier.finish_assertion(ceremony, [stored_credential(p) for p in passkeys], response)
    except PasskeyVerificationError:
        WEBAUTHN_CEREMONIES_TOTAL.labels(ceremony="break_glass", result="rejected").inc()
        logger.warning("break_glass.failed user_id=%s", user.user_id)
        raise

    try:
        await service.record_assertion(assertion.credential_id, assertion.sign_count)
    except PasskeyVerificationError:
        WEBAUTHN_CEREMONIES_TOTAL.labels(ceremony="break_glass", result="rejected").inc()
        logger.warning("break_glass.counter_lost_race user_id=%s", user.user_id)
        raise
    except Exception as exc:
        logger.exception("break_glass.passkey_update_failed user_id=%s", user.user_id)
        raise GroundwaveException("failed to update passkey", status_code=500) from exc

    grant_sensitive_access(session, now)
    session.delete(keys.WEBAUTHN_BREAK_GLASS)
    WEBAUTHN_CEREMONIES_TOTAL.labels(ceremony="break_glass", result="ok").inc()
    logger.info("break_glass.unlocked user_id=%s", user.user_id)
    return {"redirect": sanitize_next_path(next)}


@router.post("/break-glass/lock")
async def break_glass_lock(
    request: Request,
    session: Session = Depends(deps.get_session),
):
    revoke_sensitive_access(session)
    return RedirectResponse(sanitize_next_path(request.headers.get("referer")), status_code=303)
