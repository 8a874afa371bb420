"""Security page: sessions, passkeys and invites.

Actions are HTML form posts; every outcome is a flash message plus a 303 back
to ``/security``.
"""

import logging
import time
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from groundwave.api import deps
from groundwave.api.session_flow import end_session
from groundwave.api.templating import render
from groundwave.core.auth.service import AuthService
from groundwave.core.auth.state import SessionUser, has_sensitive_access
from groundwave.core.sessions.session import Session
from groundwave.core.sessions.store import SessionStore
from groundwave.utils.exceptions import ConflictException, NotFoundException

router = APIRouter()

logger = logging.getLogger(__name__)

SECURITY_PATH = "/security"


def _back() -> RedirectResponse:
    return RedirectResponse(SECURITY_PATH, status_code=303)


def _parse_uuid(raw: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(raw)
    except ValueError:
        return None


def _format_remaining(seconds: float) -> str:
    if seconds < 0:
        return "expired"
    days, rest = divmod(int(seconds), 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes or not parts:
        parts.append(f"{minutes}m")
    return "in " + " ".join(parts)


@router.get("/security")
async def security_page(
    request: Request,
    user: SessionUser = Depends(deps.require_auth),
    session: Session = Depends(deps.get_session),
    store: SessionStore = Depends(deps.get_session_store),
    db: AsyncSession = Depends(deps.get_db),
):
    service = AuthService(db)
    now = time.time()

    sessions = [
        s for s in await store.list_valid() if s.user_id and (user.is_admin or s.user_id == user.user_id)
    ]
    session_rows = [
        {
            "id": s.id,
            "user_display_name": s.user_display_name,
            "device_label": s.device_label,
            "device_ip": s.device_ip,
            "expires_in": _format_remaining(s.expires_at.timestamp() - now),
            "is_current": s.id == session.id,
        }
        for s in sessions
    ]

    passkeys = await service.list_passkeys(uuid.UUID(user.user_id))
    invites = await service.list_open_invites() if user.is_admin else []
    base_url = str(request.base_url).rstrip("/")

    return render(
        request,
        "security.html",
        {
            "flashes": session.pop_flashes(),
            "sessions": session_rows,
            "passkeys": passkeys,
            "invites": [
                {"id": i.id, "display_name": i.display_name, "url": f"{base_url}/setup?token={i.token}"}
                for i in invites
            ],
            "sensitive_unlocked": has_sensitive_access(session, int(now)),
        },
    )


@router.post("/security/sessions/{session_id}/invalidate")
async def invalidate_session(
    request: Request,
    session_id: str,
    user: SessionUser = Depends(deps.require_auth),
    session: Session = Depends(deps.get_session),
    store: SessionStore = Depends(deps.get_session_store),
):
    target = await store.get_listing(session_id)
    if target is None:
        session.add_flash("error", "Session not found")
        return _back()

    if not user.is_admin and target.user_id != user.user_id:
        session.add_flash("error", "Access restricted")
        deps.log_access_denied(request, "session_not_owned", 303, redirect=SECURITY_PATH)
        return _back()

    if session_id == session.id:
        await end_session(store, session)
        logger.info("session.invalidated current=true user_id=%s", user.user_id)
        return RedirectResponse("/login", status_code=303)

    await store.destroy(session_id)
    logger.info("session.invalidated current=false user_id=%s target_user_id=%s", user.user_id, target.user_id)
    session.add_flash("success", "Session invalidated")
    return _back()


@router.post("/security/sessions/invalidate-others")
async def invalidate_other_sessions(
    user: SessionUser = Depends(deps.require_auth),
    session: Session = Depends(deps.get_session),
    store: SessionStore = Depends(deps.get_session_store),
):
    # Admins sweep every user's sessions.
    deleted = await store.invalidate_others(session.id, None if user.is_admin else user.user_id)
    if deleted == 0:
        session.add_flash("info", "No other sessions to invalidate")
        return _back()

    logger.info("session.invalidated_others user_id=%s count=%d", user.user_id, deleted)
    session.add_flash("success", f"Invalidated {deleted} other session(s)")
    return _back()


@router.post("/security/passkeys/{passkey_id}/delete")
async def delete_passkey(
    passkey_id: str,
    user: SessionUser = Depends(deps.require_auth),
    session: Session = Depends(deps.get_session),
    db: AsyncSession = Depends(deps.get_db),
):
    service = AuthService(db)
    user_id = uuid.UUID(user.user_id)
    if await service.count_passkeys(user_id) <= 1:
        session.add_flash("warning", "You must keep at least one passkey")
        return _back()

    parsed = _parse_uuid(passkey_id)
    if parsed is None:
        session.add_flash("error", "Passkey not found")
        return _back()

    try:
        await service.delete_passkey(user_id, parsed)
    except ConflictException:
        session.add_flash("warning", "You must keep at least one passkey")
        return _back()
    except NotFoundException:
        session.add_flash("error", "Passkey not found")
        return _back()

    session.add_flash("success", "Passkey deleted")
    return _back()


@router.post("/security/invites")
async def create_invite(
    display_name: str = Form(default=""),
    user: SessionUser = Depends(deps.require_admin),
    session: Session = Depends(deps.get_session),
    db: AsyncSession = Depends(deps.get_db),
):
    await AuthService(db).create_invite(created_by=uuid.UUID(user.user_id), display_name=display_name)
    session.add_flash("success", "Invite created")
    return _back()


@router.post("/security/invites/{invite_id}/delete")
async def revoke_invite(
    invite_id: str,
    user: SessionUser = Depends(deps.require_admin),
    session: Session = Depends(deps.get_session),
    db: AsyncSession = Depends(deps.get_db),
):
    parsed = _parse_uuid(invite_id)
    if parsed is None or not await AuthService(db).revoke_invite(parsed):
        session.add_flash("error", "Failed to revoke invite")
        return _back()

    logger.info("invite.revoked id=%s by=%s", parsed, user.user_id)
    session.add_flash("success", "Invite revoked")
    return _back()
