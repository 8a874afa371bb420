import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from groundwave.api import deps
from groundwave.api.session_flow import end_session
from groundwave.api.templating import render
from groundwave.core.auth.state import clear_authenticated, is_session_authenticated
from groundwave.core.sessions import keys
from groundwave.core.sessions.session import Session
from groundwave.core.sessions.store import SessionStore
from groundwave.utils.paths import sanitize_next_path

router = APIRouter()

logger = logging.getLogger(__name__)


@router.get("/")
async def index(session: Session = Depends(deps.get_session)):
    if is_session_authenticated(session, deps.now_ts()):
        return RedirectResponse("/security", status_code=303)
    return RedirectResponse("/login", status_code=303)


@router.get("/login")
async def login_page(
    request: Request,
    next: str = "",
    session: Session = Depends(deps.get_session),
):
    next_path = sanitize_next_path(next, "/")
    if is_session_authenticated(session, deps.now_ts()):
        return RedirectResponse(next_path, status_code=303)
    return render(request, "login.html", {"next_path": next_path, "flashes": session.pop_flashes()})


@router.api_route("/logout", methods=["GET", "POST"])
async def logout(
    session: Session = Depends(deps.get_session),
    store: SessionStore = Depends(deps.get_session_store),
):
    user_id = session.get(keys.USER_ID)
    clear_authenticated(session)
    await end_session(store, session)
    logger.info("auth.logout user_id=%s", user_id or "")
    return RedirectResponse("/login", status_code=303)
