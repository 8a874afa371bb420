import secrets
import time
from pathlib import Path
from typing import Any, Optional

from fastapi import Request
from fastapi.templating import Jinja2Templates

from groundwave.config import settings
from groundwave.core.auth.state import session_user
from groundwave.core.sessions import keys
from groundwave.core.sessions.session import Session

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"

templates = Jinja2Templates(directory=str(TEMPLATES_DIR))


def ensure_csrf_token(session: Session) -> str:
    token = session.get(keys.CSRF_TOKEN)
    if not token:
        token = secrets.token_urlsafe(32)
        session.set(keys.CSRF_TOKEN, token)
    return token


def render(
    request: Request,
    name: str,
    context: Optional[dict[str, Any]] = None,
    *,
    status_code: int = 200,
):
    session: Session = request.state.session
    page: dict[str, Any] = {
        "site_title": settings.site_title,
        "csrf_token": ensure_csrf_token(session),
        "current_user": session_user(session, int(time.time())),
        "flashes": [],
    }
    page.update(context or {})
    return templates.TemplateResponse(request, name, page, status_code=status_code)
