from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from groundwave.core.sessions import keys
from groundwave.core.sessions.session import CeremonyState, Session, SessionKey

REMEMBER_ME_WINDOW = timedelta(days=14)
SHORT_SESSION_WINDOW = timedelta(hours=1)
SENSITIVE_ACCESS_WINDOW = timedelta(minutes=30)

_REMEMBER_TRUE = frozenset({"", "1", "true", "yes", "on"})


@dataclass(frozen=True)
class SessionUser:
    user_id: str
    display_name: str
    is_admin: bool


def should_remember_login(raw: str | None) -> bool:
    """Absent or affirmative "remember" values keep the long window."""
    if raw is None:
        return True
    return raw.strip().lower() in _REMEMBER_TRUE


def set_authenticated(session: Session, user: SessionUser, *, remember: bool, now: int) -> None:
    window = REMEMBER_ME_WINDOW if remember else SHORT_SESSION_WINDOW
    session.set(keys.AUTHENTICATED, True)
    session.set(keys.USER_ID, user.user_id)
    session.set(keys.USER_DISPLAY_NAME, user.display_name)
    session.set(keys.USER_IS_ADMIN, user.is_admin)
    session.set(keys.AUTHENTICATED_EXPIRES_AT, now + int(window.total_seconds()))


def clear_authenticated(session: Session) -> None:
    session.delete(*keys.AUTH_KEYS)


def is_session_authenticated(session: Session, now: int) -> bool:
    """Authenticated flag plus unexpired window; an expired window wipes the auth fields."""
    if session.get(keys.AUTHENTICATED) is not True:
        return False
    expires_at = session.get(keys.AUTHENTICATED_EXPIRES_AT)
    if expires_at is None or now >= expires_at:
        clear_authenticated(session)
        return False
    if not session.get(keys.USER_ID):
        clear_authenticated(session)
        return False
    return True


def session_user(session: Session, now: int) -> SessionUser | None:
    if not is_session_authenticated(session, now):
        return None
    return SessionUser(
        user_id=session.get(keys.USER_ID) or "",
        display_name=session.get(keys.USER_DISPLAY_NAME) or "",
        is_admin=session.get(keys.USER_IS_ADMIN) is True,
    )


def grant_sensitive_access(session: Session, now: int) -> None:
    session.set(keys.SENSITIVE_ACCESS_AT, now)


def revoke_sensitive_access(session: Session) -> None:
    session.delete(keys.SENSITIVE_ACCESS_AT)


def has_sensitive_access(session: Session, now: int) -> bool:
    granted_at = session.get(keys.SENSITIVE_ACCESS_AT)
    if granted_at is None:
        return False
    return 0 <= now - granted_at <= SENSITIVE_ACCESS_WINDOW.total_seconds()


def load_ceremony(session: Session, key: SessionKey[CeremonyState], now: int) -> CeremonyState | None:
    """Stored ceremony state, or None. Expired state is removed from the session."""
    ceremony = session.get(key)
    if ceremony is None:
        return None
    if ceremony.is_expired(now):
        session.delete(key)
        return None
    return ceremony
