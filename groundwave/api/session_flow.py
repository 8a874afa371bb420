import logging

from groundwave.core.auth.state import SessionUser, set_authenticated
from groundwave.core.sessions.session import Session
from groundwave.core.sessions.store import SessionStore
from groundwave.utils.exceptions import GroundwaveException

logger = logging.getLogger(__name__)


async def rotate_and_authenticate(
    store: SessionStore,
    session: Session,
    user: SessionUser,
    *,
    remember: bool,
    now: int,
) -> None:
    """Move the session to a fresh id, destroy the old row, then mark it authenticated."""
    try:
        await store.rotate(session)
    except Exception as exc:
        logger.exception("session.rotate_failed user_id=%s", user.user_id)
        raise GroundwaveException("failed to rotate session", status_code=500) from exc

    set_authenticated(session, user, remember=remember, now=now)
    logger.info("auth.session_established user_id=%s remember=%s", user.user_id, remember)


async def end_session(store: SessionStore, session: Session) -> None:
    await store.destroy(session.id)
    session.clear()
    session.destroyed = True
