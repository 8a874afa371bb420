from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from groundwave.core.sessions import keys
from groundwave.core.sessions.session import Session, new_session_id
from groundwave.db.models.http_session import HttpSession

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is written in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class StoredSession:
    """Listing view of a persisted session (security page)."""

    id: str
    expires_at: datetime
    user_id: str
    user_display_name: str
    device_label: str
    device_ip: str


class SessionStore:
    """Server-side session rows in ``http_sessions``.

    Writes are write-first (UPDATE, then INSERT when no row matched) so that on
    SQLite concurrent writers queue on the database lock instead of failing a
    read-to-write upgrade.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, lifetime_seconds: int):
        self._session_factory = session_factory
        self._lifetime = timedelta(seconds=max(1, int(lifetime_seconds)))

    async def load(self, session_id: str) -> Optional[Session]:
        async with self._session_factory() as db:
            row = await db.get(HttpSession, session_id)
            if row is None:
                return None
            if _as_utc(row.expires_at) <= _utcnow():
                await db.execute(delete(HttpSession).where(HttpSession.id == session_id))
                await db.commit()
                return None
            return Session.loads(row.id, row.data)

    async def exists(self, session_id: str) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                select(HttpSession.id).where(HttpSession.id == session_id, HttpSession.expires_at > _utcnow())
            )
            return result.scalar_one_or_none() is not None

    async def save(self, session: Session) -> bool:
        """Persist ``session``. Returns False when its row is gone.

        Only a session that was never stored (or was just rotated) may create a
        row. A loaded session whose row was deleted meanwhile (logout, invalidate,
        rotation in a concurrent request) is marked destroyed instead of being
        written back under its old id.
        """
        payload = session.dumps()
        now = _utcnow()
        expires_at = now + self._lifetime
        async with self._session_factory() as db:
            result = await db.execute(
                update(HttpSession)
                .where(HttpSession.id == session.id)
                .values(data=payload, expires_at=expires_at, updated_at=now)
            )
            if result.rowcount == 0:
                if not session.is_new:
                    await db.rollback()
                    session.destroyed = True
                    logger.info("session.save_skipped reason=row_deleted")
                    return False
                db.add(HttpSession(id=session.id, data=payload, expires_at=expires_at))
            await db.commit()
        session.is_new = False
        session.modified = False
        return True

    async def destroy(self, session_id: str) -> None:
        async with self._session_factory() as db:
            await db.execute(delete(HttpSession).where(HttpSession.id == session_id))
            await db.commit()

    async def rotate(self, session: Session) -> str:
        """Move the session to a fresh id.

        The new row is committed before the old one is deleted, so there is no
        window in which neither id resolves. Returns the previous id.
        """
        previous_id = session.id
        session.id = new_session_id()
        session.is_new = True
        session.modified = True
        await self.save(session)
        await self.destroy(previous_id)
        logger.info("session.rotated")
        return previous_id

    async def list_valid(self) -> list[StoredSession]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(HttpSession)
                .where(HttpSession.expires_at > _utcnow())
                .order_by(HttpSession.expires_at.desc())
            )
            rows = result.scalars().all()

        sessions: list[StoredSession] = []
        for row in rows:
            decoded = Session.loads(row.id, row.data)
            sessions.append(
                StoredSession(
                    id=row.id,
                    expires_at=_as_utc(row.expires_at),
                    user_id=decoded.get(keys.USER_ID) or "",
                    user_display_name=decoded.get(keys.USER_DISPLAY_NAME) or "",
                    device_label=decoded.get(keys.DEVICE_LABEL) or "",
                    device_ip=decoded.get(keys.DEVICE_IP) or "",
                )
            )
        return sessions

    async def get_listing(self, session_id: str) -> Optional[StoredSession]:
        for stored in await self.list_valid():
            if stored.id == session_id:
                return stored
        return None

    async def invalidate_others(self, current_id: str, user_id: str | None) -> int:
        """Destroy every valid session except ``current_id``.

        Only signed-in sessions are swept; anonymous ones keep their PoW marks.
        ``user_id`` limits the sweep to one user's sessions; None means all users.
        """
        targets = [
            s.id
            for s in await self.list_valid()
            if s.id != current_id and s.user_id and (user_id is None or s.user_id == user_id)
        ]
        if not targets:
            return 0
        async with self._session_factory() as db:
            await db.execute(delete(HttpSession).where(HttpSession.id.in_(targets)))
            await db.commit()
        return len(targets)

    async def purge_expired(self) -> int:
        async with self._session_factory() as db:
            result = await db.execute(delete(HttpSession).where(HttpSession.expires_at <= _utcnow()))
            await db.commit()
            return int(result.rowcount or 0)
