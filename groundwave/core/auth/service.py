import logging
import secrets
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from groundwave.core.auth.webauthn import RegisteredCredential, StoredCredential
from groundwave.db.models.invite import UserInvite
from groundwave.db.models.passkey import UserPasskey
from groundwave.db.models.setup_claim import BOOTSTRAP_CLAIM, SetupClaim
from groundwave.db.models.user import User
from groundwave.utils.exceptions import (
    ConflictException,
    InviteInvalidOrUsed,
    NotFoundException,
    PasskeyVerificationError,
    SetupAlreadyCompleted,
)

logger = logging.getLogger(__name__)


def new_invite_token() -> str:
    return secrets.token_urlsafe(32)


def stored_credential(passkey: UserPasskey) -> StoredCredential:
    return StoredCredential(
        credential_id=passkey.credential_id,
        credential_data=passkey.credential_data,
        sign_count=int(passkey.sign_count or 0),
    )


class AuthService:
    def __init__(self, db: AsyncSession):
        self.db = db

    # -- users ----------------------------------------------------------------

    async def count_users(self) -> int:
        result = await self.db.execute(select(func.count()).select_from(User))
        return int(result.scalar_one())

    async def get_user(self, user_id: uuid.UUID) -> Optional[User]:
        return await self.db.get(User, user_id)

    # -- invites --------------------------------------------------------------

    async def get_unused_invite_by_token(self, token: str) -> Optional[UserInvite]:
        if not token:
            return None
        result = await self.db.execute(
            select(UserInvite).where(UserInvite.token == token, UserInvite.used_at.is_(None))
        )
        return result.scalar_one_or_none()

    async def get_invite(self, invite_id: uuid.UUID) -> Optional[UserInvite]:
        return await self.db.get(UserInvite, invite_id)

    async def list_open_invites(self) -> list[UserInvite]:
        result = await self.db.execute(
            select(UserInvite).where(UserInvite.used_at.is_(None)).order_by(UserInvite.created_at.desc())
        )
        return list(result.scalars().all())

    async def create_invite(self, *, created_by: uuid.UUID, display_name: Optional[str] = None) -> UserInvite:
        invite = UserInvite(
            token=new_invite_token(),
            display_name=(display_name or "").strip() or None,
            created_by=created_by,
        )
        self.db.add(invite)
        await self.db.commit()
        await self.db.refresh(invite)
        logger.info("invite.created id=%s created_by=%s", invite.id, created_by)
        return invite

    async def revoke_invite(self, invite_id: uuid.UUID) -> bool:
        """Delete an invite that has not been used yet. Returns False when nothing matched."""
        result = await self.db.execute(
            delete(UserInvite).where(UserInvite.id == invite_id, UserInvite.used_at.is_(None))
        )
        await self.db.commit()
        return bool(result.rowcount)

    # -- passkeys -------------------------------------------------------------

    async def list_passkeys(self, user_id: uuid.UUID) -> list[UserPasskey]:
        result = await self.db.execute(
            select(UserPasskey).where(UserPasskey.user_id == user_id).order_by(UserPasskey.created_at)
        )
        return list(result.scalars().all())

    async def count_passkeys(self, user_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(UserPasskey).where(UserPasskey.user_id == user_id)
        )
        return int(result.scalar_one())

    async def get_passkey_by_credential_id(self, credential_id: bytes) -> Optional[UserPasskey]:
        result = await self.db.execute(select(UserPasskey).where(UserPasskey.credential_id == credential_id))
        return result.scalar_one_or_none()

    async def add_passkey(
        self, user_id: uuid.UUID, credential: RegisteredCredential, label: Optional[str] = None
    ) -> UserPasskey:
        passkey = UserPasskey(
            user_id=user_id,
            credential_id=credential.credential_id,
            credential_data=credential.credential_data,
            sign_count=credential.sign_count,
            label=(label or "").strip() or None,
        )
        self.db.add(passkey)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise ConflictException("passkey already registered") from exc
        await self.db.refresh(passkey)
        return passkey

    async def record_assertion(self, credential_id: bytes, sign_count: int) -> None:
        """Store the counter from a verified assertion.

        The counter check is repeated inside the UPDATE, so of two concurrent
        assertions the one carrying the lower counter cannot overwrite the other.
        """
        if sign_count == 0:
            # Authenticators without a counter stay at zero.
            counter_advances = UserPasskey.sign_count == 0
        else:
            counter_advances = UserPasskey.sign_count < sign_count
        result = await self.db.execute(
            update(UserPasskey)
            .where(UserPasskey.credential_id == credential_id, counter_advances)
            .values(sign_count=sign_count, last_used_at=datetime.now(timezone.utc))
        )
        if result.rowcount:
            await self.db.commit()
            return

        await self.db.rollback()
        if await self.get_passkey_by_credential_id(credential_id) is None:
            raise NotFoundException("passkey not found")
        raise PasskeyVerificationError(details={"reason": "sign_count_regression", "returned": sign_count})

    async def delete_passkey(self, user_id: uuid.UUID, passkey_id: uuid.UUID) -> None:
        """Delete one of the user's passkeys, refusing to remove the last one.

        The count check is part of the DELETE itself so two concurrent deletes
        cannot both pass it.
        """
        remaining = (
            select(func.count())
            .select_from(UserPasskey)
            .where(UserPasskey.user_id == user_id)
            .scalar_subquery()
        )
        result = await self.db.execute(
            delete(UserPasskey).where(
                and_(UserPasskey.id == passkey_id, UserPasskey.user_id == user_id, remaining > 1)
            )
        )
        if result.rowcount:
            await self.db.commit()
            logger.info("passkey.deleted id=%s user_id=%s", passkey_id, user_id)
            return

        await self.db.rollback()
        owned = await self.db.execute(
            select(UserPasskey.id).where(UserPasskey.id == passkey_id, UserPasskey.user_id == user_id)
        )
        if owned.scalar_one_or_none() is None:
            raise NotFoundException("passkey not found")
        raise ConflictException("You must keep at least one passkey")

    # -- setup ----------------------------------------------------------------

    async def finalize_setup_registration(
        self,
        *,
        user_id: uuid.UUID,
        display_name: str,
        is_admin: bool,
        credential: RegisteredCredential,
        label: Optional[str] = None,
        invite_id: Optional[uuid.UUID] = None,
    ) -> User:
        """Create the user and their first passkey in one transaction.

        Bootstrap (``invite_id is None``): the ``setup_claims`` row is written
        first, so of two racing bootstraps exactly one commits; the loser gets
        ``SetupAlreadyCompleted``. Invite mode: the invite is consumed with a
        conditional UPDATE; zero affected rows is ``InviteInvalidOrUsed``.
        """
        try:
            if invite_id is None:
                await self._claim_bootstrap()
            else:
                await self._consume_invite(invite_id)

            user = User(id=user_id, display_name=display_name, is_admin=is_admin)
            self.db.add(user)
            await self.db.flush()
            self.db.add(
                UserPasskey(
                    user_id=user.id,
                    credential_id=credential.credential_id,
                    credential_data=credential.credential_data,
                    sign_count=credential.sign_count,
                    label=(label or "").strip() or None,
                )
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "setup.finalized user_id=%s mode=%s",
            user.id,
            "bootstrap" if invite_id is None else "invite",
        )
        return user

    async def _claim_bootstrap(self) -> None:
        # Write first: on SQLite this takes the database write lock up front.
        self.db.add(SetupClaim(kind=BOOTSTRAP_CLAIM))
        try:
            await self.db.flush()
        except IntegrityError as exc:
            raise SetupAlreadyCompleted() from exc
        if await self.count_users() > 0:
            raise SetupAlreadyCompleted()

    async def _consume_invite(self, invite_id: uuid.UUID) -> None:
        result = await self.db.execute(
            update(UserInvite)
            .where(UserInvite.id == invite_id, UserInvite.used_at.is_(None))
            .values(used_at=datetime.now(timezone.utc))
        )
        if result.rowcount != 1:
            raise InviteInvalidOrUsed()
