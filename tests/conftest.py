"""
Groundwave: pytest fixtures and configuration.

Provides:
- Test environment (temporary SQLite database, relying party, risk sets)
- Application with lifespan and a fresh schema per test
- HTTP client over ASGI
- Seeded users, passkeys and server-side sessions
- A deterministic passkey verifier standing in for real authenticators
"""
import os
import secrets
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

# Settings are read at import time; the environment must be in place first.
_TEST_DB_PATH = os.path.join(tempfile.gettempdir(), f"groundwave-test-{os.getpid()}.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DB_PATH}"
os.environ["ENV"] = "test"
os.environ["WEBAUTHN_RP_ID"] = "testserver"
os.environ["WEBAUTHN_RP_ORIGINS"] = "http://testserver"
os.environ["BOOTSTRAP_TOKEN"] = "bootstrap-test-token"
os.environ["POW_LOW_RISK_ASNS"] = "64512"
os.environ["POW_HIGH_RISK_COUNTRIES"] = "CN"
os.environ["POW_EASY_DIFFICULTY"] = "8"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SESSION_GC_INTERVAL_SECONDS"] = "0"

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from groundwave.api import deps  # noqa: E402
from groundwave.config import settings  # noqa: E402
from groundwave.core.auth.state import SessionUser, set_authenticated  # noqa: E402
from groundwave.core.auth.webauthn import (  # noqa: E402
    RegisteredCredential,
    VerifiedAssertion,
    check_sign_count,
)
from groundwave.core.sessions import keys  # noqa: E402
from groundwave.core.sessions.cookie import sign_session_id, unsign_session_id  # noqa: E402
from groundwave.core.sessions.session import CeremonyState, Session  # noqa: E402
from groundwave.db.models import Base, User, UserPasskey  # noqa: E402
from groundwave.db.session import AsyncSessionLocal, engine  # noqa: E402
from groundwave.utils.exceptions import PasskeyVerificationError  # noqa: E402

BASE_URL = "http://testserver"
COOKIE_NAME = settings.SESSION_COOKIE_NAME
BOOTSTRAP_TOKEN = os.environ["BOOTSTRAP_TOKEN"]


# =============================================================================
# Passkey verifier
# =============================================================================
class FakePasskeyVerifier:
    """Accepts JSON "credentials" instead of real authenticator output.

    Registration response: {"id": "<credential id>"}; {"fail": true} is rejected.
    Assertion response: {"id": ..., "userHandle": "<user uuid hex>", "signCount": n}.
    """

    timeout_seconds = 300

    def _ceremony(self) -> tuple[dict[str, Any], CeremonyState]:
        challenge = secrets.token_urlsafe(16)
        options = {"publicKey": {"challenge": challenge}}
        expires_at = int(time.time()) + self.timeout_seconds
        return options, CeremonyState(state={"challenge": challenge}, expires_at=expires_at)

    def begin_registration(self, *, user_handle, name, display_name, exclude=()):
        options, ceremony = self._ceremony()
        options["publicKey"]["user"] = {"id": user_handle.hex(), "name": name, "displayName": display_name}
        options["publicKey"]["excludeCredentials"] = [c.credential_id.decode() for c in exclude]
        return options, ceremony

    def finish_registration(self, ceremony, response):
        if response.get("fail") or not response.get("id"):
            raise PasskeyVerificationError("failed to finish registration", status_code=400)
        credential_id = str(response["id"]).encode()
        return RegisteredCredential(
            credential_id=credential_id,
            credential_data=b"data-" + credential_id,
            sign_count=0,
        )

    def begin_discoverable_login(self):
        return self._ceremony()

    def begin_assertion(self, credentials):
        options, ceremony = self._ceremony()
        options["publicKey"]["allowCredentials"] = [c.credential_id.decode() for c in credentials]
        return options, ceremony

    @staticmethod
    def user_handle(response) -> Optional[bytes]:
        raw = response.get("userHandle")
        if not raw:
            return None
        return uuid.UUID(hex=raw).bytes

    def finish_assertion(self, ceremony, credentials, response):
        by_id = {c.credential_id: c for c in credentials}
        stored = by_id.get(str(response.get("id", "")).encode())
        if stored is None:
            raise PasskeyVerificationError()
        returned = int(response.get("signCount", 0))
        check_sign_count(stored.sign_count, returned)
        return VerifiedAssertion(credential_id=stored.credential_id, sign_count=returned)


# =============================================================================
# Application + client
# =============================================================================
@pytest_asyncio.fixture
async def app():
    from groundwave.main import app as fastapi_app

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    fastapi_app.dependency_overrides[deps.get_passkey_verifier] = lambda: FakePasskeyVerifier()
    async with fastapi_app.router.lifespan_context(fastapi_app):
        yield fastapi_app
    fastapi_app.dependency_overrides.clear()

    for suffix in ("", "-journal", "-wal", "-shm"):
        try:
            os.unlink(_TEST_DB_PATH + suffix)
        except FileNotFoundError:
            pass


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as c:
        yield c


@pytest.fixture
def store(app):
    return app.state.session_store


# =============================================================================
# Seeded state
# =============================================================================
def session_id_from(response: httpx.Response) -> Optional[str]:
    value = response.cookies.get(COOKIE_NAME)
    return unsign_session_id(value, settings.SESSION_SECRET) if value else None


@dataclass
class Browser:
    """A server-side session plus the headers a browser holding it would send."""

    session_id: str
    csrf_token: str
    extra_headers: dict[str, str] = field(default_factory=dict)

    @property
    def cookie(self) -> str:
        return sign_session_id(self.session_id, settings.SESSION_SECRET)

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Cookie": f"{COOKIE_NAME}={self.cookie}",
            "X-CSRF-Token": self.csrf_token,
            **self.extra_headers,
        }

    def html_headers(self) -> dict[str, str]:
        return {**self.headers, "Accept": "text/html"}

    def follow(self, response: httpx.Response) -> "Browser":
        """Pick up a rotated session cookie from ``response``."""
        new_id = session_id_from(response)
        assert new_id, "response did not set a session cookie"
        return Browser(session_id=new_id, csrf_token=self.csrf_token, extra_headers=dict(self.extra_headers))


@dataclass
class SeededUser:
    id: uuid.UUID
    display_name: str
    is_admin: bool
    passkey_ids: list[uuid.UUID]

    def as_session_user(self) -> SessionUser:
        return SessionUser(user_id=str(self.id), display_name=self.display_name, is_admin=self.is_admin)


@pytest.fixture
def make_user(app):
    async def _make(
        display_name: str = "Ada",
        *,
        is_admin: bool = False,
        credentials: tuple[bytes, ...] = (b"cred-1",),
        sign_count: int = 0,
    ) -> SeededUser:
        async with AsyncSessionLocal() as db:
            user = User(id=uuid.uuid4(), display_name=display_name, is_admin=is_admin)
            db.add(user)
            await db.flush()
            passkeys = [
                UserPasskey(
                    id=uuid.uuid4(),
                    user_id=user.id,
                    credential_id=cred,
                    credential_data=b"data-" + cred,
                    sign_count=sign_count,
                    label=cred.decode(),
                )
                for cred in credentials
            ]
            db.add_all(passkeys)
            await db.commit()
            return SeededUser(
                id=user.id,
                display_name=display_name,
                is_admin=is_admin,
                passkey_ids=[p.id for p in passkeys],
            )

    return _make


@pytest.fixture
def make_session(store):
    async def _make(
        user: Optional[SeededUser] = None,
        *,
        remember: bool = True,
        pow_verified: bool = True,
        values: Optional[dict] = None,
    ) -> Browser:
        now = int(time.time())
        session = Session()
        csrf_token = secrets.token_urlsafe(16)
        session.set(keys.CSRF_TOKEN, csrf_token)
        if pow_verified:
            session.set(keys.POW_VERIFIED, True)
            session.set(keys.POW_VERIFIED_AT, now)
        if user is not None:
            set_authenticated(session, user.as_session_user(), remember=remember, now=now)
        for key, value in (values or {}).items():
            session.set(key, value)
        await store.save(session)
        return Browser(session_id=session.id, csrf_token=csrf_token)

    return _make


def live_ceremony(seconds: int = 300) -> CeremonyState:
    return CeremonyState(state={"challenge": "seeded"}, expires_at=int(time.time()) + seconds)
