import asyncio
import uuid

import pytest
from sqlalchemy import func, select

from conftest import BOOTSTRAP_TOKEN, live_ceremony, session_id_from
from groundwave.core.sessions import keys
from groundwave.db.models import SetupClaim, User, UserInvite, UserPasskey
from groundwave.db.session import AsyncSessionLocal


async def _count(model) -> int:
    async with AsyncSessionLocal() as db:
        return int((await db.execute(select(func.count()).select_from(model))).scalar_one())


async def _bootstrap_browser(make_session, *, display_name: str = "Admin"):
    """A session that already passed GET /setup and /webauthn/setup/start in bootstrap mode."""
    return await make_session(
        values={
            keys.BOOTSTRAP_ALLOWED: True,
            keys.WEBAUTHN_SETUP: live_ceremony(),
            keys.SETUP_USER_ID: str(uuid.uuid4()),
            keys.SETUP_DISPLAY_NAME: display_name,
            keys.SETUP_LABEL: "Laptop",
            keys.SETUP_IS_ADMIN: True,
        }
    )


@pytest.mark.asyncio
async def test_setup_page_rejects_bad_token(client, make_session, store):
    browser = await make_session()
    resp = await client.get("/setup?token=wrong", headers=browser.html_headers())

    assert resp.status_code == 403
    assert "Invalid setup link" in resp.text
    session = await store.load(browser.session_id)
    assert session.get(keys.BOOTSTRAP_ALLOWED) is None


@pytest.mark.asyncio
async def test_setup_start_requires_setup_mark(client, make_session):
    browser = await make_session()
    resp = await client.post("/webauthn/setup/start", json={"displayName": "Admin"}, headers=browser.headers)

    assert resp.status_code == 403
    assert resp.json()["error"] == "setup not permitted"


@pytest.mark.asyncio
async def test_bootstrap_end_to_end(client, make_session, store):
    browser = await make_session()

    resp = await client.get(f"/setup?token={BOOTSTRAP_TOKEN}", headers=browser.html_headers())
    assert resp.status_code == 200
    assert "Create passkey" in resp.text

    resp = await client.post(
        "/webauthn/setup/start",
        json={"displayName": "  Grace  ", "label": "Phone"},
        headers=browser.headers,
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["publicKey"]["user"]["name"] == "Grace"

    resp = await client.post("/webauthn/setup/finish", json={"id": "cred-admin"}, headers=browser.headers)
    assert resp.status_code == 200, resp.text
    assert resp.json() == {"redirect": "/"}

    # The session moved to a new id and the old row is gone.
    new_id = session_id_from(resp)
    assert new_id and new_id != browser.session_id
    assert not await store.exists(browser.session_id)

    session = await store.load(new_id)
    assert session.get(keys.AUTHENTICATED) is True
    assert session.get(keys.USER_IS_ADMIN) is True
    assert session.get(keys.USER_DISPLAY_NAME) == "Grace"
    for key in keys.SETUP_KEYS:
        assert session.get(key) is None

    async with AsyncSessionLocal() as db:
        user = (await db.execute(select(User))).scalar_one()
        passkey = (await db.execute(select(UserPasskey))).scalar_one()
    assert user.is_admin
    assert passkey.user_id == user.id
    assert passkey.label == "Phone"
    assert await _count(SetupClaim) == 1


@pytest.mark.asyncio
async def test_bootstrap_closes_after_first_user(client, make_session, make_user):
    await make_user("Existing", is_admin=True)
    browser = await make_session()

    resp = await client.get(f"/setup?token={BOOTSTRAP_TOKEN}", headers=browser.html_headers())
    assert resp.status_code == 403
    assert "Invalid setup link" in resp.text


@pytest.mark.asyncio
async def test_failed_attestation_keeps_setup_open(client, make_session):
    browser = await _bootstrap_browser(make_session)

    resp = await client.post("/webauthn/setup/finish", json={"fail": True}, headers=browser.headers)
    assert resp.status_code == 400
    assert resp.json()["error"] == "failed to finish registration"
    assert await _count(User) == 0


@pytest.mark.asyncio
async def test_finish_without_ceremony(client, make_session):
    browser = await make_session(values={keys.BOOTSTRAP_ALLOWED: True, keys.SETUP_IS_ADMIN: True})

    resp = await client.post("/webauthn/setup/finish", json={"id": "x"}, headers=browser.headers)
    assert resp.status_code == 400
    assert resp.json()["error"] == "setup session missing"


@pytest.mark.asyncio
async def test_concurrent_bootstrap_has_exactly_one_winner(client, make_session):
    first = await _bootstrap_browser(make_session, display_name="First")
    second = await _bootstrap_browser(make_session, display_name="Second")

    responses = await asyncio.gather(
        client.post("/webauthn/setup/finish", json={"id": "cred-first"}, headers=first.headers),
        client.post("/webauthn/setup/finish", json={"id": "cred-second"}, headers=second.headers),
    )

    statuses = sorted(r.status_code for r in responses)
    assert statuses == [200, 400], [r.text for r in responses]
    winner = next(r for r in responses if r.status_code == 200)
    loser = next(r for r in responses if r.status_code == 400)
    assert winner.json() == {"redirect": "/"}
    assert loser.json()["error"] == "setup already completed"

    assert await _count(User) == 1
    assert await _count(UserPasskey) == 1


@pytest.mark.asyncio
async def test_invite_end_to_end(client, make_session, make_user, store):
    admin = await make_user("Admin", is_admin=True, credentials=(b"cred-admin",))
    admin_browser = await make_session(admin)

    resp = await client.post(
        "/security/invites",
        data={"_csrf": admin_browser.csrf_token, "display_name": "Linus"},
        headers={"Cookie": admin_browser.headers["Cookie"]},
    )
    assert resp.status_code == 303
    assert resp.headers["location"] == "/security"

    async with AsyncSessionLocal() as db:
        invite = (await db.execute(select(UserInvite))).scalar_one()
    assert invite.display_name == "Linus"
    assert invite.created_by == admin.id

    guest = await make_session()
    resp = await client.get(f"/setup?token={invite.token}", headers=guest.html_headers())
    assert resp.status_code == 200
    assert "Accept invite" in resp.text

    resp = await client.post("/webauthn/setup/start", json={"displayName": "Linus"}, headers=guest.headers)
    assert resp.status_code == 200, resp.text

    resp = await client.post("/webauthn/setup/finish", json={"id": "cred-linus"}, headers=guest.headers)
    assert resp.status_code == 200, resp.text
    session = await store.load(session_id_from(resp))
    assert session.get(keys.USER_IS_ADMIN) is False

    async with AsyncSessionLocal() as db:
        used = await db.get(UserInvite, invite.id)
        users = (await db.execute(select(User).order_by(User.display_name))).scalars().all()
    assert used.used_at is not None
    assert [(u.display_name, u.is_admin) for u in users] == [("Admin", True), ("Linus", False)]

    # Single use.
    other = await make_session()
    resp = await client.get(f"/setup?token={invite.token}", headers=other.html_headers())
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_invite_consumed_between_start_and_finish(client, make_session, make_user):
    admin = await make_user("Admin", is_admin=True)
    async with AsyncSessionLocal() as db:
        invite = UserInvite(id=uuid.uuid4(), token="tok-race", created_by=admin.id)
        db.add(invite)
        await db.commit()

    browser = await make_session(
        values={
            keys.INVITE_ALLOWED: True,
            keys.INVITE_ID: str(invite.id),
            keys.WEBAUTHN_SETUP: live_ceremony(),
            keys.SETUP_USER_ID: str(uuid.uuid4()),
            keys.SETUP_DISPLAY_NAME: "Late",
            keys.SETUP_IS_ADMIN: False,
        }
    )
    async with AsyncSessionLocal() as db:
        row = await db.get(UserInvite, invite.id)
        await db.delete(row)
        await db.commit()

    resp = await client.post("/webauthn/setup/finish", json={"id": "cred-late"}, headers=browser.headers)
    assert resp.status_code == 400
    assert resp.json()["code"] == "E004"
    assert await _count(User) == 1
