"""Registration and assertion against a software P-256 authenticator.

Responses are built the way base.html posts them: base64url strings in the
``PublicKeyCredential`` JSON shape.
"""

import hashlib
import os

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from fido2.cose import ES256
from fido2.utils import websafe_decode, websafe_encode
from fido2.webauthn import (
    Aaguid,
    AttestationObject,
    AttestedCredentialData,
    AuthenticatorData,
    CollectedClientData,
)

from groundwave.core.auth.webauthn import PasskeyVerifier, StoredCredential
from groundwave.utils.exceptions import PasskeyVerificationError

RP_ID = "example.org"
ORIGIN = "https://example.org"
FLAG = AuthenticatorData.FLAG


class SoftAuthenticator:
    """Holds one discoverable credential in memory."""

    def __init__(self, *, rp_id: str = RP_ID, origin: str = ORIGIN, user_verified: bool = True):
        self.rp_id_hash = hashlib.sha256(rp_id.encode()).digest()
        self.origin = origin
        self.flags = FLAG.UP | FLAG.UV if user_verified else FLAG.UP
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.credential_id = os.urandom(16)
        self.user_handle = None
        self.counter = 0

    def _credential(self, response: dict) -> dict:
        encoded_id = websafe_encode(self.credential_id)
        return {"id": encoded_id, "rawId": encoded_id, "type": "public-key", "response": response}

    def create(self, options: dict) -> dict:
        public_key = options["publicKey"]
        self.user_handle = websafe_decode(public_key["user"]["id"])
        credential_data = AttestedCredentialData.create(
            Aaguid.NONE,
            self.credential_id,
            ES256.from_cryptography_key(self.private_key.public_key()),
        )
        auth_data = AuthenticatorData.create(self.rp_id_hash, self.flags | FLAG.AT, self.counter, credential_data)
        client_data = CollectedClientData.create(
            type=CollectedClientData.TYPE.CREATE.value,
            challenge=public_key["challenge"],
            origin=self.origin,
        )
        attestation = AttestationObject.create("none", auth_data, {})
        return self._credential(
            {
                "clientDataJSON": websafe_encode(client_data),
                "attestationObject": websafe_encode(attestation),
            }
        )

    def get(self, options: dict, *, counter: int | None = None) -> dict:
        self.counter = self.counter + 1 if counter is None else counter
        auth_data = AuthenticatorData.create(self.rp_id_hash, self.flags, self.counter)
        client_data = CollectedClientData.create(
            type=CollectedClientData.TYPE.GET.value,
            challenge=options["publicKey"]["challenge"],
            origin=self.origin,
        )
        signature = self.private_key.sign(auth_data + client_data.hash, ec.ECDSA(hashes.SHA256()))
        return self._credential(
            {
                "clientDataJSON": websafe_encode(client_data),
                "authenticatorData": websafe_encode(auth_data),
                "signature": websafe_encode(signature),
                "userHandle": websafe_encode(self.user_handle) if self.user_handle else None,
            }
        )


@pytest.fixture
def verifier():
    return PasskeyVerifier(rp_id=RP_ID, rp_name="Groundwave", origins=[ORIGIN])


def _register(verifier, authenticator, user_handle: bytes = b"\x07" * 16) -> StoredCredential:
    options, ceremony = verifier.begin_registration(user_handle=user_handle, name="Ada", display_name="Ada")
    credential = verifier.finish_registration(ceremony, authenticator.create(options))
    return StoredCredential(
        credential_id=credential.credential_id,
        credential_data=credential.credential_data,
        sign_count=credential.sign_count,
    )


def test_register_then_discoverable_login(verifier):
    authenticator = SoftAuthenticator()
    stored = _register(verifier, authenticator)
    assert stored.credential_id == authenticator.credential_id
    assert stored.sign_count == 0

    options, ceremony = verifier.begin_discoverable_login()
    assert "allowCredentials" not in options["publicKey"]
    response = authenticator.get(options)

    assert PasskeyVerifier.user_handle(response) == b"\x07" * 16
    assertion = verifier.finish_assertion(ceremony, [stored], response)
    assert assertion.credential_id == authenticator.credential_id
    assert assertion.sign_count == 1


def test_assertion_against_listed_credentials(verifier):
    authenticator = SoftAuthenticator()
    stored = _register(verifier, authenticator)

    options, ceremony = verifier.begin_assertion([stored])
    assert [c["id"] for c in options["publicKey"]["allowCredentials"]] == [websafe_encode(stored.credential_id)]

    assertion = verifier.finish_assertion(ceremony, [stored], authenticator.get(options))
    assert assertion.sign_count == 1


def test_registration_excludes_known_credentials(verifier):
    authenticator = SoftAuthenticator()
    stored = _register(verifier, authenticator)

    options, _ = verifier.begin_registration(
        user_handle=b"\x07" * 16, name="Ada", display_name="Ada", exclude=[stored]
    )
    assert [c["id"] for c in options["publicKey"]["excludeCredentials"]] == [websafe_encode(stored.credential_id)]


def test_registration_from_foreign_origin_is_rejected(verifier):
    with pytest.raises(PasskeyVerificationError) as exc_info:
        _register(verifier, SoftAuthenticator(origin="https://evil.example"))
    assert exc_info.value.status_code == 400


def test_registration_for_other_rp_is_rejected(verifier):
    with pytest.raises(PasskeyVerificationError):
        _register(verifier, SoftAuthenticator(rp_id="evil.example"))


def test_registration_without_user_verification_is_rejected(verifier):
    with pytest.raises(PasskeyVerificationError):
        _register(verifier, SoftAuthenticator(user_verified=False))


def test_assertion_for_another_challenge_is_rejected(verifier):
    authenticator = SoftAuthenticator()
    stored = _register(verifier, authenticator)

    first_options, _ = verifier.begin_discoverable_login()
    _, second_ceremony = verifier.begin_discoverable_login()

    with pytest.raises(PasskeyVerificationError) as exc_info:
        verifier.finish_assertion(second_ceremony, [stored], authenticator.get(first_options))
    assert exc_info.value.status_code == 401


def test_assertion_signed_by_another_key_is_rejected(verifier):
    authenticator = SoftAuthenticator()
    stored = _register(verifier, authenticator)
    authenticator.private_key = ec.generate_private_key(ec.SECP256R1())

    options, ceremony = verifier.begin_discoverable_login()
    with pytest.raises(PasskeyVerificationError):
        verifier.finish_assertion(ceremony, [stored], authenticator.get(options))


def test_assertion_with_unknown_credential_is_rejected(verifier):
    stored = _register(verifier, SoftAuthenticator())
    stranger = SoftAuthenticator()
    _register(verifier, stranger)

    options, ceremony = verifier.begin_discoverable_login()
    with pytest.raises(PasskeyVerificationError):
        verifier.finish_assertion(ceremony, [stored], stranger.get(options))


def test_assertion_with_replayed_counter_is_rejected(verifier):
    authenticator = SoftAuthenticator()
    registered = _register(verifier, authenticator)
    stored = StoredCredential(registered.credential_id, registered.credential_data, sign_count=5)

    options, ceremony = verifier.begin_discoverable_login()
    with pytest.raises(PasskeyVerificationError) as exc_info:
        verifier.finish_assertion(ceremony, [stored], authenticator.get(options, counter=5))
    assert exc_info.value.details["reason"] == "sign_count_regression"


def test_ceremony_timeouts_follow_ceremony_type():
    verifier = PasskeyVerifier(
        rp_id=RP_ID,
        rp_name="Groundwave",
        origins=[ORIGIN],
        login_timeout_seconds=60,
        registration_timeout_seconds=600,
    )

    registration, _ = verifier.begin_registration(user_handle=b"\x01" * 16, name="Ada", display_name="Ada")
    login, _ = verifier.begin_discoverable_login()
    registration_again, _ = verifier.begin_registration(user_handle=b"\x01" * 16, name="Ada", display_name="Ada")

    assert registration["publicKey"]["timeout"] == 600_000
    assert login["publicKey"]["timeout"] == 60_000
    assert registration_again["publicKey"]["timeout"] == 600_000
