"""WebAuthn relying-party wrapper around :mod:`fido2`.

Ceremony state returned by ``begin_*`` is a :class:`CeremonyState` that callers
store on the session; ``finish_*`` refuses expired state before touching fido2.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Sequence

from fido2.features import webauthn_json_mapping
from fido2.server import Fido2Server
from fido2.utils import websafe_encode
from fido2.webauthn import (
    AttestationConveyancePreference,
    AttestedCredentialData,
    AuthenticationResponse,
    PublicKeyCredentialRpEntity,
    PublicKeyCredentialUserEntity,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from groundwave.config import PRODUCT_NAME
from groundwave.core.sessions.session import CeremonyState
from groundwave.utils.exceptions import PasskeyVerificationError

logger = logging.getLogger(__name__)

# Browsers post credentials as base64url JSON (PublicKeyCredential.toJSON shape).
webauthn_json_mapping.enabled = True


@dataclass(frozen=True)
class StoredCredential:
    credential_id: bytes
    credential_data: bytes
    sign_count: int


@dataclass(frozen=True)
class RegisteredCredential:
    credential_id: bytes
    credential_data: bytes
    sign_count: int


@dataclass(frozen=True)
class VerifiedAssertion:
    credential_id: bytes
    sign_count: int


def to_jsonable(value: Any) -> Any:
    """Convert fido2 option/state objects into plain JSON types (bytes -> base64url)."""
    if isinstance(value, (bytes, bytearray)):
        return websafe_encode(bytes(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def check_sign_count(stored: int, returned: int) -> None:
    """Reject counter regressions; authenticators without a counter report 0 forever."""
    if stored == 0 and returned == 0:
        return
    if returned <= stored:
        raise PasskeyVerificationError(
            details={"reason": "sign_count_regression", "stored": stored, "returned": returned}
        )


class PasskeyVerifier:
    def __init__(
        self,
        *,
        rp_id: str,
        rp_name: str,
        origins: Sequence[str],
        login_timeout_seconds: int = 300,
        registration_timeout_seconds: int = 300,
    ):
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origins = frozenset(origins)
        self.login_timeout_seconds = int(login_timeout_seconds)
        self.registration_timeout_seconds = int(registration_timeout_seconds)
        # One server per ceremony type: the timeout lives on the server object.
        self._registration_server = self._make_server(self.registration_timeout_seconds)
        self._login_server = self._make_server(self.login_timeout_seconds)

    @classmethod
    def from_settings(cls, settings) -> "PasskeyVerifier":
        rp_id = (settings.WEBAUTHN_RP_ID or "").strip()
        if not rp_id:
            raise RuntimeError("WEBAUTHN_RP_ID is required")
        origins = settings.webauthn_origins
        if not origins:
            raise RuntimeError("WEBAUTHN_RP_ORIGINS is required")
        rp_name = (settings.WEBAUTHN_RP_NAME or "").strip() or PRODUCT_NAME
        return cls(
            rp_id=rp_id,
            rp_name=rp_name,
            origins=origins,
            login_timeout_seconds=settings.WEBAUTHN_LOGIN_TIMEOUT_SECONDS,
            registration_timeout_seconds=settings.WEBAUTHN_REGISTRATION_TIMEOUT_SECONDS,
        )

    def _make_server(self, timeout_seconds: int) -> Fido2Server:
        server = Fido2Server(
            PublicKeyCredentialRpEntity(name=self.rp_name, id=self.rp_id),
            attestation=AttestationConveyancePreference.NONE,
            verify_origin=self._verify_origin,
        )
        server.timeout = timeout_seconds * 1000
        return server

    def _verify_origin(self, origin: str) -> bool:
        return origin in self.origins

    def _ceremony(self, state: Mapping[str, Any], timeout_seconds: int) -> CeremonyState:
        return CeremonyState(state=to_jsonable(state), expires_at=int(time.time()) + timeout_seconds)

    @staticmethod
    def _require_live(ceremony: CeremonyState) -> None:
        if ceremony.is_expired(int(time.time())):
            raise PasskeyVerificationError("ceremony expired", status_code=400)

    # -- registration ---------------------------------------------------------

    def begin_registration(
        self,
        *,
        user_handle: bytes,
        name: str,
        display_name: str,
        exclude: Sequence[StoredCredential] = (),
    ) -> tuple[dict[str, Any], CeremonyState]:
        options, state = self._registration_server.register_begin(
            PublicKeyCredentialUserEntity(id=user_handle, name=name, display_name=display_name),
            credentials=[AttestedCredentialData(c.credential_data) for c in exclude],
            resident_key_requirement=ResidentKeyRequirement.REQUIRED,
            user_verification=UserVerificationRequirement.REQUIRED,
        )
        return to_jsonable(options), self._ceremony(state, self.registration_timeout_seconds)

    def finish_registration(self, ceremony: CeremonyState, response: Mapping[str, Any]) -> RegisteredCredential:
        self._require_live(ceremony)
        try:
            auth_data = self._registration_server.register_complete(dict(ceremony.state), dict(response))
        except Exception as exc:
            logger.warning("webauthn.registration_rejected error=%s", type(exc).__name__)
            raise PasskeyVerificationError("failed to finish registration", status_code=400) from exc

        credential = auth_data.credential_data
        if credential is None:
            raise PasskeyVerificationError("failed to finish registration", status_code=400)
        return RegisteredCredential(
            credential_id=bytes(credential.credential_id),
            credential_data=bytes(credential),
            sign_count=int(auth_data.counter),
        )

    # -- assertion --------------------------------------------------------------

    def begin_discoverable_login(self) -> tuple[dict[str, Any], CeremonyState]:
        options, state = self._login_server.authenticate_begin(
            credentials=None,
            user_verification=UserVerificationRequirement.REQUIRED,
        )
        return to_jsonable(options), self._ceremony(state, self.login_timeout_seconds)

    def begin_assertion(self, credentials: Sequence[StoredCredential]) -> tuple[dict[str, Any], CeremonyState]:
        options, state = self._login_server.authenticate_begin(
            credentials=[AttestedCredentialData(c.credential_data) for c in credentials],
            user_verification=UserVerificationRequirement.REQUIRED,
        )
        return to_jsonable(options), self._ceremony(state, self.login_timeout_seconds)

    @staticmethod
    def user_handle(response: Mapping[str, Any]) -> Optional[bytes]:
        try:
            parsed = AuthenticationResponse.from_dict(dict(response))
        except Exception:
            return None
        handle = parsed.response.user_handle
        return bytes(handle) if handle else None

    def finish_assertion(
        self,
        ceremony: CeremonyState,
        credentials: Sequence[StoredCredential],
        response: Mapping[str, Any],
    ) -> VerifiedAssertion:
        self._require_live(ceremony)
        by_id = {c.credential_id: c for c in credentials}
        try:
            parsed = AuthenticationResponse.from_dict(dict(response))
            matched = self._login_server.authenticate_complete(
                dict(ceremony.state),
                [AttestedCredentialData(c.credential_data) for c in credentials],
                dict(response),
            )
        except Exception as exc:
            logger.warning("webauthn.assertion_rejected error=%s", type(exc).__name__)
            raise PasskeyVerificationError() from exc

        stored = by_id.get(bytes(matched.credential_id))
        if stored is None:
            raise PasskeyVerificationError(details={"reason": "unknown_credential"})

        returned = int(parsed.response.authenticator_data.counter)
        check_sign_count(stored.sign_count, returned)
        return VerifiedAssertion(credential_id=stored.credential_id, sign_count=returned)
