from enum import Enum
from types import SimpleNamespace

import pytest

from groundwave.core.auth.webauthn import PasskeyVerifier, check_sign_count, to_jsonable
from groundwave.core.sessions.session import CeremonyState
from groundwave.utils.exceptions import PasskeyVerificationError


def _settings(**overrides):
    values = {
        "WEBAUTHN_RP_ID": "example.org",
        "WEBAUTHN_RP_ORIGINS": "https://example.org",
        "WEBAUTHN_RP_NAME": "",
        "WEBAUTHN_LOGIN_TIMEOUT_SECONDS": 120,
        "WEBAUTHN_REGISTRATION_TIMEOUT_SECONDS": 240,
    }
    values.update(overrides)
    ns = SimpleNamespace(**values)
    ns.webauthn_origins = [o.strip() for o in ns.WEBAUTHN_RP_ORIGINS.split(",") if o.strip()]
    return ns


def test_sign_count_both_zero_is_accepted():
    check_sign_count(0, 0)


def test_sign_count_increase_is_accepted():
    check_sign_count(0, 1)
    check_sign_count(41, 42)


@pytest.mark.parametrize("stored,returned", [(5, 5), (5, 3), (7, 0)])
def test_sign_count_regression_is_rejected(stored, returned):
    with pytest.raises(PasskeyVerificationError) as exc_info:
        check_sign_count(stored, returned)
    assert exc_info.value.status_code == 401
    assert exc_info.value.details["reason"] == "sign_count_regression"


class _Color(str, Enum):
    RED = "red"


def test_to_jsonable_converts_bytes_enums_and_drops_none():
    value = {"id": b"\x01\x02", "mode": _Color.RED, "skip": None, "items": [b"\xff", 3]}
    assert to_jsonable(value) == {"id": "AQI", "mode": "red", "items": ["_w", 3]}


def test_from_settings_requires_rp_id():
    with pytest.raises(RuntimeError, match="WEBAUTHN_RP_ID"):
        PasskeyVerifier.from_settings(_settings(WEBAUTHN_RP_ID=" "))


def test_from_settings_requires_origins():
    with pytest.raises(RuntimeError, match="WEBAUTHN_RP_ORIGINS"):
        PasskeyVerifier.from_settings(_settings(WEBAUTHN_RP_ORIGINS=""))


def test_from_settings_defaults_rp_name():
    verifier = PasskeyVerifier.from_settings(_settings())
    assert verifier.rp_name == "Groundwave"
    assert verifier.origins == frozenset({"https://example.org"})
    assert verifier.login_timeout_seconds == 120


def test_begin_registration_returns_json_options_and_deadline():
    verifier = PasskeyVerifier.from_settings(_settings())
    options, ceremony = verifier.begin_registration(
        user_handle=b"\x00" * 16, name="Ada", display_name="Ada"
    )

    assert isinstance(options["publicKey"]["challenge"], str)
    assert isinstance(ceremony, CeremonyState)
    assert isinstance(ceremony.state["challenge"], str)
    assert ceremony.expires_at > 0


def test_expired_ceremony_is_refused_before_verification():
    verifier = PasskeyVerifier.from_settings(_settings())
    expired = CeremonyState(state={"challenge": "x"}, expires_at=1)

    with pytest.raises(PasskeyVerificationError) as exc_info:
        verifier.finish_registration(expired, {})
    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "ceremony expired"


def test_finish_registration_wraps_garbage_response():
    verifier = PasskeyVerifier.from_settings(_settings())
    _, ceremony = verifier.begin_registration(user_handle=b"\x01" * 16, name="Ada", display_name="Ada")

    with pytest.raises(PasskeyVerificationError) as exc_info:
        verifier.finish_registration(ceremony, {"id": "nope"})
    assert exc_info.value.message == "failed to finish registration"


def test_user_handle_of_garbage_is_none():
    assert PasskeyVerifier.user_handle({}) is None
