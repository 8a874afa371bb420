"""Session cookie signing.

Cookie format: <sid>.<sig>
- sid: opaque server-side session id (base64url, no padding)
- sig: HMAC-SHA256(secret, "v1.<sid>"), base64url-encoded (no padding)

The signature only keeps forged ids away from the store; authority lives in the
server-side row.
"""

import base64
import hashlib
import hmac
from typing import Optional

COOKIE_VERSION = "v1"


def sign_session_id(session_id: str, secret: str) -> str:
    return f"{session_id}.{_sign(secret, session_id)}"


def unsign_session_id(cookie_value: str | None, secret: str) -> Optional[str]:
    """Return the session id from a cookie value, or None when malformed or forged."""
    if not cookie_value:
        return None
    session_id, sep, sig = cookie_value.rpartition(".")
    if not sep or not session_id or not sig:
        return None
    if len(session_id) > 64:
        return None
    if not hmac.compare_digest(sig, _sign(secret, session_id)):
        return None
    return session_id


def _sign(secret: str, session_id: str) -> str:
    payload = f"{COOKIE_VERSION}.{session_id}"
    sig_bytes = hmac.new(secret.encode(), payload.encode(), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(sig_bytes).rstrip(b"=").decode("ascii")
