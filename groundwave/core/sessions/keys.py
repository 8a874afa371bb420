"""Well-known session keys."""

from groundwave.core.sessions.session import bool_key, ceremony_key, int_key, str_key

# Proof of work
POW_VERIFIED = bool_key("pow_verified")
POW_VERIFIED_AT = int_key("pow_verified_at")
POW_CHALLENGE = str_key("pow_challenge")
POW_EXPIRES_AT = int_key("pow_expires_at")
POW_NEXT = str_key("pow_next")
POW_DIFFICULTY = int_key("pow_difficulty")

# Authentication
AUTHENTICATED = bool_key("authenticated")
USER_ID = str_key("user_id")
USER_DISPLAY_NAME = str_key("user_display_name")
USER_IS_ADMIN = bool_key("user_is_admin")
AUTHENTICATED_EXPIRES_AT = int_key("authenticated_expires_at")

# Break-glass
SENSITIVE_ACCESS_AT = int_key("sensitive_access_at")

# WebAuthn ceremony state
WEBAUTHN_LOGIN = ceremony_key("webauthn_login")
WEBAUTHN_REGISTER = ceremony_key("webauthn_register")
WEBAUTHN_SETUP = ceremony_key("webauthn_setup")
WEBAUTHN_BREAK_GLASS = ceremony_key("webauthn_break_glass")

# Setup scratch
SETUP_USER_ID = str_key("webauthn_setup_user_id")
SETUP_DISPLAY_NAME = str_key("webauthn_setup_display_name")
SETUP_LABEL = str_key("webauthn_setup_label")
SETUP_IS_ADMIN = bool_key("webauthn_setup_is_admin")
BOOTSTRAP_ALLOWED = bool_key("webauthn_bootstrap_allowed")
INVITE_ALLOWED = bool_key("webauthn_invite_allowed")
INVITE_ID = str_key("webauthn_invite_id")

# Passkey registration scratch
REGISTER_USER_ID = str_key("webauthn_register_user_id")
REGISTER_LABEL = str_key("webauthn_register_label")

# Device metadata
DEVICE_LABEL = str_key("device_label")
DEVICE_IP = str_key("device_ip")

CSRF_TOKEN = str_key("csrf_token")

AUTH_KEYS = (
    AUTHENTICATED,
    USER_ID,
    USER_DISPLAY_NAME,
    USER_IS_ADMIN,
    AUTHENTICATED_EXPIRES_AT,
    SENSITIVE_ACCESS_AT,
)

SETUP_KEYS = (
    WEBAUTHN_SETUP,
    SETUP_USER_ID,
    SETUP_DISPLAY_NAME,
    SETUP_LABEL,
    SETUP_IS_ADMIN,
    BOOTSTRAP_ALLOWED,
    INVITE_ALLOWED,
    INVITE_ID,
)
