from groundwave.db.base import Base
from .user import User
from .passkey import UserPasskey
from .invite import UserInvite
from .setup_claim import SetupClaim
from .http_session import HttpSession

__all__ = [
    "Base",
    "User",
    "UserPasskey",
    "UserInvite",
    "SetupClaim",
    "HttpSession",
]
