"""Browser proof-of-work: challenge generation, verification and session marks.

A challenge is 24 random bytes (base64url, no padding). The client searches for a
nonce such that SHA-256("<challenge>:<nonce>") starts with ``difficulty`` zero bits.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta

from groundwave.core.auth.state import is_session_authenticated
from groundwave.core.risk import RiskLevel
from groundwave.core.sessions import keys
from groundwave.core.sessions.session import Session

MIN_DIFFICULTY = 8
MAX_DIFFICULTY = 28
TTL_RELAXATION_THRESHOLD = 22

LOW_RISK_MARK_WINDOW = timedelta(days=14)
DEFAULT_MARK_WINDOW = timedelta(minutes=15)

CHALLENGE_PATH = "/pow"
VERIFY_PATH = "/pow/verify"
EXTENSION_PREFIX = "/ext"
EXEMPT_PATHS = frozenset({CHALLENGE_PATH, VERIFY_PATH, "/connectivity", "/qrz"})


@dataclass(frozen=True)
class DifficultyPolicy:
    easy: int = 12
    medium: int = 20
    hard: int = 24
    base_ttl: timedelta = timedelta(minutes=3)

    @classmethod
    def from_settings(cls, settings) -> "DifficultyPolicy":
        return cls(
            easy=clamp_difficulty(settings.POW_EASY_DIFFICULTY),
            medium=clamp_difficulty(settings.POW_MEDIUM_DIFFICULTY),
            hard=clamp_difficulty(settings.POW_HARD_DIFFICULTY),
            base_ttl=timedelta(seconds=max(1, settings.POW_CHALLENGE_TTL_SECONDS)),
        )

    def for_risk(self, level: RiskLevel) -> int:
        if level is RiskLevel.LOW:
            return self.easy
        if level is RiskLevel.HIGH:
            return self.hard
        return self.medium


@dataclass(frozen=True)
class Challenge:
    challenge: str
    difficulty: int
    expires_at: int

    def as_dict(self) -> dict:
        return {"challenge": self.challenge, "difficulty": self.difficulty, "expires_at": self.expires_at}


def clamp_difficulty(difficulty: int) -> int:
    return max(MIN_DIFFICULTY, min(MAX_DIFFICULTY, int(difficulty)))


def challenge_ttl(difficulty: int, base: timedelta = timedelta(minutes=3)) -> timedelta:
    """Base TTL, doubled for every bit above 22 (saturating at timedelta.max)."""
    extra_bits = difficulty - TTL_RELAXATION_THRESHOLD
    if extra_bits <= 0:
        return base
    ttl = base
    for _ in range(extra_bits):
        if ttl > timedelta.max / 2:
            return timedelta.max
        ttl = ttl * 2
    return ttl


def generate_challenge() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(24)).rstrip(b"=").decode("ascii")


def has_leading_zero_bits(digest: bytes, bits: int) -> bool:
    if bits <= 0:
        return True
    if bits > len(digest) * 8:
        return False

    full_bytes, remaining = divmod(bits, 8)
    if any(digest[:full_bytes]):
        return False
    if remaining == 0:
        return True
    mask = (0xFF << (8 - remaining)) & 0xFF
    return digest[full_bytes] & mask == 0


def verify_proof(challenge: str, nonce: int, difficulty: int) -> bool:
    if not challenge:
        return False
    digest = hashlib.sha256(f"{challenge}:{nonce}".encode("ascii")).digest()
    return has_leading_zero_bits(digest, difficulty)


def is_exempt_path(path: str) -> bool:
    return path in EXEMPT_PATHS or is_extension_path(path)


def is_extension_path(path: str) -> bool:
    return path == EXTENSION_PREFIX or path.startswith(EXTENSION_PREFIX + "/")


def issue_challenge(
    session: Session,
    *,
    next_path: str,
    difficulty: int,
    now: int,
    base_ttl: timedelta = timedelta(minutes=3),
) -> Challenge:
    """Persist a fresh challenge on the session. Any previous verification mark is dropped."""
    difficulty = clamp_difficulty(difficulty)
    ttl = challenge_ttl(difficulty, base_ttl)
    ttl_seconds = int(ttl.total_seconds())
    challenge = Challenge(challenge=generate_challenge(), difficulty=difficulty, expires_at=now + ttl_seconds)

    session.delete(keys.POW_VERIFIED, keys.POW_VERIFIED_AT)
    session.set(keys.POW_CHALLENGE, challenge.challenge)
    session.set(keys.POW_EXPIRES_AT, challenge.expires_at)
    session.set(keys.POW_NEXT, next_path)
    session.set(keys.POW_DIFFICULTY, challenge.difficulty)
    return challenge


def clear_challenge(session: Session) -> None:
    session.delete(keys.POW_CHALLENGE, keys.POW_EXPIRES_AT, keys.POW_NEXT, keys.POW_DIFFICULTY)


def mark_verified(session: Session, now: int) -> None:
    session.set(keys.POW_VERIFIED, True)
    session.set(keys.POW_VERIFIED_AT, now)


def has_pow_access(session: Session, level: RiskLevel, now: int) -> bool:
    """True when the session carries a verification mark still valid for ``level``.

    Stale marks are cleared as a side effect.
    """
    if session.get(keys.POW_VERIFIED) is not True:
        return False
    if is_session_authenticated(session, now):
        return True

    verified_at = session.get(keys.POW_VERIFIED_AT)
    window = LOW_RISK_MARK_WINDOW if level is RiskLevel.LOW else DEFAULT_MARK_WINDOW
    if verified_at is None or now - verified_at > window.total_seconds():
        session.delete(keys.POW_VERIFIED, keys.POW_VERIFIED_AT)
        return False
    return True
