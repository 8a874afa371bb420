"""Typed server-side session state.

Session contents are addressed through ``SessionKey`` descriptors: each key owns
its name and a decoder that narrows the stored JSON value to the key's type. A
value that fails its decoder reads as absent and is removed from the session, so
a tampered or stale entry can never be half-trusted.

Structured values are persisted with a ``__type__`` tag (see ``encode_value`` /
``decode_value``); flash messages live in a separate auxiliary list.
"""

from __future__ import annotations

import json
import secrets
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Literal, Optional, TypeVar

T = TypeVar("T")

FlashType = Literal["error", "success", "warning", "info"]

_TYPE_TAG = "__type__"
_CEREMONY_TAG = "webauthn.session_data"
_FLASH_TAG = "flash"
_FLASH_KEY = "_flash"


def new_session_id() -> str:
    # 32 random bytes, base64url without padding (43 chars).
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class FlashMessage:
    type: FlashType
    message: str


@dataclass(frozen=True)
class CeremonyState:
    """Opaque WebAuthn ceremony state plus the server-enforced deadline."""

    state: dict[str, Any]
    expires_at: int

    def is_expired(self, now: int) -> bool:
        return self.expires_at <= 0 or now >= self.expires_at


def encode_value(value: Any) -> Any:
    if isinstance(value, CeremonyState):
        return {_TYPE_TAG: _CEREMONY_TAG, "state": value.state, "expires_at": value.expires_at}
    if isinstance(value, FlashMessage):
        return {_TYPE_TAG: _FLASH_TAG, "type": value.type, "message": value.message}
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    raise TypeError(f"unsupported session value type: {type(value).__name__}")


def decode_value(raw: Any) -> Any:
    if isinstance(raw, dict):
        tag = raw.get(_TYPE_TAG)
        if tag == _CEREMONY_TAG:
            state = raw.get("state")
            expires_at = raw.get("expires_at")
            if isinstance(state, dict) and isinstance(expires_at, int) and not isinstance(expires_at, bool):
                return CeremonyState(state=state, expires_at=expires_at)
        elif tag == _FLASH_TAG:
            kind = raw.get("type")
            message = raw.get("message")
            if kind in ("error", "success", "warning", "info") and isinstance(message, str):
                return FlashMessage(type=kind, message=message)
    return raw


class SessionKey(Generic[T]):
    """A well-known session entry. ``decode`` raises TypeError/ValueError on mismatch."""

    __slots__ = ("name", "_decode")

    def __init__(self, name: str, decode: Callable[[Any], T]):
        self.name = name
        self._decode = decode

    def decode(self, raw: Any) -> T:
        return self._decode(raw)

    def __repr__(self) -> str:
        return f"SessionKey({self.name!r})"


def _expect_str(raw: Any) -> str:
    if not isinstance(raw, str):
        raise TypeError("expected str")
    return raw


def _expect_bool(raw: Any) -> bool:
    if not isinstance(raw, bool):
        raise TypeError("expected bool")
    return raw


def _expect_int(raw: Any) -> int:
    if isinstance(raw, bool):
        raise TypeError("expected int")
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    if not isinstance(raw, int):
        raise TypeError("expected int")
    return raw


def _expect_ceremony(raw: Any) -> CeremonyState:
    if not isinstance(raw, CeremonyState):
        raise TypeError("expected ceremony state")
    return raw


def str_key(name: str) -> SessionKey[str]:
    return SessionKey(name, _expect_str)


def bool_key(name: str) -> SessionKey[bool]:
    return SessionKey(name, _expect_bool)


def int_key(name: str) -> SessionKey[int]:
    return SessionKey(name, _expect_int)


def ceremony_key(name: str) -> SessionKey[CeremonyState]:
    return SessionKey(name, _expect_ceremony)


@dataclass
class Session:
    """One browser session. Mutations flip ``modified`` so the middleware persists them."""

    id: str = field(default_factory=new_session_id)
    data: dict[str, Any] = field(default_factory=dict)
    is_new: bool = True
    modified: bool = False
    destroyed: bool = False

    def get(self, key: SessionKey[T]) -> Optional[T]:
        if key.name not in self.data:
            return None
        try:
            return key.decode(self.data[key.name])
        except (TypeError, ValueError):
            del self.data[key.name]
            self.modified = True
            return None

    def set(self, key: SessionKey[T], value: T) -> None:
        encode_value(value)  # reject unsupported types at the call site
        if self.data.get(key.name, _MISSING) == value:
            return
        self.data[key.name] = value
        self.modified = True

    def delete(self, *keys: SessionKey[Any]) -> None:
        for key in keys:
            if key.name in self.data:
                del self.data[key.name]
                self.modified = True

    def clear(self) -> None:
        if self.data:
            self.data.clear()
            self.modified = True

    # -- flash messages (auxiliary list) -------------------------------------

    def add_flash(self, kind: FlashType, message: str) -> None:
        flashes = self.data.get(_FLASH_KEY)
        if not isinstance(flashes, list):
            flashes = []
        flashes.append(FlashMessage(type=kind, message=message))
        self.data[_FLASH_KEY] = flashes
        self.modified = True

    def pop_flashes(self) -> list[FlashMessage]:
        flashes = self.data.pop(_FLASH_KEY, None)
        if flashes is None:
            return []
        self.modified = True
        if not isinstance(flashes, list):
            return []
        return [f for f in flashes if isinstance(f, FlashMessage)]

    # -- persistence ----------------------------------------------------------

    @property
    def should_persist(self) -> bool:
        return not self.destroyed and self.modified and (bool(self.data) or not self.is_new)

    def dumps(self) -> str:
        encoded: dict[str, Any] = {}
        for name, value in self.data.items():
            if name == _FLASH_KEY and isinstance(value, list):
                encoded[name] = [encode_value(v) for v in value if isinstance(v, FlashMessage)]
            else:
                encoded[name] = encode_value(value)
        return json.dumps(encoded, separators=(",", ":"), sort_keys=True)

    @classmethod
    def loads(cls, session_id: str, payload: str) -> "Session":
        try:
            raw = json.loads(payload or "{}")
        except json.JSONDecodeError:
            raw = {}
        if not isinstance(raw, dict):
            raw = {}
        data: dict[str, Any] = {}
        for name, value in raw.items():
            if name == _FLASH_KEY and isinstance(value, list):
                data[name] = [decode_value(v) for v in value]
            else:
                data[name] = decode_value(value)
        return cls(id=session_id, data=data, is_new=False)


_MISSING = object()
