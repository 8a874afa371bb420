"""Browser-extension bearer tokens.

Tokens are minted by ``GET /ext/auth`` for an authenticated user and presented
by the extension on ``/ext/validate``. They live in process memory only.
"""

from __future__ import annotations

import secrets
import threading
from contextlib import contextmanager
from typing import Iterator, Optional


class _ReadWriteLock:
    """Many readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def new_extension_token() -> str:
    return secrets.token_urlsafe(32)


class ExtensionTokenStore:
    def __init__(self) -> None:
        self._lock = _ReadWriteLock()
        self._tokens: set[str] = set()

    def add(self, token: str) -> None:
        if not token:
            raise ValueError("empty extension token")
        with self._lock.write():
            self._tokens.add(token)

    def has(self, token: Optional[str]) -> bool:
        if not token:
            return False
        with self._lock.read():
            return token in self._tokens

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._tokens)


def token_from_headers(headers) -> Optional[str]:
    """``X-Groundwave-Token`` wins over ``Authorization: Bearer``."""
    token = (headers.get("X-Groundwave-Token") or "").strip()
    if token:
        return token
    scheme, _, value = (headers.get("Authorization") or "").strip().partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


extension_tokens = ExtensionTokenStore()
