from __future__ import annotations

from urllib.parse import urlsplit

DEFAULT_NEXT_FALLBACK = "/contacts"


def sanitize_next_path(raw: str | None, fallback: str = DEFAULT_NEXT_FALLBACK) -> str:
    """Reduce a user-supplied redirect target to a same-site path.

    Absolute URLs are cut down to path + query. Anything that could leave the
    site (scheme-relative "//host", CR/LF header splitting, relative paths)
    yields ``fallback``.
    """
    value = (raw or "").strip()
    if not value:
        return fallback
    if "\r" in value or "\n" in value:
        return fallback

    if "://" in value:
        try:
            parsed = urlsplit(value)
        except ValueError:
            return fallback
        path = parsed.path or "/"
        if not path.startswith("/") or _is_scheme_relative(path):
            return fallback
        if parsed.query:
            return f"{path}?{parsed.query}"
        return path

    if not value.startswith("/") or _is_scheme_relative(value):
        return fallback
    return value


def _is_scheme_relative(path: str) -> bool:
    # Browsers normalise "/\host" to "//host".
    return path.startswith("//") or path.startswith("/\\")
