from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Iterator

from groundwave.utils.request_id import request_id_var


def format_fields(**fields: object) -> str:
    """Render key=value pairs; values with spaces are quoted to keep lines parseable."""
    parts = []
    for key, value in fields.items():
        text = "" if value is None else str(value)
        if text == "" or any(ch in text for ch in ' "='):
            text = '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'
        parts.append(f"{key}={text}")
    return " ".join(parts)


def with_request_id(fields: dict[str, object]) -> dict[str, object]:
    rid = request_id_var.get()
    if rid and "request_id" not in fields:
        return {"request_id": rid, **fields}
    return fields


@contextmanager
def log_duration(logger: Any, operation: str, **fields: object) -> Iterator[None]:
    """Log duration of an operation.

    Uses logger.debug with a stable key=value format to keep logs parseable even without
    a JSON logging formatter.
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        extras = format_fields(**with_request_id(fields))
        if extras:
            logger.debug("op=%s duration_ms=%.2f %s", operation, elapsed_ms, extras)
        else:
            logger.debug("op=%s duration_ms=%.2f", operation, elapsed_ms)
