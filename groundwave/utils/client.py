from __future__ import annotations

from starlette.requests import Request

UNKNOWN_DEVICE = "Unknown device"


def client_ip(request: Request) -> str:
    """Client address as seen through the reverse proxy.

    First X-Forwarded-For hop, then X-Real-IP, then the peer address.
    """
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",", 1)[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip

    if request.client is not None and request.client.host:
        return request.client.host
    return ""


def device_label(user_agent: str | None) -> str:
    ua = (user_agent or "").strip().lower()
    if not ua:
        return UNKNOWN_DEVICE

    if "android" in ua:
        os_name = "Android"
    elif "iphone" in ua or "ipad" in ua or "ios" in ua:
        os_name = "iOS"
    elif "windows" in ua:
        os_name = "Windows"
    elif "macintosh" in ua or "mac os" in ua:
        os_name = "macOS"
    elif "linux" in ua:
        os_name = "Linux"
    else:
        os_name = "Unknown OS"

    # Edge and Chrome UAs both mention "chrome"; Chrome UAs also mention "safari".
    if "edg/" in ua:
        browser = "Edge"
    elif "chrome" in ua:
        browser = "Chrome"
    elif "firefox" in ua:
        browser = "Firefox"
    elif "safari" in ua:
        browser = "Safari"
    else:
        browser = "Unknown browser"

    return f"{os_name} / {browser}"
