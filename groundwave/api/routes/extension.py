"""Browser-extension handshake.

The PoW gate already refuses every ``/ext`` path for clients outside the
low-risk networks, so these handlers only deal with tokens.
"""

import logging
from urllib.parse import quote

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse, Response

from groundwave.api import deps
from groundwave.api.templating import render
from groundwave.core.auth.state import SessionUser
from groundwave.core.extension import extension_tokens, new_extension_token, token_from_headers
from groundwave.utils.exceptions import UnauthorizedException

router = APIRouter()

logger = logging.getLogger(__name__)

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Authorization, X-Groundwave-Token, Content-Type",
    "Access-Control-Max-Age": "600",
}


@router.get("/ext/auth")
async def extension_auth(user: SessionUser = Depends(deps.require_auth)):
    token = new_extension_token()
    extension_tokens.add(token)
    logger.info("extension.token_issued user_id=%s", user.user_id)
    return RedirectResponse("/ext/complete?token=" + quote(token, safe=""), status_code=303)


@router.get("/ext/complete")
async def extension_complete(request: Request, token: str = ""):
    return render(request, "ext_complete.html", {"token_ok": extension_tokens.has(token)})


@router.api_route("/ext/validate", methods=["GET", "OPTIONS"])
async def extension_validate(request: Request):
    if request.method == "OPTIONS":
        return Response(status_code=204, headers=_CORS_HEADERS)

    if not extension_tokens.has(token_from_headers(request.headers)):
        deps.log_access_denied(request, "extension_token_invalid", 401)
        raise UnauthorizedException("invalid token")
    return Response(status_code=204, headers=_CORS_HEADERS)
