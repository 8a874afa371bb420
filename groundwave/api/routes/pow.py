import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from groundwave.api import deps
from groundwave.api.templating import render
from groundwave.core import pow as pow_core
from groundwave.core.risk import ClientRisk
from groundwave.core.sessions import keys
from groundwave.core.sessions.session import Session
from groundwave.schemas.auth import RedirectPayload
from groundwave.utils.error_codes import ErrorCode
from groundwave.utils.exceptions import BadRequestException, PayloadTooLargeException, UnauthorizedException
from groundwave.utils.metrics import POW_CHALLENGES_TOTAL, POW_VERIFICATIONS_TOTAL
from groundwave.utils.observability import format_fields, with_request_id
from groundwave.utils.paths import sanitize_next_path

router = APIRouter()

logger = logging.getLogger(__name__)

MAX_VERIFY_BODY_BYTES = 1024
MAX_NONCE = 2**64 - 1


def render_challenge(request: Request, session: Session, risk: ClientRisk, next_path: str) -> Response:
    """Issue a fresh challenge for ``next_path`` and answer 403 with it."""
    policy: pow_core.DifficultyPolicy = request.app.state.difficulty_policy
    challenge = pow_core.issue_challenge(
        session,
        next_path=next_path,
        difficulty=policy.for_risk(risk.level),
        now=deps.now_ts(),
        base_ttl=policy.base_ttl,
    )
    POW_CHALLENGES_TOTAL.labels(risk=risk.level.value).inc()
    logger.info(
        "pow.challenge_issued %s",
        format_fields(
            **with_request_id(
                {"risk": risk.level.value, "asn": risk.asn, "country": risk.country, "difficulty": challenge.difficulty}
            )
        ),
    )

    if "application/json" in request.headers.get("accept", ""):
        return JSONResponse(status_code=403, content=challenge.as_dict())
    return render(
        request,
        "pow.html",
        {
            "challenge": challenge,
            "challenge_json": json.dumps(challenge.as_dict()),
            "next_path": next_path,
        },
        status_code=403,
    )


@router.get("/pow")
async def pow_page(
    request: Request,
    next: str = "",
    session: Session = Depends(deps.get_session),
):
    next_path = sanitize_next_path(next, "/")
    risk: ClientRisk = request.state.client_risk
    if pow_core.has_pow_access(session, risk.level, deps.now_ts()):
        return RedirectResponse(next_path, status_code=303)
    return render_challenge(request, session, risk, next_path)


async def _read_verify_body(request: Request) -> bytes:
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > MAX_VERIFY_BODY_BYTES:
        raise PayloadTooLargeException()

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > MAX_VERIFY_BODY_BYTES:
            raise PayloadTooLargeException()
    return bytes(body)


def _parse_nonce(body: bytes) -> int:
    invalid = BadRequestException("invalid request payload")
    try:
        # json.loads rejects trailing data after the first value.
        payload = json.loads(body)
    except (UnicodeDecodeError, ValueError) as exc:
        raise invalid from exc
    if not isinstance(payload, dict):
        raise invalid
    nonce = payload.get("nonce")
    if isinstance(nonce, bool) or not isinstance(nonce, int) or not 0 <= nonce <= MAX_NONCE:
        raise invalid
    return nonce


@router.post("/pow/verify", response_model=RedirectPayload)
async def pow_verify(
    request: Request,
    session: Session = Depends(deps.get_session),
):
    challenge = session.get(keys.POW_CHALLENGE)
    if not challenge:
        POW_VERIFICATIONS_TOTAL.labels(result="missing").inc()
        raise BadRequestException("challenge missing", code=ErrorCode.E002)

    # Single use: whatever happens from here on, this challenge is spent.
    expires_at = session.get(keys.POW_EXPIRES_AT)
    difficulty = session.get(keys.POW_DIFFICULTY)
    stored_next = session.get(keys.POW_NEXT)
    pow_core.clear_challenge(session)

    now = deps.now_ts()
    if expires_at is None or now > expires_at:
        POW_VERIFICATIONS_TOTAL.labels(result="expired").inc()
        raise BadRequestException("challenge expired", code=ErrorCode.E002)

    try:
        body = await _read_verify_body(request)
    except PayloadTooLargeException:
        POW_VERIFICATIONS_TOTAL.labels(result="too_large").inc()
        deps.log_access_denied(request, "pow_payload_too_large", 413)
        raise
    nonce = _parse_nonce(body)

    if difficulty is None:
        difficulty = request.app.state.difficulty_policy.medium
    if not pow_core.verify_proof(challenge, nonce, pow_core.clamp_difficulty(difficulty)):
        POW_VERIFICATIONS_TOTAL.labels(result="invalid").inc()
        raise UnauthorizedException("invalid proof", code=ErrorCode.E002)

    pow_core.mark_verified(session, now)
    POW_VERIFICATIONS_TOTAL.labels(result="ok").inc()
    return {"redirect": sanitize_next_path(stored_next, "/")}
