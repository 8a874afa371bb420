import json
from typing import Any, Type, TypeVar

from fastapi import Request
from pydantic import BaseModel, ValidationError

from groundwave.utils.exceptions import BadRequestException

ModelT = TypeVar("ModelT", bound=BaseModel)


async def read_json_object(request: Request, *, allow_empty: bool = False) -> dict[str, Any]:
    """Decode the request body as one JSON object.

    Ceremony handlers check session state before the body, so bodies are parsed
    here rather than through FastAPI's parameter validation.
    """
    raw = await request.body()
    if not raw.strip():
        if allow_empty:
            return {}
        raise BadRequestException("invalid request body")
    try:
        payload = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as exc:
        raise BadRequestException("invalid request body") from exc
    if not isinstance(payload, dict):
        raise BadRequestException("invalid request body")
    return payload


async def parse_body(request: Request, model: Type[ModelT], *, allow_empty: bool = False) -> ModelT:
    payload = await read_json_object(request, allow_empty=allow_empty)
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise BadRequestException("invalid request body") from exc
