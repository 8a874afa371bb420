from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SetupStartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    display_name: str = Field(default="", alias="displayName", max_length=255)
    label: Optional[str] = Field(default=None, max_length=255)


class RegisterStartRequest(BaseModel):
    label: Optional[str] = Field(default=None, max_length=255)


class RedirectPayload(BaseModel):
    redirect: str


class OkPayload(BaseModel):
    ok: bool = True
