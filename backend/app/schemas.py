from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class TokenRequest(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    pp_path: str = ""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TokenOut(BaseModel):
    status: Literal["success"] = "success"
    auth_token: str
    username: str


class IdentityOut(BaseModel):
    user_id: int | None = None
    username: str
    profile_picture_path: str = ""

    model_config = ConfigDict(from_attributes=True)


class CreateGameRequest(BaseModel):
    type: Literal["war", "classic"] = "war"

    model_config = ConfigDict(extra="ignore")
