import datetime
import uuid

from pydantic import BaseModel


class UserRead(BaseModel):
    id: uuid.UUID
    email: str
    is_active: bool
    display_name: str | None = None
    avatar_url: str | None = None
    created_at: datetime.datetime
    last_login_at: datetime.datetime | None = None

    model_config = {"from_attributes": True}


class ExchangeRequest(BaseModel):
    code: str


class ExchangeResponse(BaseModel):
    openId: str
    nickname: str | None = None
    gender: str | None = None
    avatarUrl: str | None = None


class CallbackFailure(BaseModel):
    """Body of a terminal callback failure: short message plus the diagnostic log."""

    kind: str
    detail: str
    trail: list[str]
    retry_url: str
    sign_in_url: str


class RecoveryRead(BaseModel):
    success: bool
    purged: bool = False
    user: UserRead | None = None
    error_kind: str | None = None
    error_detail: str | None = None
