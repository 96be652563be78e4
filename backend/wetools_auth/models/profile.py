from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime
from sqlmodel import Field

from wetools_auth.models.base import BaseUUIDModel


class UserProfile(BaseUUIDModel, table=True):
    __tablename__ = "user_profiles"

    user_id: UUID = Field(foreign_key="users.id", unique=True, index=True)
    nickname: str | None = Field(default=None, max_length=100)
    full_name: str | None = Field(default=None, max_length=100)
    avatar_url: str | None = Field(default=None, max_length=500)
    qq_open_id: str | None = Field(default=None, max_length=255, index=True)

    # Moderation
    is_admin: bool = Field(default=False)
    is_muted: bool = Field(default=False)
    muted_until: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
