from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import DateTime
from sqlmodel import Field, Relationship

from wetools_auth.models.base import BaseUUIDModel, timestamp_field

if TYPE_CHECKING:
    from wetools_auth.models.user import User


class RefreshToken(BaseUUIDModel, table=True):
    """One refresh token of a session chain. Only the SHA-256 hash is stored.

    Rotation revokes the presented token; reuse of a revoked token, logout
    and the client purge revoke every token of the user.
    """

    __tablename__ = "refresh_tokens"

    user_id: UUID = Field(foreign_key="users.id", index=True)
    token_hash: str = Field(max_length=64, unique=True, index=True)
    expires_at: datetime = Field(sa_type=DateTime(timezone=True))
    is_revoked: bool = Field(default=False)
    revoked_at: datetime | None = timestamp_field(nullable=True)

    user: "User" = Relationship(back_populates="refresh_tokens")
