from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, Relationship

from wetools_auth.models.base import BaseUUIDModel

if TYPE_CHECKING:
    from wetools_auth.models.user import User


class OAuthAccount(BaseUUIDModel, table=True):
    """Link between a local user and one external identity.

    ``(provider, provider_user_id)`` is the authoritative key the linker checks
    before registering; the unique constraint turns a lost registration race
    into an IntegrityError instead of a duplicate account.
    """

    __tablename__ = "oauth_accounts"
    __table_args__ = (
        UniqueConstraint("provider", "provider_user_id", name="uq_provider_user"),
    )

    user_id: UUID = Field(foreign_key="users.id", index=True)
    provider: str = Field(max_length=50)
    # QQ openid, or "<provider>_fb_<digest>" for a fallback identity
    provider_user_id: str = Field(max_length=255)
    is_verified: bool = Field(default=True)
    # Provider nickname as seen when the link was created
    provider_nickname: str | None = Field(default=None, max_length=100)

    user: "User" = Relationship(back_populates="oauth_accounts")
