from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Column
from sqlmodel import Field, Relationship

from wetools_auth.models.base import BaseUUIDModel, timestamp_field

if TYPE_CHECKING:
    from wetools_auth.models.oauth_account import OAuthAccount
    from wetools_auth.models.refresh_token import RefreshToken


class User(BaseUUIDModel, table=True):
    """Local auth record.

    Provider-linked users sign in with a synthetic email
    (``<external_id>@<provider>.wetools.auth``) and a credential derived from
    the external identity; they never choose a password.
    """

    __tablename__ = "users"

    email: str = Field(max_length=320, unique=True, index=True)
    hashed_password: str | None = Field(default=None, max_length=255)
    display_name: str | None = Field(default=None, max_length=100)
    avatar_url: str | None = Field(default=None, max_length=500)
    is_active: bool = Field(default=True)
    last_login_at: datetime | None = timestamp_field(nullable=True)

    # {display_name, avatar_url, external_id, provider, identity_trust}
    user_metadata: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    oauth_accounts: list["OAuthAccount"] = Relationship(
        back_populates="user",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )
    refresh_tokens: list["RefreshToken"] = Relationship(
        back_populates="user",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )
