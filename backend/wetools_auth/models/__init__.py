# Import all models so SQLModel.metadata registers them for Alembic autogenerate.
from wetools_auth.models.base import BaseUUIDModel  # noqa: F401
from wetools_auth.models.user import User  # noqa: F401
from wetools_auth.models.oauth_account import OAuthAccount  # noqa: F401
from wetools_auth.models.profile import UserProfile  # noqa: F401
from wetools_auth.models.refresh_token import RefreshToken  # noqa: F401
