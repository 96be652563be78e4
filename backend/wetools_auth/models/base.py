from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import DateTime, func
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    """Timezone-aware now. Every timestamp the service writes goes through here."""
    return datetime.now(timezone.utc)


def timestamp_field(*, nullable: bool = False, on_update: bool = False) -> Any:
    """Timezone-aware timestamp column.

    Non-nullable columns are stamped on insert (client and server side);
    ``on_update`` columns are left empty until the row is first updated.
    """
    if on_update:
        return Field(
            default=None,
            sa_type=DateTime(timezone=True),
            sa_column_kwargs={"onupdate": func.now(), "nullable": True},
        )
    if nullable:
        return Field(default=None, sa_type=DateTime(timezone=True))
    return Field(
        default_factory=utc_now,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": func.now(), "nullable": False},
    )


class BaseUUIDModel(SQLModel):
    """UUID primary key plus created/updated stamps, shared by every table."""

    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    created_at: datetime = timestamp_field()
    updated_at: datetime | None = timestamp_field(on_update=True)
