from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import Column, Enum as SAEnum
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    """Naive UTC timestamp, the form every datetime column is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def enum_column(enum_cls: type[Enum], *, index: bool = False, **kwargs: Any) -> Column:
    # Store enum values ("past_due"), not member names, so raw SQL filters stay readable.
    return Column(
        SAEnum(
            enum_cls,
            values_callable=lambda members: [member.value for member in members],
            native_enum=False,
            length=32,
            validate_strings=True,
        ),
        nullable=False,
        index=index,
        **kwargs,
    )


class TimestampedModel(SQLModel):
    created_at: datetime = Field(default_factory=utc_now, nullable=False)
    updated_at: datetime | None = Field(default=None, nullable=True)


class UUIDModel(SQLModel):
    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
