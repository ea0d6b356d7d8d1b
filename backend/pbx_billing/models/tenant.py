from sqlmodel import Field

from pbx_billing.models.base import TimestampedModel, UUIDModel


class Tenant(UUIDModel, TimestampedModel, table=True):
    """Call-center customer account. Managed elsewhere; billing only references it."""

    __tablename__ = "tenants"

    name: str = Field(index=True)
    slug: str = Field(unique=True, index=True)
    is_active: bool = Field(default=True)
