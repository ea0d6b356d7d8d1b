"""Billing schema baseline: plans, subscriptions, usage, invoices, payments, retries.

Revision ID: 0001_billing_schema
Revises:
"""
from __future__ import annotations

from sqlmodel import SQLModel
from alembic import op

from pbx_billing.db.base import *  # noqa: F401,F403 register every table on SQLModel.metadata

# revision identifiers, used by Alembic.
revision = "0001_billing_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Baseline straight from the model metadata, including the partial
    # unique index on (subscription_id, billing_period) for non-void invoices.
    bind = op.get_bind()
    SQLModel.metadata.create_all(bind=bind)


def downgrade() -> None:
    bind = op.get_bind()
    SQLModel.metadata.drop_all(bind=bind)
