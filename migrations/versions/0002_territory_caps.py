"""Add territory_caps table

Revision ID: 0002_territory_caps
Revises: 0001_initial
Create Date: 2026-10-19 10:00:00

One row per (territory_id, template_id). Construction locks the row with
SELECT ... FOR UPDATE before counting buildings against max_per_territory,
which serializes the cap check across worker processes.
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_territory_caps"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "territory_caps",
        sa.Column("territory_id", sa.String(length=64), nullable=False),
        sa.Column("template_id", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("territory_id", "template_id"),
    )


def downgrade() -> None:
    op.drop_table("territory_caps")
