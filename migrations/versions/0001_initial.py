"""Initial schema: ledger, buildings, trade offers and history

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00

Creates the tables declared in earthlord/models/database.py:
- ledger_accounts
- inventory_items
- player_buildings
- trade_offers
- trade_history

Indexes mirror those declared in the ORM models.
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "ledger_accounts",
        sa.Column("player_id", sa.String(length=64), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "inventory_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "player_id",
            sa.String(length=64),
            sa.ForeignKey("ledger_accounts.player_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("item_id", sa.String(length=64), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("player_id", "item_id", name="uq_inventory_player_item"),
        sa.CheckConstraint("quantity > 0", name="ck_inventory_quantity_positive"),
    )
    op.create_index("ix_inventory_items_player_id", "inventory_items", ["player_id"], unique=False)

    op.create_table(
        "player_buildings",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("territory_id", sa.String(length=64), nullable=False),
        sa.Column("template_id", sa.String(length=64), nullable=False),
        sa.Column("building_name", sa.String(length=100), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="constructing"),
        sa.Column("level", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("location_lat", sa.Float(), nullable=True),
        sa.Column("location_lon", sa.Float(), nullable=True),
        sa.Column("build_started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("build_due_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("build_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("level >= 1", name="ck_player_buildings_level_positive"),
    )
    op.create_index("ix_player_buildings_owner_id", "player_buildings", ["owner_id"], unique=False)
    op.create_index(
        "ix_player_buildings_territory_template", "player_buildings", ["territory_id", "template_id"], unique=False
    )
    op.create_index("ix_player_buildings_status_due", "player_buildings", ["status", "build_due_at"], unique=False)

    op.create_table(
        "trade_offers",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("offering_items", sa.JSON(), nullable=False),
        sa.Column("requesting_items", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by", sa.String(length=64), nullable=True),
    )
    op.create_index("ix_trade_offers_status_expires", "trade_offers", ["status", "expires_at"], unique=False)
    op.create_index("ix_trade_offers_owner_id", "trade_offers", ["owner_id"], unique=False)
    op.create_index("ix_trade_offers_created_at", "trade_offers", ["created_at"], unique=False)

    op.create_table(
        "trade_history",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("offer_id", sa.String(length=36), sa.ForeignKey("trade_offers.id"), nullable=False, unique=True),
        sa.Column("seller_id", sa.String(length=64), nullable=False),
        sa.Column("buyer_id", sa.String(length=64), nullable=False),
        sa.Column("seller_items", sa.JSON(), nullable=False),
        sa.Column("buyer_items", sa.JSON(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("seller_rating", sa.Integer(), nullable=True),
        sa.Column("seller_comment", sa.Text(), nullable=True),
        sa.Column("buyer_rating", sa.Integer(), nullable=True),
        sa.Column("buyer_comment", sa.Text(), nullable=True),
    )
    op.create_index("ix_trade_history_seller_id", "trade_history", ["seller_id"], unique=False)
    op.create_index("ix_trade_history_buyer_id", "trade_history", ["buyer_id"], unique=False)
    op.create_index("ix_trade_history_completed_at", "trade_history", ["completed_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_trade_history_completed_at", table_name="trade_history")
    op.drop_index("ix_trade_history_buyer_id", table_name="trade_history")
    op.drop_index("ix_trade_history_seller_id", table_name="trade_history")
    op.drop_table("trade_history")

    op.drop_index("ix_trade_offers_created_at", table_name="trade_offers")
    op.drop_index("ix_trade_offers_owner_id", table_name="trade_offers")
    op.drop_index("ix_trade_offers_status_expires", table_name="trade_offers")
    op.drop_table("trade_offers")

    op.drop_index("ix_player_buildings_status_due", table_name="player_buildings")
    op.drop_index("ix_player_buildings_territory_template", table_name="player_buildings")
    op.drop_index("ix_player_buildings_owner_id", table_name="player_buildings")
    op.drop_table("player_buildings")

    op.drop_index("ix_inventory_items_player_id", table_name="inventory_items")
    op.drop_table("inventory_items")

    op.drop_table("ledger_accounts")
