"""SQLAlchemy ORM models for persistent construction and trade data.

Tables:
- ledger_accounts: one row per player, locked to serialize ledger mutations
- inventory_items: per-player item quantities (rows at zero are deleted)
- player_buildings: building instances placed on territories
- trade_offers: posted items-for-items offers
- trade_history: immutable record of completed trades plus ratings

Every timestamp column uses UTCDateTime so values always come back as
timezone-aware UTC, including on SQLite which stores them naive.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from earthlord.core.time_utils import ensure_aware_utc, utc_now

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """DateTime that normalizes to UTC on the way in and out."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        value = ensure_aware_utc(value)
        if dialect.name == "sqlite":
            # SQLite compares timestamps as text; keep a single naive-UTC format.
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        return ensure_aware_utc(value)


class LedgerAccount(Base):
    __tablename__ = "ledger_accounts"

    player_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)

    items: Mapped[List["InventoryItem"]] = relationship(
        "InventoryItem", back_populates="account", cascade="all, delete-orphan"
    )


class TerritoryCap(Base):
    """One row per (territory, template) pair that has ever been built on.

    start_construction locks this row before counting buildings, so the
    max-per-territory check is serialized across processes.
    """
    __tablename__ = "territory_caps"

    territory_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    template_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)


class InventoryItem(Base):
    __tablename__ = "inventory_items"
    __table_args__ = (
        UniqueConstraint("player_id", "item_id", name="uq_inventory_player_item"),
        CheckConstraint("quantity > 0", name="ck_inventory_quantity_positive"),
        Index("ix_inventory_items_player_id", "player_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    player_id: Mapped[str] = mapped_column(
        ForeignKey("ledger_accounts.player_id", ondelete="CASCADE"), nullable=False
    )
    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)

    account: Mapped["LedgerAccount"] = relationship("LedgerAccount", back_populates="items")


class PlayerBuilding(Base):
    __tablename__ = "player_buildings"
    __table_args__ = (
        Index("ix_player_buildings_owner_id", "owner_id"),
        Index("ix_player_buildings_territory_template", "territory_id", "template_id"),
        Index("ix_player_buildings_status_due", "status", "build_due_at"),
        CheckConstraint("level >= 1", name="ck_player_buildings_level_positive"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    territory_id: Mapped[str] = mapped_column(String(64), nullable=False)
    template_id: Mapped[str] = mapped_column(String(64), nullable=False)
    building_name: Mapped[str] = mapped_column(String(100), nullable=False)
    # constructing | active
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="constructing")
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    location_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    location_lon: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    build_started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    build_due_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    build_completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)


class TradeOffer(Base):
    __tablename__ = "trade_offers"
    __table_args__ = (
        Index("ix_trade_offers_status_expires", "status", "expires_at"),
        Index("ix_trade_offers_owner_id", "owner_id"),
        Index("ix_trade_offers_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # Lists of {"item_id", "quantity", "quality"} in the order posted
    offering_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    requesting_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # active | completed | cancelled | expired
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    completed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


class TradeHistory(Base):
    __tablename__ = "trade_history"
    __table_args__ = (
        Index("ix_trade_history_seller_id", "seller_id"),
        Index("ix_trade_history_buyer_id", "buyer_id"),
        Index("ix_trade_history_completed_at", "completed_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    offer_id: Mapped[str] = mapped_column(ForeignKey("trade_offers.id"), unique=True, nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    buyer_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    completed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    # Buyer's rating of the seller
    seller_rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    seller_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Seller's rating of the buyer
    buyer_rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    buyer_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


__all__ = [
    "Base",
    "UTCDateTime",
    "new_id",
    "LedgerAccount",
    "InventoryItem",
    "PlayerBuilding",
    "TradeOffer",
    "TradeHistory",
]
