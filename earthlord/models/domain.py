from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from earthlord.core.time_utils import isoformat_utc

# item_id -> non-negative quantity
ResourceQuantity = Dict[str, int]


class BuildingCategory(str, Enum):
    SURVIVAL = "survival"
    STORAGE = "storage"
    PRODUCTION = "production"
    ENERGY = "energy"


class BuildingStatus(str, Enum):
    CONSTRUCTING = "constructing"
    ACTIVE = "active"


class ItemCategory(str, Enum):
    WATER = "water"
    FOOD = "food"
    MEDICAL = "medical"
    MATERIAL = "material"
    TOOL = "tool"
    WEAPON = "weapon"
    MISC = "misc"


class ItemRarity(str, Enum):
    COMMON = "common"
    UNCOMMON = "uncommon"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"


class ItemQuality(str, Enum):
    PRISTINE = "pristine"
    GOOD = "good"
    WORN = "worn"
    DAMAGED = "damaged"
    RUINED = "ruined"


class OfferStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class OfferSort(str, Enum):
    NEWEST = "newest"
    OLDEST = "oldest"
    EXPIRING = "expiring"


@dataclass(frozen=True)
class BuildingTemplate:
    """Catalog entry describing a constructible building type."""
    id: str
    name: str
    category: BuildingCategory
    tier: int
    description: str
    icon: str
    required_resources: Mapping[str, int]
    build_time_seconds: int
    max_per_territory: int
    max_level: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category.value,
            "tier": self.tier,
            "description": self.description,
            "icon": self.icon,
            "required_resources": dict(self.required_resources),
            "build_time_seconds": self.build_time_seconds,
            "max_per_territory": self.max_per_territory,
            "max_level": self.max_level,
        }


@dataclass(frozen=True)
class ItemDefinition:
    """Catalog entry describing an inventory item."""
    id: str
    name: str
    category: ItemCategory
    weight: float
    volume: float
    rarity: ItemRarity
    description: str = ""
    is_stackable: bool = True
    max_stack: Optional[int] = None
    has_quality: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category.value,
            "weight": self.weight,
            "volume": self.volume,
            "rarity": self.rarity.value,
            "description": self.description,
            "is_stackable": self.is_stackable,
            "max_stack": self.max_stack,
            "has_quality": self.has_quality,
        }


@dataclass(frozen=True)
class TradeItem:
    item_id: str
    quantity: int
    quality: Optional[ItemQuality] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "quantity": self.quantity,
            "quality": self.quality.value if self.quality is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TradeItem":
        quality = data.get("quality")
        return cls(
            item_id=str(data["item_id"]),
            quantity=int(data["quantity"]),
            quality=ItemQuality(quality) if quality else None,
        )


def total_quantities(items: List[TradeItem]) -> ResourceQuantity:
    """Sum quantities per item id; the ledger does not distinguish quality."""
    totals: ResourceQuantity = {}
    for it in items:
        totals[it.item_id] = totals.get(it.item_id, 0) + int(it.quantity)
    return totals


@dataclass(frozen=True)
class ResourceCheckResult:
    sufficient: bool
    missing: ResourceQuantity = field(default_factory=dict)
    available: ResourceQuantity = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"sufficient": self.sufficient, "missing": dict(self.missing), "available": dict(self.available)}


@dataclass(frozen=True)
class BuildingSnapshot:
    """A building as observed at a point in time.

    ``status``, ``progress`` and ``is_complete`` are projected from the stored
    start/due timestamps, so a constructing row past its deadline reads as
    complete even before anything persists the transition.
    """
    id: str
    owner_id: str
    territory_id: str
    template_id: str
    building_name: str
    stored_status: BuildingStatus
    level: int
    location: Optional[Tuple[float, float]]
    build_started_at: datetime
    build_due_at: datetime
    build_completed_at: Optional[datetime]
    observed_at: datetime
    progress: float
    is_complete: bool
    can_upgrade: bool

    @property
    def status(self) -> BuildingStatus:
        if self.stored_status is BuildingStatus.CONSTRUCTING and self.is_complete:
            return BuildingStatus.ACTIVE
        return self.stored_status

    @property
    def remaining_seconds(self) -> float:
        if self.is_complete:
            return 0.0
        return max(0.0, (self.build_due_at - self.observed_at).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "territory_id": self.territory_id,
            "template_id": self.template_id,
            "building_name": self.building_name,
            "status": self.status.value,
            "stored_status": self.stored_status.value,
            "level": self.level,
            "location": list(self.location) if self.location else None,
            "build_started_at": isoformat_utc(self.build_started_at),
            "build_due_at": isoformat_utc(self.build_due_at),
            "build_completed_at": isoformat_utc(self.build_completed_at),
            "progress": self.progress,
            "is_complete": self.is_complete,
            "remaining_seconds": self.remaining_seconds,
            "can_upgrade": self.can_upgrade,
        }


@dataclass(frozen=True)
class OfferSnapshot:
    id: str
    owner_id: str
    offering: List[TradeItem]
    requesting: List[TradeItem]
    status: OfferStatus
    message: Optional[str]
    created_at: datetime
    expires_at: datetime
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "offering": [it.to_dict() for it in self.offering],
            "requesting": [it.to_dict() for it in self.requesting],
            "status": self.status.value,
            "message": self.message,
            "created_at": isoformat_utc(self.created_at),
            "expires_at": isoformat_utc(self.expires_at),
            "completed_at": isoformat_utc(self.completed_at),
            "completed_by": self.completed_by,
        }


@dataclass(frozen=True)
class TradeRecord:
    id: str
    offer_id: str
    seller_id: str
    buyer_id: str
    seller_items: List[TradeItem]
    buyer_items: List[TradeItem]
    completed_at: datetime
    seller_rating: Optional[int] = None
    seller_comment: Optional[str] = None
    buyer_rating: Optional[int] = None
    buyer_comment: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "offer_id": self.offer_id,
            "seller_id": self.seller_id,
            "buyer_id": self.buyer_id,
            "seller_items": [it.to_dict() for it in self.seller_items],
            "buyer_items": [it.to_dict() for it in self.buyer_items],
            "completed_at": isoformat_utc(self.completed_at),
            "seller_rating": self.seller_rating,
            "seller_comment": self.seller_comment,
            "buyer_rating": self.buyer_rating,
            "buyer_comment": self.buyer_comment,
        }


def _average(values: List[int]) -> Optional[float]:
    return sum(values) / len(values) if values else None


@dataclass(frozen=True)
class RatingStats:
    """Ratings a player has received from counterparties.

    ``seller_ratings`` were given by buyers of the player's offers and
    ``buyer_ratings`` by owners of offers the player accepted.
    """
    player_id: str
    total_trades: int
    as_seller_count: int
    as_buyer_count: int
    seller_ratings: List[int] = field(default_factory=list)
    buyer_ratings: List[int] = field(default_factory=list)

    @property
    def average_seller_rating(self) -> Optional[float]:
        return _average(self.seller_ratings)

    @property
    def average_buyer_rating(self) -> Optional[float]:
        return _average(self.buyer_ratings)

    @property
    def overall_rating(self) -> Optional[float]:
        return _average(self.seller_ratings + self.buyer_ratings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "player_id": self.player_id,
            "total_trades": self.total_trades,
            "as_seller_count": self.as_seller_count,
            "as_buyer_count": self.as_buyer_count,
            "average_seller_rating": self.average_seller_rating,
            "average_buyer_rating": self.average_buyer_rating,
            "overall_rating": self.overall_rating,
        }


@dataclass(frozen=True)
class TradeStats:
    active_offers: int
    completed_trades: int
    cancelled_offers: int
    total_items_traded: int
    pending_ratings: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active_offers": self.active_offers,
            "completed_trades": self.completed_trades,
            "cancelled_offers": self.cancelled_offers,
            "total_items_traded": self.total_items_traded,
            "pending_ratings": self.pending_ratings,
        }


__all__ = [
    "ResourceQuantity",
    "BuildingCategory",
    "BuildingStatus",
    "ItemCategory",
    "ItemRarity",
    "ItemQuality",
    "OfferStatus",
    "OfferSort",
    "BuildingTemplate",
    "ItemDefinition",
    "TradeItem",
    "total_quantities",
    "ResourceCheckResult",
    "BuildingSnapshot",
    "OfferSnapshot",
    "TradeRecord",
    "RatingStats",
    "TradeStats",
]
