"""Pydantic models for catalog files and trade item payloads.

Catalog JSON entries are validated here before they become frozen domain
dataclasses. ``TradeItemModel`` is shared by the HTTP layer and the trade
engine so both reject the same malformed items.
"""
from __future__ import annotations

from typing import Annotated, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, TypeAdapter

from earthlord.models.domain import (
    BuildingCategory,
    ItemCategory,
    ItemQuality,
    ItemRarity,
    TradeItem,
)

PositiveInt = Annotated[StrictInt, Field(ge=1)]
NonNegativeInt = Annotated[StrictInt, Field(ge=0)]


class BuildingTemplateEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    name: str = ""
    category: BuildingCategory
    tier: StrictInt = Field(ge=1, le=3)
    description: str = ""
    icon: str = ""
    required_resources: Dict[str, NonNegativeInt] = Field(default_factory=dict)
    build_time_seconds: PositiveInt
    max_per_territory: PositiveInt
    max_level: PositiveInt


class ItemDefinitionEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    name: str = ""
    category: ItemCategory
    weight: float = Field(default=0.0, ge=0)
    volume: float = Field(default=0.0, ge=0)
    rarity: ItemRarity = ItemRarity.COMMON
    description: str = ""
    is_stackable: bool = True
    max_stack: Optional[PositiveInt] = None
    has_quality: bool = False


class TemplateFile(BaseModel):
    templates: List[BuildingTemplateEntry]


class ItemFile(BaseModel):
    items: List[ItemDefinitionEntry]


# A catalog file is either a bare list or {"templates": [...]} / {"items": [...]}
TemplateFileAdapter = TypeAdapter(Union[List[BuildingTemplateEntry], TemplateFile])
ItemFileAdapter = TypeAdapter(Union[List[ItemDefinitionEntry], ItemFile])


class TradeItemModel(BaseModel):
    item_id: str = Field(min_length=1)
    quantity: StrictInt = Field(gt=0)
    quality: Optional[ItemQuality] = None

    def to_domain(self) -> TradeItem:
        return TradeItem(item_id=self.item_id, quantity=self.quantity, quality=self.quality)


__all__ = [
    "BuildingTemplateEntry",
    "ItemDefinitionEntry",
    "TemplateFileAdapter",
    "ItemFileAdapter",
    "TradeItemModel",
]
