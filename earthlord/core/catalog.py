"""Read-only building template and item definition catalogs.

Both catalogs are loaded once from JSON, validated through the pydantic entry
models in ``earthlord.models.schemas``, and held in immutable mappings of
frozen dataclasses. Managers receive the Catalog by reference.
"""
from __future__ import annotations

import logging
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Union

from pydantic import TypeAdapter, ValidationError

from earthlord.core import config
from earthlord.core.errors import ItemNotFound, TemplateNotFound
from earthlord.models.domain import (
    BuildingCategory,
    BuildingTemplate,
    ItemCategory,
    ItemDefinition,
)
from earthlord.models.schemas import (
    BuildingTemplateEntry,
    ItemDefinitionEntry,
    ItemFileAdapter,
    TemplateFileAdapter,
)

logger = logging.getLogger(__name__)


class CatalogLoadError(ValueError):
    """Raised when a catalog file is missing or malformed."""


def template_from_entry(entry: BuildingTemplateEntry) -> BuildingTemplate:
    return BuildingTemplate(
        id=entry.id,
        name=entry.name or entry.id,
        category=entry.category,
        tier=entry.tier,
        description=entry.description,
        icon=entry.icon,
        required_resources=MappingProxyType(dict(entry.required_resources)),
        build_time_seconds=entry.build_time_seconds,
        max_per_territory=entry.max_per_territory,
        max_level=entry.max_level,
    )


def item_from_entry(entry: ItemDefinitionEntry) -> ItemDefinition:
    return ItemDefinition(
        id=entry.id,
        name=entry.name or entry.id,
        category=entry.category,
        weight=entry.weight,
        volume=entry.volume,
        rarity=entry.rarity,
        description=entry.description,
        is_stackable=entry.is_stackable,
        max_stack=entry.max_stack,
        has_quality=entry.has_quality,
    )


def _load_entries(path: Path, adapter: TypeAdapter, key: str) -> list:
    try:
        raw = path.read_bytes()
    except FileNotFoundError as exc:
        raise CatalogLoadError(f"catalog file not found: {path}") from exc
    try:
        parsed = adapter.validate_json(raw)
    except ValidationError as exc:
        raise CatalogLoadError(f"{path.name}: invalid {key}: {exc}") from exc
    return parsed if isinstance(parsed, list) else getattr(parsed, key)


class Catalog:
    """Immutable lookup of building templates and item definitions by id."""

    def __init__(self, templates: Iterable[BuildingTemplate], items: Iterable[ItemDefinition]) -> None:
        template_map: Dict[str, BuildingTemplate] = {}
        for t in templates:
            if t.id in template_map:
                raise CatalogLoadError(f"duplicate building template id {t.id!r}")
            template_map[t.id] = t
        item_map: Dict[str, ItemDefinition] = {}
        for it in items:
            if it.id in item_map:
                raise CatalogLoadError(f"duplicate item id {it.id!r}")
            item_map[it.id] = it
        # Templates may only consume items that exist
        for t in template_map.values():
            unknown = sorted(set(t.required_resources) - set(item_map))
            if item_map and unknown:
                raise CatalogLoadError(f"template {t.id!r} requires unknown items: {', '.join(unknown)}")
        self._templates: Mapping[str, BuildingTemplate] = MappingProxyType(template_map)
        self._items: Mapping[str, ItemDefinition] = MappingProxyType(item_map)

    @classmethod
    def from_files(
        cls,
        templates_path: Union[str, Path, None] = None,
        items_path: Union[str, Path, None] = None,
    ) -> "Catalog":
        tpath = Path(templates_path or config.BUILDING_TEMPLATES_PATH)
        ipath = Path(items_path or config.ITEM_DEFINITIONS_PATH)
        templates = [template_from_entry(e) for e in _load_entries(tpath, TemplateFileAdapter, "templates")]
        items = [item_from_entry(e) for e in _load_entries(ipath, ItemFileAdapter, "items")]
        catalog = cls(templates, items)
        logger.info(
            "catalog_loaded",
            extra={"action_type": "catalog_loaded", "templates": len(templates), "items": len(items)},
        )
        return catalog

    # --- Building templates ---

    def template(self, template_id: str) -> Optional[BuildingTemplate]:
        return self._templates.get(template_id)

    def require_template(self, template_id: str) -> BuildingTemplate:
        tpl = self._templates.get(template_id)
        if tpl is None:
            raise TemplateNotFound(template_id)
        return tpl

    def templates(self, category: Optional[Union[str, BuildingCategory]] = None) -> List[BuildingTemplate]:
        """Templates sorted by tier then id, optionally filtered by category."""
        values = list(self._templates.values())
        if category is not None:
            wanted = BuildingCategory(category)
            values = [t for t in values if t.category is wanted]
        return sorted(values, key=lambda t: (t.tier, t.id))

    # --- Item definitions ---

    def item_definition(self, item_id: str) -> Optional[ItemDefinition]:
        return self._items.get(item_id)

    def require_item(self, item_id: str) -> ItemDefinition:
        item = self._items.get(item_id)
        if item is None:
            raise ItemNotFound(item_id)
        return item

    def items(self, category: Optional[Union[str, ItemCategory]] = None) -> List[ItemDefinition]:
        values = list(self._items.values())
        if category is not None:
            wanted = ItemCategory(category)
            values = [i for i in values if i.category is wanted]
        return sorted(values, key=lambda i: i.id)


_default_catalog: Optional[Catalog] = None


def get_catalog() -> Catalog:
    """Process-wide catalog loaded from the configured paths on first use."""
    global _default_catalog
    if _default_catalog is None:
        _default_catalog = Catalog.from_files()
    return _default_catalog


__all__ = ["Catalog", "CatalogLoadError", "get_catalog", "template_from_entry", "item_from_entry"]
