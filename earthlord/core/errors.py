"""Error taxonomy for the construction and trade core.

Every precondition failure is raised as a GameError subclass carrying a stable
``kind`` string, an HTTP status for the API layer, and the parameters that
explain it (e.g. which items are missing). Storage failures are wrapped in
StorageError with the original exception chained as ``__cause__``.
"""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional


def _format_quantities(quantities: Mapping[str, int]) -> str:
    return ", ".join(f"{item_id} x{qty}" for item_id, qty in sorted(quantities.items()))


class GameError(Exception):
    """Base class for all client-visible game errors."""

    kind: str = "game_error"
    status_code: int = 400

    def __init__(self, message: str, **params: Any) -> None:
        super().__init__(message)
        self.message = message
        self.params: Dict[str, Any] = params

    def as_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "detail": self.message, **self.params}


class NotAuthenticated(GameError):
    kind = "not_authenticated"
    status_code = 401

    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(message)


class PermissionDenied(GameError):
    kind = "permission_denied"
    status_code = 403

    def __init__(self, message: str = "Not allowed to perform this operation") -> None:
        super().__init__(message)


# --- Not found ---

class NotFound(GameError):
    kind = "not_found"
    status_code = 404


class TemplateNotFound(NotFound):
    kind = "template_not_found"

    def __init__(self, template_id: str) -> None:
        super().__init__(f"Building template not found: {template_id}", template_id=template_id)


class ItemNotFound(NotFound):
    kind = "item_not_found"

    def __init__(self, item_id: str) -> None:
        super().__init__(f"Item definition not found: {item_id}", item_id=item_id)


class BuildingNotFound(NotFound):
    kind = "building_not_found"

    def __init__(self, building_id: str) -> None:
        super().__init__(f"Building not found: {building_id}", building_id=building_id)


class OfferNotFound(NotFound):
    kind = "offer_not_found"

    def __init__(self, offer_id: str) -> None:
        super().__init__(f"Trade offer not found: {offer_id}", offer_id=offer_id)


class HistoryNotFound(NotFound):
    kind = "history_not_found"

    def __init__(self, history_id: str) -> None:
        super().__init__(f"Trade record not found: {history_id}", history_id=history_id)


# --- Affordability ---

class InsufficientResources(GameError):
    kind = "insufficient_resources"
    status_code = 409

    def __init__(self, missing: Mapping[str, int]) -> None:
        self.missing = dict(missing)
        super().__init__(f"Insufficient resources: {_format_quantities(self.missing)}", missing=self.missing)


class InsufficientItems(GameError):
    kind = "insufficient_items"
    status_code = 409

    def __init__(self, missing: Mapping[str, int]) -> None:
        self.missing = dict(missing)
        super().__init__(
            f"Insufficient items: {_format_quantities(self.missing)}",
            missing=self.missing,
            item_ids=sorted(self.missing),
        )


class InventoryItemNotFound(GameError):
    """The offer owner no longer holds the items listed in the offer."""

    kind = "inventory_item_not_found"
    status_code = 409

    def __init__(self, missing: Mapping[str, int]) -> None:
        self.missing = dict(missing)
        super().__init__(
            f"Offer owner no longer holds: {_format_quantities(self.missing)}",
            missing=self.missing,
            item_ids=sorted(self.missing),
        )


# --- Caps ---

class MaxBuildingsReached(GameError):
    kind = "max_buildings_reached"
    status_code = 409

    def __init__(self, limit: int) -> None:
        super().__init__(f"Maximum number of buildings of this type reached: {limit}", limit=limit)


class MaxLevelReached(GameError):
    kind = "max_level_reached"
    status_code = 409

    def __init__(self, max_level: int) -> None:
        super().__init__(f"Building is already at maximum level {max_level}", limit=max_level)


# --- State machine ---

class InvalidStatus(GameError):
    kind = "invalid_status"
    status_code = 409

    def __init__(self, message: str = "Invalid status for this operation", **params: Any) -> None:
        super().__init__(message, **params)


class NotActive(InvalidStatus):
    kind = "not_active"

    def __init__(self, building_id: str) -> None:
        super().__init__(f"Building is still under construction: {building_id}", building_id=building_id)


class OfferNotActive(InvalidStatus):
    kind = "offer_not_active"

    def __init__(self, offer_id: str, status: Optional[str] = None) -> None:
        super().__init__(f"Trade offer is not active: {offer_id}", offer_id=offer_id, status=status)


class OfferExpired(GameError):
    kind = "offer_expired"
    status_code = 410

    def __init__(self, offer_id: str) -> None:
        super().__init__(f"Trade offer has expired: {offer_id}", offer_id=offer_id)


class CannotAcceptOwnOffer(GameError):
    kind = "cannot_accept_own_offer"
    status_code = 409

    def __init__(self, offer_id: str) -> None:
        super().__init__("Cannot accept your own trade offer", offer_id=offer_id)


class AlreadyRated(GameError):
    kind = "already_rated"
    status_code = 409

    def __init__(self, history_id: str) -> None:
        super().__init__("This trade has already been rated", history_id=history_id)


# --- Request validation ---

class InvalidOffer(GameError):
    kind = "invalid_offer"
    status_code = 422


class InvalidRating(GameError):
    kind = "invalid_rating"
    status_code = 422

    def __init__(self, rating: Any) -> None:
        super().__init__(f"Rating must be an integer between 1 and 5, got {rating!r}", rating=rating)


# --- Storage ---

class StorageError(GameError):
    kind = "storage_error"
    status_code = 503

    def __init__(self, message: str = "Storage operation failed") -> None:
        super().__init__(message)


__all__ = [
    "GameError",
    "NotAuthenticated",
    "PermissionDenied",
    "NotFound",
    "TemplateNotFound",
    "ItemNotFound",
    "BuildingNotFound",
    "OfferNotFound",
    "HistoryNotFound",
    "InsufficientResources",
    "InsufficientItems",
    "InventoryItemNotFound",
    "MaxBuildingsReached",
    "MaxLevelReached",
    "InvalidStatus",
    "NotActive",
    "OfferNotActive",
    "OfferExpired",
    "CannotAcceptOwnOffer",
    "AlreadyRated",
    "InvalidOffer",
    "InvalidRating",
    "StorageError",
]
