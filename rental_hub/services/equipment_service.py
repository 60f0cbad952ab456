from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from rental_hub.db.store import EQUIPMENT, RENTALS, DocumentStore
from rental_hub.services.errors import Forbidden, NotFound, ValidationError
from rental_hub.services.rental_service import IN_PROGRESS_STATUSES, utcnow

EQUIPMENT_LOGGER = logging.getLogger("rental_hub.equipment")

CATEGORIES = {"bike", "skate", "kayak", "other"}
DEFAULT_CATEGORY = "other"
PLACEHOLDER_IMAGE = "/images/placeholder.png"
EDITABLE_FIELDS = ("name", "price", "category", "detail", "image")


def _clean_name(value: Any) -> str:
    name = str(value or "").strip()
    if not name:
        raise ValidationError("name is required.")
    return name


def _clean_price(value: Any) -> float:
    if isinstance(value, bool):
        raise ValidationError("price must be a number.")
    try:
        price = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("price must be a number.") from exc
    if price < 0:
        raise ValidationError("price must not be negative.")
    return round(price, 2)


def _clean_stock(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("stock must be a whole number.")
    try:
        stock = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("stock must be a whole number.") from exc
    if stock != float(value):
        raise ValidationError("stock must be a whole number.")
    if stock < 0:
        raise ValidationError("stock must not be negative.")
    return stock


def _clean_category(value: Any) -> str:
    category = str(value or DEFAULT_CATEGORY).strip().lower()
    if category not in CATEGORIES:
        raise ValidationError(f"category must be one of {', '.join(sorted(CATEGORIES))}.")
    return category


def serialize_equipment(equipment: dict) -> dict:
    return {
        "id": equipment.get("id"),
        "name": equipment.get("name") or "Untitled",
        "price": float(equipment.get("price") or 0),
        "stock": int(equipment.get("stock") or 0),
        "category": equipment.get("category") or DEFAULT_CATEGORY,
        "image": equipment.get("image") or PLACEHOLDER_IMAGE,
        "detail": equipment.get("detail") or "",
        "ownerId": equipment.get("ownerId"),
        "createdAt": equipment.get("createdAt"),
        "updatedAt": equipment.get("updatedAt"),
    }


async def list_equipment(
    store: DocumentStore,
    category: str | None = None,
    min_price: float | None = None,
    max_price: float | None = None,
) -> list[dict]:
    filters = []
    if category:
        filters.append(("category", "==", _clean_category(category)))
    items = []
    for equipment in await store.query(EQUIPMENT, filters):
        price = float(equipment.get("price") or 0)
        if min_price is not None and price < min_price:
            continue
        if max_price is not None and price > max_price:
            continue
        items.append(serialize_equipment(equipment))
    items.sort(key=lambda item: item["name"].lower())
    return items


async def get_equipment(store: DocumentStore, equipment_id: str) -> dict:
    equipment = await store.get(EQUIPMENT, equipment_id)
    if equipment is None:
        raise NotFound("Equipment not found.")
    return equipment


async def _get_owned_equipment(store: DocumentStore, equipment_id: str, caller_id: str) -> dict:
    equipment = await get_equipment(store, equipment_id)
    if equipment.get("ownerId") != caller_id:
        raise Forbidden("Only the owner can change this equipment.")
    return equipment


async def create_equipment(
    store: DocumentStore,
    owner_id: str,
    payload: dict[str, Any],
    now: datetime | None = None,
) -> dict:
    now = now or utcnow()
    data = {
        "name": _clean_name(payload.get("name")),
        "price": _clean_price(payload.get("price", 0)),
        "stock": _clean_stock(payload.get("stock", 0)),
        "category": _clean_category(payload.get("category")),
        "detail": str(payload.get("detail") or "").strip(),
        "image": str(payload.get("image") or PLACEHOLDER_IMAGE).strip(),
        "ownerId": owner_id,
        "createdAt": now,
        "updatedAt": now,
    }
    created = await store.create(EQUIPMENT, data)
    EQUIPMENT_LOGGER.info("Equipment created id=%s owner=%s stock=%s", created["id"], owner_id, data["stock"])
    return created


async def update_equipment(
    store: DocumentStore,
    equipment_id: str,
    caller_id: str,
    payload: dict[str, Any],
    now: datetime | None = None,
) -> dict:
    equipment = await _get_owned_equipment(store, equipment_id, caller_id)

    # Stock only moves through rental reservations and returns.
    fields: dict[str, Any] = {}
    for field in EDITABLE_FIELDS:
        if field not in payload:
            continue
        value = payload[field]
        if field == "name":
            fields["name"] = _clean_name(value)
        elif field == "price":
            fields["price"] = _clean_price(value)
        elif field == "category":
            fields["category"] = _clean_category(value)
        else:
            fields[field] = str(value or "").strip()

    if not fields:
        return equipment
    fields["updatedAt"] = now or utcnow()
    await store.update(EQUIPMENT, equipment_id, fields)
    EQUIPMENT_LOGGER.info("Equipment updated id=%s fields=%s", equipment_id, ",".join(sorted(fields)))
    return {**equipment, **fields}


async def delete_equipment(store: DocumentStore, equipment_id: str, caller_id: str) -> None:
    await _get_owned_equipment(store, equipment_id, caller_id)
    rentals = await store.query(RENTALS, [("equipmentId", "==", equipment_id)])
    open_rentals = [rental for rental in rentals if rental.get("status") in IN_PROGRESS_STATUSES]
    if open_rentals:
        raise ValidationError(
            "Equipment has rentals in progress and cannot be deleted.",
            openRentals=len(open_rentals),
        )
    await store.delete(EQUIPMENT, equipment_id)
    EQUIPMENT_LOGGER.info("Equipment deleted id=%s owner=%s", equipment_id, caller_id)
