from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from rental_hub.db.store import (
    EQUIPMENT,
    RENTALS,
    DocumentNotFound,
    DocumentStore,
    PreconditionFailed,
    Transaction,
)
from rental_hub.services.errors import Forbidden, InsufficientStock, InvalidTransition, NotFound, ValidationError
from rental_hub.services.inventory_service import release_stock, reserve_stock
from rental_hub.services.notification_service import Notifier, build_event, send_quietly

RENTAL_LOGGER = logging.getLogger("rental_hub.rentals")

REQUESTED = "requested"
APPROVED = "approved"
REJECTED = "rejected"
CANCELLED = "cancelled"
SHIPPED = "shipped"
ACTIVE = "active"
RETURNING = "returning"
COMPLETED = "completed"

ALL_STATUSES = {REQUESTED, APPROVED, REJECTED, CANCELLED, SHIPPED, ACTIVE, RETURNING, COMPLETED}
TERMINAL_STATUSES = {REJECTED, CANCELLED, COMPLETED}
IN_PROGRESS_STATUSES = ALL_STATUSES - TERMINAL_STATUSES

OWNER = "owner"
RENTER = "renter"
SYSTEM = "system"

# Status -> payload field that must be present and non-empty.
REQUIRED_PAYLOAD = {
    SHIPPED: "trackingNumber",
    RETURNING: "returnTrackingNumber",
}


@dataclass(frozen=True)
class RentalLifecycle:
    name: str
    initial_status: str
    # (current, target) -> role allowed to take the edge.
    transitions: dict[tuple[str, str], str]
    reserve_on_create: bool
    reserve_on: frozenset[str]
    release_on: frozenset[str]
    start_on: frozenset[str]

    def role_for(self, current: str, target: str) -> str | None:
        return self.transitions.get((current, target))


STAGED = RentalLifecycle(
    name="staged",
    initial_status=REQUESTED,
    transitions={
        (REQUESTED, APPROVED): OWNER,
        (REQUESTED, REJECTED): OWNER,
        (REQUESTED, CANCELLED): RENTER,
        (APPROVED, SHIPPED): OWNER,
        (APPROVED, CANCELLED): RENTER,
        (SHIPPED, ACTIVE): RENTER,
        (ACTIVE, RETURNING): RENTER,
        (ACTIVE, COMPLETED): SYSTEM,
        (RETURNING, COMPLETED): OWNER,
    },
    reserve_on_create=False,
    reserve_on=frozenset({APPROVED}),
    release_on=frozenset({CANCELLED, COMPLETED}),
    start_on=frozenset({ACTIVE}),
)

INSTANT = RentalLifecycle(
    name="instant",
    initial_status=ACTIVE,
    transitions={
        (ACTIVE, COMPLETED): SYSTEM,
        (ACTIVE, CANCELLED): RENTER,
    },
    reserve_on_create=True,
    reserve_on=frozenset(),
    release_on=frozenset({CANCELLED, COMPLETED}),
    start_on=frozenset(),
)

LIFECYCLES = {lifecycle.name: lifecycle for lifecycle in (STAGED, INSTANT)}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def positive_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a positive integer.")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be a positive integer.") from exc
    if number != value and not (isinstance(value, str) and value.strip().isdigit()):
        raise ValidationError(f"{field} must be a positive integer.")
    if number < 1:
        raise ValidationError(f"{field} must be greater than 0.")
    return number


def calculate_total_price(price: float, duration_days: int, quantity: int) -> float:
    return round(float(price) * int(duration_days) * int(quantity), 2)


def effective_end(rental: dict) -> datetime | None:
    """End of the rental period: the recorded actual end, else creation + duration."""
    actual_end = as_utc(rental.get("actualEnd"))
    if actual_end is not None:
        return actual_end
    created_at = as_utc(rental.get("createdAt"))
    if created_at is None:
        return None
    return created_at + timedelta(days=int(rental.get("durationDays") or 1))


def rental_role(rental: dict, user_id: str | None) -> str | None:
    if user_id and rental.get("renterId") == user_id:
        return RENTER
    if user_id and rental.get("ownerId") == user_id:
        return OWNER
    return None


def serialize_rental(rental: dict, viewer_id: str | None = None) -> dict:
    payload = dict(rental)
    payload["price"] = float(payload.get("price") or 0)
    payload["totalPrice"] = float(payload.get("totalPrice") or 0)
    payload["quantity"] = int(payload.get("quantity") or 0)
    payload["durationDays"] = int(payload.get("durationDays") or 0)
    payload["stockReserved"] = bool(payload.get("stockReserved"))
    payload["stockReturned"] = bool(payload.get("stockReturned"))
    if viewer_id is not None:
        payload["role"] = rental_role(rental, viewer_id)
    return payload


class RentalStateMachine:
    """Creates rentals and drives them through the lifecycle table.

    Every status write is conditional on the status it was read with, and the
    stock reservation or release of an edge commits in the same transaction
    as the status write.
    """

    def __init__(
        self,
        store: DocumentStore,
        lifecycle: RentalLifecycle = STAGED,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.notifier = notifier
        self.clock = clock

    async def create_rental(self, renter_id: str, equipment_id: str | None, quantity: Any, duration_days: Any) -> dict:
        if not equipment_id or not str(equipment_id).strip():
            raise ValidationError("equipmentId is required.")
        quantity = positive_int(quantity, "quantity")
        duration_days = positive_int(duration_days, "durationDays")

        equipment = await self.store.get(EQUIPMENT, equipment_id)
        if equipment is None:
            raise NotFound("Equipment not found.")
        if equipment.get("ownerId") == renter_id:
            raise Forbidden("You cannot rent your own equipment.")
        available = int(equipment.get("stock") or 0)
        if available < quantity:
            raise InsufficientStock(available=available, requested=quantity)

        now = self.clock()
        price = float(equipment.get("price") or 0)
        rental = {
            "renterId": renter_id,
            "ownerId": equipment.get("ownerId"),
            "equipmentId": equipment_id,
            "name": equipment.get("name"),
            "price": price,
            "totalPrice": calculate_total_price(price, duration_days, quantity),
            "quantity": quantity,
            "durationDays": duration_days,
            "status": self.lifecycle.initial_status,
            "trackingNumber": None,
            "returnTrackingNumber": None,
            "statusReason": None,
            "actualStart": None,
            "actualEnd": None,
            "stockReserved": False,
            "stockReturned": False,
            "createdAt": now,
            "updatedAt": now,
        }

        if self.lifecycle.reserve_on_create:
            rental.update(
                stockReserved=True,
                actualStart=now,
                actualEnd=now + timedelta(days=duration_days),
            )
            rental_id = uuid.uuid4().hex

            async def _reserve_and_create(txn: Transaction) -> dict:
                await reserve_stock(txn, equipment_id, quantity)
                return await txn.create(RENTALS, rental_id, rental)

            created = await self.store.run_transaction(_reserve_and_create)
        else:
            created = await self.store.create(RENTALS, rental)

        RENTAL_LOGGER.info(
            "Rental created id=%s equipment=%s renter=%s quantity=%s status=%s",
            created["id"],
            equipment_id,
            renter_id,
            quantity,
            created["status"],
        )
        await send_quietly(self.notifier, build_event(created, created["status"], OWNER))
        return created

    async def get_rental(self, rental_id: str, caller_id: str) -> dict:
        rental = await self.store.get(RENTALS, rental_id)
        if rental is None or rental_role(rental, caller_id) is None:
            raise NotFound("Rental not found.")
        return rental

    async def list_rentals(
        self,
        user_id: str,
        min_price: float | None = None,
        max_price: float | None = None,
        status: str | None = None,
    ) -> list[dict]:
        rentals: dict[str, dict] = {}
        for field in ("renterId", "ownerId"):
            for rental in await self.store.query(RENTALS, [(field, "==", user_id)]):
                rentals[rental["id"]] = rental

        selected = []
        for rental in rentals.values():
            total = float(rental.get("totalPrice") or 0)
            if min_price is not None and total < min_price:
                continue
            if max_price is not None and total > max_price:
                continue
            if status and rental.get("status") != status:
                continue
            selected.append(rental)

        equipment_cache: dict[str, dict | None] = {}
        payloads = []
        for rental in selected:
            equipment_id = rental.get("equipmentId")
            if equipment_id not in equipment_cache:
                try:
                    equipment_cache[equipment_id] = await self.store.get(EQUIPMENT, equipment_id)
                except Exception:
                    RENTAL_LOGGER.warning("Could not fetch equipment %s for rental %s", equipment_id, rental["id"])
                    equipment_cache[equipment_id] = None
            equipment = equipment_cache[equipment_id] or {}
            payload = serialize_rental(rental, user_id)
            payload["image"] = equipment.get("image") or ""
            payload["category"] = equipment.get("category") or "other"
            payloads.append(payload)

        payloads.sort(key=lambda item: as_utc(item.get("createdAt")) or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return payloads

    async def transition(
        self,
        rental_id: str,
        target: str | None,
        caller_id: str,
        payload: dict[str, Any] | None = None,
    ) -> dict:
        target = (target or "").strip().lower()
        if target not in ALL_STATUSES:
            raise ValidationError(f"Unknown status: {target or '<empty>'}")
        payload = payload or {}

        rental = await self.get_rental(rental_id, caller_id)
        current = rental.get("status")
        role = self.lifecycle.role_for(current, target)
        if role is None:
            raise InvalidTransition(current, target)
        self._check_role(rental, role, caller_id, target)

        now = self.clock()
        fields: dict[str, Any] = {"status": target, "updatedAt": now}
        required = REQUIRED_PAYLOAD.get(target)
        if required:
            value = str(payload.get(required) or "").strip()
            if not value:
                raise ValidationError(f"{required} is required for status {target}.")
            fields[required] = value
        if target in self.lifecycle.start_on:
            fields["actualStart"] = now
            fields["actualEnd"] = now + timedelta(days=int(rental.get("durationDays") or 1))
        reason = str(payload.get("reason") or "").strip()
        if reason and target in {REJECTED, CANCELLED}:
            fields["statusReason"] = reason

        updated = await self._commit(rental_id, current, target, fields)
        RENTAL_LOGGER.info(
            "Rental transition id=%s %s -> %s by=%s role=%s",
            rental_id,
            current,
            target,
            caller_id,
            role,
        )
        audience = RENTER if role == OWNER else OWNER
        await send_quietly(self.notifier, build_event(updated, target, audience))
        return updated

    async def cancel_rental(self, rental_id: str, caller_id: str, reason: str | None = None) -> dict:
        rental = await self.store.get(RENTALS, rental_id)
        if rental is None:
            raise NotFound("Rental not found.")
        if rental.get("renterId") != caller_id:
            raise Forbidden("Only the renter can cancel this rental.")
        if self.lifecycle.role_for(rental.get("status"), CANCELLED) is None:
            raise ValidationError(
                f"Rental in status {rental.get('status')} can no longer be cancelled.",
                currentStatus=rental.get("status"),
            )
        return await self.transition(rental_id, CANCELLED, caller_id, {"reason": reason})

    def _check_role(self, rental: dict, role: str, caller_id: str, target: str) -> None:
        if role == SYSTEM:
            raise Forbidden(f"Status {target} is set automatically when the rental period ends.")
        if role == OWNER and rental.get("ownerId") != caller_id:
            raise Forbidden(f"Only the equipment owner can set status {target}.")
        if role == RENTER and rental.get("renterId") != caller_id:
            raise Forbidden(f"Only the renter can set status {target}.")

    async def _commit(self, rental_id: str, current: str, target: str, fields: dict[str, Any]) -> dict:
        lifecycle = self.lifecycle

        async def _apply(txn: Transaction) -> dict:
            fresh = await txn.get(RENTALS, rental_id)
            if fresh is None:
                raise NotFound("Rental not found.")
            if fresh.get("status") != current:
                raise InvalidTransition(fresh.get("status"), target)
            staged = dict(fields)
            quantity = int(fresh.get("quantity") or 0)
            if target in lifecycle.reserve_on and not fresh.get("stockReserved"):
                await reserve_stock(txn, fresh["equipmentId"], quantity)
                staged["stockReserved"] = True
            elif target in lifecycle.release_on and fresh.get("stockReserved") and not fresh.get("stockReturned"):
                await release_stock(txn, fresh["equipmentId"], quantity)
                staged["stockReturned"] = True
            await txn.update(RENTALS, rental_id, staged, expected={"status": current})
            return {**fresh, **staged}

        try:
            return await self.store.run_transaction(_apply)
        except PreconditionFailed as exc:
            raise InvalidTransition(current, target) from exc
        except DocumentNotFound as exc:
            raise NotFound("Rental not found.") from exc
