from __future__ import annotations

import logging

from rental_hub.db.store import EQUIPMENT, RENTALS, ConditionFailed, DocumentNotFound, DocumentStore, Transaction
from rental_hub.services.errors import InsufficientStock, NotFound

INVENTORY_LOGGER = logging.getLogger("rental_hub.inventory")


async def adjust_stock(txn: Transaction, equipment_id: str, delta: int, minimum: int | None = None) -> int:
    """Atomically add ``delta`` to the equipment stock and return the new stock.

    Decrements pass ``minimum=0`` so a short stock raises ``InsufficientStock``
    and leaves the equipment untouched.
    """
    try:
        return await txn.adjust(EQUIPMENT, equipment_id, "stock", int(delta), minimum=minimum)
    except DocumentNotFound as exc:
        raise NotFound("Equipment not found.") from exc
    except ConditionFailed as exc:
        raise InsufficientStock(available=int(exc.current or 0), requested=abs(int(delta))) from exc


async def reserve_stock(txn: Transaction, equipment_id: str, quantity: int) -> int:
    return await adjust_stock(txn, equipment_id, -int(quantity), minimum=0)


async def release_stock(txn: Transaction, equipment_id: str, quantity: int) -> int:
    return await adjust_stock(txn, equipment_id, int(quantity))


async def return_stock(store: DocumentStore, equipment_id: str, rental_ids: list[str]) -> tuple[list[str], int]:
    """Flag the given rentals as returned and give their stock back in one transaction.

    Rentals already flagged are skipped, so a rental's quantity comes back at
    most once even when two sweeps race. A concurrent claim surfaces as
    ``PreconditionFailed`` and nothing is written. Returns the claimed rental
    ids and the quantity added to the equipment.
    """

    async def _claim_and_return(txn: Transaction) -> tuple[list[str], int]:
        claimed: list[str] = []
        quantity = 0
        for rental_id in rental_ids:
            rental = await txn.get(RENTALS, rental_id)
            if rental is None or not rental.get("stockReserved") or rental.get("stockReturned"):
                continue
            claimed.append(rental_id)
            quantity += int(rental.get("quantity") or 0)
        equipment = await txn.get(EQUIPMENT, equipment_id)

        for rental_id in claimed:
            await txn.update(RENTALS, rental_id, {"stockReturned": True}, expected={"stockReturned": False})
        if equipment is None:
            if claimed:
                INVENTORY_LOGGER.warning("Stock return skipped, equipment %s no longer exists", equipment_id)
            return claimed, 0
        if quantity:
            await txn.adjust(EQUIPMENT, equipment_id, "stock", quantity)
        return claimed, quantity

    return await store.run_transaction(_claim_and_return)
