from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from rental_hub.db.store import RENTALS, DocumentStore, PreconditionFailed
from rental_hub.services.inventory_service import return_stock
from rental_hub.services.notification_service import Notifier, build_event, send_quietly
from rental_hub.services.rental_service import ACTIVE, COMPLETED, OWNER, RENTER, effective_end, utcnow

SWEEP_LOGGER = logging.getLogger("rental_hub.sweeper")
BATCH_ATTEMPTS = 3
BATCH_LIMIT = 500


@dataclass
class SweepResult:
    completed: list[str] = field(default_factory=list)
    reconciled: list[str] = field(default_factory=list)
    returned: dict[str, int] = field(default_factory=dict)
    failed: bool = False


def _has_expired(rental: dict, now: datetime) -> bool:
    end = effective_end(rental)
    return end is not None and end <= now


class ExpirySweeper:
    """Completes active rentals whose period has ended and returns their stock.

    Status changes are committed in batches of at most ``BATCH_LIMIT``
    rentals. Each equipment then gets one transaction that flags its rentals
    ``stockReturned`` and adds their summed quantity back, so stock is never
    returned twice. Rentals left completed but unflagged by an interrupted
    sweep are picked up again by the next one.
    """

    def __init__(
        self,
        store: DocumentStore,
        notifier: Notifier | None = None,
        interval: float = 24 * 60 * 60,
        initial_delay: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.notifier = notifier
        self.interval = interval
        self.initial_delay = initial_delay
        self.clock = clock
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.create_task(self._run_forever(), name="rental-expiry-sweeper")
        SWEEP_LOGGER.info("Expiry sweeper scheduled initial_delay=%ss interval=%ss", self.initial_delay, self.interval)
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        SWEEP_LOGGER.info("Expiry sweeper stopped")

    async def _run_forever(self) -> None:
        await asyncio.sleep(self.initial_delay)
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval)

    async def run_once(self, now: datetime | None = None) -> SweepResult:
        now = now or self.clock()
        result = SweepResult()
        try:
            await self._reconcile(result)
            await self._complete_expired(now, result)
        except Exception:
            result.failed = True
            SWEEP_LOGGER.exception("Expiry sweep failed, will retry on the next run")
        SWEEP_LOGGER.info(
            "Expiry sweep finished completed=%s reconciled=%s",
            len(result.completed),
            len(result.reconciled),
        )
        return result

    async def _reconcile(self, result: SweepResult) -> None:
        leftovers = [
            rental
            for rental in await self.store.query(RENTALS, [("status", "==", COMPLETED), ("stockReturned", "==", False)])
            if rental.get("stockReserved")
        ]
        if not leftovers:
            return
        SWEEP_LOGGER.warning("Returning stock for %s completed rentals left by an interrupted sweep", len(leftovers))
        result.reconciled = await self._return_and_flag(leftovers, result)

    async def _complete_expired(self, now: datetime, result: SweepResult) -> None:
        active = await self.store.query(RENTALS, [("status", "==", ACTIVE)])
        expired = [rental for rental in active if _has_expired(rental, now)]
        for start in range(0, len(expired), BATCH_LIMIT):
            completed = await self._complete_chunk(expired[start : start + BATCH_LIMIT], now)
            if not completed:
                continue
            result.completed.extend(rental["id"] for rental in completed)

            await self._return_and_flag(completed, result)
            for rental in completed:
                done = {**rental, "status": COMPLETED}
                await send_quietly(self.notifier, build_event(done, COMPLETED, RENTER))
                await send_quietly(self.notifier, build_event(done, COMPLETED, OWNER))

    async def _complete_chunk(self, rentals: list[dict], now: datetime) -> list[dict]:
        for attempt in range(1, BATCH_ATTEMPTS + 1):
            if not rentals:
                return []
            batch = self.store.batch()
            for rental in rentals:
                batch.update(
                    RENTALS,
                    rental["id"],
                    {"status": COMPLETED, "updatedAt": now, "stockReturned": False},
                    expected={"status": ACTIVE},
                )
            try:
                await batch.commit()
                return rentals
            except PreconditionFailed as exc:
                if attempt == BATCH_ATTEMPTS:
                    raise
                SWEEP_LOGGER.info("Rental %s changed during sweep, retrying attempt=%s", exc.doc_id, attempt + 1)
            # The batch wrote nothing; keep only the rentals that are still due.
            fresh = [await self.store.get(RENTALS, rental["id"]) for rental in rentals]
            rentals = [
                rental for rental in fresh if rental and rental.get("status") == ACTIVE and _has_expired(rental, now)
            ]
        return []

    async def _return_and_flag(self, rentals: list[dict], result: SweepResult) -> list[str]:
        by_equipment: dict[str, list[str]] = defaultdict(list)
        for rental in rentals:
            if rental.get("stockReserved") and not rental.get("stockReturned"):
                by_equipment[rental["equipmentId"]].append(rental["id"])

        flagged: list[str] = []
        pending: list[str] = []
        for equipment_id, rental_ids in by_equipment.items():
            try:
                claimed, quantity = await return_stock(self.store, equipment_id, rental_ids)
            except PreconditionFailed:
                SWEEP_LOGGER.info("Stock for equipment %s was returned by another sweep", equipment_id)
                continue
            except Exception:
                SWEEP_LOGGER.exception("Stock return failed for equipment %s", equipment_id)
                pending.append(equipment_id)
                continue
            flagged.extend(claimed)
            if quantity:
                result.returned[equipment_id] = result.returned.get(equipment_id, 0) + quantity
        if pending:
            result.failed = True
            SWEEP_LOGGER.error("Stock return pending for equipment %s", ", ".join(pending))
        return flagged
