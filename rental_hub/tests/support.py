import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from rental_hub.db.session import create_store_engine
from rental_hub.db.sql_store import SqlDocumentStore
from rental_hub.db.store import EQUIPMENT, RENTALS
from rental_hub.services.notification_service import Notifier

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.events = []
        self.fail = fail

    async def notify(self, event):
        if self.fail:
            raise RuntimeError("push gateway down")
        self.events.append(event)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class StoreTestCase(unittest.IsolatedAsyncioTestCase):
    """Runs each test against a fresh SQLite file."""

    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        db_path = Path(self._tmp.name) / "rental_hub_test.db"
        self.store = SqlDocumentStore(create_store_engine(f"sqlite+aiosqlite:///{db_path}"))
        await self.store.create_tables()
        self.clock = FakeClock()
        self.notifier = RecordingNotifier()

    async def asyncTearDown(self):
        await self.store.close()
        self._tmp.cleanup()

    async def add_equipment(self, owner_id="owner-a", stock=3, price=10.0, name="Touring kayak", **extra):
        data = {
            "name": name,
            "price": price,
            "stock": stock,
            "category": "kayak",
            "ownerId": owner_id,
            "detail": "",
            "image": "/images/kayak.png",
            "createdAt": T0,
            "updatedAt": T0,
        }
        data.update(extra)
        return await self.store.create(EQUIPMENT, data)

    async def add_rental(self, equipment, renter_id="renter-b", status="active", quantity=1, duration_days=1, **extra):
        data = {
            "renterId": renter_id,
            "ownerId": equipment["ownerId"],
            "equipmentId": equipment["id"],
            "name": equipment["name"],
            "price": equipment["price"],
            "totalPrice": equipment["price"] * quantity * duration_days,
            "quantity": quantity,
            "durationDays": duration_days,
            "status": status,
            "stockReserved": True,
            "stockReturned": False,
            "createdAt": T0,
            "updatedAt": T0,
        }
        data.update(extra)
        return await self.store.create(RENTALS, data)

    async def stock_of(self, equipment_id):
        return (await self.store.get(EQUIPMENT, equipment_id))["stock"]

    async def status_of(self, rental_id):
        return (await self.store.get(RENTALS, rental_id))["status"]
