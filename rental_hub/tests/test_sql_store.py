import unittest

from rental_hub.db.store import EQUIPMENT, RENTALS, DocumentNotFound, PreconditionFailed
from rental_hub.services.inventory_service import return_stock
from rental_hub.tests.support import StoreTestCase


class SqlStoreTests(StoreTestCase):
    async def test_increment_adds_to_the_field(self):
        equipment = await self.add_equipment(stock=2)

        await self.store.increment(EQUIPMENT, equipment["id"], "stock", 3)

        self.assertEqual(await self.stock_of(equipment["id"]), 5)
        with self.assertRaises(DocumentNotFound):
            await self.store.increment(EQUIPMENT, "missing", "stock", 1)

    async def test_batch_with_stale_precondition_writes_nothing(self):
        equipment = await self.add_equipment()
        first = await self.add_rental(equipment)
        second = await self.add_rental(equipment, status="returning")

        batch = self.store.batch()
        batch.update(RENTALS, first["id"], {"status": "completed"}, expected={"status": "active"})
        batch.update(RENTALS, second["id"], {"status": "completed"}, expected={"status": "active"})
        with self.assertRaises(PreconditionFailed):
            await batch.commit()

        self.assertEqual(await self.status_of(first["id"]), "active")
        self.assertEqual(await self.status_of(second["id"]), "returning")


class ReturnStockTests(StoreTestCase):
    async def test_claims_each_rental_once(self):
        equipment = await self.add_equipment(stock=0)
        first = await self.add_rental(equipment, status="completed", quantity=2)
        second = await self.add_rental(equipment, status="completed", quantity=1, stockReturned=True)
        unreserved = await self.add_rental(equipment, status="completed", quantity=4, stockReserved=False)

        ids = [first["id"], second["id"], unreserved["id"]]
        claimed, quantity = await return_stock(self.store, equipment["id"], ids)
        again = await return_stock(self.store, equipment["id"], ids)

        self.assertEqual((claimed, quantity), ([first["id"]], 2))
        self.assertEqual(again, ([], 0))
        self.assertEqual(await self.stock_of(equipment["id"]), 2)
        self.assertTrue((await self.store.get(RENTALS, first["id"]))["stockReturned"])
        self.assertFalse((await self.store.get(RENTALS, unreserved["id"]))["stockReturned"])

    async def test_missing_equipment_still_flags_rentals(self):
        equipment = await self.add_equipment(stock=0)
        rental = await self.add_rental(equipment, status="completed", quantity=2)
        await self.store.delete(EQUIPMENT, equipment["id"])

        with self.assertLogs("rental_hub.inventory", level="WARNING"):
            claimed, quantity = await return_stock(self.store, equipment["id"], [rental["id"]])

        self.assertEqual((claimed, quantity), ([rental["id"]], 0))
        self.assertTrue((await self.store.get(RENTALS, rental["id"]))["stockReturned"])


if __name__ == "__main__":
    unittest.main()
