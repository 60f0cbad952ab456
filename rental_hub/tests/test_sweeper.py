import asyncio
from datetime import timedelta
from unittest import mock

from rental_hub.db.store import EQUIPMENT, RENTALS
from rental_hub.services.sweeper import ExpirySweeper
from rental_hub.tests.support import T0, RecordingNotifier, StoreTestCase

LATER = T0 + timedelta(days=10)


class ExpirySweeperTests(StoreTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.sweeper = ExpirySweeper(self.store, notifier=self.notifier, clock=self.clock)

    async def test_completes_only_expired_active_rentals(self):
        equipment = await self.add_equipment(stock=0)
        expired = await self.add_rental(equipment, actualEnd=T0 + timedelta(days=1))
        running = await self.add_rental(equipment, actualEnd=LATER + timedelta(days=1))
        shipped = await self.add_rental(equipment, status="shipped")

        result = await self.sweeper.run_once(LATER)

        self.assertFalse(result.failed)
        self.assertEqual(result.completed, [expired["id"]])
        self.assertEqual(await self.status_of(expired["id"]), "completed")
        self.assertEqual(await self.status_of(running["id"]), "active")
        self.assertEqual(await self.status_of(shipped["id"]), "shipped")
        self.assertEqual(await self.stock_of(equipment["id"]), 1)
        self.assertTrue((await self.store.get(RENTALS, expired["id"]))["stockReturned"])

    async def test_falls_back_to_created_at_plus_duration(self):
        equipment = await self.add_equipment(stock=0)
        rental = await self.add_rental(equipment, duration_days=3)

        self.assertEqual((await self.sweeper.run_once(T0 + timedelta(days=2))).completed, [])
        result = await self.sweeper.run_once(T0 + timedelta(days=3))
        self.assertEqual(result.completed, [rental["id"]])

    async def test_sums_quantities_per_equipment(self):
        kayak = await self.add_equipment(stock=1)
        bike = await self.add_equipment(stock=0, name="Bike", category="bike")
        await self.add_rental(kayak, quantity=2, actualEnd=T0)
        await self.add_rental(kayak, quantity=3, actualEnd=T0)
        await self.add_rental(bike, quantity=1, actualEnd=T0)

        with mock.patch.object(self.store, "run_transaction", wraps=self.store.run_transaction) as transaction:
            result = await self.sweeper.run_once(LATER)

        self.assertEqual(len(result.completed), 3)
        self.assertEqual(result.returned, {kayak["id"]: 5, bike["id"]: 1})
        self.assertEqual(transaction.await_count, 2)
        self.assertEqual(await self.stock_of(kayak["id"]), 6)
        self.assertEqual(await self.stock_of(bike["id"]), 1)

    async def test_second_run_completes_nothing(self):
        equipment = await self.add_equipment(stock=0)
        await self.add_rental(equipment, quantity=2, actualEnd=T0)

        first = await self.sweeper.run_once(LATER)
        second = await self.sweeper.run_once(LATER)

        self.assertEqual(len(first.completed), 1)
        self.assertEqual(second.completed, [])
        self.assertEqual(second.reconciled, [])
        self.assertEqual(await self.stock_of(equipment["id"]), 2)

    async def test_notifies_both_parties(self):
        equipment = await self.add_equipment(stock=0)
        rental = await self.add_rental(equipment, actualEnd=T0)

        await self.sweeper.run_once(LATER)

        self.assertEqual(
            sorted((event.audience, event.rental_id, event.status) for event in self.notifier.events),
            [("owner", rental["id"], "completed"), ("renter", rental["id"], "completed")],
        )

    async def test_failed_stock_return_is_reconciled_on_next_run(self):
        equipment = await self.add_equipment(stock=0)
        rental = await self.add_rental(equipment, quantity=2, actualEnd=T0)

        with mock.patch.object(self.store, "run_transaction", side_effect=RuntimeError("store unavailable")):
            first = await self.sweeper.run_once(LATER)

        self.assertTrue(first.failed)
        self.assertEqual(first.completed, [rental["id"]])
        self.assertEqual(await self.status_of(rental["id"]), "completed")
        self.assertFalse((await self.store.get(RENTALS, rental["id"]))["stockReturned"])
        self.assertEqual(await self.stock_of(equipment["id"]), 0)

        second = await self.sweeper.run_once(LATER)
        self.assertFalse(second.failed)
        self.assertEqual(second.completed, [])
        self.assertEqual(second.reconciled, [rental["id"]])
        self.assertEqual(await self.stock_of(equipment["id"]), 2)

        third = await self.sweeper.run_once(LATER)
        self.assertEqual(third.reconciled, [])
        self.assertEqual(await self.stock_of(equipment["id"]), 2)

    async def test_overlapping_sweeps_return_stock_once(self):
        equipment = await self.add_equipment(stock=1)
        rental = await self.add_rental(equipment, quantity=2, actualEnd=T0)
        other = ExpirySweeper(self.store, clock=self.clock)
        run_transaction = self.store.run_transaction
        held = asyncio.Event()
        release = asyncio.Event()

        async def hold_first_return(callback):
            if not held.is_set():
                held.set()
                await release.wait()
            return await run_transaction(callback)

        with mock.patch.object(self.store, "run_transaction", side_effect=hold_first_return):
            first = asyncio.create_task(self.sweeper.run_once(LATER))
            await held.wait()
            second = await other.run_once(LATER)
            release.set()
            first_result = await first

        self.assertEqual(first_result.completed, [rental["id"]])
        self.assertEqual(first_result.returned, {})
        self.assertEqual(second.reconciled, [rental["id"]])
        self.assertEqual(second.returned, {equipment["id"]: 2})
        self.assertEqual(await self.stock_of(equipment["id"]), 3)
        self.assertTrue((await self.store.get(RENTALS, rental["id"]))["stockReturned"])

    async def test_rental_moved_during_sweep_is_left_alone(self):
        equipment = await self.add_equipment(stock=0)
        moved = await self.add_rental(equipment, quantity=2, actualEnd=T0)
        due = await self.add_rental(equipment, quantity=1, actualEnd=T0)
        make_batch = self.store.batch
        batches = []

        def renter_moves_before_first_commit():
            batch = make_batch()
            if not batches:
                commit = batch.commit

                async def commit_after_move():
                    await self.store.update(RENTALS, moved["id"], {"status": "returning"})
                    await commit()

                batch.commit = commit_after_move
            batches.append(batch)
            return batch

        with mock.patch.object(self.store, "batch", side_effect=renter_moves_before_first_commit):
            result = await self.sweeper.run_once(LATER)

        self.assertFalse(result.failed)
        self.assertEqual(len(batches), 2)
        self.assertEqual(result.completed, [due["id"]])
        self.assertEqual(await self.status_of(moved["id"]), "returning")
        self.assertFalse((await self.store.get(RENTALS, moved["id"]))["stockReturned"])
        self.assertEqual(await self.status_of(due["id"]), "completed")
        self.assertEqual(await self.stock_of(equipment["id"]), 1)

    async def test_large_sweeps_are_split_into_batches(self):
        equipment = await self.add_equipment(stock=0)
        rentals = [await self.add_rental(equipment, actualEnd=T0) for _ in range(5)]

        with mock.patch("rental_hub.services.sweeper.BATCH_LIMIT", 2):
            with mock.patch.object(self.store, "batch", wraps=self.store.batch) as batch:
                result = await self.sweeper.run_once(LATER)

        self.assertFalse(result.failed)
        self.assertEqual(batch.call_count, 3)
        self.assertEqual(sorted(result.completed), sorted(rental["id"] for rental in rentals))
        self.assertEqual(await self.stock_of(equipment["id"]), 5)

    async def test_deleted_equipment_does_not_block_the_sweep(self):
        equipment = await self.add_equipment(stock=0)
        rental = await self.add_rental(equipment, actualEnd=T0)
        await self.store.delete(EQUIPMENT, equipment["id"])

        result = await self.sweeper.run_once(LATER)

        self.assertFalse(result.failed)
        self.assertEqual(result.completed, [rental["id"]])
        self.assertTrue((await self.store.get(RENTALS, rental["id"]))["stockReturned"])

    async def test_errors_are_logged_and_swallowed(self):
        with mock.patch.object(self.store, "query", side_effect=RuntimeError("connection reset")):
            with self.assertLogs("rental_hub.sweeper", level="ERROR"):
                result = await self.sweeper.run_once(LATER)
        self.assertTrue(result.failed)
        self.assertEqual(result.completed, [])

    async def test_notification_failures_do_not_fail_the_sweep(self):
        sweeper = ExpirySweeper(self.store, notifier=RecordingNotifier(fail=True))
        equipment = await self.add_equipment(stock=0)
        await self.add_rental(equipment, actualEnd=T0)

        result = await sweeper.run_once(LATER)

        self.assertFalse(result.failed)
        self.assertEqual(await self.stock_of(equipment["id"]), 1)

    async def test_scheduled_task_runs_and_stops(self):
        equipment = await self.add_equipment(stock=0)
        rental = await self.add_rental(equipment, actualEnd=T0)
        self.clock.now = LATER
        sweeper = ExpirySweeper(self.store, interval=3600, initial_delay=0, clock=self.clock)

        sweeper.start()
        self.assertTrue(sweeper.running)
        for _ in range(100):
            if (await self.store.get(RENTALS, rental["id"]))["stockReturned"]:
                break
            await asyncio.sleep(0.05)
        await sweeper.stop()

        self.assertFalse(sweeper.running)
        self.assertEqual(await self.status_of(rental["id"]), "completed")
