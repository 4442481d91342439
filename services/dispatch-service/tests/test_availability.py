"""
Tests for AvailabilityRegistry: upsert validation, candidate filtering,
working hours and slot reservation bounds.
"""

from __future__ import annotations

import asyncio
import unittest
from datetime import datetime

from dispatch_service.errors import CapacityExceeded, InvalidCoordinates, InvalidState, NotFound
from dispatch_service.schemas import Coordinates, WorkingHours

from .test_common import ORIGIN, Core, SlowReadRepository, make_address, make_availability


class TestUpsert(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.core = Core()
        self.registry = self.core.registry

    async def test_upsert_and_get(self):
        stored = await self.registry.upsert("m1", make_availability("ignored", specializations={" Brakes "}))

        self.assertEqual(stored.mechanic_id, "m1")
        self.assertIsNotNone(stored.updated_at)
        fetched = await self.registry.get("m1")
        self.assertEqual(fetched.specializations, {"brakes"})
        self.assertEqual(len(self.core.events.of_type("availability.updated")), 1)

    async def test_rejects_current_above_max(self):
        with self.assertRaises(InvalidState):
            await self.registry.upsert("m1", make_availability("m1", max_concurrent_jobs=2, current_active_jobs=3))
        with self.assertRaises(NotFound):
            await self.registry.get("m1")

    async def test_rejects_negative_current(self):
        with self.assertRaises(InvalidState):
            await self.registry.upsert("m1", make_availability("m1", current_active_jobs=-1))

    async def test_rejects_zero_capacity(self):
        with self.assertRaises(InvalidState):
            await self.registry.upsert("m1", make_availability("m1", max_concurrent_jobs=0))

    async def test_rejects_bad_base_location(self):
        with self.assertRaises(InvalidCoordinates):
            await self.registry.upsert("m1", make_availability("m1", base_location=make_address(0, 0)))

    async def test_wholesale_replace(self):
        await self.core.add_mechanic("m1", hourly_rate=50, specializations={"toyota"})
        await self.core.add_mechanic("m1", hourly_rate=70, specializations={"honda"})

        a = await self.registry.get("m1")
        self.assertEqual(a.hourly_rate, 70)
        self.assertEqual(a.specializations, {"honda"})

    async def test_update_profile_keeps_active_jobs(self):
        await self.core.add_mechanic("m1", max_concurrent_jobs=3)
        await self.registry.reserve_slot("m1")

        await self.registry.update_profile("m1", make_availability("m1", hourly_rate=90, current_active_jobs=0))

        a = await self.registry.get("m1")
        self.assertEqual(a.hourly_rate, 90)
        self.assertEqual(a.current_active_jobs, 1)

    async def test_update_profile_cannot_shrink_below_open_jobs(self):
        await self.core.add_mechanic("m1", max_concurrent_jobs=3)
        await self.registry.reserve_slot("m1")
        await self.registry.reserve_slot("m1")

        with self.assertRaises(InvalidState):
            await self.registry.update_profile("m1", make_availability("m1", max_concurrent_jobs=1))


class TestFindCandidates(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.core = Core()
        self.registry = self.core.registry

    async def ids(self, *args, **kwargs) -> list[str]:
        return sorted(a.mechanic_id for a in await self.registry.find_candidates(*args, **kwargs))

    async def test_filters(self):
        await self.core.add_mechanic("ok")
        await self.core.add_mechanic("unavailable", is_available=False)
        await self.core.add_mechanic("at-capacity", max_concurrent_jobs=2, current_active_jobs=2)
        await self.core.add_mechanic("small-area", service_radius_km=1.0)
        await self.core.add_mechanic("far-away", lat=6.0, lng=-0.19, service_radius_km=100)

        self.assertEqual(await self.ids(ORIGIN, 25), ["ok"])

    async def test_search_radius_bounds_distance(self):
        await self.core.add_mechanic("m1", service_radius_km=100)
        self.assertEqual(await self.ids(ORIGIN, 1.0), [])
        self.assertEqual(await self.ids(ORIGIN, 2.0), ["m1"])

    async def test_required_specializations_case_insensitive(self):
        await self.core.add_mechanic("toyota", specializations={"Toyota"})
        await self.core.add_mechanic("toyota-brakes", specializations={"toyota", "brakes"})

        self.assertEqual(await self.ids(ORIGIN, 25, ["TOYOTA"]), ["toyota", "toyota-brakes"])
        self.assertEqual(await self.ids(ORIGIN, 25, ["toyota", " Brakes"]), ["toyota-brakes"])
        self.assertEqual(await self.ids(ORIGIN, 25, []), ["toyota", "toyota-brakes"])

    async def test_working_hours(self):
        hours = WorkingHours(start="08:00", end="18:00", days={1, 2, 3, 4, 5})
        await self.core.add_mechanic("weekday", working_hours=hours)

        monday_noon = datetime(2024, 3, 4, 12, 0)
        monday_night = datetime(2024, 3, 4, 20, 0)
        sunday_noon = datetime(2024, 3, 3, 12, 0)

        self.assertEqual(await self.ids(ORIGIN, 25, at=monday_noon), ["weekday"])
        self.assertEqual(await self.ids(ORIGIN, 25, at=monday_night), [])
        self.assertEqual(await self.ids(ORIGIN, 25, at=sunday_noon), [])
        self.assertEqual(await self.ids(ORIGIN, 25), ["weekday"])

    async def test_invalid_origin(self):
        with self.assertRaises(InvalidCoordinates):
            await self.registry.find_candidates(Coordinates(lat=0, lng=0), 25)


class TestWorkingHours(unittest.TestCase):

    def test_sunday_is_zero(self):
        hours = WorkingHours(start="00:00", end="23:59", days={0})
        self.assertTrue(hours.contains(datetime(2024, 3, 3, 10, 0)))   # Sunday
        self.assertFalse(hours.contains(datetime(2024, 3, 2, 10, 0)))  # Saturday

    def test_overnight_window(self):
        hours = WorkingHours(start="22:00", end="06:00", days=set(range(7)))
        self.assertTrue(hours.contains(datetime(2024, 3, 4, 23, 30)))
        self.assertTrue(hours.contains(datetime(2024, 3, 4, 5, 0)))
        self.assertFalse(hours.contains(datetime(2024, 3, 4, 12, 0)))

    def test_rejects_bad_values(self):
        with self.assertRaises(ValueError):
            WorkingHours(start="25:99")
        with self.assertRaises(ValueError):
            WorkingHours(days={7})


class TestSlots(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.core = Core()
        self.registry = self.core.registry

    async def test_reserve_until_full(self):
        await self.core.add_mechanic("m1", max_concurrent_jobs=2)
        await self.registry.reserve_slot("m1")
        await self.registry.reserve_slot("m1")
        with self.assertRaises(CapacityExceeded):
            await self.registry.reserve_slot("m1")
        self.assertEqual(await self.core.active_jobs("m1"), 2)

    async def test_release_at_zero(self):
        await self.core.add_mechanic("m1")
        with self.assertRaises(InvalidState):
            await self.registry.release_slot("m1")
        self.assertEqual(await self.core.active_jobs("m1"), 0)

    async def test_unknown_mechanic(self):
        with self.assertRaises(NotFound):
            await self.registry.reserve_slot("ghost")
        with self.assertRaises(NotFound):
            await self.registry.release_slot("ghost")

    async def test_concurrent_reservations_respect_capacity(self):
        await self.core.add_mechanic("m1", max_concurrent_jobs=3)

        results = await asyncio.gather(
            *(self.registry.reserve_slot("m1") for _ in range(10)),
            return_exceptions=True,
        )

        self.assertEqual(sum(1 for r in results if not isinstance(r, Exception)), 3)
        self.assertTrue(all(isinstance(r, CapacityExceeded) for r in results if isinstance(r, Exception)))
        self.assertEqual(await self.core.active_jobs("m1"), 3)


class TestProfileWritesAgainstSlots(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.core = Core(SlowReadRepository())
        self.registry = self.core.registry
        await self.core.add_mechanic("m1", max_concurrent_jobs=5)

    async def test_reservations_during_profile_write_are_kept(self):
        await asyncio.gather(
            self.registry.update_profile("m1", make_availability("m1", max_concurrent_jobs=5, hourly_rate=80)),
            self.registry.reserve_slot("m1"),
            self.registry.reserve_slot("m1"),
        )

        a = await self.registry.get("m1")
        self.assertEqual(a.current_active_jobs, 2)
        self.assertEqual(a.hourly_rate, 80)

    async def test_releases_during_profile_write_are_kept(self):
        for _ in range(3):
            await self.registry.reserve_slot("m1")

        await asyncio.gather(
            self.registry.release_slot("m1"),
            self.registry.update_profile("m1", make_availability("m1", max_concurrent_jobs=5, hourly_rate=60)),
            self.registry.release_slot("m1"),
        )

        self.assertEqual(await self.core.active_jobs("m1"), 1)

    async def test_profile_ignores_supplied_active_jobs(self):
        await self.registry.reserve_slot("m1")

        stored = await self.registry.update_profile("m1", make_availability("m1", current_active_jobs=4))

        self.assertEqual(stored.current_active_jobs, 1)

    async def test_new_mechanic_starts_idle(self):
        stored = await self.registry.update_profile("m2", make_availability("m2", current_active_jobs=2))

        self.assertEqual(stored.current_active_jobs, 0)
        self.assertEqual((await self.registry.get("m2")).mechanic_id, "m2")
