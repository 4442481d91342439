"""
Tests for SqlRepository against a throwaway SQLite database (aiosqlite):
row mapping, conditional updates, bounded counters and a full claim cycle.
"""

from __future__ import annotations

import os
import tempfile
import unittest

from shared.database import Base

from dispatch_service.availability import AvailabilityRegistry
from dispatch_service.db import make_session_factory
from dispatch_service.errors import AlreadyClaimed, NotFound
from dispatch_service.events import RecordingEventSink
from dispatch_service.geo import bounding_box
from dispatch_service.lifecycle import RequestLifecycle
from dispatch_service.repository import SqlRepository
from dispatch_service.schemas import RequestStatus, WorkingHours, utcnow

from .test_common import ORIGIN, make_availability, make_request


class SqlTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        url = "sqlite+aiosqlite:///" + os.path.join(self._tmp.name, "dispatch.db")
        self.engine, sessions = make_session_factory(url)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.repo = SqlRepository(sessions)

    async def asyncTearDown(self):
        await self.engine.dispose()
        self._tmp.cleanup()


class TestRequests(SqlTestCase):

    async def test_insert_and_load(self):
        await self.repo.insert_request(make_request("r1", service_tag="brakes", title="Squeaky"))

        loaded = await self.repo.load_request("r1")

        self.assertEqual(loaded.status, RequestStatus.PENDING)
        self.assertEqual(loaded.location, ORIGIN)
        self.assertEqual(loaded.service_tag, "brakes")
        self.assertEqual(loaded.title, "Squeaky")
        self.assertIsNone(loaded.mechanic_id)
        self.assertFalse(loaded.slot_released)

    async def test_load_missing(self):
        self.assertIsNone(await self.repo.load_request("nope"))

    async def test_cas_applies_on_expected_status(self):
        await self.repo.insert_request(make_request("r1"))

        updated = await self.repo.cas_update_request(
            "r1", RequestStatus.PENDING,
            {"status": RequestStatus.CLAIMED, "mechanic_id": "m1", "updated_at": utcnow()},
        )

        self.assertEqual(updated.status, RequestStatus.CLAIMED)
        self.assertEqual(updated.mechanic_id, "m1")
        self.assertEqual((await self.repo.load_request("r1")).status, RequestStatus.CLAIMED)

    async def test_cas_misses_on_stale_status(self):
        await self.repo.insert_request(make_request("r1", status=RequestStatus.CLAIMED, mechanic_id="m1"))

        result = await self.repo.cas_update_request(
            "r1", RequestStatus.PENDING, {"status": RequestStatus.CLAIMED, "mechanic_id": "m2"},
        )

        self.assertIsNone(result)
        self.assertEqual((await self.repo.load_request("r1")).mechanic_id, "m1")

    async def test_cas_missing_request(self):
        self.assertIsNone(
            await self.repo.cas_update_request("nope", RequestStatus.PENDING, {"status": RequestStatus.CANCELLED})
        )

    async def test_cas_rejects_other_fields(self):
        await self.repo.insert_request(make_request("r1"))
        with self.assertRaises(ValueError):
            await self.repo.cas_update_request("r1", RequestStatus.PENDING, {"owner_id": "someone"})


class TestAvailability(SqlTestCase):

    async def test_save_and_load(self):
        hours = WorkingHours(start="07:30", end="17:00", days={0, 6})
        await self.repo.save_availability(
            "m1", make_availability("m1", specializations={"toyota", "brakes"}, working_hours=hours, rating=None),
        )

        a = await self.repo.load_availability("m1")

        self.assertEqual(a.specializations, {"toyota", "brakes"})
        self.assertEqual(a.working_hours.days, {0, 6})
        self.assertEqual(a.working_hours.start, "07:30")
        self.assertEqual(a.base_location.city, "Accra")
        self.assertIsNone(a.rating)

    async def test_save_replaces(self):
        await self.repo.save_availability("m1", make_availability("m1", hourly_rate=50))
        await self.repo.save_availability("m1", make_availability("m1", hourly_rate=65))

        self.assertEqual((await self.repo.load_availability("m1")).hourly_rate, 65)
        self.assertEqual(len(await self.repo.list_availability()), 1)

    async def test_list_with_box(self):
        await self.repo.save_availability("near", make_availability("near"))
        await self.repo.save_availability("far", make_availability("far", lat=7.0, lng=-0.19))

        inside = await self.repo.list_availability(bounding_box(ORIGIN, 10))

        self.assertEqual([a.mechanic_id for a in inside], ["near"])

    async def test_adjust_within_bounds(self):
        await self.repo.save_availability("m1", make_availability("m1", max_concurrent_jobs=2))

        self.assertEqual((await self.repo.adjust_active_jobs("m1", +1)).current_active_jobs, 1)
        self.assertEqual((await self.repo.adjust_active_jobs("m1", +1)).current_active_jobs, 2)
        self.assertIsNone(await self.repo.adjust_active_jobs("m1", +1))
        self.assertEqual((await self.repo.adjust_active_jobs("m1", -1)).current_active_jobs, 1)
        self.assertEqual((await self.repo.adjust_active_jobs("m1", -1)).current_active_jobs, 0)
        self.assertIsNone(await self.repo.adjust_active_jobs("m1", -1))

    async def test_save_profile_leaves_active_jobs(self):
        await self.repo.save_availability("m1", make_availability("m1", max_concurrent_jobs=3))
        await self.repo.adjust_active_jobs("m1", +1)

        stored = await self.repo.save_profile(
            "m1", make_availability("m1", max_concurrent_jobs=4, hourly_rate=70, current_active_jobs=0),
        )

        self.assertEqual(stored.current_active_jobs, 1)
        loaded = await self.repo.load_availability("m1")
        self.assertEqual(loaded.current_active_jobs, 1)
        self.assertEqual(loaded.max_concurrent_jobs, 4)
        self.assertEqual(loaded.hourly_rate, 70)

    async def test_save_profile_refuses_capacity_below_open_jobs(self):
        await self.repo.save_availability("m1", make_availability("m1", max_concurrent_jobs=3))
        await self.repo.adjust_active_jobs("m1", +1)
        await self.repo.adjust_active_jobs("m1", +1)

        self.assertIsNone(await self.repo.save_profile("m1", make_availability("m1", max_concurrent_jobs=1)))
        self.assertEqual((await self.repo.load_availability("m1")).max_concurrent_jobs, 3)

    async def test_save_profile_creates_idle_mechanic(self):
        stored = await self.repo.save_profile("m1", make_availability("m1", current_active_jobs=2))

        self.assertEqual(stored.current_active_jobs, 0)
        self.assertEqual((await self.repo.load_availability("m1")).current_active_jobs, 0)

    async def test_adjust_unknown_mechanic(self):
        with self.assertRaises(NotFound):
            await self.repo.adjust_active_jobs("ghost", +1)


class TestLifecycleOverSql(SqlTestCase):

    async def test_claim_and_complete(self):
        events = RecordingEventSink()
        registry = AvailabilityRegistry(self.repo, events)
        lifecycle = RequestLifecycle(self.repo, registry, events)

        await registry.upsert("m1", make_availability("m1", max_concurrent_jobs=1))
        await registry.upsert("m2", make_availability("m2"))
        request = await lifecycle.create(owner_id="owner-1", car_id="car-1", location=ORIGIN)

        await lifecycle.claim(request.id, "m1")
        with self.assertRaises(AlreadyClaimed):
            await lifecycle.claim(request.id, "m2")

        for status in (
            RequestStatus.DIAGNOSED,
            RequestStatus.QUOTED,
            RequestStatus.APPROVED,
            RequestStatus.IN_PROGRESS,
            RequestStatus.COMPLETED,
        ):
            await lifecycle.transition(request.id, status, "m1")

        final = await lifecycle.get(request.id)
        self.assertEqual(final.status, RequestStatus.COMPLETED)
        self.assertTrue(final.slot_released)
        self.assertEqual((await registry.get("m1")).current_active_jobs, 0)
        self.assertEqual((await registry.get("m2")).current_active_jobs, 0)
