#!/usr/bin/env python3
"""
Unit tests for the OccupancyCoordinator on the in-memory gateway

Covers the check-in/check-out workflow, its conflict rules, rollback on a
failed compare-and-swap, concurrent check-ins and the occupancy invariant.
"""

import threading
import unittest
from unittest.mock import patch

from parking_garage.application.queries import occupancy_violations
from parking_garage.domain.exceptions import (
    ConflictError, NotFoundError, ValidationError,
    ALREADY_AVAILABLE, ALREADY_OCCUPIED, CAR_ALREADY_CHECKED_IN,
    CAR_ALREADY_CHECKED_OUT, CAR_NOT_CHECKED_IN, CONCURRENT_MODIFICATION,
)
from parking_garage.domain.models import Car, ParkingSpotStatus
from parking_garage.infrastructure.messaging import EventType
from parking_garage.infrastructure.repositories import InMemoryParkingSpotRepository

from tests.helpers import in_memory_context, snapshot


class CoordinatorTestBase(unittest.TestCase):

    def setUp(self):
        (self.store, self.uow_factory, self.layout,
         self.coordinator, self.recorder) = in_memory_context()
        self.s1 = self.layout.spot(0)
        self.s2 = self.layout.spot(1)

    def spot_status(self, spot):
        with self.uow_factory() as uow:
            return uow.parking_spots.get(spot.id).status

    def assertInvariantHolds(self):
        spots, cars = snapshot(self.uow_factory)
        self.assertEqual(occupancy_violations(spots, cars), [])


class TestCheckIn(CoordinatorTestBase):
    """check_in"""

    def test_parks_new_car_in_available_spot(self):
        """S1 available, no car ABC123 -> new car C1 parked at S1, S1 occupied"""
        car = self.coordinator.check_in("abc123", self.s1.id)

        self.assertEqual(car.license_plate.value, "ABC123")
        self.assertEqual(car.parking_spot_id, self.s1.id)
        self.assertIsNotNone(car.checked_in_at)
        self.assertIsNone(car.checked_out_at)
        self.assertTrue(car.is_checked_in)
        self.assertEqual(self.spot_status(self.s1), ParkingSpotStatus.OCCUPIED)
        self.assertInvariantHolds()

    def test_occupied_spot_rejected_without_writes(self):
        self.coordinator.check_in("ABC123", self.s1.id)
        before = snapshot(self.uow_factory)

        with self.assertRaises(ConflictError) as ctx:
            self.coordinator.check_in("XYZ789", self.s1.id)

        self.assertEqual(ctx.exception.code, ALREADY_OCCUPIED)
        self.assertEqual(ctx.exception.message, "Parking spot is already occupied")
        after = snapshot(self.uow_factory)
        self.assertEqual([c.to_dict() for c in after[1]], [c.to_dict() for c in before[1]])
        self.assertEqual([s.to_dict() for s in after[0]], [s.to_dict() for s in before[0]])

    def test_unknown_spot(self):
        with self.assertRaises(NotFoundError):
            self.coordinator.check_in("ABC123", "missing-spot")
        _, cars = snapshot(self.uow_factory)
        self.assertEqual(cars, [])

    def test_invalid_plate(self):
        with self.assertRaises(ValidationError):
            self.coordinator.check_in("   ", self.s1.id)
        with self.assertRaises(ValidationError):
            self.coordinator.check_in("A" * 21, self.s1.id)

    def test_car_already_parked_elsewhere(self):
        self.coordinator.check_in("ABC123", self.s1.id)
        with self.assertRaises(ConflictError) as ctx:
            self.coordinator.check_in("abc123", self.s2.id)
        self.assertEqual(ctx.exception.code, CAR_ALREADY_CHECKED_IN)
        self.assertEqual(self.spot_status(self.s2), ParkingSpotStatus.AVAILABLE)
        self.assertInvariantHolds()

    def test_reentry_reuses_car(self):
        """A returning plate keeps its car id and gets a fresh visit"""
        first = self.coordinator.check_in("ABC123", self.s1.id)
        self.coordinator.check_out(first.id)

        second = self.coordinator.check_in("abc123", self.s2.id)

        self.assertEqual(second.id, first.id)
        self.assertEqual(second.parking_spot_id, self.s2.id)
        self.assertIsNone(second.checked_out_at)
        self.assertGreater(second.checked_in_at, first.checked_in_at)
        _, cars = snapshot(self.uow_factory)
        self.assertEqual(len(cars), 1)
        self.assertInvariantHolds()

    def test_failed_status_swap_rolls_back_car(self):
        """If the spot changes under us the new car record is undone"""
        with patch.object(InMemoryParkingSpotRepository, "compare_and_set_status", return_value=False):
            with self.assertRaises(ConflictError) as ctx:
                self.coordinator.check_in("ABC123", self.s1.id)
        self.assertEqual(ctx.exception.code, CONCURRENT_MODIFICATION)

        spots, cars = snapshot(self.uow_factory)
        self.assertEqual(cars, [])
        self.assertEqual(self.spot_status(self.s1), ParkingSpotStatus.AVAILABLE)

    def test_failed_status_swap_restores_returning_car(self):
        car = self.coordinator.check_in("ABC123", self.s1.id)
        closed = self.coordinator.check_out(car.id)

        with patch.object(InMemoryParkingSpotRepository, "compare_and_set_status", return_value=False):
            with self.assertRaises(ConflictError):
                self.coordinator.check_in("ABC123", self.s2.id)

        restored = self.coordinator.find_by_license_plate("ABC123")
        self.assertIsNone(restored.parking_spot_id)
        self.assertEqual(restored.checked_out_at, closed.checked_out_at)

    def test_events_published_after_commit(self):
        car = self.coordinator.check_in("ABC123", self.s1.id)
        types = [event.event_type for event in self.recorder.events]
        self.assertEqual(types, [EventType.CAR_CHECKED_IN, EventType.SPOT_STATUS_CHANGED])
        self.assertEqual(self.recorder.events[0].aggregate_id, car.id)
        self.assertEqual(
            self.recorder.events[0].correlation_id, self.recorder.events[1].correlation_id
        )

    def test_no_events_on_conflict(self):
        self.coordinator.check_in("ABC123", self.s1.id)
        self.recorder.events.clear()
        with self.assertRaises(ConflictError):
            self.coordinator.check_in("XYZ789", self.s1.id)
        self.assertEqual(self.recorder.events, [])


class TestCheckOut(CoordinatorTestBase):
    """check_out"""

    def test_round_trip(self):
        """check_in then check_out returns the spot to available"""
        car = self.coordinator.check_in("ABC123", self.s1.id)
        closed = self.coordinator.check_out(car.id)

        self.assertEqual(closed.id, car.id)
        self.assertIsNone(closed.parking_spot_id)
        self.assertIsNotNone(closed.checked_out_at)
        self.assertGreaterEqual(closed.checked_out_at, closed.checked_in_at)
        self.assertEqual(closed.checked_in_at, car.checked_in_at)
        self.assertEqual(self.spot_status(self.s1), ParkingSpotStatus.AVAILABLE)
        self.assertInvariantHolds()

    def test_not_checked_in(self):
        with self.uow_factory() as uow:
            car = Car(license_plate="IDLE1")
            uow.cars.add(car)
        before = snapshot(self.uow_factory)

        with self.assertRaises(ConflictError) as ctx:
            self.coordinator.check_out(car.id)

        self.assertEqual(ctx.exception.code, CAR_NOT_CHECKED_IN)
        self.assertEqual(ctx.exception.message, "Car is not checked in to any parking spot")
        after = snapshot(self.uow_factory)
        self.assertEqual([c.to_dict() for c in after[1]], [c.to_dict() for c in before[1]])

    def test_twice(self):
        car = self.coordinator.check_in("ABC123", self.s1.id)
        self.coordinator.check_out(car.id)
        with self.assertRaises(ConflictError) as ctx:
            self.coordinator.check_out(car.id)
        self.assertEqual(ctx.exception.code, CAR_NOT_CHECKED_IN)

    def test_closed_visit_with_stale_spot(self):
        """A car row that still names a spot but has a check-out time"""
        with self.uow_factory() as uow:
            car = Car(license_plate="STALE")
            car.check_in(self.s1.id, car.created_at)
            car.checked_out_at = car.checked_in_at
            uow.cars.add(car)

        with self.assertRaises(ConflictError) as ctx:
            self.coordinator.check_out(car.id)
        self.assertEqual(ctx.exception.code, CAR_ALREADY_CHECKED_OUT)

    def test_unknown_car(self):
        with self.assertRaises(NotFoundError):
            self.coordinator.check_out("missing-car")

    def test_by_plate(self):
        self.coordinator.check_in("ABC123", self.s1.id)
        closed = self.coordinator.check_out_by_plate("abc123")
        self.assertFalse(closed.is_checked_in)
        self.assertEqual(self.spot_status(self.s1), ParkingSpotStatus.AVAILABLE)

    def test_failed_status_swap_rolls_back_car(self):
        car = self.coordinator.check_in("ABC123", self.s1.id)
        with patch.object(InMemoryParkingSpotRepository, "compare_and_set_status", return_value=False):
            with self.assertRaises(ConflictError):
                self.coordinator.check_out(car.id)

        still_parked = self.coordinator.find_by_license_plate("ABC123")
        self.assertTrue(still_parked.is_checked_in)
        self.assertEqual(still_parked.parking_spot_id, self.s1.id)
        self.assertInvariantHolds()

    def test_events(self):
        car = self.coordinator.check_in("ABC123", self.s1.id)
        self.recorder.events.clear()
        self.coordinator.check_out(car.id)
        self.assertEqual(
            [event.event_type for event in self.recorder.events],
            [EventType.CAR_CHECKED_OUT, EventType.SPOT_STATUS_CHANGED],
        )
        self.assertEqual(self.recorder.events[1].data, {"from": "occupied", "to": "available"})


class TestLookupsAndStatus(CoordinatorTestBase):
    """find_by_license_plate and mark_occupied / mark_available"""

    def test_find_by_plate_case_insensitive(self):
        car = self.coordinator.check_in("ABC123", self.s1.id)
        self.assertEqual(self.coordinator.find_by_license_plate(" abc123 ").id, car.id)

    def test_find_by_plate_missing(self):
        with self.assertRaises(NotFoundError):
            self.coordinator.find_by_license_plate("NOPE")

    def test_mark_occupied_twice(self):
        spot = self.coordinator.mark_occupied(self.s1.id)
        self.assertEqual(spot.status, ParkingSpotStatus.OCCUPIED)

        with self.assertRaises(ConflictError) as ctx:
            self.coordinator.mark_occupied(self.s1.id)
        self.assertEqual(ctx.exception.code, ALREADY_OCCUPIED)

    def test_mark_available_when_available(self):
        with self.assertRaises(ConflictError) as ctx:
            self.coordinator.mark_available(self.s1.id)
        self.assertEqual(ctx.exception.code, ALREADY_AVAILABLE)

    def test_mark_round_trip(self):
        self.coordinator.mark_occupied(self.s1.id)
        spot = self.coordinator.mark_available(self.s1.id)
        self.assertEqual(spot.status, ParkingSpotStatus.AVAILABLE)
        self.assertEqual(self.spot_status(self.s1), ParkingSpotStatus.AVAILABLE)

    def test_set_status_rejects_unknown_value(self):
        with self.assertRaises(ValidationError):
            self.coordinator.set_status(self.s1.id, "reserved")

    def test_mark_unknown_spot(self):
        with self.assertRaises(NotFoundError):
            self.coordinator.mark_occupied("missing-spot")

    def test_summary_and_audit(self):
        self.coordinator.check_in("ABC123", self.s1.id)
        summary = self.coordinator.summary()
        self.assertEqual(summary.currently_parked, 1)
        self.assertEqual(summary.available_spots, len(self.layout.spots) - 1)
        self.assertEqual(self.coordinator.audit(), [])

        self.coordinator.mark_occupied(self.s2.id)
        self.assertEqual(len(self.coordinator.audit()), 1)


class TestConcurrency(CoordinatorTestBase):
    """Racing operations on one spot"""

    def race(self, plates, spot_id):
        return self.run_together([
            lambda plate=plate: self.coordinator.check_in(plate, spot_id) for plate in plates
        ])

    def run_together(self, calls):
        barrier = threading.Barrier(len(calls))
        successes, conflicts, errors = [], [], []

        def attempt(call):
            barrier.wait()
            try:
                successes.append(call())
            except ConflictError as e:
                conflicts.append(e)
            except Exception as e:  # surfaced by the assertion below
                errors.append(e)

        threads = [threading.Thread(target=attempt, args=(call,)) for call in calls]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        return successes, conflicts, errors

    def test_two_check_ins_one_winner(self):
        successes, conflicts, errors = self.race(["RACE1", "RACE2"], self.s1.id)

        self.assertEqual(errors, [])
        self.assertEqual(len(successes), 1)
        self.assertEqual(len(conflicts), 1)
        self.assertEqual(conflicts[0].code, ALREADY_OCCUPIED)
        self.assertInvariantHolds()

        _, cars = snapshot(self.uow_factory)
        self.assertEqual([c.license_plate for c in cars], [successes[0].license_plate])

    def test_many_check_ins_one_winner(self):
        plates = [f"CAR{i}" for i in range(8)]
        successes, conflicts, errors = self.race(plates, self.s1.id)
        self.assertEqual(errors, [])
        self.assertEqual(len(successes), 1)
        self.assertEqual(len(conflicts), 7)
        self.assertInvariantHolds()

    def test_two_check_outs_one_winner(self):
        car = self.coordinator.check_in("ABC123", self.s1.id)
        successes, conflicts, errors = self.run_together([
            lambda: self.coordinator.check_out(car.id),
            lambda: self.coordinator.check_out(car.id),
        ])

        self.assertEqual(errors, [])
        self.assertEqual(len(successes), 1)
        self.assertEqual(len(conflicts), 1)
        self.assertIn(conflicts[0].code, (CAR_NOT_CHECKED_IN, CONCURRENT_MODIFICATION))
        self.assertEqual(self.spot_status(self.s1), ParkingSpotStatus.AVAILABLE)
        self.assertInvariantHolds()

        checked_out = [e for e in self.recorder.events if e.event_type == EventType.CAR_CHECKED_OUT]
        self.assertEqual(len(checked_out), 1)

    def test_lock_registry_empties_after_traffic(self):
        for i in range(50):
            car = self.coordinator.check_in(f"CYCLE{i}", self.s1.id)
            self.coordinator.check_out(car.id)
        with self.assertRaises(ConflictError):
            self.coordinator.check_out_by_plate("CYCLE0")
        self.assertEqual(self.coordinator.lock_manager._locks, {})

    def test_compare_and_swap_without_locks(self):
        """The status swap alone still admits exactly one writer"""
        with self.uow_factory() as first, self.uow_factory() as second:
            won = first.parking_spots.compare_and_set_status(
                self.s1.id, ParkingSpotStatus.AVAILABLE, ParkingSpotStatus.OCCUPIED
            )
            lost = second.parking_spots.compare_and_set_status(
                self.s1.id, ParkingSpotStatus.AVAILABLE, ParkingSpotStatus.OCCUPIED
            )
        self.assertTrue(won)
        self.assertFalse(lost)

    def test_update_status_rolls_back_with_unit_of_work(self):
        with self.assertRaises(RuntimeError):
            with self.uow_factory() as uow:
                uow.parking_spots.update_status(self.s1.id, ParkingSpotStatus.OCCUPIED)
                raise RuntimeError("abort")
        self.assertEqual(self.spot_status(self.s1), ParkingSpotStatus.AVAILABLE)

        with self.uow_factory() as uow:
            with self.assertRaises(NotFoundError):
                uow.parking_spots.update_status("missing-spot", ParkingSpotStatus.OCCUPIED)


class TestInvariantAcrossSequence(CoordinatorTestBase):

    def test_mixed_sequence(self):
        """The occupancy relation holds after every successful step"""
        steps = [
            lambda: self.coordinator.check_in("AAA", self.s1.id),
            lambda: self.coordinator.check_in("BBB", self.s2.id),
            lambda: self.coordinator.check_out_by_plate("AAA"),
            lambda: self.coordinator.check_in("CCC", self.s1.id),
            lambda: self.coordinator.check_out_by_plate("BBB"),
            lambda: self.coordinator.check_in("AAA", self.s2.id),
        ]
        for step in steps:
            step()
            self.assertInvariantHolds()

        summary = self.coordinator.summary()
        self.assertEqual(summary.currently_parked, 2)
        self.assertEqual(summary.total_vehicles, 3)


if __name__ == '__main__':
    unittest.main()
