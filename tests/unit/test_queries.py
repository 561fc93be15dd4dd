#!/usr/bin/env python3
"""
Unit tests for the query/filter layer
"""

import unittest
from datetime import datetime, timedelta, timezone

from parking_garage.application.queries import (
    NO_BAY, SpotFilter, checked_in_cars, filter_spots, occupancy_summary,
    occupancy_violations, pick_by_plate, recent_checkouts,
)
from parking_garage.domain.models import Car, ParkingSpot, ParkingSpotStatus


T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def spot(name, minutes, status="available", bay_id=None, size="standard", floor_id="floor-1"):
    return ParkingSpot(
        floor_id=floor_id, bay_id=bay_id, name=name, size=size, status=status,
        rate="1.00", created_at=T0 + timedelta(minutes=minutes),
    )


class TestSpotFilter(unittest.TestCase):
    """SpotFilter predicate and ordering"""

    def setUp(self):
        self.in_bay = spot("A", 0, bay_id="bay-1")
        self.no_bay = spot("B", 1, status="occupied", size="compact")
        self.other_floor = spot("C", 2, floor_id="floor-2", size="compact")
        self.spots = [self.in_bay, self.no_bay, self.other_floor]

    def names(self, spots):
        return [s.name for s in spots]

    def test_empty_filter_matches_all_newest_first(self):
        self.assertEqual(self.names(filter_spots(self.spots)), ["C", "B", "A"])

    def test_ascending_order(self):
        self.assertEqual(self.names(filter_spots(self.spots, newest_first=False)), ["A", "B", "C"])

    def test_no_bay_sentinel(self):
        """NO_BAY selects spots without a bay; None selects any"""
        self.assertEqual(self.names(filter_spots(self.spots, SpotFilter(bay_id=NO_BAY))), ["C", "B"])
        self.assertEqual(self.names(filter_spots(self.spots, SpotFilter(bay_id="bay-1"))), ["A"])
        self.assertEqual(len(filter_spots(self.spots, SpotFilter(bay_id=None))), 3)

    def test_fields_combine_with_and(self):
        result = filter_spots(self.spots, SpotFilter(size="compact", status="available"))
        self.assertEqual(self.names(result), ["C"])

        result = filter_spots(self.spots, SpotFilter(floor_id="floor-1", size="compact"))
        self.assertEqual(self.names(result), ["B"])

    def test_with_status_keeps_other_fields(self):
        base = SpotFilter(floor_id="floor-1")
        narrowed = base.with_status(ParkingSpotStatus.OCCUPIED)
        self.assertEqual(narrowed.floor_id, "floor-1")
        self.assertEqual(narrowed.status, ParkingSpotStatus.OCCUPIED)


class TestCarViews(unittest.TestCase):
    """Checked-in list, history and plate tie-breaking"""

    def visit(self, plate, start_minutes, end_minutes=None, spot_id="spot-1"):
        car = Car(license_plate=plate, created_at=T0)
        car.check_in(spot_id, T0 + timedelta(minutes=start_minutes))
        if end_minutes is not None:
            car.check_out(T0 + timedelta(minutes=end_minutes))
        return car

    def test_checked_in_cars(self):
        parked = self.visit("P1", 0)
        left = self.visit("P2", 0, 10)
        never = Car(license_plate="P3")
        self.assertEqual(checked_in_cars([parked, left, never]), [parked])

    def test_recent_checkouts_sorted_and_capped(self):
        cars = [self.visit(f"C{i}", i, 100 + i) for i in range(12)]
        cars.append(self.visit("PARKED", 50))

        history = recent_checkouts(cars)
        self.assertEqual(len(history), 10)
        self.assertEqual(history[0].license_plate.value, "C11")
        self.assertEqual(history[-1].license_plate.value, "C2")
        self.assertNotIn("PARKED", [c.license_plate.value for c in history])

        self.assertEqual(len(recent_checkouts(cars, limit=3)), 3)

    def test_pick_by_plate_prefers_checked_in(self):
        old = self.visit("SAME", 0, 5)
        active = self.visit("SAME", 1)
        newer_history = self.visit("SAME", 30, 40)
        self.assertIs(pick_by_plate([old, newer_history, active]), active)
        self.assertIs(pick_by_plate([old, newer_history]), newer_history)
        self.assertIsNone(pick_by_plate([]))


class TestOccupancyAudit(unittest.TestCase):
    """Summary figures and invariant violations"""

    def test_consistent_state(self):
        occupied = spot("A", 0, status="occupied")
        free = spot("B", 1)
        car = Car(license_plate="ABC", parking_spot_id=occupied.id, checked_in_at=T0)

        self.assertEqual(occupancy_violations([occupied, free], [car]), [])
        summary = occupancy_summary([occupied, free], [car, Car(license_plate="OLD")])
        self.assertEqual(summary.currently_parked, 1)
        self.assertEqual(summary.available_spots, 1)
        self.assertEqual(summary.total_vehicles, 2)

    def test_detects_occupied_spot_without_car(self):
        problems = occupancy_violations([spot("A", 0, status="occupied")], [])
        self.assertEqual(len(problems), 1)
        self.assertIn("occupied but has 0", problems[0])

    def test_detects_car_in_available_spot(self):
        free = spot("A", 0)
        car = Car(license_plate="ABC", parking_spot_id=free.id, checked_in_at=T0)
        self.assertEqual(len(occupancy_violations([free], [car])), 1)

    def test_detects_double_booking(self):
        occupied = spot("A", 0, status="occupied")
        cars = [
            Car(license_plate=plate, parking_spot_id=occupied.id, checked_in_at=T0)
            for plate in ("ONE", "TWO")
        ]
        problems = occupancy_violations([occupied], cars)
        self.assertIn("has 2 checked-in cars", problems[0])


if __name__ == '__main__':
    unittest.main()
