# File: tests/helpers.py
"""
Shared fixtures for the test suites

GarageLayout seeds one garage, one floor, one bay and a handful of spots
directly through the repositories, so tests start from a known state
without going through the services under test.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from parking_garage.application.occupancy import OccupancyCoordinator
from parking_garage.domain.models import Bay, Floor, Garage, ParkingSpot, SpotSize
from parking_garage.infrastructure.locking import InProcessLockManager
from parking_garage.infrastructure.messaging import EventBus, EventHandler
from parking_garage.infrastructure.repositories import InMemoryStore, RepositoryFactory


class ManualClock:
    """Clock that advances one minute per reading"""

    def __init__(self, start=None, step=timedelta(minutes=1)):
        self.current = start or datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self):
        value = self.current
        self.current = self.current + self.step
        return value


class RecordingHandler(EventHandler):
    def __init__(self):
        self.events = []

    def handle(self, event):
        self.events.append(event)


class GarageLayout:
    """A garage with spots S1..Sn on one floor; S1 sits in a bay"""

    def __init__(self, uow_factory, spot_count=3):
        self.uow_factory = uow_factory
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        with uow_factory() as uow:
            self.garage = Garage(name="Central", location="1 Main St")
            uow.garages.add(self.garage)
            self.floor = Floor(garage_id=self.garage.id, name="Level 1")
            uow.floors.add(self.floor)
            self.bay = Bay(floor_id=self.floor.id, name="Bay A")
            uow.bays.add(self.bay)

            self.spots = []
            for index in range(spot_count):
                spot = ParkingSpot(
                    floor_id=self.floor.id,
                    bay_id=self.bay.id if index == 0 else None,
                    name=f"S{index + 1}",
                    size=SpotSize.STANDARD if index % 2 == 0 else SpotSize.COMPACT,
                    rate=Decimal("2.50"),
                    created_at=base + timedelta(minutes=index),
                )
                uow.parking_spots.add(spot)
                self.spots.append(spot)
            uow.commit()

    def spot(self, index=0):
        return self.spots[index]


def in_memory_context(spot_count=3):
    """(store, uow_factory, layout, coordinator, recorder) on a fresh in-memory store"""
    store = InMemoryStore()
    uow_factory = RepositoryFactory.create_in_memory_uow_factory(store)
    layout = GarageLayout(uow_factory, spot_count)
    recorder = RecordingHandler()
    bus = EventBus()
    bus.subscribe_all(recorder)
    coordinator = OccupancyCoordinator(uow_factory, InProcessLockManager(), bus, clock=ManualClock())
    return store, uow_factory, layout, coordinator, recorder


def snapshot(uow_factory):
    """(spots, cars) as currently stored"""
    with uow_factory() as uow:
        return uow.parking_spots.find(), uow.cars.get_all()
