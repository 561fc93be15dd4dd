# File: parking_garage/application/occupancy.py
"""
Occupancy Coordinator

Owns every write to the spot/car occupancy relation:
1. check_in - park a car (new or returning) in an available spot
2. check_out - release the spot a car holds and close its visit
3. mark_occupied / mark_available - administrative status changes

Each operation runs as:
    acquire named locks (sorted) -> one unit of work -> validate ->
    write car -> compare-and-swap spot status -> commit -> publish events

Any failure before commit raises out of the unit of work, which rolls back
every write of the operation. Events are published only after commit.
"""

import logging
import uuid
from typing import Callable, List, Optional

from ..domain.exceptions import (
    ConflictError, NotFoundError, ValidationError,
    ALREADY_AVAILABLE, ALREADY_OCCUPIED, CAR_ALREADY_CHECKED_IN,
    CAR_ALREADY_CHECKED_OUT, CAR_NOT_CHECKED_IN, CONCURRENT_MODIFICATION,
)
from ..domain.models import Car, LicensePlate, ParkingSpot, ParkingSpotStatus, utcnow
from ..domain.rules import ParkingSpotRules
from ..infrastructure.locking import (
    InProcessLockManager, LockManager, car_key, plate_key, spot_key,
)
from ..infrastructure.messaging import (
    DomainEvent, EventBus, car_checked_in, car_checked_out, spot_status_changed,
)
from ..infrastructure.repositories import UnitOfWork
from .queries import OccupancySummary, occupancy_summary, occupancy_violations


class OccupancyCoordinator:
    """Check-in/check-out workflow and the only spot status mutator"""

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        lock_manager: Optional[LockManager] = None,
        event_bus: Optional[EventBus] = None,
        clock: Callable = utcnow,
    ):
        self.uow_factory = uow_factory
        self.lock_manager = lock_manager or InProcessLockManager()
        self.event_bus = event_bus
        self.clock = clock
        self.logger = logging.getLogger(self.__class__.__name__)

    # ------------------------------------------------------------------
    # check-in / check-out
    # ------------------------------------------------------------------

    def check_in(self, license_plate, parking_spot_id: str, actor: Optional[str] = None) -> Car:
        """
        Park the car with this plate in the given spot

        Reuses the existing car record for a known plate, otherwise creates
        one. Raises NotFoundError for an unknown spot, ConflictError
        ALREADY_OCCUPIED for an occupied spot (nothing is written) and
        CAR_ALREADY_CHECKED_IN when the car is parked elsewhere.
        """
        plate = LicensePlate.create(license_plate)
        if not parking_spot_id:
            raise ValidationError("Parking spot ID is required", field="parking_spot_id")

        correlation_id = str(uuid.uuid4())
        with self.lock_manager.acquire(spot_key(parking_spot_id), plate_key(plate)):
            with self.uow_factory() as uow:
                spot = uow.parking_spots.get_or_raise(parking_spot_id)
                if spot.is_occupied:
                    self.logger.warning(f"Check-in of {plate} rejected: spot {spot.id} is occupied")
                    raise ConflictError(
                        "Parking spot is already occupied",
                        code=ALREADY_OCCUPIED,
                        details={"parking_spot_id": spot.id},
                    )
                ParkingSpotRules.validate_status_transition(spot.status, ParkingSpotStatus.OCCUPIED)

                now = self.clock()
                car = uow.cars.find_by_license_plate(plate)
                if car is not None and car.is_checked_in:
                    self.logger.warning(
                        f"Check-in of {plate} rejected: already parked at {car.parking_spot_id}"
                    )
                    raise ConflictError(
                        f"Car '{plate}' is already checked in to another parking spot",
                        code=CAR_ALREADY_CHECKED_IN,
                        details={"car_id": car.id, "parking_spot_id": car.parking_spot_id},
                    )

                if car is None:
                    car = Car(
                        license_plate=plate,
                        parking_spot_id=spot.id,
                        checked_in_at=now,
                        created_at=now,
                        created_by=actor,
                        updated_by=actor,
                    )
                    uow.cars.add(car)
                else:
                    car.check_in(spot.id, now)
                    car.updated_by = actor
                    uow.cars.update(car)

                self._swap_status(uow, spot.id, ParkingSpotStatus.AVAILABLE, ParkingSpotStatus.OCCUPIED, now)
                uow.commit()

        self.logger.info(f"Car {car.id} ({plate}) checked in to spot {spot.id}")
        self.publish([
            car_checked_in(car, spot, correlation_id),
            spot_status_changed(spot.id, ParkingSpotStatus.AVAILABLE, ParkingSpotStatus.OCCUPIED, correlation_id),
        ])
        return car

    def check_out(self, car_id: str, actor: Optional[str] = None) -> Car:
        """
        Release the spot held by a car and close its visit

        Raises NotFoundError for an unknown car, ConflictError
        CAR_NOT_CHECKED_IN when the car holds no spot and
        CAR_ALREADY_CHECKED_OUT when its visit is already closed.
        """
        if not car_id:
            raise ValidationError("Car ID is required", field="car_id")

        with self.uow_factory() as uow:
            snapshot = uow.cars.get_or_raise(car_id)

        keys = [car_key(snapshot.id), plate_key(snapshot.license_plate)]
        if snapshot.parking_spot_id:
            keys.append(spot_key(snapshot.parking_spot_id))

        correlation_id = str(uuid.uuid4())
        with self.lock_manager.acquire(*keys):
            with self.uow_factory() as uow:
                car = uow.cars.get_or_raise(car_id)
                self._ensure_checked_in(car)

                spot_id = car.parking_spot_id
                if spot_key(spot_id) not in keys:
                    # Re-parked between the snapshot and taking the locks
                    raise ConflictError(
                        "Car moved to another parking spot, please retry",
                        code=CONCURRENT_MODIFICATION,
                        details={"car_id": car.id},
                    )
                uow.parking_spots.get_or_raise(spot_id)

                now = self.clock()
                car.check_out(now)
                car.updated_by = actor
                if not uow.cars.complete_checkout(car, spot_id):
                    raise ConflictError(
                        "Car was checked out concurrently",
                        code=CONCURRENT_MODIFICATION,
                        details={"car_id": car.id},
                    )
                self._swap_status(uow, spot_id, ParkingSpotStatus.OCCUPIED, ParkingSpotStatus.AVAILABLE, now)
                uow.commit()

        self.logger.info(f"Car {car.id} ({car.license_plate}) checked out of spot {spot_id}")
        self.publish([
            car_checked_out(car, spot_id, correlation_id),
            spot_status_changed(spot_id, ParkingSpotStatus.OCCUPIED, ParkingSpotStatus.AVAILABLE, correlation_id),
        ])
        return car

    def check_out_by_plate(self, license_plate, actor: Optional[str] = None) -> Car:
        """Check out whichever car currently holds this plate"""
        car = self.find_by_license_plate(license_plate)
        return self.check_out(car.id, actor=actor)

    def _ensure_checked_in(self, car: Car) -> None:
        if car.parking_spot_id is None:
            self.logger.warning(f"Check-out of car {car.id} rejected: not parked")
            raise ConflictError(
                "Car is not checked in to any parking spot",
                code=CAR_NOT_CHECKED_IN,
                details={"car_id": car.id},
            )
        if car.checked_out_at is not None:
            self.logger.warning(f"Check-out of car {car.id} rejected: already checked out")
            raise ConflictError(
                "Car has already been checked out",
                code=CAR_ALREADY_CHECKED_OUT,
                details={"car_id": car.id},
            )

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------

    def find_by_license_plate(self, license_plate) -> Car:
        """Case-insensitive plate lookup; a checked-in car wins over history"""
        plate = LicensePlate.create(license_plate)
        with self.uow_factory() as uow:
            car = uow.cars.find_by_license_plate(plate)
        if car is None:
            raise NotFoundError("Car", plate)
        return car

    def summary(self) -> OccupancySummary:
        with self.uow_factory() as uow:
            return occupancy_summary(uow.parking_spots.find(), uow.cars.get_all())

    def audit(self) -> List[str]:
        """Every break of the occupancy relation; empty when consistent"""
        with self.uow_factory() as uow:
            problems = occupancy_violations(uow.parking_spots.find(), uow.cars.get_all())
        for problem in problems:
            self.logger.error(f"Occupancy violation: {problem}")
        return problems

    # ------------------------------------------------------------------
    # administrative status changes
    # ------------------------------------------------------------------

    def mark_occupied(self, parking_spot_id: str, actor: Optional[str] = None) -> ParkingSpot:
        return self._set_status(parking_spot_id, ParkingSpotStatus.OCCUPIED, actor)

    def mark_available(self, parking_spot_id: str, actor: Optional[str] = None) -> ParkingSpot:
        return self._set_status(parking_spot_id, ParkingSpotStatus.AVAILABLE, actor)

    def set_status(self, parking_spot_id: str, status, actor: Optional[str] = None) -> ParkingSpot:
        return self._set_status(parking_spot_id, self.parse_status(status), actor)

    @staticmethod
    def parse_status(status) -> ParkingSpotStatus:
        try:
            return ParkingSpotStatus(status)
        except ValueError:
            raise ValidationError(
                f"Invalid status. Must be one of: {', '.join(ParkingSpotStatus.values())}",
                field="status",
            )

    def change_status(
        self, uow: UnitOfWork, spot: ParkingSpot, target: ParkingSpotStatus, actor: Optional[str] = None
    ) -> DomainEvent:
        """
        Move a loaded spot to target inside the caller's unit of work.

        The caller holds the spot lock, commits, and publishes the returned
        event after the commit.
        """
        if spot.status == target:
            if target == ParkingSpotStatus.OCCUPIED:
                raise ConflictError(
                    "Parking spot is already occupied",
                    code=ALREADY_OCCUPIED,
                    details={"parking_spot_id": spot.id},
                )
            raise ConflictError(
                "Parking spot is already available",
                code=ALREADY_AVAILABLE,
                details={"parking_spot_id": spot.id},
            )
        ParkingSpotRules.validate_status_transition(spot.status, target)

        previous = spot.status
        now = self.clock()
        self._swap_status(uow, spot.id, previous, target, now)
        spot.status = target
        spot.touch(now, by=actor)
        return spot_status_changed(spot.id, previous, target)

    def publish(self, events: List[DomainEvent]) -> None:
        if self.event_bus is not None:
            self.event_bus.publish_all(events)

    def _set_status(self, parking_spot_id: str, target: ParkingSpotStatus, actor: Optional[str]) -> ParkingSpot:
        with self.lock_manager.acquire(spot_key(parking_spot_id)):
            with self.uow_factory() as uow:
                spot = uow.parking_spots.get_or_raise(parking_spot_id)
                event = self.change_status(uow, spot, target, actor)
                uow.commit()

        self.logger.info(f"Spot {spot.id} marked {target.value}")
        self.publish([event])
        return spot

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _swap_status(self, uow: UnitOfWork, spot_id: str, expected, new, now) -> None:
        if not uow.parking_spots.compare_and_set_status(spot_id, expected, new, at=now):
            self.logger.warning(f"Spot {spot_id} changed concurrently, expected {expected.value}")
            raise ConflictError(
                "Parking spot status changed concurrently, please retry",
                code=CONCURRENT_MODIFICATION,
                details={"parking_spot_id": spot_id},
            )
