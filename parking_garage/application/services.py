# File: parking_garage/application/services.py
"""
Entity Services for the Parking Garage system

Administrative CRUD over garages, floors, bays, parking spots, cars and
parking fees. Every service:
1. validates input through its DTOs, then through the domain entity
2. runs each operation in its own unit of work
3. raises NotFoundError / ValidationError / ConflictError, never returns
   error values

Deletion is restrictive: an entity that still has dependents, an occupied
spot and a checked-in car cannot be deleted.

Occupancy stays with the OccupancyCoordinator. A spot update that changes
status runs the coordinator's guarded status swap in the same unit of work
as its field edits. Car updates can never set parking_spot_id, and visit
times of a parked car only move through check-in and check-out.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from ..domain.exceptions import (
    ConflictError, ValidationError,
    CAR_CHECKED_IN, DUPLICATE, HAS_DEPENDENTS, SPOT_OCCUPIED,
)
from ..domain.models import Bay, Car, Floor, Garage, LicensePlate, ParkingFee, ParkingSpot
from ..domain.rules import ParkingSpotRules
from ..infrastructure.locking import InProcessLockManager, LockManager, car_key, plate_key, spot_key
from ..infrastructure.repositories import Repository, UnitOfWork
from .dtos import (
    BayCreateDTO, BayQueryDTO, BayUpdateDTO,
    CarCreateDTO, CarUpdateDTO,
    FloorCreateDTO, FloorQueryDTO, FloorUpdateDTO,
    GarageCreateDTO, GarageUpdateDTO,
    ParkingFeeCreateDTO, ParkingFeeQueryDTO, ParkingFeeUpdateDTO,
    ParkingSpotCreateDTO, ParkingSpotQueryDTO, ParkingSpotUpdateDTO,
    parse,
)
from .occupancy import OccupancyCoordinator
from .queries import DEFAULT_HISTORY_LIMIT, checked_in_cars, recent_checkouts


Payload = Optional[Dict[str, Any]]


# ============================================================================
# BASE SERVICE
# ============================================================================

class EntityService:
    """Shared read/delete plumbing; subclasses name their repository"""

    repository_name = ""

    def __init__(self, uow_factory: Callable[[], UnitOfWork], lock_manager: Optional[LockManager] = None):
        self.uow_factory = uow_factory
        self.lock_manager = lock_manager or InProcessLockManager()
        self.logger = logging.getLogger(self.__class__.__name__)

    def _repository(self, uow: UnitOfWork) -> Repository:
        return getattr(uow, self.repository_name)

    def get_by_id(self, id: str):
        with self.uow_factory() as uow:
            return self._repository(uow).get_or_raise(id)

    def get_all(self, query: Payload = None) -> List:
        with self.uow_factory() as uow:
            return self._repository(uow).get_all()

    def delete(self, id: str) -> None:
        with self.uow_factory() as uow:
            repository = self._repository(uow)
            entity = repository.get_or_raise(id)
            self._check_can_delete(uow, entity)
            repository.delete(id)
            uow.commit()
        self.logger.info(f"Deleted {repository.resource_name} {id}")

    def _check_can_delete(self, uow: UnitOfWork, entity) -> None:
        pass

    @staticmethod
    def _has_dependents(resource: str, entity_id: str, dependent: str, count: int) -> None:
        if count:
            raise ConflictError(
                f"{resource} '{entity_id}' still has {count} {dependent}",
                code=HAS_DEPENDENTS,
                details={"id": entity_id, "dependent": dependent, "count": count},
            )

    @staticmethod
    def _apply(entity, changes: Dict[str, Any], actor: Optional[str]):
        for key, value in changes.items():
            setattr(entity, key, value)
        entity.touch(by=actor)
        entity._validate()
        return entity


# ============================================================================
# GARAGE STRUCTURE
# ============================================================================

class GarageService(EntityService):
    repository_name = "garages"

    def create(self, data: Payload, actor: Optional[str] = None) -> Garage:
        dto = parse(GarageCreateDTO, data)
        garage = Garage(name=dto.name, location=dto.location, created_by=actor, updated_by=actor)
        with self.uow_factory() as uow:
            uow.garages.add(garage)
            uow.commit()
        self.logger.info(f"Garage created: {garage.id}")
        return garage

    def update(self, id: str, data: Payload, actor: Optional[str] = None) -> Garage:
        changes = parse(GarageUpdateDTO, data).changes()
        with self.uow_factory() as uow:
            garage = self._apply(uow.garages.get_or_raise(id), changes, actor)
            uow.garages.update(garage)
            uow.commit()
        return garage

    def _check_can_delete(self, uow, garage):
        self._has_dependents("Garage", garage.id, "floors", uow.floors.count_by(garage_id=garage.id))


class FloorService(EntityService):
    repository_name = "floors"

    def get_all(self, query: Payload = None) -> List[Floor]:
        dto = parse(FloorQueryDTO, query)
        with self.uow_factory() as uow:
            if dto.garage_id:
                return uow.floors.find_by(garage_id=dto.garage_id)
            return uow.floors.get_all()

    def create(self, data: Payload, actor: Optional[str] = None) -> Floor:
        dto = parse(FloorCreateDTO, data)
        floor = Floor(garage_id=dto.garage_id, name=dto.name, created_by=actor, updated_by=actor)
        with self.uow_factory() as uow:
            uow.garages.get_or_raise(floor.garage_id)
            uow.floors.add(floor)
            uow.commit()
        self.logger.info(f"Floor created: {floor.id}")
        return floor

    def update(self, id: str, data: Payload, actor: Optional[str] = None) -> Floor:
        changes = parse(FloorUpdateDTO, data).changes()
        with self.uow_factory() as uow:
            floor = self._apply(uow.floors.get_or_raise(id), changes, actor)
            if "garage_id" in changes:
                uow.garages.get_or_raise(floor.garage_id)
            uow.floors.update(floor)
            uow.commit()
        return floor

    def _check_can_delete(self, uow, floor):
        self._has_dependents("Floor", floor.id, "bays", uow.bays.count_by(floor_id=floor.id))
        self._has_dependents("Floor", floor.id, "parking spots", uow.parking_spots.count_by(floor_id=floor.id))


class BayService(EntityService):
    repository_name = "bays"

    def get_all(self, query: Payload = None) -> List[Bay]:
        dto = parse(BayQueryDTO, query)
        with self.uow_factory() as uow:
            if dto.floor_id:
                return uow.bays.find_by(floor_id=dto.floor_id)
            return uow.bays.get_all()

    def create(self, data: Payload, actor: Optional[str] = None) -> Bay:
        dto = parse(BayCreateDTO, data)
        bay = Bay(floor_id=dto.floor_id, name=dto.name, created_by=actor, updated_by=actor)
        with self.uow_factory() as uow:
            uow.floors.get_or_raise(bay.floor_id)
            uow.bays.add(bay)
            uow.commit()
        self.logger.info(f"Bay created: {bay.id}")
        return bay

    def update(self, id: str, data: Payload, actor: Optional[str] = None) -> Bay:
        changes = parse(BayUpdateDTO, data).changes()
        with self.uow_factory() as uow:
            bay = self._apply(uow.bays.get_or_raise(id), changes, actor)
            if "floor_id" in changes:
                uow.floors.get_or_raise(bay.floor_id)
            uow.bays.update(bay)
            uow.commit()
        return bay

    def _check_can_delete(self, uow, bay):
        self._has_dependents("Bay", bay.id, "parking spots", uow.parking_spots.count_by(bay_id=bay.id))


# ============================================================================
# PARKING SPOTS
# ============================================================================

class ParkingSpotService(EntityService):
    """
    Spot administration

    Field edits happen here; any change of status is delegated to the
    coordinator so it passes the transition table and the status
    compare-and-swap.
    """

    repository_name = "parking_spots"

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        coordinator: OccupancyCoordinator,
        lock_manager: Optional[LockManager] = None,
    ):
        super().__init__(uow_factory, lock_manager or coordinator.lock_manager)
        self.coordinator = coordinator

    def get_all(self, query: Payload = None) -> List[ParkingSpot]:
        dto = parse(ParkingSpotQueryDTO, query)
        with self.uow_factory() as uow:
            return uow.parking_spots.find(dto.to_filter(), newest_first=dto.newest_first)

    def get_available_spots(self, query: Payload = None) -> List[ParkingSpot]:
        dto = parse(ParkingSpotQueryDTO, query)
        with self.uow_factory() as uow:
            return uow.parking_spots.find_available(dto.to_filter())

    def get_occupied_spots(self, query: Payload = None) -> List[ParkingSpot]:
        dto = parse(ParkingSpotQueryDTO, query)
        with self.uow_factory() as uow:
            return uow.parking_spots.find_occupied(dto.to_filter())

    def create(self, data: Payload, actor: Optional[str] = None) -> ParkingSpot:
        dto = parse(ParkingSpotCreateDTO, data)
        spot = ParkingSpot(
            floor_id=dto.floor_id,
            bay_id=dto.bay_id,
            name=dto.name,
            size=dto.size,
            status=dto.status,
            rate=ParkingSpotRules.validate_rate(dto.rate),
            features=ParkingSpotRules.validate_features(dto.features),
            created_by=actor,
            updated_by=actor,
        )
        with self.uow_factory() as uow:
            self._check_placement(uow, spot)
            uow.parking_spots.add(spot)
            uow.commit()
        self.logger.info(f"Parking spot created: {spot.id}")
        return spot

    def update(self, id: str, data: Payload, actor: Optional[str] = None) -> ParkingSpot:
        changes = parse(ParkingSpotUpdateDTO, data).changes()
        status = changes.pop("status", None)
        if "rate" in changes:
            changes["rate"] = ParkingSpotRules.validate_rate(changes["rate"])
        if "features" in changes:
            changes["features"] = ParkingSpotRules.validate_features(changes["features"])

        events = []
        with self.lock_manager.acquire(spot_key(id)):
            with self.uow_factory() as uow:
                spot = uow.parking_spots.get_or_raise(id)
                if status is not None:
                    status = self.coordinator.parse_status(status)
                    if status != spot.status:
                        ParkingSpotRules.validate_status_transition(spot.status, status)
                if changes:
                    spot = self._apply(spot, changes, actor)
                    self._check_placement(uow, spot)
                    uow.parking_spots.update(spot)
                # field edits and the status swap commit or roll back together
                if status is not None and status != spot.status:
                    events.append(self.coordinator.change_status(uow, spot, status, actor))
                uow.commit()

        self.coordinator.publish(events)
        return spot

    def update_status(self, id: str, status, actor: Optional[str] = None) -> ParkingSpot:
        return self.coordinator.set_status(id, status, actor=actor)

    def _check_placement(self, uow: UnitOfWork, spot: ParkingSpot) -> None:
        uow.floors.get_or_raise(spot.floor_id)
        if spot.bay_id is not None:
            bay = uow.bays.get_or_raise(spot.bay_id)
            if bay.floor_id != spot.floor_id:
                raise ValidationError(
                    f"Bay '{bay.id}' does not belong to floor '{spot.floor_id}'", field="bay_id"
                )

    def delete(self, id: str) -> None:
        with self.lock_manager.acquire(spot_key(id)):
            super().delete(id)

    def _check_can_delete(self, uow, spot):
        if spot.is_occupied or uow.cars.find_by_parking_spot(spot.id):
            raise ConflictError(
                "Cannot delete an occupied parking spot",
                code=SPOT_OCCUPIED,
                details={"id": spot.id},
            )


# ============================================================================
# CARS AND FEES
# ============================================================================

class CarService(EntityService):
    """Car records; check-in and check-out go through the coordinator"""

    repository_name = "cars"

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        lock_manager: Optional[LockManager] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        super().__init__(uow_factory, lock_manager)
        self.history_limit = history_limit

    def create(self, data: Payload, actor: Optional[str] = None) -> Car:
        dto = parse(CarCreateDTO, data)
        car = Car(
            license_plate=dto.license_plate,
            checked_in_at=dto.checked_in_at,
            checked_out_at=dto.checked_out_at,
            created_by=actor,
            updated_by=actor,
        )
        with self.lock_manager.acquire(plate_key(car.license_plate)):
            with self.uow_factory() as uow:
                self._check_plate_free(uow, car)
                uow.cars.add(car)
                uow.commit()
        self.logger.info(f"Car created: {car.id}")
        return car

    def update(self, id: str, data: Payload, actor: Optional[str] = None) -> Car:
        changes = parse(CarUpdateDTO, data).changes()
        if "license_plate" in changes:
            changes["license_plate"] = LicensePlate.create(changes["license_plate"])

        current = self.get_by_id(id)
        keys = [car_key(id), plate_key(current.license_plate)]
        if "license_plate" in changes:
            keys.append(plate_key(changes["license_plate"]))

        with self.lock_manager.acquire(*keys):
            with self.uow_factory() as uow:
                car = uow.cars.get_or_raise(id)
                if (car.is_checked_in or car.parking_spot_id) and (
                    "checked_in_at" in changes or "checked_out_at" in changes
                ):
                    raise ConflictError(
                        "Visit times of a parked car change only through check-in and check-out",
                        code=CAR_CHECKED_IN,
                        details={"id": car.id},
                    )
                car = self._apply(car, changes, actor)
                self._check_plate_free(uow, car)
                uow.cars.update(car)
                uow.commit()
        return car

    def delete(self, id: str) -> None:
        with self.lock_manager.acquire(car_key(id)):
            super().delete(id)

    def _check_can_delete(self, uow, car):
        if car.is_checked_in:
            raise ConflictError(
                "Cannot delete a car that is checked in",
                code=CAR_CHECKED_IN,
                details={"id": car.id},
            )
        self._has_dependents("Car", car.id, "parking fees", uow.parking_fees.count_by(car_id=car.id))

    @staticmethod
    def _check_plate_free(uow: UnitOfWork, car: Car) -> None:
        other = uow.cars.find_by_license_plate(car.license_plate)
        if other is not None and other.id != car.id:
            raise ConflictError(
                f"A car with license plate '{car.license_plate}' already exists",
                code=DUPLICATE,
                details={"license_plate": car.license_plate.value, "car_id": other.id},
            )

    def get_checked_in(self) -> List[Car]:
        with self.uow_factory() as uow:
            return checked_in_cars(uow.cars.find_checked_in())

    def get_recent_checkouts(self, limit: Optional[int] = None) -> List[Car]:
        with self.uow_factory() as uow:
            return recent_checkouts(
                uow.cars.get_all(), self.history_limit if limit is None else limit
            )


class ParkingFeeService(EntityService):
    repository_name = "parking_fees"

    def get_all(self, query: Payload = None) -> List[ParkingFee]:
        dto = parse(ParkingFeeQueryDTO, query)
        with self.uow_factory() as uow:
            if dto.car_id:
                return uow.parking_fees.find_by(car_id=dto.car_id)
            return uow.parking_fees.get_all()

    def create(self, data: Payload, actor: Optional[str] = None) -> ParkingFee:
        dto = parse(ParkingFeeCreateDTO, data)
        fee = ParkingFee(car_id=dto.car_id, billed_at=dto.billed_at, created_by=actor, updated_by=actor)
        with self.uow_factory() as uow:
            uow.cars.get_or_raise(fee.car_id)
            uow.parking_fees.add(fee)
            uow.commit()
        self.logger.info(f"Parking fee created: {fee.id}")
        return fee

    def update(self, id: str, data: Payload, actor: Optional[str] = None) -> ParkingFee:
        changes = parse(ParkingFeeUpdateDTO, data).changes()
        with self.uow_factory() as uow:
            fee = self._apply(uow.parking_fees.get_or_raise(id), changes, actor)
            if "car_id" in changes:
                uow.cars.get_or_raise(fee.car_id)
            uow.parking_fees.update(fee)
            uow.commit()
        return fee
