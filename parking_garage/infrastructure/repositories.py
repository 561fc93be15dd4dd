# File: parking_garage/infrastructure/repositories.py
"""
Repository Pattern Implementation for the Parking Garage system

Repositories give the application layer a collection-like view of the
entities and hide the storage engine. All repositories of one operation
are reached through a Unit of Work, which is the transaction boundary:
either every write of the operation is kept or none is.

Storage Implementations:
1. InMemory - a shared store guarded by a lock; the unit of work keeps an
   undo log and replays it in reverse on rollback
2. SQLAlchemy - one session per unit of work; rollback is the database's

Both implementations provide the conditional writes the occupancy
workflow relies on:
- ParkingSpotRepository.compare_and_set_status(id, expected, new)
- CarRepository.complete_checkout(car, expected_spot_id)
Each applies the write only if the stored row still matches the expected
prior state, and reports whether it did.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, Generic, List, Optional, Type, TypeVar

from sqlalchemy import (
    Column, DateTime, ForeignKey, Index, JSON, Numeric, String,
    create_engine, text,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..application.queries import SpotFilter, order_by_created, pick_by_plate
from ..domain.exceptions import (
    ConflictError, DatabaseError, NotFoundError, INTEGRITY_ERROR,
)
from ..domain.models import (
    Bay, Car, Entity, Floor, Garage, LicensePlate, ParkingFee, ParkingSpot,
    ParkingSpotStatus, SpotFeatures, ensure_utc, utcnow,
)

T = TypeVar('T', bound=Entity)


# ============================================================================
# REPOSITORY INTERFACES
# ============================================================================

class Repository(ABC, Generic[T]):
    """Base repository interface"""

    resource_name = "Entity"

    @abstractmethod
    def add(self, entity: T) -> T:
        """Add an entity to the repository"""
        pass

    @abstractmethod
    def get(self, id: str) -> Optional[T]:
        """Get an entity by ID"""
        pass

    @abstractmethod
    def get_all(self) -> List[T]:
        """All entities, newest first"""
        pass

    @abstractmethod
    def update(self, entity: T) -> T:
        """Replace the stored state of an existing entity"""
        pass

    @abstractmethod
    def delete(self, id: str) -> bool:
        """Delete an entity by ID"""
        pass

    @abstractmethod
    def find_by(self, **criteria) -> List[T]:
        """Entities whose attributes equal every given value, newest first"""
        pass

    @abstractmethod
    def count_by(self, **criteria) -> int:
        pass

    def get_or_raise(self, id: str) -> T:
        entity = self.get(id)
        if entity is None:
            raise NotFoundError(self.resource_name, id)
        return entity


class ParkingSpotRepositoryMixin:
    """Spot queries shared by both storage implementations"""

    resource_name = "Parking spot"

    def find_by_bay(self, bay_id: str) -> List[ParkingSpot]:
        return self.find(SpotFilter(bay_id=bay_id))

    def find_available(self, spot_filter: Optional[SpotFilter] = None) -> List[ParkingSpot]:
        return self.find((spot_filter or SpotFilter()).with_status(ParkingSpotStatus.AVAILABLE))

    def find_occupied(self, spot_filter: Optional[SpotFilter] = None) -> List[ParkingSpot]:
        return self.find((spot_filter or SpotFilter()).with_status(ParkingSpotStatus.OCCUPIED))


class CarRepositoryMixin:
    """Car queries shared by both storage implementations"""

    resource_name = "Car"

    def find_by_license_plate(self, license_plate) -> Optional[Car]:
        """Case-insensitive plate lookup; see pick_by_plate for tie-breaking"""
        plate = LicensePlate.create(license_plate)
        return pick_by_plate(self.find_all_by_license_plate(plate))

    def find_checked_in(self) -> List[Car]:
        return [car for car in self.get_all() if car.is_checked_in]

    def find_by_parking_spot(self, parking_spot_id: str) -> List[Car]:
        return self.find_by(parking_spot_id=parking_spot_id)


# ============================================================================
# UNIT OF WORK PATTERN
# ============================================================================

class UnitOfWork(ABC):
    """Unit of Work pattern for transaction management"""

    garages: Repository
    floors: Repository
    bays: Repository
    parking_spots: Repository
    cars: Repository
    parking_fees: Repository

    @abstractmethod
    def __enter__(self):
        pass

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                self._logger.debug(f"Rolling back after {exc_type.__name__}: {exc_val}")
                self.rollback()
            else:
                self.commit()
        finally:
            self._close()

    @abstractmethod
    def commit(self):
        """Commit the transaction"""
        pass

    @abstractmethod
    def rollback(self):
        """Rollback the transaction"""
        pass

    def _close(self):
        pass


# ============================================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================================

class InMemoryStore:
    """Shared tables for the in-memory gateway; one lock serializes every access"""

    TABLES = ("garages", "floors", "bays", "parking_spots", "cars", "parking_fees")

    def __init__(self):
        self.lock = threading.RLock()
        self.tables: Dict[str, Dict[str, Entity]] = {name: {} for name in self.TABLES}


class InMemoryRepository(Repository[T]):
    """
    Repository over one table of an InMemoryStore

    Entities are copied in and out so callers never hold stored state.
    Every write appends its inverse to the journal of the owning unit of
    work.
    """

    table_name = ""

    def __init__(self, store: InMemoryStore, journal: Optional[List[Callable[[], None]]] = None):
        self._store = store
        self._journal = journal
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def _table(self) -> Dict[str, T]:
        return self._store.tables[self.table_name]

    def _record(self, undo: Callable[[], None]) -> None:
        if self._journal is not None:
            self._journal.append(undo)

    def _restore(self, previous: T) -> Callable[[], None]:
        table = self._table

        def undo():
            table[previous.id] = previous
        return undo

    def _remove(self, id: str) -> Callable[[], None]:
        table = self._table

        def undo():
            table.pop(id, None)
        return undo

    def _check_unique(self, entity: T) -> None:
        """Hook for tables with unique columns"""
        pass

    def add(self, entity: T) -> T:
        with self._store.lock:
            if entity.id in self._table:
                raise ConflictError(
                    f"{self.resource_name} '{entity.id}' already exists", code=INTEGRITY_ERROR
                )
            self._check_unique(entity)
            self._table[entity.id] = entity.copy()
            self._record(self._remove(entity.id))
        self._logger.debug(f"Added {self.resource_name} {entity.id}")
        return entity

    def get(self, id: str) -> Optional[T]:
        with self._store.lock:
            stored = self._table.get(id)
            return stored.copy() if stored is not None else None

    def get_all(self) -> List[T]:
        with self._store.lock:
            items = [entity.copy() for entity in self._table.values()]
        return order_by_created(items)

    def update(self, entity: T) -> T:
        with self._store.lock:
            previous = self._table.get(entity.id)
            if previous is None:
                raise NotFoundError(self.resource_name, entity.id)
            self._check_unique(entity)
            self._table[entity.id] = entity.copy()
            self._record(self._restore(previous))
        self._logger.debug(f"Updated {self.resource_name} {entity.id}")
        return entity

    def delete(self, id: str) -> bool:
        with self._store.lock:
            previous = self._table.pop(id, None)
            if previous is None:
                return False
            self._record(self._restore(previous))
        self._logger.debug(f"Deleted {self.resource_name} {id}")
        return True

    def find_by(self, **criteria) -> List[T]:
        with self._store.lock:
            items = [
                entity.copy() for entity in self._table.values()
                if all(getattr(entity, key) == value for key, value in criteria.items())
            ]
        return order_by_created(items)

    def count_by(self, **criteria) -> int:
        with self._store.lock:
            return sum(
                1 for entity in self._table.values()
                if all(getattr(entity, key) == value for key, value in criteria.items())
            )


class InMemoryGarageRepository(InMemoryRepository[Garage]):
    table_name = "garages"
    resource_name = "Garage"


class InMemoryFloorRepository(InMemoryRepository[Floor]):
    table_name = "floors"
    resource_name = "Floor"


class InMemoryBayRepository(InMemoryRepository[Bay]):
    table_name = "bays"
    resource_name = "Bay"


class InMemoryParkingSpotRepository(ParkingSpotRepositoryMixin, InMemoryRepository[ParkingSpot]):
    table_name = "parking_spots"

    def find(self, spot_filter: Optional[SpotFilter] = None, newest_first: bool = True) -> List[ParkingSpot]:
        spot_filter = spot_filter or SpotFilter()
        with self._store.lock:
            items = [spot.copy() for spot in self._table.values() if spot_filter.matches(spot)]
        return order_by_created(items, newest_first)

    def compare_and_set_status(
        self,
        id: str,
        expected: ParkingSpotStatus,
        new: ParkingSpotStatus,
        at: Optional[datetime] = None,
    ) -> bool:
        with self._store.lock:
            stored = self._table.get(id)
            if stored is None or stored.status != expected:
                return False
            previous = stored.copy()
            stored.status = ParkingSpotStatus(new)
            stored.touch(at)
            self._record(self._restore(previous))
        self._logger.debug(f"Spot {id} status {expected.value} -> {new.value}")
        return True

    def update_status(self, id: str, status: ParkingSpotStatus, at: Optional[datetime] = None) -> ParkingSpot:
        """Unconditional status write; the occupancy workflow uses compare_and_set_status"""
        with self._store.lock:
            stored = self._table.get(id)
            if stored is None:
                raise NotFoundError(self.resource_name, id)
            previous = stored.copy()
            stored.status = ParkingSpotStatus(status)
            stored.touch(at)
            self._record(self._restore(previous))
            return stored.copy()


class InMemoryCarRepository(CarRepositoryMixin, InMemoryRepository[Car]):
    table_name = "cars"

    def _check_unique(self, entity: Car) -> None:
        for other in self._table.values():
            if other.id != entity.id and other.license_plate == entity.license_plate:
                raise ConflictError(
                    f"A car with license plate '{entity.license_plate}' already exists",
                    code=INTEGRITY_ERROR,
                )
            if (
                entity.parking_spot_id is not None
                and other.id != entity.id
                and other.parking_spot_id == entity.parking_spot_id
            ):
                raise ConflictError(
                    f"Parking spot '{entity.parking_spot_id}' is already referenced by another car",
                    code=INTEGRITY_ERROR,
                )

    def find_all_by_license_plate(self, plate: LicensePlate) -> List[Car]:
        return self.find_by(license_plate=plate)

    def complete_checkout(self, car: Car, expected_spot_id: str) -> bool:
        with self._store.lock:
            stored = self._table.get(car.id)
            if (
                stored is None
                or stored.parking_spot_id != expected_spot_id
                or stored.checked_out_at is not None
            ):
                return False
            self._table[car.id] = car.copy()
            self._record(self._restore(stored))
        return True


class InMemoryParkingFeeRepository(InMemoryRepository[ParkingFee]):
    table_name = "parking_fees"
    resource_name = "Parking fee"


class InMemoryUnitOfWork(UnitOfWork):
    """
    Unit of Work over an InMemoryStore

    Writes go straight to the store; rollback undoes them in reverse
    order from the journal.
    """

    def __init__(self, store: InMemoryStore):
        self.store = store
        self._journal: List[Callable[[], None]] = []
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self):
        self._journal = []
        self.garages = InMemoryGarageRepository(self.store, self._journal)
        self.floors = InMemoryFloorRepository(self.store, self._journal)
        self.bays = InMemoryBayRepository(self.store, self._journal)
        self.parking_spots = InMemoryParkingSpotRepository(self.store, self._journal)
        self.cars = InMemoryCarRepository(self.store, self._journal)
        self.parking_fees = InMemoryParkingFeeRepository(self.store, self._journal)
        return self

    def commit(self):
        self._journal.clear()
        self._logger.debug("Transaction committed")

    def rollback(self):
        with self.store.lock:
            while self._journal:
                undo = self._journal.pop()
                undo()
        self._logger.debug("Transaction rolled back")


# ============================================================================
# SQLALCHEMY ORM MODELS
# ============================================================================

Base = declarative_base()


class AuditColumns:
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_by = Column(String(36))
    updated_by = Column(String(36))


class GarageModel(AuditColumns, Base):
    """SQLAlchemy model for Garage"""
    __tablename__ = 'garages'

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    location = Column(String(255), nullable=False)


class FloorModel(AuditColumns, Base):
    """SQLAlchemy model for Floor"""
    __tablename__ = 'floors'

    id = Column(String(36), primary_key=True)
    garage_id = Column(String(36), ForeignKey('garages.id'), nullable=False, index=True)
    name = Column(String(255), nullable=False)


class BayModel(AuditColumns, Base):
    """SQLAlchemy model for Bay"""
    __tablename__ = 'bays'

    id = Column(String(36), primary_key=True)
    floor_id = Column(String(36), ForeignKey('floors.id'), nullable=False, index=True)
    name = Column(String(255), nullable=False)


class ParkingSpotModel(AuditColumns, Base):
    """SQLAlchemy model for ParkingSpot"""
    __tablename__ = 'parking_spots'

    id = Column(String(36), primary_key=True)
    floor_id = Column(String(36), ForeignKey('floors.id'), nullable=False, index=True)
    bay_id = Column(String(36), ForeignKey('bays.id'), index=True)
    name = Column(String(255), nullable=False)
    size = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=ParkingSpotStatus.AVAILABLE.value, index=True)
    rate = Column(Numeric(10, 2), nullable=False)
    features = Column(JSON)


class CarModel(AuditColumns, Base):
    """SQLAlchemy model for Car"""
    __tablename__ = 'cars'

    id = Column(String(36), primary_key=True)
    license_plate = Column(String(20), nullable=False, unique=True, index=True)
    parking_spot_id = Column(String(36), ForeignKey('parking_spots.id'))
    checked_in_at = Column(DateTime(timezone=True))
    checked_out_at = Column(DateTime(timezone=True))

    # At most one car may reference a spot
    __table_args__ = (
        Index(
            'uq_cars_parking_spot_id', 'parking_spot_id', unique=True,
            sqlite_where=text('parking_spot_id IS NOT NULL'),
            postgresql_where=text('parking_spot_id IS NOT NULL'),
        ),
    )


class ParkingFeeModel(AuditColumns, Base):
    """SQLAlchemy model for ParkingFee"""
    __tablename__ = 'parking_fees'

    id = Column(String(36), primary_key=True)
    car_id = Column(String(36), ForeignKey('cars.id'), nullable=False, index=True)
    billed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


# ============================================================================
# DOMAIN <-> ORM MAPPER
# ============================================================================

class Mapper:
    """Maps between domain entities and ORM rows"""

    @staticmethod
    def audit_columns(entity: Entity) -> Dict[str, Any]:
        return {
            "created_at": entity.created_at,
            "updated_at": entity.updated_at,
            "created_by": entity.created_by,
            "updated_by": entity.updated_by,
        }

    @staticmethod
    def audit_fields(model) -> Dict[str, Any]:
        return {
            "created_at": ensure_utc(model.created_at),
            "updated_at": ensure_utc(model.updated_at),
            "created_by": model.created_by,
            "updated_by": model.updated_by,
        }

    @staticmethod
    def garage_to_columns(garage: Garage) -> Dict[str, Any]:
        return {"id": garage.id, "name": garage.name, "location": garage.location,
                **Mapper.audit_columns(garage)}

    @staticmethod
    def garage_to_domain(model: GarageModel) -> Garage:
        return Garage(name=model.name, location=model.location, id=model.id,
                      **Mapper.audit_fields(model))

    @staticmethod
    def floor_to_columns(floor: Floor) -> Dict[str, Any]:
        return {"id": floor.id, "garage_id": floor.garage_id, "name": floor.name,
                **Mapper.audit_columns(floor)}

    @staticmethod
    def floor_to_domain(model: FloorModel) -> Floor:
        return Floor(garage_id=model.garage_id, name=model.name, id=model.id,
                     **Mapper.audit_fields(model))

    @staticmethod
    def bay_to_columns(bay: Bay) -> Dict[str, Any]:
        return {"id": bay.id, "floor_id": bay.floor_id, "name": bay.name,
                **Mapper.audit_columns(bay)}

    @staticmethod
    def bay_to_domain(model: BayModel) -> Bay:
        return Bay(floor_id=model.floor_id, name=model.name, id=model.id,
                   **Mapper.audit_fields(model))

    @staticmethod
    def parking_spot_to_columns(spot: ParkingSpot) -> Dict[str, Any]:
        return {
            "id": spot.id,
            "floor_id": spot.floor_id,
            "bay_id": spot.bay_id,
            "name": spot.name,
            "size": spot.size.value,
            "status": spot.status.value,
            "rate": spot.rate,
            "features": spot.features.to_dict() if spot.features else None,
            **Mapper.audit_columns(spot),
        }

    @staticmethod
    def parking_spot_to_domain(model: ParkingSpotModel) -> ParkingSpot:
        return ParkingSpot(
            floor_id=model.floor_id,
            bay_id=model.bay_id,
            name=model.name,
            size=model.size,
            status=model.status,
            rate=model.rate,
            features=SpotFeatures.from_raw(model.features),
            id=model.id,
            **Mapper.audit_fields(model),
        )

    @staticmethod
    def car_to_columns(car: Car) -> Dict[str, Any]:
        return {
            "id": car.id,
            "license_plate": car.license_plate.value,
            "parking_spot_id": car.parking_spot_id,
            "checked_in_at": car.checked_in_at,
            "checked_out_at": car.checked_out_at,
            **Mapper.audit_columns(car),
        }

    @staticmethod
    def car_to_domain(model: CarModel) -> Car:
        return Car(
            license_plate=model.license_plate,
            parking_spot_id=model.parking_spot_id,
            checked_in_at=model.checked_in_at,
            checked_out_at=model.checked_out_at,
            id=model.id,
            **Mapper.audit_fields(model),
        )

    @staticmethod
    def parking_fee_to_columns(fee: ParkingFee) -> Dict[str, Any]:
        return {"id": fee.id, "car_id": fee.car_id, "billed_at": fee.billed_at,
                **Mapper.audit_columns(fee)}

    @staticmethod
    def parking_fee_to_domain(model: ParkingFeeModel) -> ParkingFee:
        return ParkingFee(car_id=model.car_id, billed_at=model.billed_at, id=model.id,
                          **Mapper.audit_fields(model))


# ============================================================================
# SQLALCHEMY REPOSITORIES
# ============================================================================

class SQLAlchemyRepository(Repository[T], ABC):
    """
    Base SQLAlchemy repository

    Driver failures are logged with their context and re-raised as
    DatabaseError; constraint violations become ConflictError. The owning
    unit of work rolls the session back.
    """

    def __init__(self, session: Session):
        self.session = session
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    @abstractmethod
    def model_class(self) -> Type[Base]:
        """Return SQLAlchemy model class"""
        pass

    @abstractmethod
    def to_domain(self, model) -> T:
        pass

    @abstractmethod
    def to_columns(self, entity: T) -> Dict[str, Any]:
        pass

    @contextmanager
    def _translate_errors(self, operation: str, **context):
        try:
            yield
        except IntegrityError as e:
            self._logger.error(f"Integrity error in {operation} {context}: {e.orig}")
            raise ConflictError(
                f"{self.resource_name} violates a data integrity constraint",
                code=INTEGRITY_ERROR,
                details={"operation": operation},
            ) from e
        except SQLAlchemyError as e:
            self._logger.error(f"Database error in {operation} {context}: {e}")
            raise DatabaseError(operation) from e

    def _query(self, **criteria):
        query = self.session.query(self.model_class)
        for key, value in criteria.items():
            column = getattr(self.model_class, key)
            if value is None:
                query = query.filter(column.is_(None))
            else:
                query = query.filter(column == _column_value(value))
        return query

    def add(self, entity: T) -> T:
        with self._translate_errors(f"{self.__class__.__name__}.add", id=entity.id):
            self.session.add(self.model_class(**self.to_columns(entity)))
            self.session.flush()
        self._logger.debug(f"Added {self.resource_name} {entity.id}")
        return entity

    def get(self, id: str) -> Optional[T]:
        with self._translate_errors(f"{self.__class__.__name__}.get", id=id):
            model = self.session.get(self.model_class, str(id))
            return self.to_domain(model) if model is not None else None

    def get_all(self) -> List[T]:
        return self.find_by()

    def update(self, entity: T) -> T:
        with self._translate_errors(f"{self.__class__.__name__}.update", id=entity.id):
            model = self.session.get(self.model_class, str(entity.id))
            if model is None:
                raise NotFoundError(self.resource_name, entity.id)
            for column, value in self.to_columns(entity).items():
                if column not in ('id', 'created_at', 'created_by'):
                    setattr(model, column, value)
            self.session.flush()
        self._logger.debug(f"Updated {self.resource_name} {entity.id}")
        return entity

    def delete(self, id: str) -> bool:
        with self._translate_errors(f"{self.__class__.__name__}.delete", id=id):
            model = self.session.get(self.model_class, str(id))
            if model is None:
                return False
            self.session.delete(model)
            self.session.flush()
        self._logger.debug(f"Deleted {self.resource_name} {id}")
        return True

    def find_by(self, **criteria) -> List[T]:
        with self._translate_errors(f"{self.__class__.__name__}.find_by", **criteria):
            models = self._query(**criteria).order_by(
                self.model_class.created_at.desc(), self.model_class.id.desc()
            ).all()
            return [self.to_domain(model) for model in models]

    def count_by(self, **criteria) -> int:
        with self._translate_errors(f"{self.__class__.__name__}.count_by", **criteria):
            return self._query(**criteria).count()


def _column_value(value):
    if isinstance(value, LicensePlate):
        return value.value
    if isinstance(value, ParkingSpotStatus):
        return value.value
    return value


class GarageRepository(SQLAlchemyRepository[Garage]):
    """Repository for garages"""
    resource_name = "Garage"
    model_class = GarageModel

    def to_domain(self, model):
        return Mapper.garage_to_domain(model)

    def to_columns(self, entity):
        return Mapper.garage_to_columns(entity)


class FloorRepository(SQLAlchemyRepository[Floor]):
    """Repository for floors"""
    resource_name = "Floor"
    model_class = FloorModel

    def to_domain(self, model):
        return Mapper.floor_to_domain(model)

    def to_columns(self, entity):
        return Mapper.floor_to_columns(entity)


class BayRepository(SQLAlchemyRepository[Bay]):
    """Repository for bays"""
    resource_name = "Bay"
    model_class = BayModel

    def to_domain(self, model):
        return Mapper.bay_to_domain(model)

    def to_columns(self, entity):
        return Mapper.bay_to_columns(entity)


class ParkingSpotRepository(ParkingSpotRepositoryMixin, SQLAlchemyRepository[ParkingSpot]):
    """Repository for parking spots"""
    model_class = ParkingSpotModel

    def to_domain(self, model):
        return Mapper.parking_spot_to_domain(model)

    def to_columns(self, entity):
        return Mapper.parking_spot_to_columns(entity)

    def find(self, spot_filter: Optional[SpotFilter] = None, newest_first: bool = True) -> List[ParkingSpot]:
        """Spots matching every set field of the filter"""
        spot_filter = spot_filter or SpotFilter()
        with self._translate_errors("ParkingSpotRepository.find", filter=spot_filter):
            query = self.session.query(ParkingSpotModel)
            if spot_filter.status is not None:
                query = query.filter(ParkingSpotModel.status == spot_filter.status.value)
            if spot_filter.floor_id is not None:
                query = query.filter(ParkingSpotModel.floor_id == spot_filter.floor_id)
            if spot_filter.wants_no_bay:
                query = query.filter(ParkingSpotModel.bay_id.is_(None))
            elif spot_filter.bay_id is not None:
                query = query.filter(ParkingSpotModel.bay_id == spot_filter.bay_id)
            if spot_filter.size is not None:
                query = query.filter(ParkingSpotModel.size == spot_filter.size.value)

            if newest_first:
                query = query.order_by(ParkingSpotModel.created_at.desc(), ParkingSpotModel.id.desc())
            else:
                query = query.order_by(ParkingSpotModel.created_at.asc(), ParkingSpotModel.id.asc())
            return [self.to_domain(model) for model in query.all()]

    def compare_and_set_status(
        self,
        id: str,
        expected: ParkingSpotStatus,
        new: ParkingSpotStatus,
        at: Optional[datetime] = None,
    ) -> bool:
        """UPDATE ... WHERE status = expected; True when a row changed"""
        with self._translate_errors("ParkingSpotRepository.compare_and_set_status", id=id):
            result = self.session.query(ParkingSpotModel).filter(
                ParkingSpotModel.id == str(id),
                ParkingSpotModel.status == ParkingSpotStatus(expected).value,
            ).update(
                {"status": ParkingSpotStatus(new).value, "updated_at": at or utcnow()},
                synchronize_session="fetch",
            )
            self.session.flush()
        return result > 0

    def update_status(self, id: str, status: ParkingSpotStatus, at: Optional[datetime] = None) -> ParkingSpot:
        with self._translate_errors("ParkingSpotRepository.update_status", id=id):
            model = self.session.get(ParkingSpotModel, str(id))
            if model is None:
                raise NotFoundError(self.resource_name, id)
            model.status = ParkingSpotStatus(status).value
            model.updated_at = at or utcnow()
            self.session.flush()
            return self.to_domain(model)


class CarRepository(CarRepositoryMixin, SQLAlchemyRepository[Car]):
    """Repository for cars"""
    model_class = CarModel

    def to_domain(self, model):
        return Mapper.car_to_domain(model)

    def to_columns(self, entity):
        return Mapper.car_to_columns(entity)

    def find_all_by_license_plate(self, plate: LicensePlate) -> List[Car]:
        return self.find_by(license_plate=plate)

    def find_checked_in(self) -> List[Car]:
        with self._translate_errors("CarRepository.find_checked_in"):
            models = self.session.query(CarModel).filter(
                CarModel.parking_spot_id.isnot(None),
                CarModel.checked_in_at.isnot(None),
                CarModel.checked_out_at.is_(None),
            ).order_by(CarModel.checked_in_at.desc()).all()
            return [self.to_domain(model) for model in models]

    def complete_checkout(self, car: Car, expected_spot_id: str) -> bool:
        """Write the closed visit only if the row is still parked at expected_spot_id"""
        with self._translate_errors("CarRepository.complete_checkout", id=car.id):
            result = self.session.query(CarModel).filter(
                CarModel.id == car.id,
                CarModel.parking_spot_id == expected_spot_id,
                CarModel.checked_out_at.is_(None),
            ).update(
                {
                    "parking_spot_id": None,
                    "checked_out_at": car.checked_out_at,
                    "updated_at": car.updated_at,
                    "updated_by": car.updated_by,
                },
                synchronize_session="fetch",
            )
            self.session.flush()
        return result > 0


class ParkingFeeRepository(SQLAlchemyRepository[ParkingFee]):
    """Repository for parking fees"""
    resource_name = "Parking fee"
    model_class = ParkingFeeModel

    def to_domain(self, model):
        return Mapper.parking_fee_to_domain(model)

    def to_columns(self, entity):
        return Mapper.parking_fee_to_columns(entity)


# ============================================================================
# SQLALCHEMY UNIT OF WORK
# ============================================================================

class SQLAlchemyUnitOfWork(UnitOfWork):
    """Unit of Work implementation with SQLAlchemy"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self):
        self.session = self.session_factory()

        self.garages = GarageRepository(self.session)
        self.floors = FloorRepository(self.session)
        self.bays = BayRepository(self.session)
        self.parking_spots = ParkingSpotRepository(self.session)
        self.cars = CarRepository(self.session)
        self.parking_fees = ParkingFeeRepository(self.session)
        return self

    def commit(self):
        """Commit the transaction"""
        try:
            self.session.commit()
            self._logger.debug("Transaction committed")
        except IntegrityError as e:
            self._logger.error(f"Integrity error committing transaction: {e.orig}")
            self.session.rollback()
            raise ConflictError("Transaction violates a data integrity constraint",
                                code=INTEGRITY_ERROR) from e
        except SQLAlchemyError as e:
            self._logger.error(f"Error committing transaction: {e}")
            self.session.rollback()
            raise DatabaseError("commit") from e

    def rollback(self):
        """Rollback the transaction"""
        self.session.rollback()
        self._logger.debug("Transaction rolled back")

    def _close(self):
        self.session.close()


# ============================================================================
# REPOSITORY FACTORY
# ============================================================================

class RepositoryFactory:
    """Builds unit-of-work factories for each storage backend"""

    @staticmethod
    def create_in_memory_uow_factory(store: Optional[InMemoryStore] = None) -> Callable[[], UnitOfWork]:
        store = store or InMemoryStore()
        return partial(InMemoryUnitOfWork, store)

    @staticmethod
    def create_engine(database_url: str, echo: bool = False):
        kwargs: Dict[str, Any] = {"echo": echo}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise each session sees an empty database
                kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)

    @staticmethod
    def create_sqlalchemy_uow_factory(database_url: str, echo: bool = False) -> Callable[[], UnitOfWork]:
        """Create the engine, ensure the schema and return a UoW factory"""
        engine = RepositoryFactory.create_engine(database_url, echo=echo)
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

        # Create tables if they don't exist
        Base.metadata.create_all(bind=engine)

        return partial(SQLAlchemyUnitOfWork, SessionLocal)
