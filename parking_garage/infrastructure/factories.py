# File: parking_garage/infrastructure/factories.py
"""
Composition root for the Parking Garage system

Builds every collaborator from Settings and hands them to each other
explicitly; nothing in the application holds module-level singletons.

    settings -> unit-of-work factory (SQLAlchemy or in-memory)
             -> lock manager (in-process or redis)
             -> event bus (+ MongoDB event store when MONGO_URL is set)
             -> coordinator -> services -> command processor
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from ..config import Settings
from .locking import InProcessLockManager, LockManager, RedisLockManager
from .messaging import EventBus, EventStore, EventStoreHandler, LoggingEventHandler
from .repositories import InMemoryStore, RepositoryFactory, UnitOfWork

logger = logging.getLogger(__name__)


@dataclass
class Application:
    """Everything an outer surface needs"""
    settings: Settings
    uow_factory: Callable[[], UnitOfWork]
    lock_manager: LockManager
    event_bus: EventBus
    event_store: Optional[EventStore]
    coordinator: 'OccupancyCoordinator'
    garages: 'GarageService'
    floors: 'FloorService'
    bays: 'BayService'
    parking_spots: 'ParkingSpotService'
    cars: 'CarService'
    parking_fees: 'ParkingFeeService'
    command_processor: 'CommandProcessor'

    def close(self):
        if self.event_store is not None:
            self.event_store.close()


class ServiceFactory:
    """Factory for creating application services around one unit-of-work factory"""

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        lock_manager: Optional[LockManager] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.uow_factory = uow_factory
        self.lock_manager = lock_manager or InProcessLockManager()
        self.event_bus = event_bus or EventBus()

    def create_coordinator(self) -> 'OccupancyCoordinator':
        from ..application.occupancy import OccupancyCoordinator

        return OccupancyCoordinator(self.uow_factory, self.lock_manager, self.event_bus)

    def create_application(self, settings: Settings, event_store: Optional[EventStore] = None) -> Application:
        from ..application.commands import CommandProcessor
        from ..application.services import (
            BayService, CarService, FloorService, GarageService,
            ParkingFeeService, ParkingSpotService,
        )

        coordinator = self.create_coordinator()
        cars = CarService(self.uow_factory, self.lock_manager, settings.RECENT_HISTORY_LIMIT)
        return Application(
            settings=settings,
            uow_factory=self.uow_factory,
            lock_manager=self.lock_manager,
            event_bus=self.event_bus,
            event_store=event_store,
            coordinator=coordinator,
            garages=GarageService(self.uow_factory, self.lock_manager),
            floors=FloorService(self.uow_factory, self.lock_manager),
            bays=BayService(self.uow_factory, self.lock_manager),
            parking_spots=ParkingSpotService(self.uow_factory, coordinator, self.lock_manager),
            cars=cars,
            parking_fees=ParkingFeeService(self.uow_factory, self.lock_manager),
            command_processor=CommandProcessor(coordinator, cars),
        )


def create_lock_manager(settings: Settings) -> LockManager:
    if settings.LOCK_BACKEND == "redis":
        logger.info("Using redis lock manager")
        return RedisLockManager.from_url(
            settings.REDIS_URL,
            timeout=settings.LOCK_TIMEOUT_SECONDS,
            blocking_timeout=settings.LOCK_BLOCKING_TIMEOUT_SECONDS,
        )
    return InProcessLockManager(timeout=settings.LOCK_TIMEOUT_SECONDS)


def build_application(settings: Optional[Settings] = None, in_memory: bool = False) -> Application:
    """Wire the whole application from settings"""
    settings = settings or Settings.load()

    if in_memory:
        uow_factory = RepositoryFactory.create_in_memory_uow_factory(InMemoryStore())
    else:
        uow_factory = RepositoryFactory.create_sqlalchemy_uow_factory(
            settings.DATABASE_URL, echo=settings.DATABASE_ECHO
        )

    event_bus = EventBus()
    event_bus.subscribe_all(LoggingEventHandler())

    event_store = None
    if settings.MONGO_URL:
        event_store = EventStore(settings.MONGO_URL, database=settings.EVENTS_DATABASE)
        event_bus.subscribe_all(EventStoreHandler(event_store))

    factory = ServiceFactory(uow_factory, create_lock_manager(settings), event_bus)
    application = factory.create_application(settings, event_store)
    logger.info(f"Parking garage application ready: {settings!r}")
    return application
