# File: parking_garage/infrastructure/messaging.py
"""
Domain events for the Parking Garage system

The occupancy coordinator publishes an event after every committed
check-in, check-out and spot status change. Subscribers run in-process
and never affect the outcome of the operation that published.

Components:
1. EventType / DomainEvent - what happened, to which entity, when
2. EventBus - in-process publish/subscribe
3. EventStore - MongoDB audit trail of occupancy events
4. EventStoreHandler - subscriber that persists events to the store
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

import pymongo
from pymongo.errors import PyMongoError

from ..domain.models import utcnow


# ============================================================================
# EVENT TYPES
# ============================================================================

class EventType(str, Enum):
    CAR_CHECKED_IN = "car_checked_in"
    CAR_CHECKED_OUT = "car_checked_out"
    SPOT_STATUS_CHANGED = "spot_status_changed"


@dataclass
class DomainEvent:
    """Something that happened to an aggregate"""
    event_type: EventType
    aggregate_id: str
    aggregate_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=utcnow)
    correlation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['event_type'] = self.event_type.value
        data['timestamp'] = self.timestamp.isoformat()
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


def car_checked_in(car, spot, correlation_id: Optional[str] = None) -> DomainEvent:
    return DomainEvent(
        event_type=EventType.CAR_CHECKED_IN,
        aggregate_id=car.id,
        aggregate_type="Car",
        data={
            "license_plate": car.license_plate.value,
            "parking_spot_id": spot.id,
            "checked_in_at": car.checked_in_at.isoformat(),
        },
        correlation_id=correlation_id,
    )


def car_checked_out(car, spot_id: str, correlation_id: Optional[str] = None) -> DomainEvent:
    return DomainEvent(
        event_type=EventType.CAR_CHECKED_OUT,
        aggregate_id=car.id,
        aggregate_type="Car",
        data={
            "license_plate": car.license_plate.value,
            "parking_spot_id": spot_id,
            "checked_in_at": car.checked_in_at.isoformat() if car.checked_in_at else None,
            "checked_out_at": car.checked_out_at.isoformat(),
        },
        correlation_id=correlation_id,
    )


def spot_status_changed(spot_id: str, old_status, new_status, correlation_id: Optional[str] = None) -> DomainEvent:
    return DomainEvent(
        event_type=EventType.SPOT_STATUS_CHANGED,
        aggregate_id=spot_id,
        aggregate_type="ParkingSpot",
        data={"from": old_status.value, "to": new_status.value},
        correlation_id=correlation_id,
    )


# ============================================================================
# EVENT HANDLERS
# ============================================================================

class EventHandler(ABC):
    """Abstract base class for event handlers"""

    @abstractmethod
    def handle(self, event: DomainEvent) -> None:
        pass

    def can_handle(self, event: DomainEvent) -> bool:
        return True


class LoggingEventHandler(EventHandler):
    """Writes every event to the application log"""

    def __init__(self):
        self._logger = logging.getLogger(self.__class__.__name__)

    def handle(self, event: DomainEvent) -> None:
        self._logger.info(f"{event.event_type.value} {event.aggregate_type}={event.aggregate_id} {event.data}")


# ============================================================================
# EVENT BUS
# ============================================================================

class EventBus:
    """
    In-memory event bus for intra-process event publishing

    A failing handler is logged and skipped; the remaining handlers
    still run.
    """

    def __init__(self):
        self._subscribers: Dict[EventType, List[EventHandler]] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._subscribers.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)
                self._logger.debug(f"Subscribed {handler.__class__.__name__} to {event_type.value}")

    def subscribe_all(self, handler: EventHandler) -> None:
        for event_type in EventType:
            self.subscribe(event_type, handler)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: DomainEvent) -> None:
        self._logger.debug(f"Publishing event: {event.event_type.value} (ID: {event.event_id})")
        with self._lock:
            handlers = list(self._subscribers.get(event.event_type, []))

        for handler in handlers:
            if not handler.can_handle(event):
                continue
            try:
                handler.handle(event)
            except Exception as e:
                self._logger.error(
                    f"Error handling event {event.event_type.value} with {handler.__class__.__name__}: {e}",
                    exc_info=True,
                )

    def publish_all(self, events: List[DomainEvent]) -> None:
        for event in events:
            self.publish(event)


# ============================================================================
# EVENT STORE (MongoDB)
# ============================================================================

class EventStore:
    """
    Occupancy audit trail in MongoDB

    One document per event, indexed by aggregate and time, so the history
    of a spot or a car can be read back in order.
    """

    def __init__(
        self,
        mongo_url: str = "mongodb://localhost:27017",
        database: str = "parking_garage",
        collection: str = "occupancy_events",
        client: Optional[pymongo.MongoClient] = None,
        **kwargs,
    ):
        self.mongo_url = mongo_url
        self._logger = logging.getLogger(self.__class__.__name__)

        self.client = client or pymongo.MongoClient(mongo_url, **kwargs)
        self.db = self.client[database]
        self.events_collection = self.db[collection]

        self.events_collection.create_index([('aggregate_id', 1), ('timestamp', 1)])
        self.events_collection.create_index([('event_type', 1)])

    def save(self, event: DomainEvent) -> bool:
        try:
            result = self.events_collection.insert_one(self._event_to_document(event))
            self._logger.debug(f"Saved event {event.event_type.value} for {event.aggregate_id}")
            return result.acknowledged
        except PyMongoError as e:
            self._logger.error(f"Error saving event {event.event_id} to store: {e}")
            return False

    def get_events_for_aggregate(self, aggregate_id: str, limit: int = 100) -> List[DomainEvent]:
        cursor = self.events_collection.find(
            {'aggregate_id': str(aggregate_id)}
        ).sort('timestamp', pymongo.ASCENDING).limit(limit)
        return [self._document_to_event(doc) for doc in cursor]

    def get_events_by_type(self, event_type: EventType, limit: int = 100) -> List[DomainEvent]:
        cursor = self.events_collection.find(
            {'event_type': event_type.value}
        ).sort('timestamp', pymongo.DESCENDING).limit(limit)
        return [self._document_to_event(doc) for doc in cursor]

    def _event_to_document(self, event: DomainEvent) -> Dict[str, Any]:
        return {
            '_id': event.event_id,
            'event_type': event.event_type.value,
            'timestamp': event.timestamp,
            'aggregate_id': event.aggregate_id,
            'aggregate_type': event.aggregate_type,
            'data': event.data,
            'correlation_id': event.correlation_id,
        }

    def _document_to_event(self, doc: Dict[str, Any]) -> DomainEvent:
        return DomainEvent(
            event_type=EventType(doc['event_type']),
            aggregate_id=doc['aggregate_id'],
            aggregate_type=doc.get('aggregate_type', ''),
            data=doc.get('data', {}),
            event_id=doc['_id'],
            timestamp=doc['timestamp'],
            correlation_id=doc.get('correlation_id'),
        )

    def close(self):
        self.client.close()
        self._logger.info("Event store closed")


class EventStoreHandler(EventHandler):
    """Persists every published event to an EventStore"""

    def __init__(self, store: EventStore):
        self.store = store

    def handle(self, event: DomainEvent) -> None:
        self.store.save(event)
