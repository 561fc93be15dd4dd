# File: parking_garage/domain/models.py
"""
Domain Models for the Parking Garage system

This module contains:
1. Value Objects: LicensePlate, SpotFeatures
2. Enums: SpotSize, ParkingSpotStatus
3. Entities: Garage, Floor, Bay, ParkingSpot, Car, ParkingFee

Entities validate their own field invariants on construction and raise
ValidationError naming the offending field. Timestamps are timezone-aware
UTC datetimes and are rendered as ISO-8601 strings by to_dict().
"""

import copy
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from .exceptions import ValidationError


MAX_LICENSE_PLATE_LENGTH = 20


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and normalize aware ones"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _require_text(value: Optional[str], message: str, field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(message, field=field)
    return str(value).strip()


# ============================================================================
# ENUMS
# ============================================================================

class SpotSize(str, Enum):
    """Physical size class of a parking spot"""
    COMPACT = "compact"
    STANDARD = "standard"
    OVERSIZED = "oversized"

    @classmethod
    def values(cls):
        return [member.value for member in cls]


class ParkingSpotStatus(str, Enum):
    """Occupancy status of a parking spot"""
    AVAILABLE = "available"
    OCCUPIED = "occupied"

    @classmethod
    def values(cls):
        return [member.value for member in cls]


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class LicensePlate:
    """
    Value Object: normalized license plate

    Input is trimmed and uppercased; the result must be 1-20 characters.
    Two plates are equal when their normalized values are equal, which makes
    every lookup by plate case-insensitive.
    """
    value: str

    def __post_init__(self):
        if self.value is None:
            raise ValidationError("License plate cannot be empty", field="license_plate")

        normalized = str(self.value).strip().upper()
        if not normalized:
            raise ValidationError("License plate cannot be empty", field="license_plate")
        if len(normalized) > MAX_LICENSE_PLATE_LENGTH:
            raise ValidationError(
                f"License plate cannot exceed {MAX_LICENSE_PLATE_LENGTH} characters",
                field="license_plate",
            )
        object.__setattr__(self, "value", normalized)

    @classmethod
    def create(cls, raw) -> "LicensePlate":
        if isinstance(raw, LicensePlate):
            return raw
        return cls(raw)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class SpotFeatures:
    """
    Value Object: boolean amenity flags of a parking spot

    Serialized with the camelCase keys the stored JSON uses. Unknown keys
    in raw input are ignored.
    """
    ev_charging: bool = False
    handicap: bool = False
    vip: bool = False
    covered: bool = False

    _KEYS = {
        "evCharging": "ev_charging",
        "handicap": "handicap",
        "vip": "vip",
        "covered": "covered",
    }

    @classmethod
    def from_raw(cls, raw: Optional[Dict[str, Any]]) -> Optional["SpotFeatures"]:
        if raw is None:
            return None
        if isinstance(raw, SpotFeatures):
            return raw
        if not isinstance(raw, dict):
            raise ValidationError("Features must be a valid JSON object", field="features")

        flags = {}
        for key, attribute in cls._KEYS.items():
            if key in raw:
                flags[attribute] = bool(raw[key])
            elif attribute in raw:
                flags[attribute] = bool(raw[attribute])
        return cls(**flags)

    def to_dict(self) -> Dict[str, bool]:
        return {key: getattr(self, attribute) for key, attribute in self._KEYS.items()}


# ============================================================================
# ENTITY BASE CLASS
# ============================================================================

class Entity:
    """
    Base class for all domain entities
    Provides identity, audit fields and copy semantics
    """

    def __init__(
        self,
        id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        created_by: Optional[str] = None,
        updated_by: Optional[str] = None,
    ):
        self._id = id or str(uuid.uuid4())
        now = utcnow()
        self.created_at = ensure_utc(created_at) or now
        self.updated_at = ensure_utc(updated_at) or self.created_at
        self.created_by = created_by
        self.updated_by = updated_by

    @property
    def id(self) -> str:
        return self._id

    def touch(self, at: Optional[datetime] = None, by: Optional[str] = None) -> None:
        """Record a modification"""
        self.updated_at = ensure_utc(at) or utcnow()
        if by is not None:
            self.updated_by = by

    def copy(self):
        """Detached copy, so stored state is never shared with callers"""
        return copy.deepcopy(self)

    def _audit_dict(self) -> Dict[str, Any]:
        return {
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
            "created_by": self.created_by,
            "updated_by": self.updated_by,
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entity):
            return False
        return self.id == other.id and type(self) == type(other)

    def __hash__(self) -> int:
        return hash((self.id, type(self).__name__))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id})"


# ============================================================================
# GARAGE STRUCTURE
# ============================================================================

class Garage(Entity):
    """Entity: a garage; owns floors"""

    def __init__(self, name: str, location: str, id: Optional[str] = None, **audit):
        super().__init__(id, **audit)
        self.name = name
        self.location = location
        self._validate()

    def _validate(self) -> None:
        self.name = _require_text(self.name, "Garage name is required", "name")
        self.location = _require_text(self.location, "Garage location is required", "location")

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "location": self.location, **self._audit_dict()}


class Floor(Entity):
    """Entity: a floor of a garage"""

    def __init__(self, garage_id: str, name: str, id: Optional[str] = None, **audit):
        super().__init__(id, **audit)
        self.garage_id = garage_id
        self.name = name
        self._validate()

    def _validate(self) -> None:
        self.garage_id = _require_text(self.garage_id, "Garage ID is required", "garage_id")
        self.name = _require_text(self.name, "Floor name is required", "name")

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "garage_id": self.garage_id, "name": self.name, **self._audit_dict()}


class Bay(Entity):
    """Entity: optional grouping of spots on a floor"""

    def __init__(self, floor_id: str, name: str, id: Optional[str] = None, **audit):
        super().__init__(id, **audit)
        self.floor_id = floor_id
        self.name = name
        self._validate()

    def _validate(self) -> None:
        self.floor_id = _require_text(self.floor_id, "Floor ID is required", "floor_id")
        self.name = _require_text(self.name, "Bay name is required", "name")

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "floor_id": self.floor_id, "name": self.name, **self._audit_dict()}


# ============================================================================
# PARKING SPOT
# ============================================================================

class ParkingSpot(Entity):
    """
    Entity: a single parking space

    The status field is the spot half of the occupancy relation. It is only
    changed by the occupancy coordinator (check-in, check-out, mark_*).
    """

    def __init__(
        self,
        floor_id: str,
        name: str,
        size,
        rate,
        status=ParkingSpotStatus.AVAILABLE,
        bay_id: Optional[str] = None,
        features=None,
        id: Optional[str] = None,
        **audit,
    ):
        super().__init__(id, **audit)
        self.floor_id = floor_id
        self.bay_id = bay_id or None
        self.name = name
        self.size = size
        self.status = status
        self.rate = rate
        self.features = features
        self._validate()

    def _validate(self) -> None:
        self.floor_id = _require_text(self.floor_id, "Floor ID is required", "floor_id")
        self.name = _require_text(self.name, "Parking spot name is required", "name")

        try:
            self.size = SpotSize(self.size)
        except ValueError:
            raise ValidationError(
                f"Invalid spot size. Must be one of: {', '.join(SpotSize.values())}",
                field="size",
            )

        try:
            self.status = ParkingSpotStatus(self.status)
        except ValueError:
            raise ValidationError(
                f"Invalid status. Must be one of: {', '.join(ParkingSpotStatus.values())}",
                field="status",
            )

        self.rate = to_decimal(self.rate)
        if self.rate <= 0:
            raise ValidationError("Rate must be greater than 0", field="rate")

        self.features = SpotFeatures.from_raw(self.features)

    @property
    def is_available(self) -> bool:
        return self.status == ParkingSpotStatus.AVAILABLE

    @property
    def is_occupied(self) -> bool:
        return self.status == ParkingSpotStatus.OCCUPIED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "floor_id": self.floor_id,
            "bay_id": self.bay_id,
            "name": self.name,
            "size": self.size.value,
            "status": self.status.value,
            "rate": str(self.rate),
            "features": self.features.to_dict() if self.features else None,
            **self._audit_dict(),
        }


def to_decimal(value) -> Decimal:
    """Coerce a rate to Decimal, rejecting non-numeric input"""
    if isinstance(value, bool) or value is None:
        raise ValidationError("Parking rate must be a number", field="rate")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValidationError("Parking rate must be a number", field="rate")
    if not result.is_finite():
        raise ValidationError("Parking rate must be a number", field="rate")
    return result


# ============================================================================
# CAR AND FEES
# ============================================================================

class Car(Entity):
    """
    Entity: a vehicle known to the garage

    A car is checked in while it holds a parking_spot_id, has a check-in
    time and has no check-out time. Closed visits keep checked_in_at and
    checked_out_at as history.
    """

    def __init__(
        self,
        license_plate,
        parking_spot_id: Optional[str] = None,
        checked_in_at: Optional[datetime] = None,
        checked_out_at: Optional[datetime] = None,
        id: Optional[str] = None,
        **audit,
    ):
        super().__init__(id, **audit)
        self.license_plate = LicensePlate.create(license_plate)
        self.parking_spot_id = parking_spot_id or None
        self.checked_in_at = ensure_utc(checked_in_at)
        self.checked_out_at = ensure_utc(checked_out_at)
        self._validate()

    def _validate(self) -> None:
        self.checked_in_at = ensure_utc(self.checked_in_at)
        self.checked_out_at = ensure_utc(self.checked_out_at)
        if (
            self.checked_in_at is not None
            and self.checked_out_at is not None
            and self.checked_out_at < self.checked_in_at
        ):
            raise ValidationError(
                "Check-out time cannot be earlier than check-in time",
                field="checked_out_at",
            )

    @property
    def is_checked_in(self) -> bool:
        return (
            self.checked_in_at is not None
            and self.checked_out_at is None
            and self.parking_spot_id is not None
        )

    @property
    def is_checked_out(self) -> bool:
        return self.checked_out_at is not None

    def check_in(self, parking_spot_id: str, at: datetime) -> None:
        """Start a new visit at the given spot"""
        self.parking_spot_id = parking_spot_id
        self.checked_in_at = ensure_utc(at)
        self.checked_out_at = None
        self.touch(at)

    def check_out(self, at: datetime) -> None:
        """Close the current visit; never earlier than the check-in time"""
        at = ensure_utc(at)
        if self.checked_in_at is not None and at < self.checked_in_at:
            at = self.checked_in_at
        self.parking_spot_id = None
        self.checked_out_at = at
        self.touch(at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "license_plate": self.license_plate.value,
            "parking_spot_id": self.parking_spot_id,
            "checked_in_at": _isoformat(self.checked_in_at),
            "checked_out_at": _isoformat(self.checked_out_at),
            "is_checked_in": self.is_checked_in,
            **self._audit_dict(),
        }


class ParkingFee(Entity):
    """Entity: a billing record for a car; untouched by the occupancy workflow"""

    def __init__(
        self,
        car_id: str,
        billed_at: Optional[datetime] = None,
        id: Optional[str] = None,
        **audit,
    ):
        super().__init__(id, **audit)
        self.car_id = car_id
        self.billed_at = ensure_utc(billed_at) or self.created_at
        self._validate()

    def _validate(self) -> None:
        self.car_id = _require_text(self.car_id, "Car ID is required", "car_id")
        if self.billed_at is None:
            raise ValidationError("Billed at is required", field="billed_at")
        self.billed_at = ensure_utc(self.billed_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "car_id": self.car_id,
            "billed_at": _isoformat(self.billed_at),
            **self._audit_dict(),
        }
