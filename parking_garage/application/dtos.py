# File: parking_garage/application/dtos.py
"""
Data Transfer Objects (DTOs) for the Parking Garage system

1. Input DTOs - create/update payloads for each entity
2. Workflow DTOs - check-in, check-out and spot status requests
3. Query DTOs - parking spot and child-entity filters

Input is validated here first (shape, types, trimming); the domain
entities then enforce their own invariants. pydantic failures are
converted to the domain ValidationError by parse().
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..domain.exceptions import ValidationError
from ..domain.models import MAX_LICENSE_PLATE_LENGTH, ParkingSpotStatus, SpotSize
from .queries import NO_BAY, SpotFilter

DTO = TypeVar('DTO', bound='BaseDTO')


# ============================================================================
# BASE DTO CLASSES
# ============================================================================

class BaseDTO(BaseModel):
    """Base DTO with common functionality"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra='ignore',
    )

    def to_dict(self, exclude_unset: bool = False) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=exclude_unset)

    def changes(self) -> Dict[str, Any]:
        """Fields the caller actually sent"""
        return self.model_dump(exclude_unset=True)


def parse(dto_class: Type[DTO], data: Optional[Dict[str, Any]]) -> DTO:
    """Validate raw input into a DTO, raising the domain ValidationError"""
    try:
        return dto_class.model_validate(data or {})
    except PydanticValidationError as e:
        errors = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in e.errors()
        ]
        first = errors[0] if errors else {"field": None, "message": "Invalid input"}
        raise ValidationError(
            f"Invalid {first['field']}: {first['message']}" if first["field"] else first["message"],
            field=first["field"] or None,
            details={"field": first["field"], "errors": errors},
        ) from e


# ============================================================================
# GARAGE STRUCTURE INPUT DTOs
# ============================================================================

class GarageCreateDTO(BaseDTO):
    name: str = Field(min_length=1)
    location: str = Field(min_length=1)


class GarageUpdateDTO(BaseDTO):
    name: Optional[str] = Field(default=None, min_length=1)
    location: Optional[str] = Field(default=None, min_length=1)


class FloorCreateDTO(BaseDTO):
    garage_id: str = Field(min_length=1)
    name: str = Field(min_length=1)


class FloorUpdateDTO(BaseDTO):
    garage_id: Optional[str] = Field(default=None, min_length=1)
    name: Optional[str] = Field(default=None, min_length=1)


class FloorQueryDTO(BaseDTO):
    garage_id: Optional[str] = None


class BayCreateDTO(BaseDTO):
    floor_id: str = Field(min_length=1)
    name: str = Field(min_length=1)


class BayUpdateDTO(BaseDTO):
    floor_id: Optional[str] = Field(default=None, min_length=1)
    name: Optional[str] = Field(default=None, min_length=1)


class BayQueryDTO(BaseDTO):
    floor_id: Optional[str] = None


# ============================================================================
# PARKING SPOT DTOs
# ============================================================================

class ParkingSpotCreateDTO(BaseDTO):
    """New spots always start available; occupancy comes from check-in"""
    floor_id: str = Field(min_length=1)
    bay_id: Optional[str] = None
    name: str = Field(min_length=1)
    size: SpotSize
    status: ParkingSpotStatus = ParkingSpotStatus.AVAILABLE
    rate: Decimal = Field(gt=0)
    features: Optional[Dict[str, Any]] = None

    @field_validator('status')
    @classmethod
    def new_spots_are_available(cls, value):
        if value != ParkingSpotStatus.AVAILABLE:
            raise ValueError("new parking spots must be available; use check-in to occupy them")
        return value


class ParkingSpotUpdateDTO(BaseDTO):
    floor_id: Optional[str] = Field(default=None, min_length=1)
    bay_id: Optional[str] = None
    name: Optional[str] = Field(default=None, min_length=1)
    size: Optional[SpotSize] = None
    status: Optional[ParkingSpotStatus] = None
    rate: Optional[Decimal] = Field(default=None, gt=0)
    features: Optional[Dict[str, Any]] = None


class ParkingSpotQueryDTO(BaseDTO):
    """Spot listing filters; bay_id may be a bay id or 'none' for spots without a bay"""
    status: Optional[ParkingSpotStatus] = None
    floor_id: Optional[str] = None
    bay_id: Optional[str] = None
    size: Optional[SpotSize] = None
    sort: str = Field(default="desc", pattern="^(asc|desc)$")

    @field_validator('bay_id')
    @classmethod
    def normalize_no_bay(cls, value):
        if value is not None and value.lower() == NO_BAY:
            return NO_BAY
        return value

    def to_filter(self) -> SpotFilter:
        return SpotFilter(status=self.status, floor_id=self.floor_id, bay_id=self.bay_id, size=self.size)

    @property
    def newest_first(self) -> bool:
        return self.sort == "desc"


class SpotStatusPatchDTO(BaseDTO):
    """Status change request; only the two machine states are accepted"""
    status: ParkingSpotStatus


# ============================================================================
# CAR AND FEE DTOs
# ============================================================================

class CarCreateDTO(BaseDTO):
    """Administrative car record; parking_spot_id is only ever set by check-in"""
    license_plate: str = Field(min_length=1, max_length=MAX_LICENSE_PLATE_LENGTH)
    checked_in_at: Optional[datetime] = None
    checked_out_at: Optional[datetime] = None


class CarUpdateDTO(BaseDTO):
    license_plate: Optional[str] = Field(default=None, min_length=1, max_length=MAX_LICENSE_PLATE_LENGTH)
    checked_in_at: Optional[datetime] = None
    checked_out_at: Optional[datetime] = None


class ParkingFeeCreateDTO(BaseDTO):
    car_id: str = Field(min_length=1)
    billed_at: Optional[datetime] = None


class ParkingFeeUpdateDTO(BaseDTO):
    car_id: Optional[str] = Field(default=None, min_length=1)
    billed_at: Optional[datetime] = None


class ParkingFeeQueryDTO(BaseDTO):
    car_id: Optional[str] = None


# ============================================================================
# WORKFLOW DTOs
# ============================================================================

class CheckInRequestDTO(BaseDTO):
    license_plate: str = Field(min_length=1, max_length=MAX_LICENSE_PLATE_LENGTH)
    parking_spot_id: str = Field(min_length=1)


class CheckOutRequestDTO(BaseDTO):
    car_id: Optional[str] = Field(default=None, min_length=1)
    license_plate: Optional[str] = Field(default=None, min_length=1, max_length=MAX_LICENSE_PLATE_LENGTH)

    @field_validator('license_plate')
    @classmethod
    def upper(cls, value):
        return value.upper() if value else value

    @model_validator(mode='after')
    def car_or_plate(self):
        if not self.car_id and not self.license_plate:
            raise ValueError("either car_id or license_plate is required")
        return self


class SpotStatusRequestDTO(SpotStatusPatchDTO):
    parking_spot_id: str = Field(min_length=1)


class FindCarRequestDTO(BaseDTO):
    license_plate: str = Field(min_length=1, max_length=MAX_LICENSE_PLATE_LENGTH)


class RecentCheckoutsRequestDTO(BaseDTO):
    limit: Optional[int] = Field(default=None, ge=1, le=100)
