# File: parking_garage/domain/rules.py
"""
Business rules for parking spots

The status machine has two states and two legal moves:

    available --> occupied     (check-in, mark_occupied)
    occupied  --> available    (check-out, mark_available)

The table below is the single source of truth. Every status mutation is
checked against it before anything is written.
"""

from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from .exceptions import ValidationError
from .models import ParkingSpotStatus, SpotFeatures, to_decimal


MAX_RATE = Decimal("10000")

ALLOWED_TRANSITIONS: Dict[Tuple[ParkingSpotStatus, ParkingSpotStatus], bool] = {
    (ParkingSpotStatus.AVAILABLE, ParkingSpotStatus.OCCUPIED): True,
    (ParkingSpotStatus.OCCUPIED, ParkingSpotStatus.AVAILABLE): True,
}


class ParkingSpotRules:
    """Stateless validators for spot status, rate and features"""

    @staticmethod
    def can_transition(current, new) -> bool:
        return ALLOWED_TRANSITIONS.get(
            (ParkingSpotStatus(current), ParkingSpotStatus(new)), False
        )

    @staticmethod
    def validate_status_transition(current, new) -> None:
        try:
            current = ParkingSpotStatus(current)
            new = ParkingSpotStatus(new)
        except ValueError:
            raise ValidationError(
                f"Invalid status. Must be one of: {', '.join(ParkingSpotStatus.values())}",
                field="status",
            )

        if current == new:
            raise ValidationError("Cannot transition to the same status", field="status")

        if not ALLOWED_TRANSITIONS.get((current, new), False):
            raise ValidationError(
                f"Cannot transition from {current.value} to {new.value}", field="status"
            )

    @staticmethod
    def validate_rate(rate) -> Decimal:
        value = to_decimal(rate)
        if value <= 0:
            raise ValidationError("Parking rate must be greater than 0", field="rate")
        if value > MAX_RATE:
            raise ValidationError(f"Parking rate cannot exceed {MAX_RATE}", field="rate")
        return value

    @staticmethod
    def validate_features(features: Optional[Any]) -> Optional[SpotFeatures]:
        # None means "no features"; any non-object is rejected
        return SpotFeatures.from_raw(features)
