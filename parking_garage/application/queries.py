# File: parking_garage/application/queries.py
"""
Read-side helpers for the Parking Garage system

1. SpotFilter - AND-combined predicate over status, floor, bay and size
2. Ordering - newest first by created_at unless asked otherwise
3. Car views - currently checked-in cars and the recent check-out history
4. Occupancy summary - the dashboard figures
5. Occupancy audit - lists every break of the spot/car occupancy relation

Everything here is pure: functions take entity lists and return new lists.
Repositories reuse SpotFilter so in-memory and SQL queries agree.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from ..domain.models import Car, ParkingSpot, ParkingSpotStatus, SpotSize


# Filter marker meaning "spots that are not in any bay"
NO_BAY = "none"

DEFAULT_HISTORY_LIMIT = 10


# ============================================================================
# SPOT FILTER
# ============================================================================

@dataclass(frozen=True)
class SpotFilter:
    """
    Predicate over parking spots

    A field left as None matches every spot. bay_id may be a bay id or
    NO_BAY, which matches spots whose bay_id is None.
    """
    status: Optional[ParkingSpotStatus] = None
    floor_id: Optional[str] = None
    bay_id: Optional[str] = None
    size: Optional[SpotSize] = None

    def __post_init__(self):
        if self.status is not None:
            object.__setattr__(self, "status", ParkingSpotStatus(self.status))
        if self.size is not None:
            object.__setattr__(self, "size", SpotSize(self.size))

    @property
    def wants_no_bay(self) -> bool:
        return self.bay_id == NO_BAY

    def matches(self, spot: ParkingSpot) -> bool:
        if self.status is not None and spot.status != self.status:
            return False
        if self.floor_id is not None and spot.floor_id != self.floor_id:
            return False
        if self.bay_id is not None:
            if self.wants_no_bay:
                if spot.bay_id is not None:
                    return False
            elif spot.bay_id != self.bay_id:
                return False
        if self.size is not None and spot.size != self.size:
            return False
        return True

    def with_status(self, status: ParkingSpotStatus) -> "SpotFilter":
        return SpotFilter(status=status, floor_id=self.floor_id, bay_id=self.bay_id, size=self.size)


def filter_spots(
    spots: Iterable[ParkingSpot],
    spot_filter: Optional[SpotFilter] = None,
    newest_first: bool = True,
) -> List[ParkingSpot]:
    """Apply a filter and order by created_at"""
    spot_filter = spot_filter or SpotFilter()
    selected = [spot for spot in spots if spot_filter.matches(spot)]
    return order_by_created(selected, newest_first)


def order_by_created(entities: Iterable, newest_first: bool = True) -> List:
    return sorted(entities, key=lambda e: (e.created_at, e.id), reverse=newest_first)


# ============================================================================
# CAR VIEWS
# ============================================================================

def checked_in_cars(cars: Iterable[Car]) -> List[Car]:
    """Cars currently occupying a spot, most recent arrival first"""
    active = [car for car in cars if car.is_checked_in]
    return sorted(active, key=lambda c: c.checked_in_at, reverse=True)


def recent_checkouts(cars: Iterable[Car], limit: int = DEFAULT_HISTORY_LIMIT) -> List[Car]:
    """Cars with a check-out time, latest check-out first, capped at limit"""
    closed = [car for car in cars if car.checked_out_at is not None]
    closed.sort(key=lambda c: c.checked_out_at, reverse=True)
    return closed[:max(limit, 0)]


def pick_by_plate(candidates: Iterable[Car]) -> Optional[Car]:
    """
    Choose one car among several sharing a plate

    A currently checked-in car wins; otherwise the latest check-in,
    then the latest creation.
    """
    candidates = list(candidates)
    if not candidates:
        return None

    def rank(car: Car):
        checked_in_at = car.checked_in_at.timestamp() if car.checked_in_at else float("-inf")
        return (car.is_checked_in, checked_in_at, car.created_at.timestamp())

    return max(candidates, key=rank)


# ============================================================================
# OCCUPANCY SUMMARY AND AUDIT
# ============================================================================

@dataclass(frozen=True)
class OccupancySummary:
    """Dashboard figures"""
    currently_parked: int
    available_spots: int
    occupied_spots: int
    total_spots: int
    total_vehicles: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "currently_parked": self.currently_parked,
            "available_spots": self.available_spots,
            "occupied_spots": self.occupied_spots,
            "total_spots": self.total_spots,
            "total_vehicles": self.total_vehicles,
        }


def occupancy_summary(spots: Iterable[ParkingSpot], cars: Iterable[Car]) -> OccupancySummary:
    spots = list(spots)
    cars = list(cars)
    available = sum(1 for spot in spots if spot.is_available)
    return OccupancySummary(
        currently_parked=len(checked_in_cars(cars)),
        available_spots=available,
        occupied_spots=len(spots) - available,
        total_spots=len(spots),
        total_vehicles=len(cars),
    )


def occupancy_violations(spots: Iterable[ParkingSpot], cars: Iterable[Car]) -> List[str]:
    """
    Check: a spot is occupied exactly when one checked-in car references it

    Returns a human-readable line per inconsistency; an empty list means
    the occupancy relation holds.
    """
    occupants: Dict[str, List[Car]] = {}
    problems: List[str] = []

    for car in cars:
        if car.parking_spot_id is None:
            continue
        if not car.is_checked_in:
            problems.append(f"Car {car.id} references spot {car.parking_spot_id} but is not checked in")
            continue
        occupants.setdefault(car.parking_spot_id, []).append(car)

    known_spots = set()
    for spot in spots:
        known_spots.add(spot.id)
        holders = occupants.get(spot.id, [])
        if spot.is_occupied and len(holders) != 1:
            problems.append(f"Spot {spot.id} is occupied but has {len(holders)} checked-in cars")
        elif spot.is_available and holders:
            problems.append(f"Spot {spot.id} is available but has {len(holders)} checked-in cars")

    for spot_id in occupants:
        if spot_id not in known_spots:
            problems.append(f"Checked-in cars reference unknown spot {spot_id}")

    return problems
