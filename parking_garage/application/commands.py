# File: parking_garage/application/commands.py
"""
Command Pattern Implementation for the occupancy workflow

Each request from an outer surface (HTTP handler, CLI, job) is expressed
as a command dictionary:

    {"type": "check_in", "data": {"license_plate": "ABC123", "parking_spot_id": "..."}}

CommandFactory turns the dictionary into a Command object, and
CommandProcessor executes it and shapes the response:

    success: {"success": True, "data": {...}, "status_code": 200}
    failure: {"success": False, "error": {error, message, code, details}, "status_code": 4xx/5xx}

CommandProcessor is the only place where exceptions become response
values. Everything it calls raises.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Type

from ..domain.exceptions import ParkingGarageError, ValidationError
from ..domain.models import utcnow
from .dtos import (
    CheckInRequestDTO, CheckOutRequestDTO, FindCarRequestDTO,
    RecentCheckoutsRequestDTO, SpotStatusRequestDTO, parse,
)
from .occupancy import OccupancyCoordinator
from .services import CarService


# ============================================================================
# COMMAND INTERFACES AND BASE CLASSES
# ============================================================================

class Command(ABC):
    """
    Abstract base class for all commands

    A command carries a validated request and knows which coordinator or
    service call fulfils it.
    """

    request_class: Type = None
    success_status = 200

    def __init__(self, data: Optional[Dict[str, Any]] = None, executed_by: Optional[str] = None):
        self.command_id = str(uuid.uuid4())
        self.executed_by = executed_by
        self.executed_at: Optional[datetime] = None
        self.request = parse(self.request_class, data)
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def execute(self, processor: "CommandProcessor") -> Any:
        """Run the command; returns a serializable result or raises"""
        pass

    def get_description(self) -> str:
        return self.__class__.__name__.replace("Command", "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command_id": self.command_id,
            "command_type": self.__class__.__name__,
            "request": self.request.to_dict(),
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "executed_by": self.executed_by,
        }


# ============================================================================
# OCCUPANCY COMMANDS
# ============================================================================

class CheckInCommand(Command):
    """Command: park a car in a spot"""

    request_class = CheckInRequestDTO
    success_status = 201

    def execute(self, processor):
        car = processor.coordinator.check_in(
            self.request.license_plate, self.request.parking_spot_id, actor=self.executed_by
        )
        return car.to_dict()

    def get_description(self) -> str:
        return f"Check in {self.request.license_plate} at {self.request.parking_spot_id}"


class CheckOutCommand(Command):
    """Command: release a car's spot, by car id or by plate"""

    request_class = CheckOutRequestDTO

    def execute(self, processor):
        if self.request.car_id:
            car = processor.coordinator.check_out(self.request.car_id, actor=self.executed_by)
        else:
            car = processor.coordinator.check_out_by_plate(self.request.license_plate, actor=self.executed_by)
        return car.to_dict()

    def get_description(self) -> str:
        return f"Check out {self.request.car_id or self.request.license_plate}"


class UpdateSpotStatusCommand(Command):
    """Command: mark a spot occupied or available"""

    request_class = SpotStatusRequestDTO

    def execute(self, processor):
        spot = processor.coordinator.set_status(
            self.request.parking_spot_id, self.request.status, actor=self.executed_by
        )
        return spot.to_dict()

    def get_description(self) -> str:
        return f"Mark spot {self.request.parking_spot_id} {self.request.status.value}"


class FindCarCommand(Command):
    """Query: look a car up by plate"""

    request_class = FindCarRequestDTO

    def execute(self, processor):
        return processor.coordinator.find_by_license_plate(self.request.license_plate).to_dict()


class RecentCheckoutsCommand(Command):
    """Query: latest closed visits"""

    request_class = RecentCheckoutsRequestDTO

    def execute(self, processor):
        return [car.to_dict() for car in processor.cars.get_recent_checkouts(self.request.limit)]


# ============================================================================
# COMMAND FACTORY
# ============================================================================

class CommandFactory:
    """Factory for creating commands from dictionary data"""

    command_classes: Dict[str, Type[Command]] = {
        "check_in": CheckInCommand,
        "check_out": CheckOutCommand,
        "update_spot_status": UpdateSpotStatusCommand,
        "find_car": FindCarCommand,
        "recent_checkouts": RecentCheckoutsCommand,
    }

    @classmethod
    def create_command(cls, command_type: str, data: Optional[Dict[str, Any]], executed_by: Optional[str] = None) -> Command:
        command_class = cls.command_classes.get(command_type)
        if command_class is None:
            raise ValidationError(
                f"Unknown command type: {command_type}",
                field="type",
                details={"supported": sorted(cls.command_classes)},
            )
        return command_class(data, executed_by=executed_by)


# ============================================================================
# COMMAND PROCESSOR
# ============================================================================

class CommandProcessor:
    """
    Executes command dictionaries and maps every outcome to a response

    Known errors keep their status code and body; anything else is logged
    with its traceback and answered with a generic 500.
    """

    def __init__(self, coordinator: OccupancyCoordinator, cars: CarService):
        self.coordinator = coordinator
        self.cars = cars
        self.logger = logging.getLogger(self.__class__.__name__)

    def handle(self, command: Dict[str, Any]) -> Dict[str, Any]:
        try:
            instance = CommandFactory.create_command(
                command.get("type"), command.get("data"), command.get("executed_by")
            )
            self.logger.info(f"Processing command: {instance.get_description()}")
            data = instance.execute(self)
            instance.executed_at = utcnow()
            return {"success": True, "data": data, "status_code": instance.success_status}
        except ParkingGarageError as e:
            log = self.logger.error if e.status_code >= 500 else self.logger.info
            log(f"Command {command.get('type')} failed: {e.code} {e.message}")
            return self.error_response(e)
        except Exception as e:
            self.logger.error(f"Unexpected error processing command {command.get('type')}: {e}", exc_info=True)
            return self.error_response(ParkingGarageError("An unexpected error occurred"))

    def handle_batch(self, commands: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [self.handle(command) for command in commands]

    @staticmethod
    def error_response(error: ParkingGarageError) -> Dict[str, Any]:
        return {"success": False, "error": error.to_dict(), "status_code": error.status_code}
