# File: parking_garage/main.py
"""
Entry point: load settings, configure logging, wire the application and
report the current occupancy state.

    python -m parking_garage.main
"""

import sys

from .config import Settings, setup_logging
from .infrastructure.factories import build_application


def main(settings: Settings = None) -> int:
    settings = settings or Settings.load()
    logger = setup_logging(settings)
    logger.info("Starting Parking Garage service...")

    application = build_application(settings)
    try:
        summary = application.coordinator.summary()
        logger.info(
            f"{summary.currently_parked} cars parked, "
            f"{summary.available_spots}/{summary.total_spots} spots available"
        )
        problems = application.coordinator.audit()
        if problems:
            logger.error(f"Occupancy audit found {len(problems)} problem(s)")
            return 1
        return 0
    finally:
        application.close()


if __name__ == "__main__":
    sys.exit(main())
