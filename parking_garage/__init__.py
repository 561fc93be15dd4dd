"""Parking garage management: entity CRUD and the spot/car occupancy workflow"""

__version__ = "1.0.0"
