"""Integration tests: SQLAlchemy gateway and full application wiring"""
