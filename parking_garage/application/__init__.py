"""Application layer: occupancy workflow, queries, entity services and commands"""
