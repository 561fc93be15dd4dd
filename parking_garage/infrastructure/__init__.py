"""Infrastructure layer: persistence, locking and messaging"""
