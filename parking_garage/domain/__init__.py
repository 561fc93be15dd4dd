"""Domain layer: entities, value objects, rules and errors"""
