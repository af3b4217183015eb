# Merchant Safety Module
from .food_safety import FoodSafetyCircuitBreaker
from .foreign_object import ForeignObjectTracker

__all__ = ["FoodSafetyCircuitBreaker", "ForeignObjectTracker"]
