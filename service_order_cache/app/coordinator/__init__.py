"""
Coordinator package.

Holds the lookup state machine (check local, fetch origin, persist,
publish) and the application of bus deliveries to the local store.
"""

from .coordinator import CacheCoordinator
from .single_flight import SingleFlight

__all__ = ["CacheCoordinator", "SingleFlight"]
