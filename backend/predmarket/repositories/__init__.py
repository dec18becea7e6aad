"""Repository abstractions for database interactions."""

from .market_repository import MarketRepository
from .resolution_repository import ResolutionRepository

__all__ = [
    "MarketRepository",
    "ResolutionRepository",
]
