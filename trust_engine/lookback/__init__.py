# Lookback Search Module
from .search import LookbackSearch

__all__ = ["LookbackSearch"]
