"""
Core Layer - shared contracts and coordination.

This package contains:
- Configuration management (settings.py)
- Core data types (types.py) and the error taxonomy (errors.py)
- LRU/TTL calendar cache (cache.py)
- Development environment classifier (environment.py)
- External id and namespace helpers (calendar_ids.py)
- External calendar registry (registry.py)
"""

from calendar_sources.core.errors import CalendarSourceError
from calendar_sources.core.types import (
    ExternalCalendarSource,
    LoadCalendarOptions,
    LoadCalendarResult,
)

__all__ = [
    "CalendarSourceError",
    "ExternalCalendarSource",
    "LoadCalendarOptions",
    "LoadCalendarResult",
]
