"""Database models for the GAR assessment service."""

from gar.models.base import Base
from gar.models.assessment import Assessment
from gar.models.directory import Station, User
from gar.models.audit import AuditEntry, WeatherCacheEntry

__all__ = [
    "Base",
    "Assessment",
    "Station",
    "User",
    "AuditEntry",
    "WeatherCacheEntry",
]
