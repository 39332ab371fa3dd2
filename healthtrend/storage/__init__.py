"""SQLite persistence."""

from .store import HealthStore
