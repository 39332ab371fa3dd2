"""Check catalog: loads checks.yaml and syncs it into the store.

Example::

    configurations:
      - id: api-http
        name: API health endpoint
        strategy_id: http
        interval_seconds: 30
        config:
          url: https://api.example.com/health
    assignments:
      - system_id: api
        configuration_id: api-http
        retention:
          raw_retention_days: 3
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from ..config import settings
from .models import Assignment, HealthCheckConfiguration, RetentionConfig

if TYPE_CHECKING:
    from ..storage.store import HealthStore

logger = logging.getLogger(__name__)

CATALOG_PATH = Path(settings.catalog_file)


def _parse_configuration(entry: dict[str, Any]) -> HealthCheckConfiguration:
    return HealthCheckConfiguration(
        id=str(entry["id"]),
        name=entry.get("name", entry["id"]),
        strategy_id=entry["strategy_id"],
        config=entry.get("config") or {},
        interval_seconds=int(entry.get("interval_seconds", 60)),
    )


def _parse_assignment(entry: dict[str, Any]) -> Assignment:
    retention = entry.get("retention")
    return Assignment(
        system_id=str(entry["system_id"]),
        configuration_id=str(entry["configuration_id"]),
        enabled=bool(entry.get("enabled", True)),
        retention_config=RetentionConfig.model_validate(retention) if retention else None,
    )


class CheckCatalog:
    """Configurations and assignments declared in a YAML file."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or CATALOG_PATH
        self.configurations: list[HealthCheckConfiguration] = []
        self.assignments: list[Assignment] = []

    def load(self) -> CheckCatalog:
        self.configurations = []
        self.assignments = []
        if not self._path.exists():
            logger.warning("Catalog file not found: %s", self._path)
            return self

        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            logger.error("Failed to parse %s: %s", self._path, e)
            return self

        for entry in raw.get("configurations", []) or []:
            try:
                self.configurations.append(_parse_configuration(entry))
            except Exception as e:
                logger.warning("Skipping malformed configuration entry: %s", e)

        known = {c.id for c in self.configurations}
        for entry in raw.get("assignments", []) or []:
            try:
                assignment = _parse_assignment(entry)
            except Exception as e:
                logger.warning("Skipping malformed assignment entry: %s", e)
                continue
            if assignment.configuration_id not in known:
                logger.warning(
                    "Skipping assignment %s/%s: unknown configuration",
                    assignment.system_id, assignment.configuration_id,
                )
                continue
            self.assignments.append(assignment)

        logger.info(
            "Loaded %d configurations and %d assignments from catalog",
            len(self.configurations), len(self.assignments),
        )
        return self

    def sync(self, store: HealthStore) -> None:
        """Upsert every catalog entry into ``store``."""
        with store.transaction():
            for config in self.configurations:
                store.upsert_configuration(config)
            for assignment in self.assignments:
                store.upsert_assignment(assignment)
