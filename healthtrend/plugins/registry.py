"""Strategy and collector registries.

Registries are plain objects handed to the history service, the real-time
writer and the retention job. Payloads produced by plugins are tagged with
the id of the plugin that produced them (``_strategyId`` / ``_collectorId``)
and, when a result model was registered, validated against it before being
stored or returned.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel

logger = logging.getLogger(__name__)

STRATEGY_TAG = "_strategyId"
COLLECTOR_TAG = "_collectorId"
# Internal fields carried on raw collector payloads, never passed to plugins.
COLLECTOR_INTERNAL_FIELDS = (COLLECTOR_TAG, "_assertionFailed")


@dataclass
class CheckOutcome:
    """What a strategy's ``execute`` returns for one check run."""

    status: str
    latency_ms: float | None = None
    message: str = ""
    metadata: dict[str, Any] | None = None


@runtime_checkable
class Strategy(Protocol):
    id: str

    def aggregate_result(self, observations: list[Any]) -> dict[str, Any]: ...


@runtime_checkable
class Collector(Protocol):
    def aggregate_result(self, runs: list[dict[str, Any]]) -> dict[str, Any]: ...


@dataclass
class RegisteredCollector:
    collector_id: str
    collector: Any
    result_model: type[BaseModel] | None = None


def tag_payload(
    tag_key: str,
    tag: str,
    payload: dict[str, Any] | BaseModel,
    result_model: type[BaseModel] | None = None,
) -> dict[str, Any]:
    """Validate a plugin payload and stamp it with the producing plugin id."""
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    if result_model is not None:
        payload = result_model.model_validate(payload).model_dump()
    return {tag_key: tag, **payload}


def aggregate_strategy_result(
    strategy_registry: Any,
    strategy: Any,
    observations: list[Any],
) -> dict[str, Any]:
    """Run ``strategy.aggregate_result`` and tag the output.

    Registries that only offer ``get_strategy`` work too; a result model is
    applied when the registry exposes ``get_result_model``.
    """
    payload = strategy.aggregate_result(observations) or {}
    lookup = getattr(strategy_registry, "get_result_model", None)
    result_model = lookup(strategy.id) if lookup is not None else None
    return tag_payload(STRATEGY_TAG, strategy.id, payload, result_model)


def unpack_collector(registered: Any) -> tuple[Any | None, type[BaseModel] | None]:
    """``(collector, result_model)`` from a ``get_collector`` entry (object or mapping)."""
    if registered is None:
        return None, None
    if isinstance(registered, Mapping):
        return registered.get("collector"), registered.get("result_model")
    return getattr(registered, "collector", None), getattr(registered, "result_model", None)


# ── Strategies ───────────────────────────────────────────────────────────────


class StrategyRegistry:
    """Health check strategies keyed by id."""

    def __init__(self) -> None:
        self._strategies: dict[str, Any] = {}
        self._result_models: dict[str, type[BaseModel] | None] = {}

    def register(self, strategy: Any, result_model: type[BaseModel] | None = None) -> None:
        if strategy.id in self._strategies:
            raise ValueError(f"Strategy '{strategy.id}' is already registered")
        self._strategies[strategy.id] = strategy
        self._result_models[strategy.id] = result_model
        logger.info("Registered strategy %s", strategy.id)

    def get_strategy(self, strategy_id: str) -> Any | None:
        return self._strategies.get(strategy_id)

    def get_strategies(self) -> list[Any]:
        return list(self._strategies.values())

    def get_result_model(self, strategy_id: str) -> type[BaseModel] | None:
        return self._result_models.get(strategy_id)


# ── Collectors ───────────────────────────────────────────────────────────────


class CollectorRegistry:
    """Result collectors keyed by collector id."""

    def __init__(self) -> None:
        self._collectors: dict[str, RegisteredCollector] = {}

    def register(
        self,
        collector_id: str,
        collector: Any,
        result_model: type[BaseModel] | None = None,
    ) -> None:
        if collector_id in self._collectors:
            raise ValueError(f"Collector '{collector_id}' is already registered")
        self._collectors[collector_id] = RegisteredCollector(collector_id, collector, result_model)
        logger.info("Registered collector %s", collector_id)

    def get_collector(self, collector_id: str) -> RegisteredCollector | None:
        return self._collectors.get(collector_id)
