from healthtrend.plugins.registry import (
    CheckOutcome,
    Collector,
    CollectorRegistry,
    Strategy,
    StrategyRegistry,
)

__all__ = [
    "CheckOutcome",
    "Collector",
    "CollectorRegistry",
    "Strategy",
    "StrategyRegistry",
]
