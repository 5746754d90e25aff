"""Convenience exports for common utility helpers."""
from __future__ import annotations

from .cancellation import CancellationToken
from .config import Settings, find_config_in_parents, load_settings
from .cost_tracker import (
    CostRecord,
    CostTracker,
    ModelPricing,
    PriceTable,
    StaticPriceTable,
    TokenUsage,
    context_usage_percentage,
)
from .logger import (
    configure_logging,
    correlation_scope,
    get_correlation_id,
    get_logger,
    set_correlation_id,
)

__all__ = [
    "CancellationToken",
    "CostRecord",
    "CostTracker",
    "ModelPricing",
    "PriceTable",
    "Settings",
    "StaticPriceTable",
    "TokenUsage",
    "configure_logging",
    "context_usage_percentage",
    "correlation_scope",
    "find_config_in_parents",
    "get_correlation_id",
    "get_logger",
    "load_settings",
    "set_correlation_id",
]
