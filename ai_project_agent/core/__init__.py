"""Core utilities shared across the orchestrator."""
from __future__ import annotations

from .utils import (
    CancellationToken,
    CostTracker,
    ModelPricing,
    PriceTable,
    Settings,
    StaticPriceTable,
    TokenUsage,
    configure_logging,
    get_logger,
    load_settings,
)

__all__ = [
    "CancellationToken",
    "CostTracker",
    "ModelPricing",
    "PriceTable",
    "Settings",
    "StaticPriceTable",
    "TokenUsage",
    "configure_logging",
    "get_logger",
    "load_settings",
]
