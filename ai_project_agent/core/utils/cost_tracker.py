"""Token usage and cost tracking for generation turns.

Prices are per token and kept as :class:`~decimal.Decimal` so that a session's
running total never drifts the way float accumulation does. The price table is
an external collaborator; a model without an entry simply costs nothing extra.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Protocol

ZERO = Decimal("0")


@dataclass
class TokenUsage:
    """Token usage reported by the provider for a single turn."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __post_init__(self) -> None:
        if self.total_tokens == 0:
            self.total_tokens = self.prompt_tokens + self.completion_tokens

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> Optional["TokenUsage"]:
        """Build usage from an OpenAI-style ``usage`` object, or ``None`` when absent."""
        if not payload:
            return None
        return cls(
            prompt_tokens=int(payload.get("prompt_tokens") or 0),
            completion_tokens=int(payload.get("completion_tokens") or 0),
            total_tokens=int(payload.get("total_tokens") or 0),
        )


@dataclass(frozen=True)
class ModelPricing:
    """Per-token prices for one provider/model identifier."""

    prompt: Decimal
    completion: Decimal
    context_length: Optional[int] = None

    def cost_of(self, usage: TokenUsage) -> Decimal:
        return usage.prompt_tokens * self.prompt + usage.completion_tokens * self.completion


class PriceTable(Protocol):
    """Maps a provider/model identifier onto its pricing."""

    def lookup(self, provider_model: str) -> Optional[ModelPricing]:
        ...


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        # str() first so floats from TOML keep their printed precision.
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid price value: {value!r}") from exc


class StaticPriceTable:
    """Price table backed by an in-memory mapping."""

    def __init__(self, entries: Optional[Mapping[str, ModelPricing]] = None) -> None:
        self._entries: Dict[str, ModelPricing] = dict(entries or {})

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Mapping[str, Any]]) -> "StaticPriceTable":
        """Build from ``{"provider/model": {"prompt": ..., "completion": ...}}`` data."""
        entries: Dict[str, ModelPricing] = {}
        for provider_model, values in raw.items():
            context_length = values.get("context_length")
            entries[provider_model] = ModelPricing(
                prompt=_to_decimal(values.get("prompt", 0)),
                completion=_to_decimal(values.get("completion", 0)),
                context_length=int(context_length) if context_length is not None else None,
            )
        return cls(entries)

    @classmethod
    def from_settings(cls, settings: Any) -> "StaticPriceTable":
        return cls.from_mapping(getattr(settings, "pricing", None) or {})

    def set(self, provider_model: str, pricing: ModelPricing) -> None:
        self._entries[provider_model] = pricing

    def lookup(self, provider_model: str) -> Optional[ModelPricing]:
        return self._entries.get(provider_model)


@dataclass
class CostRecord:
    """Cost record for a single completed turn."""

    timestamp: float
    model: str
    usage: TokenUsage
    cost: Decimal


@dataclass
class CostTracker:
    """Accumulate per-turn costs for one session.

    ``total_cost`` only ever grows until :meth:`reset` is called.
    """

    records: List[CostRecord] = field(default_factory=list)
    total_cost: Decimal = ZERO
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0

    def track_turn(
        self,
        model: str,
        usage: TokenUsage,
        pricing: Optional[ModelPricing],
    ) -> Optional[CostRecord]:
        """Record a turn's cost; returns ``None`` when the model has no pricing."""
        self.total_prompt_tokens += usage.prompt_tokens
        self.total_completion_tokens += usage.completion_tokens
        if pricing is None:
            return None

        cost = pricing.cost_of(usage)
        if cost < ZERO:
            cost = ZERO
        record = CostRecord(timestamp=time.time(), model=model, usage=usage, cost=cost)
        self.records.append(record)
        self.total_cost += cost
        return record

    def reset(self) -> None:
        self.records.clear()
        self.total_cost = ZERO
        self.total_prompt_tokens = 0
        self.total_completion_tokens = 0

    def format_inline(self) -> str:
        """Format a compact inline cost display."""
        return (
            f"Cost: ${self.total_cost:.4f} | "
            f"Tokens: {self.total_prompt_tokens:,} in, {self.total_completion_tokens:,} out"
        )


def context_usage_percentage(input_tokens: int, pricing: Optional[ModelPricing]) -> Optional[float]:
    """Return how much of the model's context window the last prompt used."""
    if pricing is None or not pricing.context_length:
        return None
    return round(input_tokens / pricing.context_length * 100, 1)


__all__ = [
    "CostRecord",
    "CostTracker",
    "ModelPricing",
    "PriceTable",
    "StaticPriceTable",
    "TokenUsage",
    "context_usage_percentage",
]
