"""Per-model token prices used to estimate what a chat step cost."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError
from .models import CostBreakdown, TokenUsage

PER_TOKENS = 1_000_000


class ModelPrice(BaseModel):
    """USD per 1M tokens."""

    input: float = 0.0
    output: float = 0.0
    cache_write: float = 0.0
    cache_read: float = 0.0


class PriceTable(BaseModel):
    """Prices keyed by model name, with an optional fallback for unknown models.

    Example file::

        default: {input: 3.0, output: 15.0}
        models:
          gpt-4o-mini: {input: 0.15, output: 0.6}
    """

    models: dict[str, ModelPrice] = Field(default_factory=dict)
    default: Optional[ModelPrice] = None

    @classmethod
    def from_file(cls, path: Path) -> "PriceTable":
        try:
            raw: Any = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            return cls.model_validate(raw)
        except (OSError, yaml.YAMLError, ValidationError) as exc:
            raise ConfigError(f"Invalid price table {path}: {exc}") from exc

    def price_for(self, model: Optional[str]) -> Optional[ModelPrice]:
        if model and model in self.models:
            return self.models[model]
        return self.default

    def estimate(self, usage: TokenUsage) -> Optional[CostBreakdown]:
        rates = self.price_for(usage.model)
        if rates is None:
            return None
        input_cost = usage.input_tokens / PER_TOKENS * rates.input
        output_cost = usage.output_tokens / PER_TOKENS * rates.output
        cache_write_cost = usage.cache_write_tokens / PER_TOKENS * rates.cache_write
        cache_read_cost = usage.cache_read_tokens / PER_TOKENS * rates.cache_read
        return CostBreakdown(
            input_cost=input_cost,
            output_cost=output_cost,
            cache_write_cost=cache_write_cost,
            cache_read_cost=cache_read_cost,
            total_cost=input_cost + output_cost + cache_write_cost + cache_read_cost,
        )

    def apply(self, usage: Optional[TokenUsage]) -> Optional[TokenUsage]:
        """Fill in ``usage.cost`` when the agent did not report one."""

        if usage is None or usage.cost is not None:
            return usage
        cost = self.estimate(usage)
        return usage if cost is None else usage.model_copy(update={"cost": cost})
