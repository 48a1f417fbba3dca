"""Model pricing lookup and cost calculation.

Rates are USD per million tokens. A ``PricingTable`` keeps a history of
pricing periods so sessions are costed with the prices that were in effect
when they started.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Protocol

import yaml

from session_tracker import config
from session_tracker.date_utils import parse_datetime
from session_tracker.model_identity import canonical_model_name, is_long_context_eligible
from session_tracker.models import ModelPricing, TokenStats

logger = logging.getLogger("tracker.pricing")

DEFAULT_INPUT_RATE = 3.0
DEFAULT_OUTPUT_RATE = 15.0
CACHE_WRITE_MULTIPLIER = 1.25
CACHE_READ_MULTIPLIER = 0.1
LONG_CONTEXT_THRESHOLD = 200_000
LONG_CONTEXT_INPUT_MULTIPLIER = 2.0
LONG_CONTEXT_OUTPUT_MULTIPLIER = 1.5

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

FALLBACK_PRICING: dict[str, ModelPricing] = {
    "claude-opus-4-5": ModelPricing(inputRate=5, outputRate=25),
    "claude-opus-4-1": ModelPricing(inputRate=15, outputRate=75),
    "claude-opus-4": ModelPricing(inputRate=15, outputRate=75),
    "claude-opus-3": ModelPricing(inputRate=15, outputRate=75),
    "claude-sonnet-4-5": ModelPricing(inputRate=3, outputRate=15),
    "claude-sonnet-4": ModelPricing(inputRate=3, outputRate=15),
    "claude-sonnet-3-7": ModelPricing(inputRate=3, outputRate=15),
    "claude-sonnet-3-5": ModelPricing(inputRate=3, outputRate=15),
    "claude-haiku-4-5": ModelPricing(inputRate=1, outputRate=5),
    "claude-haiku-3-5": ModelPricing(inputRate=0.8, outputRate=4),
    "claude-haiku-3": ModelPricing(inputRate=0.25, outputRate=1.25),
}


class PricingLookup(Protocol):
    def get_price(self, model: str, as_of: Any = None) -> ModelPricing | None:
        ...


@dataclass
class PricingPeriod:
    effective_date: datetime
    models: dict[str, ModelPricing] = field(default_factory=dict)


class PricingTable:
    """Effective-dated pricing history. Newest period first."""

    def __init__(self, history: list[PricingPeriod] | None = None):
        periods = list(history or [])
        if not periods:
            periods = [PricingPeriod(effective_date=_EPOCH, models=dict(FALLBACK_PRICING))]
        self._history = sorted(periods, key=lambda p: p.effective_date, reverse=True)

    @property
    def history(self) -> list[PricingPeriod]:
        return list(self._history)

    def models_as_of(self, as_of: Any = None) -> dict[str, ModelPricing]:
        target = parse_datetime(as_of) or datetime.now(timezone.utc)
        for period in self._history:
            if period.effective_date <= target:
                return period.models
        # Older than every recorded period: use the oldest one.
        return self._history[-1].models

    def get_price(self, model: str, as_of: Any = None) -> ModelPricing | None:
        key = canonical_model_name(model)
        if not key:
            return None
        return self.models_as_of(as_of).get(key)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> PricingTable:
        """Build a table from ``{"history": [{"effectiveDate": ..., "models": {...}}]}``."""
        periods: list[PricingPeriod] = []
        for raw_period in payload.get("history") or []:
            if not isinstance(raw_period, Mapping):
                continue
            effective = parse_datetime(raw_period.get("effectiveDate"))
            if effective is None:
                logger.warning("Skipping pricing period without a valid effectiveDate: %r", raw_period)
                continue
            models: dict[str, ModelPricing] = {}
            for name, rates in (raw_period.get("models") or {}).items():
                if not isinstance(rates, Mapping):
                    continue
                try:
                    models[canonical_model_name(str(name))] = ModelPricing(
                        inputRate=float(rates["input"]),
                        outputRate=float(rates["output"]),
                        cacheWriteRate=_optional_float(rates.get("cacheWrite")),
                        cacheReadRate=_optional_float(rates.get("cacheRead")),
                        effectiveDate=effective.isoformat(),
                    )
                except (KeyError, TypeError, ValueError):
                    logger.warning("Skipping malformed pricing entry for %s", name)
            periods.append(PricingPeriod(effective_date=effective, models=models))
        return cls(periods)

    @classmethod
    def from_yaml(cls, path: Path) -> PricingTable:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(payload, Mapping):
            raise ValueError(f"Pricing file {path} must contain a mapping")
        return cls.from_mapping(payload)


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


def load_pricing_table(path: str | Path | None = None) -> PricingTable:
    """Load the configured pricing overrides, falling back to the built-in table."""
    raw_path = path if path is not None else config.PRICING_FILE
    if not raw_path:
        return PricingTable()
    pricing_path = Path(raw_path).expanduser()
    try:
        table = PricingTable.from_yaml(pricing_path)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.warning("Failed to load pricing file %s, using built-in prices: %s", pricing_path, exc)
        return PricingTable()
    logger.info("Loaded %d pricing periods from %s", len(table.history), pricing_path)
    return table


def calculate_cost(
    token_stats: TokenStats,
    model: str | None,
    as_of: Any = None,
    pricing: PricingLookup | None = None,
) -> float:
    """Cost of a token aggregate in USD.

    Cache writes bill at 1.25x the input rate and cache reads at 0.1x, unless
    the pricing entry carries explicit cache rates. Sonnet 4 sessions above
    200k total input tokens bill 2x input and 1.5x output.
    """
    lookup = pricing or PricingTable()
    price = lookup.get_price(model, as_of) if model else None
    input_rate = price.inputRate if price else DEFAULT_INPUT_RATE
    output_rate = price.outputRate if price else DEFAULT_OUTPUT_RATE
    cache_write_rate = price.cacheWriteRate if price and price.cacheWriteRate is not None else input_rate * CACHE_WRITE_MULTIPLIER
    cache_read_rate = price.cacheReadRate if price and price.cacheReadRate is not None else input_rate * CACHE_READ_MULTIPLIER

    total_input = token_stats.inputTokens + token_stats.cacheWriteTokens + token_stats.cacheReadTokens
    if is_long_context_eligible(model) and total_input > LONG_CONTEXT_THRESHOLD:
        input_rate *= LONG_CONTEXT_INPUT_MULTIPLIER
        output_rate *= LONG_CONTEXT_OUTPUT_MULTIPLIER
        cache_write_rate *= LONG_CONTEXT_INPUT_MULTIPLIER
        cache_read_rate *= LONG_CONTEXT_INPUT_MULTIPLIER

    return (
        token_stats.inputTokens * input_rate
        + token_stats.outputTokens * output_rate
        + token_stats.cacheWriteTokens * cache_write_rate
        + token_stats.cacheReadTokens * cache_read_rate
    ) / 1_000_000
