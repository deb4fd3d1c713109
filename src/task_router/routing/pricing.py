"""Token cost estimation for the pay-per-token API tier."""

from __future__ import annotations

import os
from dataclasses import dataclass

INPUT_TOKEN_SHARE = 0.7


@dataclass(slots=True)
class ModelPricing:
    """Input/output pricing in USD per 1M tokens."""

    input_per_1m: float = 3.0
    output_per_1m: float = 15.0


DEFAULT_API_PRICING = ModelPricing()


def estimate_api_cost(tokens: int, pricing: ModelPricing | None = None) -> float:
    """Estimate API cost assuming a 70/30 input/output token split."""

    effective = pricing or api_pricing_from_env()
    input_tokens = tokens * INPUT_TOKEN_SHARE
    output_tokens = tokens * (1 - INPUT_TOKEN_SHARE)
    return (input_tokens / 1_000_000) * effective.input_per_1m + (
        output_tokens / 1_000_000
    ) * effective.output_per_1m


def api_pricing_from_env() -> ModelPricing:
    """Parse `TASK_ROUTER_API_PRICING` (`input_per_1m:output_per_1m`).

    Invalid or negative values fall back to the default pricing.
    """

    raw = os.getenv("TASK_ROUTER_API_PRICING", "").strip()
    if not raw:
        return DEFAULT_API_PRICING
    parts = [part.strip() for part in raw.split(":")]
    if len(parts) != 2:
        return DEFAULT_API_PRICING
    try:
        input_per_1m = float(parts[0])
        output_per_1m = float(parts[1])
    except ValueError:
        return DEFAULT_API_PRICING
    if input_per_1m < 0 or output_per_1m < 0:
        return DEFAULT_API_PRICING
    return ModelPricing(input_per_1m=input_per_1m, output_per_1m=output_per_1m)
