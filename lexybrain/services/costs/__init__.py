from __future__ import annotations

# Re-export cost services for centralized imports.

from lexybrain.services.costs.cost_cap import CostCapGuard, SpendSource, day_start
from lexybrain.services.costs.metering import estimate_cost_cents, estimate_tokens

__all__ = [
    "CostCapGuard",
    "SpendSource",
    "day_start",
    "estimate_cost_cents",
    "estimate_tokens",
]
