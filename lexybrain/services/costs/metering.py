from __future__ import annotations

import math

from lexybrain.domain.capabilities import ESTIMATED_COST_CENTS, OutputType


def estimate_tokens(text: str) -> int:
    # Deterministically estimate token counts when provider usage is missing (~4 chars per token).
    if not text:
        return 0
    return int(math.ceil(len(text) / 4))


def estimate_cost_cents(output_type: OutputType | str) -> int:
    # Flat per-type estimate in cents.
    return ESTIMATED_COST_CENTS[OutputType(output_type)]
