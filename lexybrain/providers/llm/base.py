from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class Completion:
    text: str
    model: str | None = None
    # Provider-reported usage; None when the endpoint omits it.
    prompt_tokens: int | None = None
    output_tokens: int | None = None


class LLMProvider(Protocol):
    async def complete(self, prompt: str, *, max_tokens: int, temperature: float) -> Completion:
        ...
