from __future__ import annotations

import hashlib
import math
import re

from lexybrain.core.config import EMBED_DIM

_TOKEN_RE = re.compile(r"[a-z0-9_]+")


def _bucket(token: str) -> tuple[int, float]:
    digest = hashlib.sha256(token.encode("utf-8")).digest()
    # First four bytes pick the slot, the fifth picks the sign.
    idx = int.from_bytes(digest[:4], "big") % EMBED_DIM
    weight = 1.0 + (digest[5] / 255.0)
    return idx, weight if digest[4] % 2 == 0 else -weight


def tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def embed_text(text: str) -> list[float] | None:
    # Empty queries have no vector; callers fall back to lexical ranking.
    tokens = tokenize(text.strip())
    if not tokens:
        return None

    vector = [0.0] * EMBED_DIM
    for token in tokens:
        idx, value = _bucket(token)
        vector[idx] += value
    # Bigrams keep short phrases like "wedding invitation" distinct from their words.
    for left, right in zip(tokens, tokens[1:]):
        idx, value = _bucket(f"{left} {right}")
        vector[idx] += value * 0.5

    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return None
    return [v / norm for v in vector]
