"""Trims a conversation to a token budget.

Token cost is estimated as ceil(chars / 4). This is a rough approximation
that works for mixed-language text, not an exact tokenizer.

Eviction order: oldest non-System message first. The System message at
index 0 is only dropped last, and the sole remaining message is never
removed, so the result may still exceed the budget when a single message
alone is larger than it.
"""

from __future__ import annotations

import math
from typing import Sequence

from streamchat.models import History, Message, Role

TOKEN_ESTIMATE_RATIO = 4


def estimate_tokens(text: str) -> int:
    """Estimated token cost of a text."""
    return math.ceil(len(text) / TOKEN_ESTIMATE_RATIO)


def history_tokens(history: Sequence[Message]) -> int:
    return sum(estimate_tokens(m.content) for m in history)


def compact(history: Sequence[Message], max_tokens: int) -> History:
    """Return history with oldest non-System messages removed until it fits.

    Pure and idempotent: compact(compact(h, m), m) == compact(h, m).
    """
    result = list(history)
    total = history_tokens(result)

    while total > max_tokens and len(result) > 1:
        index = 1 if result[0].role == Role.SYSTEM else 0
        total -= estimate_tokens(result.pop(index).content)

    return tuple(result)
