from __future__ import annotations

import math
import re
from typing import Iterable


def estimate_token_count(text: str) -> int:
    """Lightweight token estimate used when the provider reports no usage.

    Takes the larger of the whitespace-delimited word count and a
    four-characters-per-token estimate, so text without spaces is not
    undercounted.
    """

    if not text:
        return 0
    normalized = text.strip()
    wordish = len(re.findall(r"\S+", normalized))
    char_estimate = math.ceil(len(normalized) / 4)
    return max(wordish, char_estimate)


def estimate_turn_tokens(prompt: str, response: str) -> int:
    """Tokens charged for one exchange: prompt plus response, at least 1."""
    return max(1, estimate_token_count(prompt) + estimate_token_count(response))


def estimate_history_tokens(contents: Iterable[str]) -> int:
    return sum(estimate_token_count(content) for content in contents)
