"""Token usage normalization and accumulation shared by both scanners.

Codex reports OpenAI-style counters where ``input_tokens`` already includes
cached input. Claude reports Anthropic-style counters where cache writes and
cache reads are listed next to ``input_tokens``. Both are folded into
``TokenUsage``, where ``input_tokens`` covers every input token and
``cached_input_tokens`` covers cache reads only.
"""

import math
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class TokenUsage:
    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0
    reasoning_output_tokens: int = 0
    total_tokens: int = 0
    # Subset of input_tokens; kept so cache writes can be priced on their own.
    cache_creation_input_tokens: int = 0

    def add(self, other: "TokenUsage") -> None:
        self.input_tokens += other.input_tokens
        self.cached_input_tokens += other.cached_input_tokens
        self.output_tokens += other.output_tokens
        self.reasoning_output_tokens += other.reasoning_output_tokens
        self.total_tokens += other.total_tokens
        self.cache_creation_input_tokens += other.cache_creation_input_tokens

    def is_empty(self) -> bool:
        return not (
            self.input_tokens
            or self.cached_input_tokens
            or self.output_tokens
            or self.reasoning_output_tokens
        )

    def to_json(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "cached_input_tokens": self.cached_input_tokens,
            "output_tokens": self.output_tokens,
            "reasoning_output_tokens": self.reasoning_output_tokens,
            "total_tokens": self.total_tokens,
        }


def ensure_number(value: Any) -> int:
    """Finite numbers pass through as ints, anything else is 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    return max(0, int(value))


def blended_token_total(usage: TokenUsage) -> int:
    non_cached = max(0, usage.input_tokens - usage.cached_input_tokens)
    return non_cached + usage.output_tokens + usage.reasoning_output_tokens


def normalize_codex_usage(value: Any) -> TokenUsage | None:
    """Read a Codex ``last_token_usage``/``total_token_usage`` snapshot."""
    if not isinstance(value, dict):
        return None
    input_tokens = ensure_number(value.get("input_tokens"))
    cached = value.get("cached_input_tokens")
    if cached is None:
        cached = value.get("cache_read_input_tokens")
    output_tokens = ensure_number(value.get("output_tokens"))
    total = ensure_number(value.get("total_tokens"))
    return TokenUsage(
        input_tokens=input_tokens,
        cached_input_tokens=ensure_number(cached),
        output_tokens=output_tokens,
        reasoning_output_tokens=ensure_number(value.get("reasoning_output_tokens")),
        total_tokens=total if total > 0 else input_tokens + output_tokens,
    )


def subtract_usage(current: TokenUsage, previous: TokenUsage | None) -> TokenUsage:
    """Per-field ``max(0, current - previous)`` between two cumulative snapshots."""
    if previous is None:
        return TokenUsage(
            input_tokens=current.input_tokens,
            cached_input_tokens=current.cached_input_tokens,
            output_tokens=current.output_tokens,
            reasoning_output_tokens=current.reasoning_output_tokens,
            total_tokens=current.total_tokens,
        )
    return TokenUsage(
        input_tokens=max(0, current.input_tokens - previous.input_tokens),
        cached_input_tokens=max(0, current.cached_input_tokens - previous.cached_input_tokens),
        output_tokens=max(0, current.output_tokens - previous.output_tokens),
        reasoning_output_tokens=max(
            0, current.reasoning_output_tokens - previous.reasoning_output_tokens
        ),
        total_tokens=max(0, current.total_tokens - previous.total_tokens),
    )


def to_delta(raw: TokenUsage) -> TokenUsage:
    """Clamp cached input to input and backfill an unset total."""
    total = raw.total_tokens if raw.total_tokens > 0 else raw.input_tokens + raw.output_tokens
    return TokenUsage(
        input_tokens=raw.input_tokens,
        cached_input_tokens=min(raw.cached_input_tokens, raw.input_tokens),
        output_tokens=raw.output_tokens,
        reasoning_output_tokens=raw.reasoning_output_tokens,
        total_tokens=total,
    )


def usage_from_claude(value: Any) -> TokenUsage:
    """Fold an Anthropic ``message.usage`` block into the canonical shape."""
    if not isinstance(value, dict):
        return TokenUsage()
    base_input = ensure_number(value.get("input_tokens"))
    cache_creation = ensure_number(value.get("cache_creation_input_tokens"))
    cache_read = ensure_number(value.get("cache_read_input_tokens"))
    output_tokens = ensure_number(value.get("output_tokens"))
    input_tokens = base_input + cache_creation + cache_read
    total = ensure_number(value.get("total_tokens"))
    return TokenUsage(
        input_tokens=input_tokens,
        cached_input_tokens=cache_read,
        output_tokens=output_tokens,
        reasoning_output_tokens=ensure_number(value.get("reasoning_output_tokens")),
        total_tokens=total if total > 0 else input_tokens + output_tokens,
        cache_creation_input_tokens=cache_creation,
    )


def ensure_usage_bucket(mapping: dict[str, TokenUsage], key: str) -> TokenUsage:
    bucket = mapping.get(key)
    if bucket is None:
        bucket = TokenUsage()
        mapping[key] = bucket
    return bucket


def select_primary_model(model_usage: dict[str, TokenUsage]) -> str | None:
    """Model with the most tokens; on a tie the first one seen wins."""
    primary: str | None = None
    highest = -1
    for model, usage in model_usage.items():
        tokens = usage.total_tokens if usage.total_tokens > 0 else usage.input_tokens + usage.output_tokens
        if tokens > highest:
            highest = tokens
            primary = model
    return primary


@dataclass(slots=True)
class UsageAccumulator:
    totals: TokenUsage = field(default_factory=TokenUsage)
    by_model: dict[str, TokenUsage] = field(default_factory=dict)

    def add(self, model: str | None, usage: TokenUsage) -> None:
        self.totals.add(usage)
        if model:
            ensure_usage_bucket(self.by_model, model).add(usage)

    @property
    def blended_tokens(self) -> int:
        return blended_token_total(self.totals)

    def primary_model(self) -> str | None:
        return select_primary_model(self.by_model)
