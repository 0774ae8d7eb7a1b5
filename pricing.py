"""Per-session USD cost from a per-model price table.

Prices come from a ``PricingFetcher``. The default one reads the LiteLLM
``model_prices_and_context_window.json`` table, where every rate is USD per
single token.
"""

import threading
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

import httpx
from loguru import logger

import config
from records import SessionRecord
from usage import TokenUsage

PROVIDER_PREFIXES = (
    "anthropic/",
    "openai/",
    "azure/",
    "openrouter/openai/",
    "openrouter/anthropic/",
)


@runtime_checkable
class PricingFetcher(Protocol):
    def get_model_pricing(self, model: str) -> dict[str, Any] | None: ...
    def calculate_cost(self, usage: dict[str, int], pricing: dict[str, Any]) -> float: ...


def _rate(pricing: dict[str, Any], key: str) -> float:
    value = pricing.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


def cost_from_pricing(usage: dict[str, int], pricing: dict[str, Any]) -> float:
    """Price the four token buckets independently; missing rates cost nothing."""
    return (
        usage.get("input_tokens", 0) * _rate(pricing, "input_cost_per_token")
        + usage.get("output_tokens", 0) * _rate(pricing, "output_cost_per_token")
        + usage.get("cache_creation_input_tokens", 0) * _rate(pricing, "cache_creation_input_token_cost")
        + usage.get("cache_read_input_tokens", 0) * _rate(pricing, "cache_read_input_token_cost")
    )


def billable_usage(usage: TokenUsage) -> dict[str, int]:
    """Split canonical usage into the buckets a price table charges for."""
    cached = max(0, min(usage.cached_input_tokens, usage.input_tokens))
    cache_write = max(0, min(usage.cache_creation_input_tokens, usage.input_tokens - cached))
    return {
        "input_tokens": max(0, usage.input_tokens - cached - cache_write),
        "output_tokens": usage.output_tokens,
        "cache_creation_input_tokens": cache_write,
        "cache_read_input_tokens": cached,
    }


def format_usd(amount: float) -> str:
    if amount <= 0:
        return "$0.00"
    if amount < 0.01:
        return f"${amount:.4f}"
    return f"${amount:,.2f}"


class LiteLLMPricingFetcher:
    """Price table lookups against LiteLLM's published model list.

    The table is downloaded once per instance. Pass ``offline_data`` (or an
    ``offline_loader``) to skip the network entirely.
    """

    def __init__(
        self,
        *,
        url: str | None = None,
        timeout: float | None = None,
        offline_data: dict[str, Any] | None = None,
        offline_loader: Callable[[], dict[str, Any]] | None = None,
        client: httpx.Client | None = None,
    ):
        self._url = url or config.PRICING_URL
        self._timeout = config.PRICING_TIMEOUT if timeout is None else timeout
        self._offline_loader = offline_loader
        if offline_data is not None:
            self._offline_loader = lambda: offline_data
        self._client = client
        self._table: dict[str, Any] | None = None
        self._load_error: Exception | None = None
        self._lock = threading.Lock()

    def _load_table(self) -> dict[str, Any]:
        with self._lock:
            if self._table is None:
                if self._load_error is not None:
                    raise self._load_error
                try:
                    data = self._offline_loader() if self._offline_loader is not None else self._download()
                except Exception as exc:
                    # A failed load is final for this fetcher.
                    self._load_error = exc
                    raise
                self._table = data if isinstance(data, dict) else {}
            return self._table

    def _download(self) -> Any:
        logger.debug(f"Fetching model pricing from {self._url}")
        if self._client is not None:
            response = self._client.get(self._url, timeout=self._timeout)
        else:
            response = httpx.get(self._url, timeout=self._timeout, follow_redirects=True)
        response.raise_for_status()
        return response.json()

    def get_model_pricing(self, model: str) -> dict[str, Any] | None:
        table = self._load_table()
        name = (model or "").strip()
        if not name:
            return None

        for candidate in (name, *(prefix + name for prefix in PROVIDER_PREFIXES)):
            entry = table.get(candidate)
            if isinstance(entry, dict):
                return entry

        lowered = name.lower()
        for key, entry in table.items():
            if not isinstance(entry, dict):
                continue
            if lowered in key.lower():
                return entry
        return None

    def calculate_cost(self, usage: dict[str, int], pricing: dict[str, Any]) -> float:
        return cost_from_pricing(usage, pricing)


class PricingCache:
    """Resolves each model's pricing at most once per invocation."""

    def __init__(self, fetcher: PricingFetcher):
        self._fetcher = fetcher
        self._resolved: dict[str, dict[str, Any] | None] = {}
        self._lock = threading.Lock()

    def get(self, model: str) -> dict[str, Any] | None:
        with self._lock:
            if model not in self._resolved:
                try:
                    self._resolved[model] = self._fetcher.get_model_pricing(model)
                except Exception as exc:
                    logger.warning(f"Failed to fetch pricing for model {model}: {exc}")
                    self._resolved[model] = None
            return self._resolved[model]


def drop_empty_sessions(sessions: list[SessionRecord]) -> list[SessionRecord]:
    """Sessions that never produced billable activity are not listed."""
    return [s for s in sessions if not s.token_usage.is_empty()]


def session_cost(session: SessionRecord, cache: PricingCache, fetcher: PricingFetcher) -> float:
    total = 0.0
    for model, usage in session.model_usage.items():
        pricing = cache.get(model)
        if not pricing:
            continue
        total += fetcher.calculate_cost(billable_usage(usage), pricing)
    return total


def annotate_costs(sessions: list[SessionRecord], fetcher: PricingFetcher) -> float:
    """Fill in ``cost_usd`` on every session and return the grand total."""
    cache = PricingCache(fetcher)
    total = 0.0
    for session in sessions:
        session.cost_usd = session_cost(session, cache, fetcher)
        total += session.cost_usd
    return total
