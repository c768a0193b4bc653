"""
Pricing calculations and rate management.

Handles cost computations against the model price catalog and keeps a
time-bounded, process-local cache of that catalog.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from usage_meter.config.loader import DEFAULT_PRICE_CACHE_TTL_SECONDS
from usage_meter.storage.models import CostBreakdown, PriceCatalogEntry, price_key
from usage_meter.storage.repository import fetch_active_prices

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

TOKENS_PER_MILLION = 1_000_000


def calculate_cost(usage: TokenUsage, price: PriceCatalogEntry) -> CostBreakdown:
    """Calculate the USD cost of one call.

    Prices are per million tokens, input and output priced independently.
    Pure and deterministic; zero tokens cost zero.

    Args:
        usage: Token counts of the call
        price: Catalog entry of the model that served it

    Returns:
        CostBreakdown where total == input + output
    """
    input_cost = usage.input_tokens / TOKENS_PER_MILLION * price.input_price_per_million
    output_cost = usage.output_tokens / TOKENS_PER_MILLION * price.output_price_per_million

    return CostBreakdown(
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=input_cost + output_cost,
    )


class PriceCatalog:
    """Cached view of active model prices keyed by ``provider:model_id``.

    The cache lives for ``ttl_seconds``. When a refresh fails and an older
    copy exists, the stale copy is served; with nothing cached the error
    propagates. ``invalidate()`` forces the next read to reload, e.g. after
    an admin edits prices.
    """

    def __init__(
        self,
        loader: Callable[[], List[PriceCatalogEntry]],
        ttl_seconds: float = DEFAULT_PRICE_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize the catalog.

        Args:
            loader: Returns the active price rows from the data store
            ttl_seconds: How long a loaded catalog is served without reloading
            clock: Monotonic time source in seconds
        """
        self._loader = loader
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._prices: Optional[Dict[str, PriceCatalogEntry]] = None
        self._expires_at = 0.0

    @classmethod
    def from_database(
        cls,
        db_path: str,
        ttl_seconds: float = DEFAULT_PRICE_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ) -> "PriceCatalog":
        return cls(lambda: fetch_active_prices(db_path), ttl_seconds=ttl_seconds, clock=clock)

    def get_prices(self) -> Dict[str, PriceCatalogEntry]:
        """Return the catalog, reloading it when the cache has expired.

        Raises:
            Exception: Whatever the loader raised, when no cache exists yet
        """
        with self._lock:
            cached = self._prices
            expires_at = self._expires_at

        now = self._clock()
        if cached is not None and now < expires_at:
            return dict(cached)

        try:
            entries = self._loader()
        except Exception:
            if cached is not None:
                logger.warning(
                    "Failed to refresh model prices, serving stale catalog",
                    exc_info=True,
                )
                return dict(cached)
            logger.error("Failed to load model prices", exc_info=True)
            raise

        prices = {entry.key: entry for entry in entries}
        with self._lock:
            self._prices = prices
            self._expires_at = now + self._ttl_seconds
        return dict(prices)

    def get_price(self, provider: str, model_id: str) -> Optional[PriceCatalogEntry]:
        """Look up one model's price, or None if it isn't in the active catalog."""
        return self.get_prices().get(price_key(provider, model_id))

    def invalidate(self) -> None:
        """Drop the cached catalog so the next read reloads it."""
        with self._lock:
            self._prices = None
            self._expires_at = 0.0
