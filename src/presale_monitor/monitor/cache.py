"""In-memory caches for classified transactions and computed metrics."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from presale_monitor.monitor.models import Metrics, Transaction

logger = logging.getLogger(__name__)

DEFAULT_METRICS_TTL_SECONDS = 10.0


@dataclass(frozen=True)
class CacheStats:
    """Cache statistics."""

    transactions_cached: int
    transaction_hits: int
    transaction_misses: int
    metrics_cached: bool
    metrics_age_seconds: float | None

    def to_dict(self) -> dict[str, object]:
        return {
            "transactions_cached": self.transactions_cached,
            "transaction_hits": self.transaction_hits,
            "transaction_misses": self.transaction_misses,
            "metrics_cached": self.metrics_cached,
            "metrics_age_seconds": self.metrics_age_seconds,
        }


class TransactionCache:
    """Signature -> classified Transaction, kept for the life of the process.

    A finalized signature always classifies the same way, so entries never
    expire; the cache only saves ledger round-trips.
    """

    def __init__(self) -> None:
        self._entries: dict[str, Transaction] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, signature: object) -> bool:
        return signature in self._entries

    def get(self, signature: str) -> Transaction | None:
        """Look up a classified transaction."""
        tx = self._entries.get(signature)
        if tx is None:
            self.misses += 1
        else:
            self.hits += 1
            logger.debug("Transaction cache hit: %s", signature)
        return tx

    def put(self, tx: Transaction) -> Transaction:
        """Store a transaction; an existing record for the signature wins."""
        return self._entries.setdefault(tx.signature, tx)

    def clear(self) -> None:
        """Drop every entry and reset counters."""
        self._entries.clear()
        self.hits = 0
        self.misses = 0


class MetricsCache:
    """Single most-recent Metrics with a time-to-live.

    An entry is fresh only while its age is strictly below the TTL.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_METRICS_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the cache.

        Args:
            ttl_seconds: Time-to-live of a cached value.
            clock: Monotonic clock in seconds (injectable for tests).
        """
        self._ttl = ttl_seconds
        self._clock = clock
        self._value: Metrics | None = None
        self._stored_at: float | None = None

    @property
    def ttl_seconds(self) -> float:
        """Time-to-live in seconds."""
        return self._ttl

    def age(self) -> float | None:
        """Seconds since the cached value was stored, or None if empty."""
        if self._stored_at is None:
            return None
        return self._clock() - self._stored_at

    def get(self) -> Metrics | None:
        """Return the cached metrics if still fresh."""
        age = self.age()
        if self._value is None or age is None or age >= self._ttl:
            return None
        logger.debug("Metrics cache hit (age %.2fs)", age)
        return self._value

    def peek(self) -> Metrics | None:
        """Return the last stored metrics regardless of age."""
        return self._value

    def set(self, metrics: Metrics) -> None:
        """Replace the cached metrics."""
        self._value = metrics
        self._stored_at = self._clock()

    def clear(self) -> None:
        """Drop the cached metrics."""
        self._value = None
        self._stored_at = None
