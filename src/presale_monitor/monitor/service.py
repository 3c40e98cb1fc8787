"""Presale monitor - the consumer API for one monitored address.

This module wires the chain client, price oracle, classifier, caches,
aggregator, historical analyzer and real-time subscriber together behind
the operations the rest of the platform calls.
"""

import asyncio
import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from decimal import Decimal

from presale_monitor.chain.client import ChainClientError, RateLimitError, SolanaClient
from presale_monitor.chain.models import SignatureInfo
from presale_monitor.config import USDC_MINT, Settings
from presale_monitor.monitor.aggregator import aggregate
from presale_monitor.monitor.cache import CacheStats, MetricsCache, TransactionCache
from presale_monitor.monitor.classifier import ClassificationError, TransactionClassifier
from presale_monitor.monitor.history import analyze, history_fetch_limit, rank_contributors
from presale_monitor.monitor.models import (
    ContributorAggregate,
    ContributorHistory,
    HistoricalAnalysis,
    Metrics,
    Transaction,
    WalletSnapshot,
)
from presale_monitor.monitor.realtime import RealtimeSubscriber, UpdateCallback
from presale_monitor.monitor.snapshot import BalanceSnapshotter
from presale_monitor.pricing.oracle import PriceOracle

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_BATCH_SIZE = 10
DEFAULT_METRICS_TRANSACTION_LIMIT = 200
DEFAULT_RECENT_TRANSACTIONS = 20
DEFAULT_RATE_LIMIT_BACKOFF_SECONDS = 1.0
MAX_RATE_LIMIT_BACKOFF_SECONDS = 30.0


class MonitorDisposedError(Exception):
    """Raised when a disposed monitor is used."""


def create_solana_client(settings: Settings) -> SolanaClient:
    """Build a chain client from settings."""
    return SolanaClient(
        settings.solana.rpc_url,
        fallback_rpc_url=settings.solana.fallback_rpc_url,
        ws_url=settings.solana.ws_url,
        commitment=settings.solana.commitment,
        max_requests_per_second=settings.solana.max_requests_per_second,
        max_retries=settings.solana.max_retries,
        request_timeout=settings.solana.request_timeout,
    )


def create_price_oracle(settings: Settings) -> PriceOracle:
    """Build a price oracle from settings."""
    return PriceOracle(
        settings.price.primary_url,
        settings.price.fallback_url,
        timeout=settings.price.timeout,
    )


class PresaleMonitor:
    """Monitor one presale address.

    Features:
        - Wallet snapshots (SOL, stablecoins, USD value)
        - Batched transaction fetching with partial-failure semantics
        - Metrics with a short TTL cache and a single writer
        - Historical analysis and contributor rankings
        - Real-time balance, metrics and transaction updates

    Example:
        ```python
        monitor = PresaleMonitor(address, client, oracle)

        info = await monitor.get_wallet_info()
        metrics = await monitor.get_metrics()
        history = await monitor.get_historical_analysis(30)

        await monitor.start_realtime_monitoring(on_update)
        ...
        await monitor.dispose()
        ```
    """

    def __init__(
        self,
        address: str,
        client: SolanaClient,
        oracle: PriceOracle,
        *,
        stable_mints: Sequence[str] = (USDC_MINT,),
        batch_size: int = DEFAULT_BATCH_SIZE,
        metrics_ttl_seconds: float = 10.0,
        metrics_transaction_limit: int = DEFAULT_METRICS_TRANSACTION_LIMIT,
        recent_transactions: int = DEFAULT_RECENT_TRANSACTIONS,
        rate_limit_backoff_seconds: float = DEFAULT_RATE_LIMIT_BACKOFF_SECONDS,
        owns_clients: bool = False,
    ) -> None:
        """Initialize the monitor.

        Args:
            address: Presale address to monitor.
            client: Solana chain client.
            oracle: SOL/USD price oracle.
            stable_mints: Stablecoin mint allowlist.
            batch_size: Transactions fetched concurrently per sub-batch.
            metrics_ttl_seconds: Time-to-live of cached metrics.
            metrics_transaction_limit: Transactions fetched to compute metrics.
            recent_transactions: Recent transactions included in metrics.
            rate_limit_backoff_seconds: Initial pause after a rate-limited sub-batch.
            owns_clients: If True, dispose() also closes client and oracle.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self._address = address
        self._client = client
        self._oracle = oracle
        self._batch_size = batch_size
        self._metrics_transaction_limit = metrics_transaction_limit
        self._recent_transactions = recent_transactions
        self._rate_limit_backoff = rate_limit_backoff_seconds
        self._owns_clients = owns_clients

        self._classifier = TransactionClassifier(address, stable_mints)
        self._snapshotter = BalanceSnapshotter(client, oracle, stable_mints)
        self._transactions = TransactionCache()
        self._metrics = MetricsCache(metrics_ttl_seconds)
        self._metrics_lock = asyncio.Lock()
        self._realtime: RealtimeSubscriber | None = None
        self._disposed = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        address: str | None = None,
        *,
        client: SolanaClient | None = None,
        oracle: PriceOracle | None = None,
    ) -> "PresaleMonitor":
        """Build a monitor from application settings.

        Clients that are not passed in are created here and owned by the monitor.

        Raises:
            ValueError: If no address is given or configured.
        """
        address = address or settings.presale.address
        if not address:
            raise ValueError("No presale address given and PRESALE_ADDRESS is not set")

        owns_clients = client is None and oracle is None
        client = client or create_solana_client(settings)
        oracle = oracle or create_price_oracle(settings)

        return cls(
            address,
            client,
            oracle,
            stable_mints=settings.presale.stable_mint_allowlist,
            batch_size=settings.presale.batch_size,
            metrics_ttl_seconds=settings.presale.metrics_ttl_seconds,
            metrics_transaction_limit=settings.presale.metrics_transaction_limit,
            recent_transactions=settings.presale.recent_transactions,
            owns_clients=owns_clients,
        )

    @property
    def address(self) -> str:
        """Monitored address."""
        return self._address

    @property
    def is_disposed(self) -> bool:
        """Return True once dispose() has been called."""
        return self._disposed

    @property
    def is_realtime_running(self) -> bool:
        """Return True while real-time monitoring is active."""
        return self._realtime is not None and self._realtime.is_running

    def _ensure_active(self) -> None:
        if self._disposed:
            raise MonitorDisposedError(f"Monitor for {self._address} has been disposed")

    async def get_wallet_info(self) -> WalletSnapshot:
        """Take a fresh snapshot of the monitored address.

        Raises:
            ChainClientError: If a balance cannot be fetched.
            PriceUnavailableError: If no price source is available.
        """
        self._ensure_active()
        return await self._snapshotter.snapshot(self._address)

    async def _load_transaction(
        self,
        signature: str,
        price: Decimal | None = None,
    ) -> Transaction | None:
        cached = self._transactions.get(signature)
        if cached is not None:
            return cached

        raw = await self._client.get_parsed_transaction(signature)
        if raw is None:
            logger.debug("Transaction %s not found", signature)
            return None

        if price is None:
            price = await self._oracle.get_price()
        tx = self._classifier.classify(raw, price)
        if tx is None or self._disposed:
            return tx
        return self._transactions.put(tx)

    async def load_transaction(self, signature: str) -> Transaction | None:
        """Classify one transaction, consulting the transaction cache first.

        Raises:
            ChainClientError: If the transaction cannot be fetched.
            PriceUnavailableError: If no price source is available.
            ClassificationError: If the payload is malformed.
        """
        self._ensure_active()
        return await self._load_transaction(signature)

    async def _fetch_transactions(self, limit: int) -> list[Transaction]:
        """Fetch and classify up to ``limit`` recent transactions.

        Signatures are processed in sequential sub-batches of ``batch_size``
        fetched concurrently. A transaction that fails to load is logged and
        dropped. A rate-limited sub-batch halves the size of the following
        sub-batches and inserts a growing pause before the next one.
        """
        if limit <= 0:
            return []

        signatures = await self._client.list_signatures(self._address, limit)
        if not signatures:
            return []

        price: Decimal | None = None
        if any(sig.signature not in self._transactions for sig in signatures):
            price = await self._oracle.get_price()

        results: list[Transaction] = []
        size = self._batch_size
        backoff = self._rate_limit_backoff
        position = 0

        while position < len(signatures):
            chunk: list[SignatureInfo] = signatures[position : position + size]
            position += len(chunk)

            outcomes = await asyncio.gather(
                *(self._load_transaction(sig.signature, price) for sig in chunk),
                return_exceptions=True,
            )

            rate_limited = False
            for sig, outcome in zip(chunk, outcomes, strict=True):
                if isinstance(outcome, RateLimitError):
                    rate_limited = True
                    logger.warning("Rate limited fetching %s, dropping", sig.signature)
                elif isinstance(outcome, (ChainClientError, ClassificationError)):
                    logger.warning("Failed to load transaction %s: %s", sig.signature, outcome)
                elif isinstance(outcome, BaseException):
                    raise outcome
                elif outcome is not None:
                    results.append(outcome)

            if rate_limited and position < len(signatures):
                size = max(1, size // 2)
                logger.warning(
                    "Rate limited; reducing batch size to %d and pausing %.1fs", size, backoff
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, MAX_RATE_LIMIT_BACKOFF_SECONDS)

        results.sort(key=lambda tx: tx.occurred_at, reverse=True)
        return results

    async def get_recent_transactions(
        self,
        limit: int = DEFAULT_RECENT_TRANSACTIONS,
    ) -> list[Transaction]:
        """Get up to ``limit`` classified transactions, newest first.

        Raises:
            ChainClientError: If signatures cannot be listed.
            PriceUnavailableError: If uncached transactions need a price and none is available.
        """
        self._ensure_active()
        return await self._fetch_transactions(limit)

    async def get_metrics(self, force_refresh: bool = False) -> Metrics:
        """Get presale metrics, served from cache while fresh.

        Args:
            force_refresh: If True, bypass the cache and recompute.

        Raises:
            ChainClientError: If balances or signatures cannot be fetched.
            PriceUnavailableError: If no price source is available.
        """
        self._ensure_active()
        if not force_refresh:
            cached = self._metrics.get()
            if cached is not None:
                return cached

        async with self._metrics_lock:
            if not force_refresh:
                # Another caller may have refreshed while we waited
                cached = self._metrics.get()
                if cached is not None:
                    return cached

            snapshot = await self.get_wallet_info()
            transactions = await self._fetch_transactions(self._metrics_transaction_limit)
            metrics = aggregate(
                snapshot,
                transactions,
                datetime.now(UTC),
                recent_limit=self._recent_transactions,
            )
            if not self._disposed:
                self._metrics.set(metrics)

        logger.info(
            "Metrics computed for %s: $%s raised, %d contributors",
            self._address,
            metrics.total_raised.total_usd,
            metrics.unique_contributors,
        )
        return metrics

    async def _refresh_metrics(self) -> Metrics:
        return await self.get_metrics(force_refresh=True)

    async def start_realtime_monitoring(self, on_update: UpdateCallback) -> None:
        """Start pushing real-time updates to ``on_update``.

        Raises:
            SubscriptionError: If the subscriptions cannot be established.
        """
        self._ensure_active()
        if self._realtime is None:
            self._realtime = RealtimeSubscriber(
                self._client,
                self._address,
                load_snapshot=self.get_wallet_info,
                refresh_metrics=self._refresh_metrics,
                load_transaction=self.load_transaction,
            )
        await self._realtime.start(on_update)

    async def stop_realtime_monitoring(self) -> None:
        """Stop real-time updates. Safe to call when not running."""
        if self._realtime is not None:
            await self._realtime.stop()

    async def get_historical_analysis(self, days: int = 30) -> HistoricalAnalysis:
        """Analyze successful deposits over the trailing ``days``.

        Raises:
            ValueError: If days is not positive.
        """
        self._ensure_active()
        if days < 1:
            raise ValueError("days must be at least 1")
        transactions = await self._fetch_transactions(history_fetch_limit(days))
        return analyze(transactions, days, datetime.now(UTC))

    async def get_top_contributors(self, limit: int = 20) -> list[ContributorAggregate]:
        """Rank contributors by total USD deposited."""
        self._ensure_active()
        transactions = await self._fetch_transactions(self._metrics_transaction_limit)
        return rank_contributors((tx for tx in transactions if tx.is_successful_deposit), limit)

    async def get_contributor_history(self, contributor: str) -> ContributorHistory:
        """Get one contributor's successful deposits, newest first.

        ``info`` is None when the address has no successful deposit.
        """
        self._ensure_active()
        transactions = await self._fetch_transactions(self._metrics_transaction_limit)
        deposits = tuple(
            tx
            for tx in transactions
            if tx.is_successful_deposit and tx.counterparty_from == contributor
        )
        ranked = rank_contributors(deposits, None)
        return ContributorHistory(info=ranked[0] if ranked else None, transactions=deposits)

    def cache_stats(self) -> CacheStats:
        """Get transaction and metrics cache statistics."""
        return CacheStats(
            transactions_cached=len(self._transactions),
            transaction_hits=self._transactions.hits,
            transaction_misses=self._transactions.misses,
            metrics_cached=self._metrics.peek() is not None,
            metrics_age_seconds=self._metrics.age(),
        )

    async def dispose(self) -> None:
        """Stop real-time monitoring and clear both caches.

        Later calls raise MonitorDisposedError. Disposing twice is a no-op.
        """
        if self._disposed:
            return
        self._disposed = True

        await self.stop_realtime_monitoring()
        self._realtime = None
        self._transactions.clear()
        self._metrics.clear()

        if self._owns_clients:
            await self._client.close()
            await self._oracle.close()

        logger.info("Monitor disposed for %s", self._address)
