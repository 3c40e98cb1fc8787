"""Real-time presale updates from account and log subscriptions."""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from prometheus_client import Counter

from presale_monitor.chain.client import ChainClientError, SolanaClient
from presale_monitor.chain.models import SubscriptionHandle
from presale_monitor.chain.subscriptions import NotificationHandler, SubscriptionError
from presale_monitor.monitor.classifier import ClassificationError
from presale_monitor.monitor.models import (
    Metrics,
    MonitorUpdate,
    Transaction,
    UpdateType,
    WalletSnapshot,
)
from presale_monitor.pricing.oracle import PriceUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_STREAM_SIZE = 100

REALTIME_UPDATES = Counter(
    "presale_realtime_updates_total",
    "Real-time updates emitted by type",
    ["type"],
)

# Type aliases
UpdateCallback = Callable[[MonitorUpdate], Awaitable[None]]
SnapshotLoader = Callable[[], Awaitable[WalletSnapshot]]
MetricsLoader = Callable[[], Awaitable[Metrics]]
TransactionLoader = Callable[[str], Awaitable[Transaction | None]]


class UpdateStream:
    """Bounded async channel of MonitorUpdates.

    ``publish`` can be passed directly as the update callback; iterate the
    stream to consume updates. When the buffer is full the oldest update is
    dropped. Closing the stream ends iteration.

    Example:
        ```python
        stream = UpdateStream()
        await monitor.start_realtime_monitoring(stream.publish)

        async for update in stream:
            print(update.type, update.data)
        ```
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = DEFAULT_STREAM_SIZE) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        """Return True once the stream is closed."""
        return self._closed

    def _put(self, item: Any) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self.dropped += 1

    async def publish(self, update: MonitorUpdate) -> None:
        """Queue an update. Updates published after close are ignored."""
        if self._closed:
            return
        self._put(update)

    def close(self) -> None:
        """Close the stream; pending updates are still delivered."""
        if not self._closed:
            self._closed = True
            self._put(self._CLOSED)

    def __aiter__(self) -> AsyncIterator[MonitorUpdate]:
        return self

    async def __anext__(self) -> MonitorUpdate:
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        update: MonitorUpdate = item
        return update


class RealtimeSubscriber:
    """Push BalanceUpdate, MetricsUpdate and NewTransaction updates.

    An account change produces a fresh snapshot (BalanceUpdate) followed by
    force-refreshed metrics (MetricsUpdate). A log notification carrying a
    signature produces a NewTransaction once the transaction classifies.
    Updates from the two channels are not ordered relative to each other.
    """

    def __init__(
        self,
        client: SolanaClient,
        address: str,
        *,
        load_snapshot: SnapshotLoader,
        refresh_metrics: MetricsLoader,
        load_transaction: TransactionLoader,
    ) -> None:
        """Initialize the subscriber.

        Args:
            client: Chain client providing the subscriptions.
            address: Monitored address.
            load_snapshot: Returns a fresh WalletSnapshot.
            refresh_metrics: Recomputes metrics bypassing the cache.
            load_transaction: Returns the classified transaction for a signature.
        """
        self._client = client
        self._address = address
        self._load_snapshot = load_snapshot
        self._refresh_metrics = refresh_metrics
        self._load_transaction = load_transaction

        self._on_update: UpdateCallback | None = None
        self._handles: list[SubscriptionHandle] = []

    @property
    def is_running(self) -> bool:
        """Return True while subscribed."""
        return self._on_update is not None

    async def _subscribe_with_retry(
        self,
        subscribe: Callable[[str, NotificationHandler], Awaitable[SubscriptionHandle]],
        handler: NotificationHandler,
    ) -> SubscriptionHandle:
        try:
            return await subscribe(self._address, handler)
        except SubscriptionError as e:
            logger.warning("Subscription for %s failed, retrying once: %s", self._address, e)
            return await subscribe(self._address, handler)

    async def start(self, on_update: UpdateCallback) -> None:
        """Open the account and log subscriptions.

        Each subscription is retried once before the error is raised.

        Raises:
            SubscriptionError: If a subscription cannot be established.
        """
        if self._on_update is not None:
            logger.warning("Real-time monitoring already running for %s", self._address)
            return

        self._on_update = on_update
        try:
            self._handles.append(
                await self._subscribe_with_retry(
                    self._client.subscribe_account_changes, self._on_account_change
                )
            )
            self._handles.append(
                await self._subscribe_with_retry(self._client.subscribe_logs, self._on_logs)
            )
        except (SubscriptionError, ChainClientError):
            await self.stop()
            raise

        logger.info("Real-time monitoring started for %s", self._address)

    async def stop(self) -> None:
        """Cancel both subscriptions. Safe to call when not running."""
        if self._on_update is None and not self._handles:
            return

        self._on_update = None
        handles, self._handles = self._handles, []
        for handle in handles:
            await self._client.unsubscribe(handle)

        logger.info("Real-time monitoring stopped for %s", self._address)

    async def _emit(
        self,
        update_type: UpdateType,
        data: WalletSnapshot | Metrics | Transaction,
    ) -> None:
        callback = self._on_update
        if callback is None:
            return
        REALTIME_UPDATES.labels(type=update_type.value).inc()
        try:
            await callback(MonitorUpdate(type=update_type, data=data))
        except Exception as e:
            logger.error("Error in update callback: %s", e)

    async def _on_account_change(self, _value: dict[str, Any]) -> None:
        if self._on_update is None:
            return
        try:
            snapshot = await self._load_snapshot()
            await self._emit(UpdateType.BALANCE_UPDATE, snapshot)
            metrics = await self._refresh_metrics()
            await self._emit(UpdateType.METRICS_UPDATE, metrics)
        except (ChainClientError, PriceUnavailableError) as e:
            logger.warning("Failed to refresh after account change for %s: %s", self._address, e)

    async def _on_logs(self, value: dict[str, Any]) -> None:
        signature = value.get("signature")
        if self._on_update is None or not signature:
            return
        try:
            tx = await self._load_transaction(str(signature))
        except (ChainClientError, PriceUnavailableError, ClassificationError) as e:
            logger.warning("Failed to load transaction %s: %s", signature, e)
            return
        if tx is not None:
            await self._emit(UpdateType.NEW_TRANSACTION, tx)
