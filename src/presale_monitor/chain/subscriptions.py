"""Websocket push subscriptions for Solana account and log notifications."""

import asyncio
import contextlib
import itertools
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection

from presale_monitor.chain.models import SubscriptionHandle, SubscriptionKind

logger = logging.getLogger(__name__)

# Constants
DEFAULT_PING_INTERVAL = 30  # seconds
DEFAULT_REQUEST_TIMEOUT = 10.0  # seconds
DEFAULT_MAX_RECONNECT_DELAY = 30.0  # seconds
DEFAULT_INITIAL_RECONNECT_DELAY = 1.0  # seconds

_SUBSCRIBE_METHODS = {
    SubscriptionKind.ACCOUNT: ("accountSubscribe", "accountUnsubscribe"),
    SubscriptionKind.LOGS: ("logsSubscribe", "logsUnsubscribe"),
}


class ConnectionState(Enum):
    """WebSocket connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class SubscriptionError(Exception):
    """Raised when a push subscription cannot be established or kept."""


@dataclass
class SubscriptionStats:
    """Statistics about the subscription channel."""

    notifications_received: int = 0
    reconnect_count: int = 0
    connected_since: float | None = None
    last_error: str | None = None


NotificationHandler = Callable[[dict[str, Any]], Awaitable[None]]
ErrorCallback = Callable[[SubscriptionError], Awaitable[None]]


@dataclass
class _ActiveSubscription:
    handle: SubscriptionHandle
    handler: NotificationHandler
    server_id: int | None = None


class SubscriptionManager:
    """Multiplexes Solana pubsub subscriptions over one websocket.

    The connection is opened on the first subscription and closed when the
    last one is removed. After a dropped connection the manager reconnects
    with exponential backoff and re-issues every live subscription; handles
    returned to callers stay valid across reconnects.

    Notification handlers run as independent tasks; a failing handler is
    logged and never stops the listener.

    Example:
        >>> async def on_change(value: dict) -> None:
        ...     print(value["lamports"])
        ...
        >>> manager = SubscriptionManager("wss://api.mainnet-beta.solana.com")
        >>> handle = await manager.subscribe_account("2n5a...", on_change)
        >>> await manager.unsubscribe(handle)
    """

    def __init__(
        self,
        ws_url: str,
        *,
        commitment: str = "confirmed",
        on_error: ErrorCallback | None = None,
        ping_interval: int = DEFAULT_PING_INTERVAL,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        max_reconnect_delay: float = DEFAULT_MAX_RECONNECT_DELAY,
        initial_reconnect_delay: float = DEFAULT_INITIAL_RECONNECT_DELAY,
    ) -> None:
        """Initialize the subscription manager.

        Args:
            ws_url: Solana websocket endpoint.
            commitment: Commitment level for notifications.
            on_error: Optional callback when resubscription after a reconnect fails.
            ping_interval: Seconds between heartbeat pings.
            request_timeout: Seconds to wait for a subscribe/unsubscribe reply.
            max_reconnect_delay: Maximum delay between reconnection attempts.
            initial_reconnect_delay: Initial delay for reconnection backoff.
        """
        self._ws_url = ws_url
        self._commitment = commitment
        self._on_error = on_error
        self._ping_interval = ping_interval
        self._request_timeout = request_timeout
        self._max_reconnect_delay = max_reconnect_delay
        self._initial_reconnect_delay = initial_reconnect_delay

        self._state = ConnectionState.DISCONNECTED
        self._stats = SubscriptionStats()
        self._ws: ClientConnection | None = None
        self._listen_task: asyncio.Task[None] | None = None
        self._connect_lock = asyncio.Lock()
        self._closed = False

        self._request_ids = itertools.count(1)
        self._handle_ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._subscriptions: dict[int, _ActiveSubscription] = {}
        self._by_server_id: dict[int, _ActiveSubscription] = {}
        self._handler_tasks: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    @property
    def stats(self) -> SubscriptionStats:
        """Channel statistics."""
        return self._stats

    @property
    def active_count(self) -> int:
        """Number of live subscriptions."""
        return len(self._subscriptions)

    def _set_state(self, new_state: ConnectionState) -> None:
        if self._state != new_state:
            logger.info("Subscription channel: %s -> %s", self._state.value, new_state.value)
            self._state = new_state

    def _subscribe_params(self, kind: SubscriptionKind, address: str) -> list[Any]:
        if kind is SubscriptionKind.ACCOUNT:
            return [address, {"encoding": "jsonParsed", "commitment": self._commitment}]
        return [{"mentions": [address]}, {"commitment": self._commitment}]

    async def subscribe_account(
        self,
        address: str,
        handler: NotificationHandler,
    ) -> SubscriptionHandle:
        """Subscribe to account changes; handler receives the account value."""
        return await self._subscribe(SubscriptionKind.ACCOUNT, address, handler)

    async def subscribe_logs(
        self,
        address: str,
        handler: NotificationHandler,
    ) -> SubscriptionHandle:
        """Subscribe to logs mentioning an address; handler receives {signature, err, logs}."""
        return await self._subscribe(SubscriptionKind.LOGS, address, handler)

    async def _subscribe(
        self,
        kind: SubscriptionKind,
        address: str,
        handler: NotificationHandler,
    ) -> SubscriptionHandle:
        if self._closed:
            raise SubscriptionError("Subscription manager is closed")

        handle = SubscriptionHandle(handle_id=next(self._handle_ids), kind=kind, address=address)
        sub = _ActiveSubscription(handle=handle, handler=handler)

        await self._ensure_connected()
        await self._register(sub)
        self._subscriptions[handle.handle_id] = sub

        logger.info("Subscribed to %s notifications for %s", kind.value, address)
        return handle

    async def _register(self, sub: _ActiveSubscription) -> None:
        method, _ = _SUBSCRIBE_METHODS[sub.handle.kind]
        result = await self._call(method, self._subscribe_params(sub.handle.kind, sub.handle.address))
        try:
            sub.server_id = int(result)
        except (TypeError, ValueError) as e:
            raise SubscriptionError(f"{method} returned invalid subscription id: {result!r}") from e
        self._by_server_id[sub.server_id] = sub

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Cancel a subscription. Unknown or already removed handles are ignored."""
        sub = self._subscriptions.pop(handle.handle_id, None)
        if sub is None:
            return

        if sub.server_id is not None:
            self._by_server_id.pop(sub.server_id, None)
            if self._ws is not None:
                _, method = _SUBSCRIBE_METHODS[handle.kind]
                try:
                    await self._call(method, [sub.server_id])
                except SubscriptionError as e:
                    logger.warning("Failed to unsubscribe %s: %s", handle, e)

        logger.info("Unsubscribed from %s notifications for %s", handle.kind.value, handle.address)

        if not self._subscriptions:
            await self._disconnect()

    async def _call(self, method: str, params: list[Any]) -> Any:
        """Send a JSON-RPC request over the socket and await its reply."""
        ws = self._ws
        if ws is None:
            raise SubscriptionError(f"Cannot call {method}: not connected")

        request_id = next(self._request_ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await ws.send(
                json.dumps({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
            )
            return await asyncio.wait_for(future, timeout=self._request_timeout)
        except TimeoutError as e:
            raise SubscriptionError(f"{method} timed out") from e
        except websockets.ConnectionClosed as e:
            raise SubscriptionError(f"{method} failed: connection closed") from e
        finally:
            self._pending.pop(request_id, None)

    async def _connect(self) -> ClientConnection:
        self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await websockets.connect(
                self._ws_url,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_interval * 2,
            )
        except Exception as e:
            self._stats.last_error = str(e)
            self._set_state(ConnectionState.DISCONNECTED)
            raise SubscriptionError(f"Failed to connect to {self._ws_url}: {e}") from e

        self._set_state(ConnectionState.CONNECTED)
        self._stats.connected_since = time.time()
        return ws

    async def _ensure_connected(self) -> None:
        # Waits out a reconnect in progress, which holds the lock
        async with self._connect_lock:
            if self._ws is not None:
                return
            if self._closed:
                raise SubscriptionError("Subscription manager is closed")
            self._ws = await self._connect()
            self._listen_task = asyncio.create_task(self._run())

    def _handle_message(self, message: str) -> None:
        """Route a reply to its pending request or a notification to its handler."""
        try:
            data = json.loads(message)
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON message: %s", e)
            return

        request_id = data.get("id")
        if request_id is not None:
            future = self._pending.get(request_id)
            if future is not None and not future.done():
                if "error" in data:
                    future.set_exception(SubscriptionError(str(data["error"])))
                else:
                    future.set_result(data.get("result"))
            return

        method = data.get("method", "")
        if not method.endswith("Notification"):
            logger.debug("Ignoring message: %s", method)
            return

        params = data.get("params") or {}
        sub = self._by_server_id.get(params.get("subscription"))
        if sub is None:
            logger.debug("Notification for unknown subscription %s", params.get("subscription"))
            return

        result = params.get("result") or {}
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, dict):
            return

        self._stats.notifications_received += 1
        task = asyncio.create_task(self._dispatch(sub, value))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def _dispatch(self, sub: _ActiveSubscription, value: dict[str, Any]) -> None:
        try:
            await sub.handler(value)
        except Exception as e:
            logger.error("Error in %s notification handler: %s", sub.handle.kind.value, e)

    async def _run(self) -> None:
        """Listen for messages, reconnecting while subscriptions remain."""
        while not self._closed:
            ws = self._ws
            if ws is None:
                return
            try:
                async for message in ws:
                    if isinstance(message, str):
                        self._handle_message(message)
            except websockets.ConnectionClosed as e:
                logger.warning("Subscription connection closed: %s", e)
                self._stats.last_error = str(e)
            except Exception as e:
                logger.error("Error in subscription message loop: %s", e)
                self._stats.last_error = str(e)

            if self._closed or not self._subscriptions:
                break

            self._fail_pending(SubscriptionError("Connection lost"))
            if not await self._reconnect():
                break

    async def _reconnect(self) -> bool:
        """Reconnect with exponential backoff and schedule resubscription.

        Holds the connect lock throughout, so concurrent subscribers wait for
        the new socket instead of opening a second one.
        """
        async with self._connect_lock:
            self._ws = None
            delay = self._initial_reconnect_delay

            while not self._closed and self._subscriptions:
                self._set_state(ConnectionState.RECONNECTING)
                logger.info("Reconnecting in %.1f seconds...", delay)
                await asyncio.sleep(delay)
                try:
                    self._ws = await self._connect()
                except SubscriptionError as e:
                    logger.error("Reconnection failed: %s", e)
                    delay = min(delay * 2, self._max_reconnect_delay)
                    continue

                self._stats.reconnect_count += 1
                # Resubscribe concurrently: replies arrive through this listen loop
                task = asyncio.create_task(self._resubscribe_all())
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_tasks.discard)
                return True

            return False

    async def _resubscribe_all(self) -> None:
        for sub in list(self._subscriptions.values()):
            if sub.server_id is not None:
                self._by_server_id.pop(sub.server_id, None)
                sub.server_id = None
            try:
                await self._register(sub)
                logger.info("Resubscribed %s for %s", sub.handle.kind.value, sub.handle.address)
            except SubscriptionError as e:
                logger.error("Resubscription failed for %s: %s", sub.handle, e)
                if self._on_error:
                    try:
                        await self._on_error(e)
                    except Exception as cb_error:
                        logger.error("Error in subscription error callback: %s", cb_error)

    def _fail_pending(self, error: SubscriptionError) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _disconnect(self) -> None:
        task, self._listen_task = self._listen_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Error closing WebSocket: %s", e)

        self._fail_pending(SubscriptionError("Connection closed"))
        self._set_state(ConnectionState.DISCONNECTED)

    async def close(self) -> None:
        """Drop every subscription and close the connection."""
        self._closed = True
        self._subscriptions.clear()
        self._by_server_id.clear()

        for task in list(self._handler_tasks):
            task.cancel()
        self._handler_tasks.clear()

        await self._disconnect()
