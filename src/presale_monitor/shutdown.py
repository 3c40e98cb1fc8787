"""Signal handling for a clean stop of the presale monitor service.

SIGTERM/SIGINT set an asyncio event the CLI waits on; registered cleanup
callbacks (stop the API server, dispose monitors) then run in order. A
second signal exits immediately.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)

CleanupCallback = Callable[[], Awaitable[None] | None]


class GracefulShutdown:
    """Wait for a shutdown signal, then run cleanup callbacks.

    Example:
        ```python
        async with GracefulShutdown() as shutdown:
            shutdown.register_cleanup(registry.dispose_all)
            await server.start()
            await shutdown.wait()
        ```
    """

    def __init__(self) -> None:
        self._event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._requested = False
        self._cleanup: list[CleanupCallback] = []
        self._fallback_handlers: dict[signal.Signals, Any] = {}

    @property
    def is_shutdown_requested(self) -> bool:
        """Return True once a signal arrived or shutdown was requested."""
        return self._requested

    def _ensure_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
        return self._event

    def register_cleanup(self, callback: CleanupCallback) -> None:
        """Register a sync or async callable to run on exit, in registration order."""
        self._cleanup.append(callback)

    def request_shutdown(self) -> None:
        """Trigger shutdown from application code."""
        if not self._requested:
            self._requested = True
            logger.info("Shutdown requested")
            self._ensure_event().set()

    async def wait(self) -> None:
        """Block until shutdown is requested."""
        await self._ensure_event().wait()

    def _on_signal(self, sig: signal.Signals) -> None:
        if self._requested:
            logger.warning("Received %s again - exiting now", sig.name)
            sys.exit(128 + sig.value)
        logger.info("Received %s - shutting down", sig.name)
        self.request_shutdown()

    def install_signal_handlers(self) -> None:
        """Trap SIGTERM and SIGINT."""
        self._loop = asyncio.get_running_loop()
        self._ensure_event()
        for sig in SHUTDOWN_SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self._on_signal, sig)
            except NotImplementedError:
                # Event loops without add_signal_handler (Windows)
                self._fallback_handlers[sig] = signal.signal(
                    sig, lambda num, _frame: self._on_signal(signal.Signals(num))
                )
            except (ValueError, OSError) as e:
                logger.warning("Could not install handler for %s: %s", sig.name, e)

    def remove_signal_handlers(self) -> None:
        """Restore the previous signal handling."""
        if self._loop is not None:
            for sig in SHUTDOWN_SIGNALS:
                with suppress(NotImplementedError, ValueError, OSError):
                    self._loop.remove_signal_handler(sig)
        for sig, previous in self._fallback_handlers.items():
            with suppress(ValueError, OSError):
                signal.signal(sig, previous)
        self._fallback_handlers.clear()

    async def run_cleanup_callbacks(self) -> None:
        """Run every cleanup callback; failures are logged and skipped."""
        for callback in self._cleanup:
            try:
                result = callback()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("Cleanup callback failed: %s", e)

    async def __aenter__(self) -> GracefulShutdown:
        self.install_signal_handlers()
        return self

    async def __aexit__(self, *_args: Any) -> None:
        self.remove_signal_handlers()
        await self.run_cleanup_callbacks()
