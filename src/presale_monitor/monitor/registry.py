"""Registry owning one PresaleMonitor per monitored address."""

import asyncio
import logging

from presale_monitor.chain.client import SolanaClient
from presale_monitor.config import Settings, validate_pubkey
from presale_monitor.monitor.service import (
    PresaleMonitor,
    create_price_oracle,
    create_solana_client,
)
from presale_monitor.pricing.oracle import PriceOracle

logger = logging.getLogger(__name__)


class MonitorRegistry:
    """Create, look up and dispose per-address monitors.

    Monitors share the registry's chain client and price oracle but no
    monitor state. The registry closes the shared clients in dispose_all().

    Example:
        ```python
        registry = MonitorRegistry.from_settings(get_settings())
        monitor = await registry.get_or_create("2n5a...")
        metrics = await monitor.get_metrics()
        await registry.dispose_all()
        ```
    """

    def __init__(
        self,
        settings: Settings,
        client: SolanaClient,
        oracle: PriceOracle,
        *,
        owns_clients: bool = False,
    ) -> None:
        self._settings = settings
        self._client = client
        self._oracle = oracle
        self._owns_clients = owns_clients
        self._monitors: dict[str, PresaleMonitor] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "MonitorRegistry":
        """Create a registry with clients built from settings."""
        return cls(
            settings,
            create_solana_client(settings),
            create_price_oracle(settings),
            owns_clients=True,
        )

    @property
    def addresses(self) -> list[str]:
        """Addresses with a live monitor."""
        return list(self._monitors)

    def __len__(self) -> int:
        return len(self._monitors)

    def get(self, address: str) -> PresaleMonitor | None:
        """Get the monitor for an address, if one exists."""
        return self._monitors.get(address)

    async def get_or_create(self, address: str) -> PresaleMonitor:
        """Get the monitor for an address, creating it on first use.

        Raises:
            ValueError: If the address is not a valid public key.
        """
        address = validate_pubkey(address)
        async with self._lock:
            monitor = self._monitors.get(address)
            if monitor is None:
                monitor = PresaleMonitor.from_settings(
                    self._settings,
                    address,
                    client=self._client,
                    oracle=self._oracle,
                )
                self._monitors[address] = monitor
                logger.info("Created monitor for %s", address)
            return monitor

    async def dispose(self, address: str) -> bool:
        """Dispose and forget the monitor for an address.

        Returns:
            True if a monitor was disposed.
        """
        async with self._lock:
            monitor = self._monitors.pop(address, None)
        if monitor is None:
            return False
        await monitor.dispose()
        return True

    async def dispose_all(self) -> None:
        """Dispose every monitor and close the shared clients."""
        async with self._lock:
            monitors = list(self._monitors.values())
            self._monitors.clear()

        for monitor in monitors:
            try:
                await monitor.dispose()
            except Exception as e:
                logger.error("Error disposing monitor for %s: %s", monitor.address, e)

        if self._owns_clients:
            await self._client.close()
            await self._oracle.close()
