"""Balance snapshots of the monitored address."""

import asyncio
import logging
from collections.abc import Sequence
from datetime import UTC, datetime

from presale_monitor.chain.client import SolanaClient
from presale_monitor.monitor.models import WalletSnapshot
from presale_monitor.pricing.oracle import PriceOracle

logger = logging.getLogger(__name__)


class BalanceSnapshotter:
    """Combine chain balances and the SOL price into a WalletSnapshot."""

    def __init__(
        self,
        client: SolanaClient,
        oracle: PriceOracle,
        stable_mints: Sequence[str],
    ) -> None:
        self._client = client
        self._oracle = oracle
        self._stable_mints = tuple(stable_mints)

    async def snapshot(self, address: str) -> WalletSnapshot:
        """Take a snapshot of an address.

        Native balance, stablecoin balance and price are fetched concurrently.
        If any of them fails the error propagates and no snapshot is produced.

        Raises:
            ChainClientError: If a balance cannot be fetched.
            PriceUnavailableError: If no price source is available.
        """
        native, stable, price = await asyncio.gather(
            self._client.get_native_balance(address),
            self._client.get_stable_balances(address, self._stable_mints),
            self._oracle.get_price(),
        )
        snapshot = WalletSnapshot(
            address=address,
            native_balance=native,
            stable_balance=stable,
            price_at_snapshot=price,
            captured_at=datetime.now(UTC),
        )
        logger.debug(
            "Snapshot %s: %s SOL, %s stable, $%s total",
            address,
            native,
            stable,
            snapshot.total_value_usd,
        )
        return snapshot
