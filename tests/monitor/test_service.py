"""Tests for the PresaleMonitor consumer API."""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from presale_monitor.chain.client import RateLimitError, RPCError
from presale_monitor.chain.models import ParsedTransaction, SignatureInfo
from presale_monitor.config import PresaleSettings, Settings
from presale_monitor.monitor.models import TokenKind, TransactionKind
from presale_monitor.monitor.service import MonitorDisposedError, PresaleMonitor
from presale_monitor.pricing.oracle import PriceUnavailableError

PRESALE = "Vote111111111111111111111111111111111111111"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


class FakeChain:
    """Chain client double serving deposits of 1 SOL from distinct buyers.

    Signature ``sig<i>`` is ``i`` minutes old. Signatures listed in
    ``errors`` raise the mapped exception when fetched, and those in
    ``failed`` come back with a transaction error. Fetches wait on ``gate``
    when it is set. Every sequential wave of concurrent fetches records its
    peak concurrency in ``waves``.
    """

    def __init__(
        self,
        count: int,
        errors: dict[str, Exception] | None = None,
        failed: set[str] | None = None,
    ) -> None:
        self.now = datetime.now(UTC)
        self.count = count
        self.errors = errors or {}
        self.failed = failed or set()
        self.gate: asyncio.Event | None = None
        self.fetched: list[str] = []
        self.waves: list[int] = []
        self._in_flight = 0
        self._peak = 0

        self.get_native_balance = AsyncMock(return_value=Decimal(10))
        self.get_stable_balances = AsyncMock(return_value=Decimal(500))
        self.list_signatures = AsyncMock(side_effect=self._list_signatures)
        self.get_parsed_transaction = AsyncMock(side_effect=self._get_parsed_transaction)
        self.subscribe_account_changes = AsyncMock()
        self.subscribe_logs = AsyncMock()
        self.unsubscribe = AsyncMock()
        self.close = AsyncMock()

    def sender(self, i: int) -> str:
        return f"buyer{i % 3}"

    async def _list_signatures(self, address: str, limit: int) -> list[SignatureInfo]:
        return [
            SignatureInfo(signature=f"sig{i}", slot=1000 - i)
            for i in range(min(limit, self.count))
        ]

    async def _get_parsed_transaction(self, signature: str) -> ParsedTransaction | None:
        self.fetched.append(signature)
        self._in_flight += 1
        self._peak = max(self._peak, self._in_flight)
        await asyncio.sleep(0)
        if self.gate is not None:
            await self.gate.wait()
        self._in_flight -= 1
        if self._in_flight == 0:
            self.waves.append(self._peak)
            self._peak = 0

        if signature in self.errors:
            raise self.errors[signature]
        if signature == "missing":
            return None
        i = int(signature[3:])
        return ParsedTransaction(
            signature=signature,
            slot=1000 - i,
            block_time=self.now - timedelta(minutes=i),
            account_keys=(self.sender(i), PRESALE),
            pre_balances=(5_000_000_000, 1_000_000_000),
            post_balances=(3_999_995_000, 2_000_000_000),
            error={"InstructionError": [0, "Custom"]} if signature in self.failed else None,
        )


@pytest.fixture
def oracle() -> MagicMock:
    oracle = MagicMock()
    oracle.get_price = AsyncMock(return_value=Decimal(150))
    oracle.close = AsyncMock()
    return oracle


def _monitor(chain: FakeChain, oracle: MagicMock, **kwargs) -> PresaleMonitor:
    kwargs.setdefault("rate_limit_backoff_seconds", 0)
    return PresaleMonitor(PRESALE, chain, oracle, stable_mints=[USDC_MINT], **kwargs)


class TestConstruction:
    """Tests for monitor construction."""

    def test_invalid_batch_size(self, oracle) -> None:
        with pytest.raises(ValueError, match="batch_size"):
            _monitor(FakeChain(0), oracle, batch_size=0)

    def test_from_settings_requires_address(self, monkeypatch, oracle) -> None:
        monkeypatch.delenv("PRESALE_ADDRESS", raising=False)

        with pytest.raises(ValueError, match="PRESALE_ADDRESS"):
            PresaleMonitor.from_settings(Settings(), client=FakeChain(0), oracle=oracle)

    def test_from_settings_uses_configured_address(self, oracle) -> None:
        settings = Settings(presale=PresaleSettings(PRESALE_ADDRESS=PRESALE, PRESALE_BATCH_SIZE=4))

        monitor = PresaleMonitor.from_settings(settings, client=FakeChain(0), oracle=oracle)

        assert monitor.address == PRESALE
        assert monitor._batch_size == 4


class TestWalletInfo:
    """Tests for get_wallet_info."""

    @pytest.mark.asyncio
    async def test_snapshot(self, oracle) -> None:
        monitor = _monitor(FakeChain(0), oracle)

        snapshot = await monitor.get_wallet_info()

        assert snapshot.total_value_usd == Decimal(2000)

    @pytest.mark.asyncio
    async def test_price_failure_propagates(self, oracle) -> None:
        oracle.get_price.side_effect = PriceUnavailableError({"jupiter": "down"})
        monitor = _monitor(FakeChain(0), oracle)

        with pytest.raises(PriceUnavailableError):
            await monitor.get_wallet_info()


class TestRecentTransactions:
    """Tests for batched transaction fetching."""

    @pytest.mark.asyncio
    async def test_sub_batches_and_partial_failure(self, oracle) -> None:
        errors = {sig: RPCError("boom") for sig in ("sig3", "sig12", "sig20")}
        chain = FakeChain(25, errors)
        monitor = _monitor(chain, oracle, batch_size=10)

        transactions = await monitor.get_recent_transactions(25)

        assert chain.waves == [10, 10, 5]
        assert len(transactions) == 22
        times = [tx.occurred_at for tx in transactions]
        assert times == sorted(times, reverse=True)
        assert {tx.signature for tx in transactions}.isdisjoint(errors)

    @pytest.mark.asyncio
    async def test_price_fetched_once_per_batch(self, oracle) -> None:
        monitor = _monitor(FakeChain(25), oracle)

        await monitor.get_recent_transactions(25)

        oracle.get_price.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cached_transactions_not_refetched(self, oracle) -> None:
        chain = FakeChain(5)
        monitor = _monitor(chain, oracle)

        first = await monitor.get_recent_transactions(5)
        second = await monitor.get_recent_transactions(5)

        assert first == second
        assert len(chain.fetched) == 5
        # All signatures cached, so no price is needed the second time
        oracle.get_price.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rate_limit_halves_batch_size(self, oracle) -> None:
        chain = FakeChain(25, {"sig0": RateLimitError("slow down")})
        monitor = _monitor(chain, oracle, batch_size=10)

        transactions = await monitor.get_recent_transactions(25)

        assert chain.waves == [10, 5, 5, 5]
        assert len(transactions) == 24

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self, oracle) -> None:
        chain = FakeChain(3, {"sig1": RuntimeError("bug")})
        monitor = _monitor(chain, oracle)

        with pytest.raises(RuntimeError, match="bug"):
            await monitor.get_recent_transactions(3)

    @pytest.mark.asyncio
    async def test_transactions_classified_as_native_deposits(self, oracle) -> None:
        monitor = _monitor(FakeChain(1), oracle)

        (tx,) = await monitor.get_recent_transactions(1)

        assert tx.kind is TransactionKind.DEPOSIT
        assert tx.token is TokenKind.NATIVE
        assert tx.amount == Decimal(1)
        assert tx.usd_value == Decimal(150)

    @pytest.mark.asyncio
    async def test_empty_history(self, oracle) -> None:
        monitor = _monitor(FakeChain(0), oracle)

        assert await monitor.get_recent_transactions() == []
        oracle.get_price.assert_not_awaited()


class TestLoadTransaction:
    """Tests for single transaction loading."""

    @pytest.mark.asyncio
    async def test_missing_transaction(self, oracle) -> None:
        monitor = _monitor(FakeChain(0), oracle)

        assert await monitor.load_transaction("missing") is None

    @pytest.mark.asyncio
    async def test_cache_hit(self, oracle) -> None:
        chain = FakeChain(1)
        monitor = _monitor(chain, oracle)

        first = await monitor.load_transaction("sig0")
        second = await monitor.load_transaction("sig0")

        assert first is second
        assert chain.fetched == ["sig0"]
        stats = monitor.cache_stats()
        assert stats.transaction_hits == 1
        assert stats.transactions_cached == 1


class TestMetrics:
    """Tests for metrics computation and caching."""

    @pytest.mark.asyncio
    async def test_metrics_computed(self, oracle) -> None:
        monitor = _monitor(FakeChain(6), oracle)

        metrics = await monitor.get_metrics()

        assert metrics.total_raised.native == Decimal(6)
        assert metrics.total_raised.total_usd == Decimal(900)
        assert metrics.unique_contributors == 3
        assert metrics.transaction_counts.last_24h == 6

    @pytest.mark.asyncio
    async def test_cached_within_ttl(self, oracle) -> None:
        chain = FakeChain(3)
        monitor = _monitor(chain, oracle, metrics_ttl_seconds=60)

        first = await monitor.get_metrics()
        second = await monitor.get_metrics()

        assert first is second
        chain.list_signatures.assert_awaited_once()
        chain.get_native_balance.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_force_refresh_recomputes(self, oracle) -> None:
        chain = FakeChain(3)
        monitor = _monitor(chain, oracle, metrics_ttl_seconds=60)

        first = await monitor.get_metrics()
        second = await monitor.get_metrics(force_refresh=True)

        assert first is not second
        assert chain.list_signatures.await_count == 2
        # Transactions come from the cache on the second pass
        assert len(chain.fetched) == 3

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_computation(self, oracle) -> None:
        chain = FakeChain(3)
        monitor = _monitor(chain, oracle, metrics_ttl_seconds=60)

        first, second = await asyncio.gather(monitor.get_metrics(), monitor.get_metrics())

        assert first is second
        chain.list_signatures.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_price_unavailable_propagates(self, oracle) -> None:
        oracle.get_price.side_effect = PriceUnavailableError({"jupiter": "down"})
        monitor = _monitor(FakeChain(3), oracle)

        with pytest.raises(PriceUnavailableError):
            await monitor.get_metrics()

        assert monitor.cache_stats().metrics_cached is False


class TestHistory:
    """Tests for historical analysis and contributor queries."""

    @pytest.mark.asyncio
    async def test_historical_fetch_size(self, oracle) -> None:
        chain = FakeChain(4)
        monitor = _monitor(chain, oracle)

        analysis = await monitor.get_historical_analysis(7)

        assert chain.list_signatures.await_args.args == (PRESALE, 700)
        assert analysis.days == 7
        assert sum(d.transaction_count for d in analysis.daily_volumes) == 4

    @pytest.mark.asyncio
    async def test_historical_days_must_be_positive(self, oracle) -> None:
        monitor = _monitor(FakeChain(0), oracle)

        with pytest.raises(ValueError):
            await monitor.get_historical_analysis(0)

    @pytest.mark.asyncio
    async def test_top_contributors(self, oracle) -> None:
        monitor = _monitor(FakeChain(7), oracle)

        ranked = await monitor.get_top_contributors(2)

        # buyer0 sent sig0, sig3, sig6
        assert [c.address for c in ranked] == ["buyer0", "buyer1"]
        assert ranked[0].contribution_count == 3

    @pytest.mark.asyncio
    async def test_contributor_history(self, oracle) -> None:
        monitor = _monitor(FakeChain(7), oracle)

        history = await monitor.get_contributor_history("buyer1")

        assert [tx.signature for tx in history.transactions] == ["sig1", "sig4"]
        assert history.info is not None
        assert history.info.address == "buyer1"
        assert history.info.contribution_count == 2
        assert history.info.total_usd == Decimal(300)

    @pytest.mark.asyncio
    async def test_contributor_history_skips_failed_deposits(self, oracle) -> None:
        monitor = _monitor(FakeChain(7, failed={"sig4"}), oracle)

        history = await monitor.get_contributor_history("buyer1")

        assert [tx.signature for tx in history.transactions] == ["sig1"]
        assert history.info is not None
        assert history.info.contribution_count == 1
        assert history.info.total_usd == Decimal(150)

    @pytest.mark.asyncio
    async def test_contributor_history_unknown_address(self, oracle) -> None:
        monitor = _monitor(FakeChain(7), oracle)

        history = await monitor.get_contributor_history("stranger")

        assert history.info is None
        assert history.transactions == ()
        assert history.to_dict() == {"info": None, "transactions": []}


class TestDispose:
    """Tests for monitor disposal."""

    @pytest.mark.asyncio
    async def test_calls_after_dispose_raise(self, oracle) -> None:
        monitor = _monitor(FakeChain(3), oracle)
        await monitor.get_metrics()

        await monitor.dispose()

        assert monitor.is_disposed is True
        assert monitor.cache_stats().transactions_cached == 0
        assert monitor.cache_stats().metrics_cached is False
        with pytest.raises(MonitorDisposedError):
            await monitor.get_metrics()
        with pytest.raises(MonitorDisposedError):
            await monitor.get_wallet_info()
        with pytest.raises(MonitorDisposedError):
            await monitor.start_realtime_monitoring(AsyncMock())

    @pytest.mark.asyncio
    async def test_dispose_during_metrics_fetch_leaves_caches_empty(self, oracle) -> None:
        chain = FakeChain(3)
        chain.gate = asyncio.Event()
        monitor = _monitor(chain, oracle, metrics_ttl_seconds=60)

        task = asyncio.create_task(monitor.get_metrics())
        while len(chain.fetched) < 3:
            await asyncio.sleep(0)

        await monitor.dispose()
        chain.gate.set()
        metrics = await asyncio.wait_for(task, timeout=1.0)

        assert metrics.transaction_counts.total == 3
        stats = monitor.cache_stats()
        assert stats.transactions_cached == 0
        assert stats.metrics_cached is False

    @pytest.mark.asyncio
    async def test_dispose_during_single_load_skips_cache(self, oracle) -> None:
        chain = FakeChain(1)
        chain.gate = asyncio.Event()
        monitor = _monitor(chain, oracle)

        task = asyncio.create_task(monitor.load_transaction("sig0"))
        while not chain.fetched:
            await asyncio.sleep(0)

        await monitor.dispose()
        chain.gate.set()
        tx = await asyncio.wait_for(task, timeout=1.0)

        assert tx is not None
        assert monitor.cache_stats().transactions_cached == 0

    @pytest.mark.asyncio
    async def test_dispose_twice_is_noop(self, oracle) -> None:
        chain = FakeChain(0)
        monitor = _monitor(chain, oracle, owns_clients=True)

        await monitor.dispose()
        await monitor.dispose()

        chain.close.assert_awaited_once()
        oracle.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shared_clients_left_open(self, oracle) -> None:
        chain = FakeChain(0)
        monitor = _monitor(chain, oracle)

        await monitor.dispose()

        chain.close.assert_not_awaited()
        oracle.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dispose_stops_realtime(self, oracle) -> None:
        chain = FakeChain(0)
        monitor = _monitor(chain, oracle)
        await monitor.start_realtime_monitoring(AsyncMock())
        assert monitor.is_realtime_running is True

        await monitor.dispose()

        assert monitor.is_realtime_running is False
        assert chain.unsubscribe.await_count == 2
