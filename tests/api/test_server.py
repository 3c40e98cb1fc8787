"""Tests for the presale HTTP API."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import test_utils

from presale_monitor.api.server import ApiServer, create_app
from presale_monitor.chain.client import TransientNetworkError
from presale_monitor.monitor.aggregator import aggregate
from presale_monitor.monitor.history import analyze, rank_contributors
from presale_monitor.monitor.models import (
    TokenKind,
    Transaction,
    TransactionKind,
    TransactionStatus,
    WalletSnapshot,
)
from presale_monitor.monitor.service import MonitorDisposedError
from presale_monitor.pricing.oracle import PriceUnavailableError

PRESALE = "Vote111111111111111111111111111111111111111"
NOW = datetime.now(UTC)


def _deposit(signature: str, amount: str, sender: str, age: timedelta) -> Transaction:
    return Transaction(
        signature=signature,
        kind=TransactionKind.DEPOSIT,
        token=TokenKind.STABLE,
        amount=Decimal(amount),
        usd_value=Decimal(amount),
        counterparty_from=sender,
        counterparty_to=PRESALE,
        occurred_at=NOW - age,
        status=TransactionStatus.SUCCESS,
    )


SNAPSHOT = WalletSnapshot(PRESALE, Decimal(10), Decimal(500), Decimal(150), NOW)
TRANSACTIONS = [
    _deposit("sig1", "250", "alice", timedelta(hours=1)),
    _deposit("sig2", "750", "bob", timedelta(days=2)),
]


@pytest.fixture
def monitor() -> MagicMock:
    monitor = MagicMock()
    monitor.address = PRESALE
    monitor.get_wallet_info = AsyncMock(return_value=SNAPSHOT)
    monitor.get_metrics = AsyncMock(return_value=aggregate(SNAPSHOT, TRANSACTIONS, NOW))
    monitor.get_recent_transactions = AsyncMock(return_value=TRANSACTIONS)
    monitor.get_historical_analysis = AsyncMock(return_value=analyze(TRANSACTIONS, 30, NOW))
    monitor.get_top_contributors = AsyncMock(return_value=rank_contributors(TRANSACTIONS))
    return monitor


@pytest.fixture
def registry(monitor) -> MagicMock:
    registry = MagicMock()
    registry.addresses = [PRESALE]
    registry.get = MagicMock(side_effect=lambda address: monitor if address == PRESALE else None)
    registry.get_or_create = AsyncMock()
    return registry


async def _get(registry: MagicMock, path: str) -> tuple[int, object]:
    async with test_utils.TestClient(test_utils.TestServer(create_app(registry))) as client:
        response = await client.get(path)
        if response.content_type == "application/json":
            return response.status, await response.json()
        return response.status, await response.text()


class TestProbes:
    """Tests for health, liveness and Prometheus endpoints."""

    @pytest.mark.asyncio
    async def test_live(self, registry) -> None:
        assert await _get(registry, "/live") == (200, {"live": True})

    @pytest.mark.asyncio
    async def test_health(self, registry) -> None:
        status, body = await _get(registry, "/health")

        assert status == 200
        assert body["status"] == "healthy"
        assert body["monitors"] == [PRESALE]
        assert body["uptime_seconds"] >= 0

    @pytest.mark.asyncio
    async def test_prometheus_metrics(self, registry) -> None:
        status, body = await _get(registry, "/metrics")

        assert status == 200
        assert "presale_rpc_requests_total" in body

    @pytest.mark.asyncio
    async def test_unknown_route_is_json(self, registry) -> None:
        status, body = await _get(registry, "/nope")

        assert status == 404
        assert "error" in body


class TestPresaleEndpoints:
    """Tests for per-address endpoints."""

    @pytest.mark.asyncio
    async def test_invalid_address(self, registry) -> None:
        status, body = await _get(registry, "/presale/not-a-key/info")

        assert status == 400
        assert body == {"error": "Invalid address: not-a-key"}

    @pytest.mark.asyncio
    async def test_unregistered_address_not_created(self, registry) -> None:
        other = "So11111111111111111111111111111111111111112"

        for _ in range(3):
            status, body = await _get(registry, f"/presale/{other}/info")
            assert status == 404
            assert body == {"error": f"Address not monitored: {other}"}

        registry.get_or_create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_info(self, registry) -> None:
        status, body = await _get(registry, f"/presale/{PRESALE}/info")

        assert status == 200
        assert body["native_balance"] == "10"
        assert body["total_value_usd"] == "2000"

    @pytest.mark.asyncio
    async def test_metrics_refresh_flag(self, registry, monitor) -> None:
        status, body = await _get(registry, f"/presale/{PRESALE}/metrics?refresh=true")

        assert status == 200
        assert body["total_raised"]["stable"] == "1000"
        monitor.get_metrics.assert_awaited_once_with(force_refresh=True)

    @pytest.mark.asyncio
    async def test_transactions_default_limit(self, registry, monitor) -> None:
        status, body = await _get(registry, f"/presale/{PRESALE}/transactions")

        assert status == 200
        assert body["count"] == 2
        assert [tx["signature"] for tx in body["transactions"]] == ["sig1", "sig2"]
        monitor.get_recent_transactions.assert_awaited_once_with(50)

    @pytest.mark.asyncio
    async def test_transactions_limit_capped(self, registry, monitor) -> None:
        await _get(registry, f"/presale/{PRESALE}/transactions?limit=10000")

        monitor.get_recent_transactions.assert_awaited_once_with(500)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", ["abc", "0", "-5"])
    async def test_transactions_bad_limit(self, registry, monitor, limit) -> None:
        status, body = await _get(registry, f"/presale/{PRESALE}/transactions?limit={limit}")

        assert status == 400
        assert "limit" in body["error"]
        monitor.get_recent_transactions.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_historical_days_capped(self, registry, monitor) -> None:
        status, body = await _get(registry, f"/presale/{PRESALE}/historical?days=365")

        assert status == 200
        assert body["address"] == PRESALE
        assert len(body["hourly_activity"]) == 24
        monitor.get_historical_analysis.assert_awaited_once_with(90)

    @pytest.mark.asyncio
    async def test_contributors_share_of_total(self, registry) -> None:
        status, body = await _get(registry, f"/presale/{PRESALE}/contributors")

        assert status == 200
        first, second = body["contributors"]
        assert (first["rank"], first["address"]) == (1, "bob")
        assert Decimal(first["percentage_of_total"]) == Decimal(75)
        assert Decimal(second["percentage_of_total"]) == Decimal(25)
        assert body["summary"]["total_contributors"] == 2
        assert body["summary"]["distribution"]["500_to_1k"] == 1

    @pytest.mark.asyncio
    async def test_summary(self, registry) -> None:
        status, body = await _get(registry, f"/presale/{PRESALE}/summary")

        assert status == 200
        assert body["recent_activity"] == {
            "transactions": 2,
            "deposits": 2,
            "total_deposited_usd": "1000",
        }
        assert body["last_transaction"]["signature"] == "sig1"

    @pytest.mark.asyncio
    async def test_summary_without_transactions(self, registry, monitor) -> None:
        monitor.get_recent_transactions.return_value = []

        _, body = await _get(registry, f"/presale/{PRESALE}/summary")

        assert body["last_transaction"] is None


class TestErrorMapping:
    """Tests for upstream failure responses."""

    @pytest.mark.asyncio
    async def test_price_unavailable_is_503(self, registry, monitor) -> None:
        monitor.get_wallet_info.side_effect = PriceUnavailableError({"jupiter": "down"})

        status, body = await _get(registry, f"/presale/{PRESALE}/info")

        assert status == 503
        assert body["error"] == "Upstream unavailable"
        assert "jupiter" in body["message"]

    @pytest.mark.asyncio
    async def test_chain_failure_is_503(self, registry, monitor) -> None:
        monitor.get_recent_transactions.side_effect = TransientNetworkError("rpc down")

        status, body = await _get(registry, f"/presale/{PRESALE}/transactions")

        assert status == 503
        assert body == {"error": "Upstream unavailable", "message": "rpc down"}

    @pytest.mark.asyncio
    async def test_disposed_monitor_is_503(self, registry, monitor) -> None:
        monitor.get_metrics.side_effect = MonitorDisposedError("gone")

        status, body = await _get(registry, f"/presale/{PRESALE}/metrics")

        assert status == 503
        assert body == {"error": "Monitor unavailable", "message": "gone"}


class TestApiServer:
    """Tests for the server lifecycle."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, registry) -> None:
        server = ApiServer(registry, host="127.0.0.1", port=0)

        async with server:
            assert server.is_running is True

        assert server.is_running is False

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, registry) -> None:
        server = ApiServer(registry)

        await server.stop()

        assert server.is_running is False
