"""HTTP API for presale monitoring.

This module exposes the monitor operations over aiohttp, together with
liveness/health probes and the Prometheus metrics endpoint.
"""

import logging
import time
from decimal import Decimal
from typing import Any

from aiohttp import web
from prometheus_client import generate_latest

from presale_monitor.chain.client import ChainClientError
from presale_monitor.config import validate_pubkey
from presale_monitor.monitor.registry import MonitorRegistry
from presale_monitor.monitor.service import MonitorDisposedError, PresaleMonitor
from presale_monitor.pricing.oracle import PriceUnavailableError

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_HTTP_PORT = 8080
DEFAULT_TRANSACTION_LIMIT = 50
MAX_TRANSACTION_LIMIT = 500
DEFAULT_HISTORY_DAYS = 30
MAX_HISTORY_DAYS = 90
DEFAULT_CONTRIBUTOR_LIMIT = 20
SUMMARY_TRANSACTIONS = 10

REGISTRY_KEY = web.AppKey("registry", MonitorRegistry)
STARTED_AT_KEY = web.AppKey("started_at", float)


def _error(status: int, error: str, **extra: Any) -> web.Response:
    return web.json_response({"error": error, **extra}, status=status)


def _int_query(request: web.Request, name: str, default: int, maximum: int) -> int:
    """Read a positive integer query parameter, capped at ``maximum``."""
    raw = request.query.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise web.HTTPBadRequest(reason=f"{name} must be an integer") from None
    if value < 1:
        raise web.HTTPBadRequest(reason=f"{name} must be positive")
    return min(value, maximum)


@web.middleware
async def error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    """Map monitor errors to JSON error responses."""
    try:
        response: web.StreamResponse = await handler(request)
        return response
    except web.HTTPException as e:
        if e.status >= 400:
            return _error(e.status, e.reason)
        raise
    except (PriceUnavailableError, ChainClientError) as e:
        logger.warning("Upstream failure on %s: %s", request.path, e)
        return _error(503, "Upstream unavailable", message=str(e))
    except MonitorDisposedError as e:
        return _error(503, "Monitor unavailable", message=str(e))


def _monitor(request: web.Request) -> PresaleMonitor:
    """Look up the registered monitor for the path address.

    Requests never create monitors; unregistered addresses get a 404.
    """
    address = request.match_info["address"]
    try:
        key = validate_pubkey(address)
    except ValueError:
        raise web.HTTPBadRequest(reason=f"Invalid address: {address}") from None
    monitor = request.app[REGISTRY_KEY].get(key)
    if monitor is None:
        raise web.HTTPNotFound(reason=f"Address not monitored: {key}")
    return monitor


async def handle_health(request: web.Request) -> web.Response:
    """Handle /health endpoint."""
    registry = request.app[REGISTRY_KEY]
    return web.json_response(
        {
            "status": "healthy",
            "uptime_seconds": time.time() - request.app[STARTED_AT_KEY],
            "monitors": registry.addresses,
        }
    )


async def handle_live(_request: web.Request) -> web.Response:
    """Handle /live endpoint for liveness probes."""
    return web.json_response({"live": True})


async def handle_metrics(_request: web.Request) -> web.Response:
    """Handle /metrics endpoint (Prometheus format)."""
    return web.Response(body=generate_latest(), content_type="text/plain", charset="utf-8")


async def handle_info(request: web.Request) -> web.Response:
    monitor = _monitor(request)
    snapshot = await monitor.get_wallet_info()
    return web.json_response(snapshot.to_dict())


async def handle_presale_metrics(request: web.Request) -> web.Response:
    monitor = _monitor(request)
    refresh = request.query.get("refresh", "").lower() == "true"
    metrics = await monitor.get_metrics(force_refresh=refresh)
    return web.json_response(metrics.to_dict())


async def handle_transactions(request: web.Request) -> web.Response:
    monitor = _monitor(request)
    limit = _int_query(request, "limit", DEFAULT_TRANSACTION_LIMIT, MAX_TRANSACTION_LIMIT)
    transactions = await monitor.get_recent_transactions(limit)
    return web.json_response(
        {
            "address": monitor.address,
            "transactions": [tx.to_dict() for tx in transactions],
            "count": len(transactions),
        }
    )


async def handle_historical(request: web.Request) -> web.Response:
    monitor = _monitor(request)
    days = _int_query(request, "days", DEFAULT_HISTORY_DAYS, MAX_HISTORY_DAYS)
    analysis = await monitor.get_historical_analysis(days)
    return web.json_response({"address": monitor.address, **analysis.to_dict()})


async def handle_contributors(request: web.Request) -> web.Response:
    """Top contributors with their share of the total raised."""
    monitor = _monitor(request)
    limit = _int_query(request, "limit", DEFAULT_CONTRIBUTOR_LIMIT, MAX_TRANSACTION_LIMIT)
    contributors = await monitor.get_top_contributors(limit)
    metrics = await monitor.get_metrics()
    total = metrics.total_raised.total_usd

    ranked = []
    for rank, contributor in enumerate(contributors, start=1):
        share = contributor.total_usd / total * 100 if total > 0 else Decimal(0)
        ranked.append({"rank": rank, **contributor.to_dict(), "percentage_of_total": str(share)})

    return web.json_response(
        {
            "address": monitor.address,
            "contributors": ranked,
            "summary": {
                "total_contributors": metrics.unique_contributors,
                "total_raised_usd": str(total),
                "average_contribution_usd": str(metrics.average_contribution_usd),
                "median_contribution_usd": str(metrics.median_contribution_usd),
                "largest_contribution_usd": str(metrics.largest_contribution_usd),
                "distribution": metrics.contribution_distribution.to_dict(),
            },
        }
    )


async def handle_summary(request: web.Request) -> web.Response:
    """Current balance plus the last few transactions."""
    monitor = _monitor(request)
    snapshot = await monitor.get_wallet_info()
    transactions = await monitor.get_recent_transactions(SUMMARY_TRANSACTIONS)
    deposits = [tx for tx in transactions if tx.is_successful_deposit]

    return web.json_response(
        {
            "address": monitor.address,
            "balance": snapshot.to_dict(),
            "recent_activity": {
                "transactions": len(transactions),
                "deposits": len(deposits),
                "total_deposited_usd": str(sum((tx.usd_value for tx in deposits), Decimal(0))),
            },
            "last_transaction": transactions[0].to_dict() if transactions else None,
        }
    )


def create_app(registry: MonitorRegistry) -> web.Application:
    """Create the aiohttp application."""
    app = web.Application(middlewares=[error_middleware])
    app[REGISTRY_KEY] = registry
    app[STARTED_AT_KEY] = time.time()

    app.router.add_get("/health", handle_health)
    app.router.add_get("/live", handle_live)
    app.router.add_get("/metrics", handle_metrics)
    app.router.add_get("/presale/{address}/info", handle_info)
    app.router.add_get("/presale/{address}/metrics", handle_presale_metrics)
    app.router.add_get("/presale/{address}/transactions", handle_transactions)
    app.router.add_get("/presale/{address}/historical", handle_historical)
    app.router.add_get("/presale/{address}/contributors", handle_contributors)
    app.router.add_get("/presale/{address}/summary", handle_summary)
    return app


class ApiServer:
    """Run the presale HTTP API.

    Example:
        ```python
        server = ApiServer(registry, port=8080)
        await server.start()
        ...
        await server.stop()
        ```
    """

    def __init__(
        self,
        registry: MonitorRegistry,
        *,
        host: str = "0.0.0.0",
        port: int = DEFAULT_HTTP_PORT,
    ) -> None:
        self._registry = registry
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None

    @property
    def is_running(self) -> bool:
        """Return True while the server is running."""
        return self._runner is not None

    async def start(self) -> None:
        """Start the HTTP server."""
        if self._runner:
            logger.warning("HTTP server already running")
            return

        self._runner = web.AppRunner(create_app(self._registry))
        await self._runner.setup()

        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

        logger.info("Presale API server started on port %d", self._port)

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Presale API server stopped")

    async def __aenter__(self) -> "ApiServer":
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
