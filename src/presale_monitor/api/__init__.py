"""HTTP API - presale endpoints, health probes and Prometheus metrics."""

from presale_monitor.api.server import ApiServer, create_app

__all__ = [
    "ApiServer",
    "create_app",
]
